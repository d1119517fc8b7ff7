"""Pydantic schemas for the Trustgate gateway trust boundary."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


DmPolicy = Literal["open", "pairing", "allowlist", "disabled"]
GroupPolicy = Literal["open", "allowlist", "disabled"]
AccessDecision = Literal["allow", "block", "pairing"]
ApprovalMismatchCode = Literal[
    "APPROVAL_REQUEST_MISMATCH",
    "APPROVAL_ENV_BINDING_MISSING",
    "APPROVAL_ENV_MISMATCH",
]
MaintenanceMode = Literal["enforce", "warn"]
AllowEntry = Union[str, int]
# Numeric argv tokens are stringified before comparison.
ArgvToken = Union[str, int, float]


# --- Approval binding ---


class SystemRunApprovalBinding(BaseModel):
    """Normalized description of exactly which command an approval authorizes."""

    model_config = ConfigDict(frozen=True)

    version: int = 1
    argv: tuple[ArgvToken, ...] = ()
    cwd: Optional[str] = None
    agent_id: Optional[str] = None
    session_key: Optional[str] = None
    env_hash: Optional[str] = None


class EnvBinding(BaseModel):
    model_config = ConfigDict(frozen=True)

    env_hash: Optional[str] = None
    env_keys: list[str] = Field(default_factory=list)


class ExecApprovalRecord(BaseModel):
    """What a human approved when the command was queued."""

    host: str = "node"
    command: str = ""
    command_argv: Optional[list[ArgvToken]] = None
    cwd: Optional[str] = None
    agent_id: Optional[str] = None
    session_key: Optional[str] = None
    env_hash: Optional[str] = None
    system_run_binding_v1: Optional[SystemRunApprovalBinding] = None


class SystemRunInvocation(BaseModel):
    """The live retry being checked against an approval record."""

    cmd_text: str = ""
    argv: list[ArgvToken] = Field(default_factory=list)
    cwd: Optional[str] = None
    agent_id: Optional[str] = None
    session_key: Optional[str] = None
    env: Optional[dict[str, str]] = None


class ApprovalMatchResult(BaseModel):
    ok: bool
    code: Optional[ApprovalMismatchCode] = None
    message: str = ""
    details: dict = Field(default_factory=dict)


class ApprovalMismatchError(BaseModel):
    ok: Literal[False] = False
    message: str
    details: dict = Field(default_factory=dict)


class SystemRunEvaluateRequest(BaseModel):
    run_id: str = Field(default_factory=lambda: f"run_{uuid4().hex[:10]}")
    approval_id: str
    approval: ExecApprovalRecord
    invocation: SystemRunInvocation


class ApprovalAuditEntry(BaseModel):
    id: str = Field(default_factory=lambda: f"exec_audit_{uuid4().hex[:8]}")
    timestamp: str = Field(default_factory=utc_now_iso)
    event: str = "exec.denied"
    approval_id: str
    run_id: str
    code: str
    message: str
    trace_id: str
    details: dict = Field(default_factory=dict)


class ApprovalAuditSnapshot(BaseModel):
    entries: int
    max_entries: int


# --- Access policy ---


class ChannelAccessConfig(BaseModel):
    """One layer of channel access configuration; unset fields inherit."""

    dm_policy: Optional[DmPolicy] = None
    group_policy: Optional[GroupPolicy] = None
    allow_from: Optional[list[AllowEntry]] = None
    group_allow_from: Optional[list[AllowEntry]] = None
    group_allow_from_fallback_to_allow_from: Optional[bool] = None
    accounts: dict[str, "ChannelAccessConfig"] = Field(default_factory=dict)


ChannelAccessConfig.model_rebuild()


class EffectiveAllowFromLists(BaseModel):
    effective_allow_from: list[str] = Field(default_factory=list)
    effective_group_allow_from: list[str] = Field(default_factory=list)


class AccessDecisionResult(BaseModel):
    decision: AccessDecision
    reason: str
    effective_allow_from: list[str] = Field(default_factory=list)
    effective_group_allow_from: list[str] = Field(default_factory=list)


class DmAllowState(BaseModel):
    config_allow_from: list[str] = Field(default_factory=list)
    has_wildcard: bool = False
    allow_count: int = 0
    is_multi_user_dm: bool = False


class ChannelAccessSnapshot(BaseModel):
    channel: str
    account_id: Optional[str] = None
    dm_policy: DmPolicy
    group_policy: GroupPolicy
    effective_allow_from: list[str] = Field(default_factory=list)
    effective_group_allow_from: list[str] = Field(default_factory=list)
    dm_allow_state: DmAllowState


# --- Pairing ---


class PendingPairingCode(BaseModel):
    channel: str
    code: str
    user_id: str
    account_id: str = "default"
    created_at: str = Field(default_factory=utc_now_iso)


class PairingApprovalRequest(BaseModel):
    code: str
    account_id: str = "default"
    actor: str = "admin"


class PairingApprovalResponse(BaseModel):
    channel: str
    code: str
    approved: bool
    user_id: Optional[str] = None


# --- Inbound ---


class InboundMessage(BaseModel):
    channel: str
    account_id: str = "default"
    agent_id: str = "main"
    message_id: str = Field(..., min_length=1)
    sender_id: str = Field(..., min_length=1)
    conversation_id: str = Field(..., min_length=1)
    is_group: bool = False
    text: str = ""


class InboundDecisionResponse(BaseModel):
    channel: str
    status: Literal["duplicate", "allow", "block", "pairing"]
    reason: str = ""
    session_key: Optional[str] = None
    pairing_code: Optional[str] = None
    outbound_text: Optional[str] = None
    trace_id: Optional[str] = None


# --- Sessions ---


class SessionEntry(BaseModel):
    """Persisted per-conversation session state."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    session_id: str = Field(default_factory=lambda: uuid4().hex, alias="sessionId")
    updated_at: Optional[int] = Field(default=None, alias="updatedAt")
    thinking_level: Optional[str] = Field(default=None, alias="thinkingLevel")
    verbose_level: Optional[str] = Field(default=None, alias="verboseLevel")
    reasoning_level: Optional[str] = Field(default=None, alias="reasoningLevel")
    model_override: Optional[str] = Field(default=None, alias="modelOverride")
    provider_override: Optional[str] = Field(default=None, alias="providerOverride")
    label: Optional[str] = None
    channel: Optional[str] = None
    last_to: Optional[str] = Field(default=None, alias="lastTo")


class SessionMaintenanceConfig(BaseModel):
    mode: MaintenanceMode = "warn"
    prune_after_ms: Optional[int] = None
    max_entries: int = 500
    rotate_bytes: int = 10_485_760


class SessionMaintenanceReport(BaseModel):
    mode: MaintenanceMode
    before_count: int = 0
    after_count: int = 0
    pruned: int = 0
    capped: int = 0
    would_prune: int = 0
    would_cap: int = 0
    would_rotate: bool = False
    backup_path: Optional[str] = None


class SessionSnapshot(BaseModel):
    session_key: str
    session_id: str
    updated_at: Optional[int] = None


# --- Dedup / metrics ---


class DedupCacheSnapshot(BaseModel):
    partitions: int
    entries: int
    ttl_seconds: float
    max_entries: int


class GatewayMetricsSnapshot(BaseModel):
    total_inbound_events: int = 0
    total_duplicates_suppressed: int = 0
    total_pairing_store_failures: int = 0
    total_approvals_matched: int = 0
    total_approvals_denied: int = 0
    decision_counts: dict[str, int] = Field(default_factory=dict)
    per_channel_inbound: dict[str, int] = Field(default_factory=dict)
