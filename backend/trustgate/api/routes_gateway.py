"""API routes for the gateway trust boundary."""

from __future__ import annotations

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Request

from trustgate.config import get_settings
from trustgate.schemas import (
    ApprovalAuditEntry,
    ApprovalAuditSnapshot,
    ApprovalMatchResult,
    ChannelAccessSnapshot,
    DedupCacheSnapshot,
    GatewayMetricsSnapshot,
    InboundDecisionResponse,
    InboundMessage,
    PairingApprovalRequest,
    PairingApprovalResponse,
    PendingPairingCode,
    SessionMaintenanceReport,
    SessionSnapshot,
    SystemRunEvaluateRequest,
)
from trustgate.services.access_policy import (
    DEFAULT_DM_POLICY,
    DEFAULT_GROUP_POLICY,
    ChannelAccessResolver,
)
from trustgate.services.approval_audit import ApprovalAuditService
from trustgate.services.approval_binding import evaluate_system_run_approval_match
from trustgate.services.dedup import DeliveryDedupCache
from trustgate.services.gateway_observability import GatewayObservabilityService
from trustgate.services.pairing_store import PairingStore
from trustgate.services.session_maintenance import resolve_maintenance_config
from trustgate.services.session_store import SessionStore, build_session_key

logger = logging.getLogger(__name__)

_settings = get_settings()
_pairing_store = PairingStore(
    db_path=(
        _settings.pairing_store_path
        if _settings.pairing_store_backend.strip().lower() == "sqlite"
        else None
    ),
    pending_ttl_seconds=_settings.pairing_pending_ttl_seconds,
    max_pending=_settings.pairing_max_pending,
)
_observability = GatewayObservabilityService()
_access_resolver = ChannelAccessResolver(
    defaults=_settings.default_channel_access(),
    channels=_settings.channel_access,
    pairing_store=_pairing_store,
    on_store_failure=_observability.record_pairing_store_failure,
)
_dedup = DeliveryDedupCache(
    ttl_seconds=_settings.dedup_ttl_seconds,
    max_entries=_settings.dedup_max_entries,
    cleanup_interval_seconds=_settings.dedup_cleanup_interval_seconds,
)
_session_store_path = _settings.session_store_path
_session_store = SessionStore(
    maintenance=resolve_maintenance_config(_settings.session_maintenance_raw()),
    cache_ttl_seconds=_settings.session_store_cache_ttl_seconds,
)
_approval_audit = ApprovalAuditService(max_entries=_settings.exec_audit_max_entries)

router = APIRouter(prefix="/gateway", tags=["gateway"])


def _require_admin(request: Request) -> None:
    expected = _settings.admin_api_token.strip()
    if not expected:
        return
    token = request.headers.get("x-admin-token", "").strip()
    if not hmac.compare_digest(token, expected):
        raise HTTPException(status_code=401, detail="Invalid admin token")


def _pairing_instructions(code: str) -> str:
    return (
        "This bot only talks to approved senders. "
        f"Ask the owner to approve pairing code {code}."
    )


@router.post("/channels/{channel}/inbound", response_model=InboundDecisionResponse)
def ingest_inbound(channel: str, message: InboundMessage) -> InboundDecisionResponse:
    if channel.strip().lower() != message.channel.strip().lower():
        raise HTTPException(status_code=400, detail="Path channel and payload channel mismatch")

    trace_id = _observability.new_trace_id()
    _observability.record_inbound(channel=message.channel)

    partition = f"{message.channel.strip().lower()}:{message.account_id}"
    if not _dedup.try_record(partition, message.message_id):
        _observability.record_duplicate()
        return InboundDecisionResponse(
            channel=message.channel,
            status="duplicate",
            reason=f"message {message.message_id} already accepted",
            trace_id=trace_id,
        )

    access = _access_resolver.resolve(
        channel=message.channel,
        account_id=message.account_id,
        is_group=message.is_group,
        sender_id=message.sender_id,
    )
    _observability.record_decision(access.decision)

    if access.decision == "pairing":
        pending = _pairing_store.issue_pairing_code(
            message.channel, message.sender_id, message.account_id
        )
        if pending is None:
            logger.info(
                f"Pairing queue full on {message.channel}; ignoring sender {message.sender_id} trace={trace_id}"
            )
            return InboundDecisionResponse(
                channel=message.channel,
                status="block",
                reason="dmPolicy=pairing (pairing queue full)",
                trace_id=trace_id,
            )
        return InboundDecisionResponse(
            channel=message.channel,
            status="pairing",
            reason=access.reason,
            pairing_code=pending.code,
            outbound_text=_pairing_instructions(pending.code),
            trace_id=trace_id,
        )

    if access.decision == "block":
        logger.info(
            f"Blocked {message.channel} sender {message.sender_id}: {access.reason} trace={trace_id}"
        )
        return InboundDecisionResponse(
            channel=message.channel,
            status="block",
            reason=access.reason,
            trace_id=trace_id,
        )

    session_key = build_session_key(
        agent_id=message.agent_id,
        channel=message.channel,
        conversation_id=message.conversation_id,
        is_group=message.is_group,
        account_id=message.account_id,
    )
    try:
        _session_store.record_turn(
            _session_store_path,
            session_key,
            channel=message.channel,
            last_to=message.conversation_id,
        )
    except Exception:
        # Unrecorded turns must stay eligible for redelivery.
        _dedup.forget(partition, message.message_id)
        raise
    return InboundDecisionResponse(
        channel=message.channel,
        status="allow",
        reason=access.reason,
        session_key=session_key,
        trace_id=trace_id,
    )


@router.get("/channels/{channel}/access", response_model=ChannelAccessSnapshot)
def get_channel_access(channel: str, account_id: Optional[str] = None) -> ChannelAccessSnapshot:
    config = _access_resolver.config_for(channel, account_id)
    lists = _access_resolver.effective_lists(channel, account_id)
    return ChannelAccessSnapshot(
        channel=channel,
        account_id=account_id,
        dm_policy=config.dm_policy or DEFAULT_DM_POLICY,
        group_policy=config.group_policy or DEFAULT_GROUP_POLICY,
        effective_allow_from=lists.effective_allow_from,
        effective_group_allow_from=lists.effective_group_allow_from,
        dm_allow_state=_access_resolver.dm_allow_state(channel, account_id),
    )


@router.get("/channels/{channel}/pairing/pending", response_model=list[PendingPairingCode])
def list_pending_pairing(channel: str, raw_request: Request, account_id: Optional[str] = None) -> list[PendingPairingCode]:
    _require_admin(raw_request)
    return _pairing_store.list_pending_codes(channel, account_id)


@router.post("/channels/{channel}/pairing/approve", response_model=PairingApprovalResponse)
def approve_pairing(
    channel: str,
    request: PairingApprovalRequest,
    raw_request: Request,
) -> PairingApprovalResponse:
    _require_admin(raw_request)
    user_id = _pairing_store.approve_pairing_code(channel, request.code, request.account_id)
    if user_id:
        logger.info(f"Pairing approved on {channel} for {user_id} by {request.actor}")
    return PairingApprovalResponse(
        channel=channel,
        code=request.code.strip().upper(),
        approved=user_id is not None,
        user_id=user_id,
    )


@router.post("/approvals/system-run/evaluate", response_model=ApprovalMatchResult)
def evaluate_system_run(request: SystemRunEvaluateRequest) -> ApprovalMatchResult:
    match = evaluate_system_run_approval_match(
        request.approval,
        request.invocation,
        expected_host=_settings.exec_approval_host,
    )
    _observability.record_approval(ok=match.ok)
    if not match.ok:
        _approval_audit.record_denied(
            approval_id=request.approval_id,
            run_id=request.run_id,
            match=match,
            trace_id=_observability.new_trace_id(),
        )
    return match


@router.get("/approvals/audit", response_model=list[ApprovalAuditEntry])
def list_approval_audit(raw_request: Request) -> list[ApprovalAuditEntry]:
    _require_admin(raw_request)
    return _approval_audit.list_entries()


@router.get("/approvals/audit/stats", response_model=ApprovalAuditSnapshot)
def approval_audit_stats() -> ApprovalAuditSnapshot:
    return ApprovalAuditSnapshot(
        entries=len(_approval_audit.list_entries()),
        max_entries=_approval_audit.max_entries,
    )


@router.get("/sessions", response_model=list[SessionSnapshot])
def list_sessions() -> list[SessionSnapshot]:
    return _session_store.list_snapshots(_session_store_path)


@router.post("/sessions/maintenance", response_model=SessionMaintenanceReport)
def run_session_maintenance(raw_request: Request) -> SessionMaintenanceReport:
    _require_admin(raw_request)
    return _session_store.run_maintenance(_session_store_path)


@router.get("/dedup", response_model=DedupCacheSnapshot)
def dedup_stats() -> DedupCacheSnapshot:
    return _dedup.snapshot()


@router.get("/metrics", response_model=GatewayMetricsSnapshot)
def gateway_metrics() -> GatewayMetricsSnapshot:
    return _observability.snapshot()
