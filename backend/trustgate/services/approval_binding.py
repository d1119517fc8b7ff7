"""System-run approval bindings and the matcher that checks retries against them.

An approval id alone is not proof that a retried command is the one a human
approved. The binding captures argv, cwd, agent, session and a hash of the
environment overrides so a reused approval id cannot be replayed with a
different command, working directory, environment or target session.
"""

from __future__ import annotations

import hashlib
import json
import re
from typing import Any, Optional, Sequence

from trustgate.schemas import (
    ApprovalMatchResult,
    ApprovalMismatchError,
    EnvBinding,
    ExecApprovalRecord,
    SystemRunApprovalBinding,
    SystemRunInvocation,
)

SYSTEM_RUN_BINDING_VERSION = 1
SYSTEM_RUN_HOST = "node"

APPROVAL_REQUEST_MISMATCH = "APPROVAL_REQUEST_MISMATCH"
APPROVAL_ENV_BINDING_MISSING = "APPROVAL_ENV_BINDING_MISSING"
APPROVAL_ENV_MISMATCH = "APPROVAL_ENV_MISMATCH"

_APPROVAL_REQUEST_MISMATCH_MESSAGE = "approval id does not match request"

_PORTABLE_ENV_VAR_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
# Windows-style keys such as ProgramFiles(x86).
_COMPAT_ENV_VAR_KEY_RE = re.compile(r"^[A-Za-z_(][A-Za-z0-9_()]*$")


def normalize_optional_string(value: Any) -> Optional[str]:
    """Trim strings; anything blank or non-string is absent (None)."""
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def normalize_argv(value: Any) -> list[str]:
    if not isinstance(value, (list, tuple)):
        return []
    return [str(entry) for entry in value]


def normalize_env_var_key(key: Any, *, portable: bool = True) -> Optional[str]:
    if not isinstance(key, str):
        return None
    trimmed = key.strip()
    if not trimmed:
        return None
    pattern = _PORTABLE_ENV_VAR_KEY_RE if portable else _COMPAT_ENV_VAR_KEY_RE
    return trimmed if pattern.match(trimmed) else None


def _normalize_env_entries(env: Any) -> list[tuple[str, str]]:
    if not isinstance(env, dict):
        return []
    entries: list[tuple[str, str]] = []
    for raw_key, raw_value in env.items():
        if not isinstance(raw_value, str):
            continue
        key = normalize_env_var_key(raw_key, portable=True)
        if not key:
            continue
        entries.append((key, raw_value))
    entries.sort(key=lambda entry: entry[0])
    return entries


def _hash_env_entries(entries: list[tuple[str, str]]) -> Optional[str]:
    if not entries:
        return None
    payload = json.dumps([list(entry) for entry in entries], separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def build_env_binding(env: Any) -> EnvBinding:
    """Hash the env overrides; raw values never leave this function."""
    entries = _normalize_env_entries(env)
    return EnvBinding(
        env_hash=_hash_env_entries(entries),
        env_keys=[key for key, _ in entries],
    )


def build_binding_v1(
    *,
    argv: Any,
    cwd: Any = None,
    agent_id: Any = None,
    session_key: Any = None,
    env: Any = None,
) -> tuple[SystemRunApprovalBinding, list[str]]:
    env_binding = build_env_binding(env)
    binding = SystemRunApprovalBinding(
        version=SYSTEM_RUN_BINDING_VERSION,
        argv=normalize_argv(argv),
        cwd=normalize_optional_string(cwd),
        agent_id=normalize_optional_string(agent_id),
        session_key=normalize_optional_string(session_key),
        env_hash=env_binding.env_hash,
    )
    return binding, list(env_binding.env_keys)


def _argv_matches(expected: Sequence[Any], actual: Sequence[Any]) -> bool:
    expected_argv = normalize_argv(expected)
    actual_argv = normalize_argv(actual)
    if not expected_argv or len(expected_argv) != len(actual_argv):
        return False
    return all(e == a for e, a in zip(expected_argv, actual_argv))


def _ok() -> ApprovalMatchResult:
    return ApprovalMatchResult(ok=True)


def _request_mismatch(details: Optional[dict] = None) -> ApprovalMatchResult:
    return ApprovalMatchResult(
        ok=False,
        code=APPROVAL_REQUEST_MISMATCH,
        message=_APPROVAL_REQUEST_MISMATCH_MESSAGE,
        details=details or {},
    )


def match_env_hash(
    *,
    expected_env_hash: Optional[str],
    actual_env_hash: Optional[str],
    actual_env_keys: Sequence[str],
) -> ApprovalMatchResult:
    if not expected_env_hash and not actual_env_hash:
        return _ok()
    if not expected_env_hash and actual_env_hash:
        return ApprovalMatchResult(
            ok=False,
            code=APPROVAL_ENV_BINDING_MISSING,
            message="approval id missing env binding for requested env overrides",
            details={"envKeys": list(actual_env_keys)},
        )
    if expected_env_hash != actual_env_hash:
        return ApprovalMatchResult(
            ok=False,
            code=APPROVAL_ENV_MISMATCH,
            message="approval id env binding mismatch",
            details={
                "envKeys": list(actual_env_keys),
                "expectedEnvHash": expected_env_hash,
                "actualEnvHash": actual_env_hash,
            },
        )
    return _ok()


def match_binding_v1(
    *,
    expected: SystemRunApprovalBinding,
    actual: SystemRunApprovalBinding,
    actual_env_keys: Sequence[str],
) -> ApprovalMatchResult:
    if expected.version != SYSTEM_RUN_BINDING_VERSION or actual.version != SYSTEM_RUN_BINDING_VERSION:
        return _request_mismatch(
            {"expectedVersion": expected.version, "actualVersion": actual.version}
        )
    if not _argv_matches(expected.argv, actual.argv):
        return _request_mismatch()
    if expected.cwd != actual.cwd:
        return _request_mismatch()
    if expected.agent_id != actual.agent_id:
        return _request_mismatch()
    if expected.session_key != actual.session_key:
        return _request_mismatch()
    return match_env_hash(
        expected_env_hash=expected.env_hash,
        actual_env_hash=actual.env_hash,
        actual_env_keys=actual_env_keys,
    )


def match_legacy_binding(
    *,
    record: ExecApprovalRecord,
    cmd_text: str,
    argv: Sequence[Any],
    cwd: Optional[str] = None,
    agent_id: Optional[str] = None,
    session_key: Optional[str] = None,
    env: Any = None,
) -> ApprovalMatchResult:
    """Match approval records issued before versioned bindings existed."""
    if record.command_argv is not None:
        if not _argv_matches(record.command_argv, list(argv)):
            return _request_mismatch()
    elif not cmd_text or record.command != cmd_text:
        return _request_mismatch()

    if normalize_optional_string(record.cwd) != normalize_optional_string(cwd):
        return _request_mismatch()
    if normalize_optional_string(record.agent_id) != normalize_optional_string(agent_id):
        return _request_mismatch()
    if normalize_optional_string(record.session_key) != normalize_optional_string(session_key):
        return _request_mismatch()

    actual_env = build_env_binding(env)
    return match_env_hash(
        expected_env_hash=normalize_optional_string(record.env_hash),
        actual_env_hash=actual_env.env_hash,
        actual_env_keys=actual_env.env_keys,
    )


def evaluate_system_run_approval_match(
    record: ExecApprovalRecord,
    invocation: SystemRunInvocation,
    *,
    expected_host: str = SYSTEM_RUN_HOST,
) -> ApprovalMatchResult:
    """Decide whether a live system-run retry is exactly what was approved.

    Approvals are host scoped, so a foreign host fails before anything else is
    compared. When the record carries a versioned binding it is authoritative:
    the legacy ``command``/``command_argv`` fields are not consulted at all.
    """
    if record.host != expected_host:
        return _request_mismatch({"expectedHost": expected_host, "actualHost": record.host})

    if record.system_run_binding_v1 is not None:
        actual, actual_env_keys = build_binding_v1(
            argv=invocation.argv,
            cwd=invocation.cwd,
            agent_id=invocation.agent_id,
            session_key=invocation.session_key,
            env=invocation.env,
        )
        return match_binding_v1(
            expected=record.system_run_binding_v1,
            actual=actual,
            actual_env_keys=actual_env_keys,
        )

    return match_legacy_binding(
        record=record,
        cmd_text=invocation.cmd_text,
        argv=invocation.argv,
        cwd=invocation.cwd,
        agent_id=invocation.agent_id,
        session_key=invocation.session_key,
        env=invocation.env,
    )


def to_approval_mismatch_error(*, run_id: str, match: ApprovalMatchResult) -> ApprovalMismatchError:
    if match.ok:
        raise ValueError("Cannot build a mismatch error from a successful match")
    details: dict = {"code": match.code, "runId": run_id}
    details.update(match.details)
    return ApprovalMismatchError(message=match.message, details=details)
