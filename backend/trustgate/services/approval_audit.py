"""Audit trail for system-run retries that failed approval matching."""

from __future__ import annotations

import logging
from threading import Lock

from trustgate.schemas import ApprovalAuditEntry, ApprovalMatchResult
from trustgate.services.approval_binding import to_approval_mismatch_error

logger = logging.getLogger(__name__)


class ApprovalAuditService:
    """Bounded in-memory log of denied command executions.

    Entries carry hashes and env key names only; raw env values never reach
    the audit trail.
    """

    def __init__(self, *, max_entries: int = 5000) -> None:
        self._lock = Lock()
        self._max_entries = max(max_entries, 1)
        self._entries: list[ApprovalAuditEntry] = []

    @property
    def max_entries(self) -> int:
        return self._max_entries

    def record_denied(
        self,
        *,
        approval_id: str,
        run_id: str,
        match: ApprovalMatchResult,
        trace_id: str,
    ) -> ApprovalAuditEntry:
        error = to_approval_mismatch_error(run_id=run_id, match=match)
        entry = ApprovalAuditEntry(
            approval_id=approval_id,
            run_id=run_id,
            code=str(match.code),
            message=error.message,
            trace_id=trace_id,
            details=error.details,
        )
        logger.warning(
            f"exec.denied approval={approval_id} run={run_id} code={match.code} trace={trace_id}"
        )
        with self._lock:
            self._entries.append(entry)
            overflow = len(self._entries) - self._max_entries
            if overflow > 0:
                del self._entries[:overflow]
        return entry

    def list_entries(self) -> list[ApprovalAuditEntry]:
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
