"""Counters and trace ids for the gateway trust boundary."""

from __future__ import annotations

from threading import Lock
from uuid import uuid4

from trustgate.schemas import GatewayMetricsSnapshot


class GatewayObservabilityService:
    """Tracks inbound decisions, dedup hits and approval outcomes."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._metrics = GatewayMetricsSnapshot()

    def new_trace_id(self) -> str:
        return f"trace_{uuid4().hex[:12]}"

    def record_inbound(self, *, channel: str) -> None:
        with self._lock:
            self._metrics.total_inbound_events += 1
            self._metrics.per_channel_inbound[channel] = self._metrics.per_channel_inbound.get(channel, 0) + 1

    def record_duplicate(self) -> None:
        with self._lock:
            self._metrics.total_duplicates_suppressed += 1

    def record_decision(self, decision: str) -> None:
        with self._lock:
            self._metrics.decision_counts[decision] = self._metrics.decision_counts.get(decision, 0) + 1

    def record_pairing_store_failure(self) -> None:
        with self._lock:
            self._metrics.total_pairing_store_failures += 1

    def record_approval(self, *, ok: bool) -> None:
        with self._lock:
            if ok:
                self._metrics.total_approvals_matched += 1
            else:
                self._metrics.total_approvals_denied += 1

    def snapshot(self) -> GatewayMetricsSnapshot:
        with self._lock:
            return self._metrics.model_copy(deep=True)
