"""Per-partition delivery dedup so redelivered messages are processed once."""

from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable
from threading import Lock

from trustgate.schemas import DedupCacheSnapshot

DEFAULT_TTL_SECONDS = 30 * 60
DEFAULT_MAX_ENTRIES = 1000
DEFAULT_CLEANUP_INTERVAL_SECONDS = 5 * 60


class DeliveryDedupCache:
    """Time-windowed membership test keyed by (partition, message id).

    Each partition (typically a bot account) has its own table, so one busy
    account never evicts another's ids. Expired ids are dropped lazily, at most
    once per cleanup interval per partition, inline with ``try_record``.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        cleanup_interval_seconds: float = DEFAULT_CLEANUP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ttl = max(ttl_seconds, 0.0)
        self._max_entries = max(max_entries, 1)
        self._cleanup_interval = max(cleanup_interval_seconds, 0.0)
        self._clock = clock
        self._partitions: dict[str, OrderedDict[str, float]] = {}
        self._last_cleanup: dict[str, float] = {}
        self._lock = Lock()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    @property
    def max_entries(self) -> int:
        return self._max_entries

    def _cleanup(self, partition: str, seen: OrderedDict[str, float], now: float) -> None:
        last = self._last_cleanup.get(partition)
        if last is not None and now - last <= self._cleanup_interval:
            return
        expired = [message_id for message_id, ts in seen.items() if now - ts > self._ttl]
        for message_id in expired:
            del seen[message_id]
        self._last_cleanup[partition] = now

    def try_record(self, partition: str, message_id: str) -> bool:
        """Return True the first time ``message_id`` is seen for ``partition``."""
        now = self._clock()
        with self._lock:
            seen = self._partitions.get(partition)
            if seen is None:
                seen = OrderedDict()
                self._partitions[partition] = seen
            self._cleanup(partition, seen, now)

            if message_id in seen:
                return False

            if len(seen) >= self._max_entries:
                seen.popitem(last=False)
            seen[message_id] = now
            return True

    def forget(self, partition: str, message_id: str) -> bool:
        """Drop a recorded id so a redelivery is treated as new. Returns False if absent."""
        with self._lock:
            seen = self._partitions.get(partition)
            if seen is None or message_id not in seen:
                return False
            del seen[message_id]
            return True

    def reset(self) -> None:
        with self._lock:
            self._partitions.clear()
            self._last_cleanup.clear()

    def snapshot(self) -> DedupCacheSnapshot:
        with self._lock:
            return DedupCacheSnapshot(
                partitions=len(self._partitions),
                entries=sum(len(seen) for seen in self._partitions.values()),
                ttl_seconds=self._ttl,
                max_entries=self._max_entries,
            )
