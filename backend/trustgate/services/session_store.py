"""JSON-file session store shared by every message-handling path."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from pathlib import Path
from threading import Lock
from typing import Callable, Optional, TypeVar

from pydantic import ValidationError

from trustgate.schemas import (
    SessionEntry,
    SessionMaintenanceConfig,
    SessionMaintenanceReport,
    SessionSnapshot,
)
from trustgate.services.session_maintenance import (
    apply_session_maintenance,
    now_ms,
    rotate_session_file,
    should_rotate,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
SessionMap = dict[str, SessionEntry]


def build_session_key(
    *,
    agent_id: str,
    channel: str,
    conversation_id: str,
    is_group: bool = False,
    account_id: Optional[str] = None,
) -> str:
    """One key per (agent, channel, conversation)."""
    peer_kind = "group" if is_group else "dm"
    parts = ["agent", agent_id or "main", channel]
    if account_id and account_id != "default":
        parts.append(account_id)
    parts.extend([peer_kind, conversation_id])
    return ":".join(p.strip().lower() for p in parts)


def serialize_session_map(store: SessionMap) -> str:
    payload = {
        key: entry.model_dump(mode="json", by_alias=True, exclude_none=True)
        for key, entry in store.items()
    }
    return json.dumps(payload, indent=2, ensure_ascii=False)


def _copy_map(store: SessionMap) -> SessionMap:
    return {key: entry.model_copy(deep=True) for key, entry in store.items()}


def _atomic_write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


class SessionStore:
    """Loads and saves ``{sessionKey: SessionEntry}`` maps with maintenance on write.

    Writes to the same path are serialized with an in-process lock and land via
    temp-file + rename, so a crash never leaves a half-written store. Reads go
    through a small cache validated by file mtime; ``cache_ttl_seconds=0``
    disables it.
    """

    def __init__(
        self,
        *,
        maintenance: Optional[SessionMaintenanceConfig] = None,
        cache_ttl_seconds: float = 45.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._maintenance = maintenance or SessionMaintenanceConfig()
        self._cache_ttl = max(cache_ttl_seconds, 0.0)
        self._clock = clock
        self._locks: dict[str, Lock] = {}
        self._locks_guard = Lock()
        self._cache: dict[str, tuple[float, float, SessionMap]] = {}
        self._cache_lock = Lock()

    @property
    def maintenance(self) -> SessionMaintenanceConfig:
        return self._maintenance

    @maintenance.setter
    def maintenance(self, config: SessionMaintenanceConfig) -> None:
        self._maintenance = config

    def _path_lock(self, key: str) -> Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = Lock()
                self._locks[key] = lock
            return lock

    @staticmethod
    def _key(path: str | Path) -> str:
        return str(Path(path).resolve())

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()

    def _cached(self, key: str, mtime: float) -> Optional[SessionMap]:
        if self._cache_ttl <= 0:
            return None
        with self._cache_lock:
            hit = self._cache.get(key)
            if not hit:
                return None
            loaded_at, cached_mtime, store = hit
            if cached_mtime != mtime or self._clock() - loaded_at > self._cache_ttl:
                self._cache.pop(key, None)
                return None
            return _copy_map(store)

    def _remember(self, key: str, mtime: float, store: SessionMap) -> None:
        if self._cache_ttl <= 0:
            return
        with self._cache_lock:
            self._cache[key] = (self._clock(), mtime, _copy_map(store))

    def load(self, path: str | Path, *, skip_cache: bool = False) -> SessionMap:
        """Read the store; a missing or unreadable file loads as empty."""
        store_path = Path(path)
        key = self._key(store_path)
        try:
            mtime = store_path.stat().st_mtime
        except FileNotFoundError:
            return {}

        if not skip_cache:
            cached = self._cached(key, mtime)
            if cached is not None:
                return cached

        try:
            raw = json.loads(store_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning(f"Could not read session store {store_path}: {exc}")
            return {}
        if not isinstance(raw, dict):
            logger.warning(f"Session store {store_path} is not a JSON object; ignoring it")
            return {}

        store: SessionMap = {}
        for session_key, payload in raw.items():
            if not isinstance(payload, dict):
                continue
            try:
                store[session_key] = SessionEntry.model_validate(payload)
            except ValidationError as exc:
                logger.warning(f"Skipping malformed session entry {session_key!r}: {exc}")
        self._remember(key, mtime, store)
        return store

    def _save_locked(self, store_path: Path, store: SessionMap) -> SessionMaintenanceReport:
        config = self._maintenance
        current = now_ms()
        report = apply_session_maintenance(store, config, current)
        content = serialize_session_map(store)
        incoming = len(content.encode("utf-8"))

        if config.mode == "enforce":
            report.backup_path = rotate_session_file(
                store_path, config.rotate_bytes, incoming_bytes=incoming, current_ms=current
            )
        elif should_rotate(store_path, config.rotate_bytes, incoming):
            report.would_rotate = True
            logger.warning(
                f"Session maintenance (warn): {store_path} exceeds {config.rotate_bytes} bytes; not rotating"
            )

        _atomic_write(store_path, content)
        self._remember(self._key(store_path), store_path.stat().st_mtime, store)
        return report

    def save(self, path: str | Path, store: SessionMap) -> SessionMaintenanceReport:
        """Apply maintenance to ``store`` (in place) and persist it. Write errors propagate."""
        store_path = Path(path)
        with self._path_lock(self._key(store_path)):
            return self._save_locked(store_path, store)

    def update(self, path: str | Path, mutator: Callable[[SessionMap], T]) -> T:
        """Read-modify-write under the path lock so concurrent updates don't clobber."""
        store_path = Path(path)
        with self._path_lock(self._key(store_path)):
            store = self.load(store_path, skip_cache=True)
            result = mutator(store)
            self._save_locked(store_path, store)
            return result

    def record_turn(
        self,
        path: str | Path,
        session_key: str,
        *,
        channel: Optional[str] = None,
        last_to: Optional[str] = None,
    ) -> SessionEntry:
        def _touch(store: SessionMap) -> SessionEntry:
            entry = store.get(session_key) or SessionEntry()
            entry.updated_at = now_ms()
            if channel:
                entry.channel = channel
            if last_to:
                entry.last_to = last_to
            store[session_key] = entry
            return entry.model_copy(deep=True)

        return self.update(path, _touch)

    def run_maintenance(self, path: str | Path) -> SessionMaintenanceReport:
        store_path = Path(path)
        with self._path_lock(self._key(store_path)):
            store = self.load(store_path, skip_cache=True)
            return self._save_locked(store_path, store)

    def list_snapshots(self, path: str | Path) -> list[SessionSnapshot]:
        store = self.load(path)
        return [
            SessionSnapshot(session_key=key, session_id=entry.session_id, updated_at=entry.updated_at)
            for key, entry in sorted(store.items(), key=lambda item: item[1].updated_at or 0, reverse=True)
        ]
