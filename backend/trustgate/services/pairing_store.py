"""Pairing store: senders approved out of band, plus pending pairing codes."""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Optional
from uuid import uuid4

from trustgate.schemas import PendingPairingCode, utc_now_iso

logger = logging.getLogger(__name__)

DEFAULT_ACCOUNT_ID = "default"
DEFAULT_PENDING_TTL_SECONDS = 60 * 60
DEFAULT_MAX_PENDING = 3


def _channel_key(channel: str) -> str:
    return channel.strip().lower()


def _account_key(account_id: Optional[str]) -> str:
    return (account_id or "").strip() or DEFAULT_ACCOUNT_ID


def _new_code() -> str:
    return uuid4().hex[:8].upper()


def _issued_at(created_at: str) -> float:
    try:
        return datetime.fromisoformat(created_at).timestamp()
    except ValueError:
        # Unparseable timestamps count as expired.
        return 0.0


class PairingStore:
    """Per-channel pairing allow-list (in-memory by default, SQLite optional).

    Only the direct-message allow list reads from here; group access never
    consults the pairing store. Pending codes expire after
    ``pending_ttl_seconds`` and at most ``max_pending`` are outstanding per
    (channel, account); once full, new senders get no code until one expires
    or is approved.
    """

    def __init__(
        self,
        db_path: str | None = None,
        *,
        pending_ttl_seconds: float = DEFAULT_PENDING_TTL_SECONDS,
        max_pending: int = DEFAULT_MAX_PENDING,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._lock = Lock()
        self._pending_ttl = max(pending_ttl_seconds, 0.0)
        self._max_pending = max(max_pending, 1)
        self._clock = clock
        self._paired: dict[tuple[str, str], list[str]] = {}
        self._pending: dict[tuple[str, str, str], PendingPairingCode] = {}
        self._conn: sqlite3.Connection | None = None

        if db_path:
            db_file = Path(db_path)
            db_file.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(db_file), check_same_thread=False)
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS pairing_allow_from (
                    channel TEXT NOT NULL,
                    account_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    added_at TEXT NOT NULL,
                    PRIMARY KEY (channel, account_id, user_id)
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS pairing_pending_codes (
                    channel TEXT NOT NULL,
                    account_id TEXT NOT NULL,
                    code TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (channel, account_id, code)
                )
                """
            )
            self._conn.commit()

    @property
    def max_pending(self) -> int:
        return self._max_pending

    def _now_iso(self) -> str:
        return datetime.fromtimestamp(self._clock(), timezone.utc).isoformat()

    def _is_expired(self, created_at: str, now: float) -> bool:
        return now - _issued_at(created_at) > self._pending_ttl

    def read_allow_from(self, channel: str, account_id: Optional[str] = None) -> list[str]:
        channel_key = _channel_key(channel)
        account_key = _account_key(account_id)
        with self._lock:
            if self._conn:
                rows = self._conn.execute(
                    """
                    SELECT user_id FROM pairing_allow_from
                    WHERE channel = ? AND account_id = ?
                    ORDER BY added_at ASC, rowid ASC
                    """,
                    (channel_key, account_key),
                ).fetchall()
                return [row[0] for row in rows]
            return list(self._paired.get((channel_key, account_key), []))

    def add_allow_from(self, channel: str, user_id: str, account_id: Optional[str] = None) -> bool:
        """Record a paired sender. Returns False when it was already present."""
        channel_key = _channel_key(channel)
        account_key = _account_key(account_id)
        uid = str(user_id).strip()
        if not uid:
            raise ValueError("user_id must not be blank")
        with self._lock:
            return self._add_locked(channel_key, account_key, uid)

    def _add_locked(self, channel_key: str, account_key: str, uid: str) -> bool:
        if self._conn:
            cursor = self._conn.execute(
                """
                INSERT OR IGNORE INTO pairing_allow_from (channel, account_id, user_id, added_at)
                VALUES (?, ?, ?, ?)
                """,
                (channel_key, account_key, uid, utc_now_iso()),
            )
            self._conn.commit()
            return cursor.rowcount > 0
        users = self._paired.setdefault((channel_key, account_key), [])
        if uid in users:
            return False
        users.append(uid)
        return True

    def _pending_locked(self, channel_key: str, account_key: str) -> list[PendingPairingCode]:
        """Drop expired codes for the scope and return the live ones, oldest first."""
        now = self._clock()
        if self._conn:
            rows = self._conn.execute(
                """
                SELECT code, user_id, created_at FROM pairing_pending_codes
                WHERE channel = ? AND account_id = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (channel_key, account_key),
            ).fetchall()
            live: list[PendingPairingCode] = []
            expired: list[str] = []
            for code, user_id, created_at in rows:
                if self._is_expired(created_at, now):
                    expired.append(code)
                    continue
                live.append(
                    PendingPairingCode(
                        channel=channel_key,
                        account_id=account_key,
                        code=code,
                        user_id=user_id,
                        created_at=created_at,
                    )
                )
            if expired:
                self._conn.executemany(
                    "DELETE FROM pairing_pending_codes WHERE channel = ? AND account_id = ? AND code = ?",
                    [(channel_key, account_key, code) for code in expired],
                )
                self._conn.commit()
            return live

        live = []
        for key, pending in list(self._pending.items()):
            if pending.channel != channel_key or pending.account_id != account_key:
                continue
            if self._is_expired(pending.created_at, now):
                del self._pending[key]
                continue
            live.append(pending)
        live.sort(key=lambda p: _issued_at(p.created_at))
        return live

    def issue_pairing_code(
        self,
        channel: str,
        user_id: str,
        account_id: Optional[str] = None,
    ) -> PendingPairingCode | None:
        """Return the sender's live pending code, issuing one if none exists.

        Returns None when the scope already holds ``max_pending`` live codes.
        """
        channel_key = _channel_key(channel)
        account_key = _account_key(account_id)
        uid = str(user_id)
        with self._lock:
            live = self._pending_locked(channel_key, account_key)
            for pending in live:
                if pending.user_id == uid:
                    return pending
            if len(live) >= self._max_pending:
                logger.warning(
                    f"Pairing queue full for {channel_key}/{account_key}; no code issued for {uid}"
                )
                return None

            pending = PendingPairingCode(
                channel=channel_key,
                account_id=account_key,
                code=_new_code(),
                user_id=uid,
                created_at=self._now_iso(),
            )
            if self._conn:
                self._conn.execute(
                    """
                    INSERT INTO pairing_pending_codes (channel, account_id, code, user_id, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (channel_key, account_key, pending.code, uid, pending.created_at),
                )
                self._conn.commit()
            else:
                self._pending[(channel_key, account_key, pending.code)] = pending
            return pending

    def approve_pairing_code(
        self,
        channel: str,
        code: str,
        account_id: Optional[str] = None,
    ) -> str | None:
        """Consume a live pending code and pair its sender. Unknown or expired codes return None."""
        channel_key = _channel_key(channel)
        account_key = _account_key(account_id)
        code_key = code.strip().upper()
        with self._lock:
            live = {p.code: p for p in self._pending_locked(channel_key, account_key)}
            pending = live.get(code_key)
            if pending is None:
                return None
            if self._conn:
                self._conn.execute(
                    "DELETE FROM pairing_pending_codes WHERE channel = ? AND account_id = ? AND code = ?",
                    (channel_key, account_key, code_key),
                )
            else:
                self._pending.pop((channel_key, account_key, code_key), None)
            self._add_locked(channel_key, account_key, pending.user_id)
            return pending.user_id

    def list_pending_codes(self, channel: str, account_id: Optional[str] = None) -> list[PendingPairingCode]:
        with self._lock:
            return self._pending_locked(_channel_key(channel), _account_key(account_id))
