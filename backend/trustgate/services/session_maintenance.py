"""Retention, capping and rotation rules for the persisted session map."""

from __future__ import annotations

import logging
import re
import shutil
import time
from pathlib import Path
from typing import Any, Mapping, Optional

from trustgate.schemas import SessionEntry, SessionMaintenanceConfig, SessionMaintenanceReport

logger = logging.getLogger(__name__)

DEFAULT_MAINTENANCE_MODE = "warn"
DEFAULT_MAX_ENTRIES = 500
DEFAULT_ROTATE_BYTES = 10 * 1024 * 1024
BACKUP_SUFFIX = ".bak."

_DURATION_UNITS_MS = {
    "ms": 1,
    "s": 1000,
    "m": 60 * 1000,
    "h": 60 * 60 * 1000,
    "d": 24 * 60 * 60 * 1000,
    "w": 7 * 24 * 60 * 60 * 1000,
}
_BYTE_UNITS = {
    "b": 1,
    "k": 1024,
    "kb": 1024,
    "m": 1024**2,
    "mb": 1024**2,
    "g": 1024**3,
    "gb": 1024**3,
    "t": 1024**4,
    "tb": 1024**4,
}
_QUANTITY_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*([a-z]*)$")


def _parse_quantity(value: Any, units: Mapping[str, int], default_unit: str, label: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"Invalid {label}: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"Invalid {label}: {value!r}")
        return int(value * units[default_unit])
    if not isinstance(value, str):
        raise ValueError(f"Invalid {label}: {value!r}")
    match = _QUANTITY_RE.match(value.strip().lower())
    if not match:
        raise ValueError(f"Invalid {label}: {value!r}")
    amount, unit = match.groups()
    multiplier = units.get(unit or default_unit)
    if multiplier is None:
        raise ValueError(f"Unknown {label} unit: {unit!r}")
    return int(float(amount) * multiplier)


def parse_duration_ms(value: Any, default_unit: str = "d") -> int:
    """Parse ``"7d"``, ``"12h"``, ``"90m"`` or a bare number in ``default_unit``."""
    return _parse_quantity(value, _DURATION_UNITS_MS, default_unit, "duration")


def parse_byte_size(value: Any, default_unit: str = "b") -> int:
    """Parse ``"5mb"``, ``"100kb"`` or a bare number of bytes (binary multiples)."""
    return _parse_quantity(value, _BYTE_UNITS, default_unit, "byte size")


def resolve_maintenance_config(raw: Any) -> SessionMaintenanceConfig:
    """Build the maintenance config from a ``session.maintenance`` mapping.

    Each malformed field falls back to its default and is logged; this never
    raises, so a bad config can't stop session writes.
    """
    if not isinstance(raw, Mapping):
        return SessionMaintenanceConfig()

    mode = raw.get("mode")
    if mode not in ("enforce", "warn"):
        if mode is not None:
            logger.warning(f"Ignoring invalid session.maintenance.mode: {mode!r}")
        mode = DEFAULT_MAINTENANCE_MODE

    prune_after_ms: Optional[int] = None
    if raw.get("pruneAfter") is not None:
        try:
            prune_after_ms = parse_duration_ms(raw["pruneAfter"], default_unit="d")
        except ValueError as exc:
            logger.warning(f"Ignoring session.maintenance.pruneAfter: {exc}")
    elif raw.get("pruneDays") is not None:
        # Deprecated alias, whole days only.
        try:
            prune_after_ms = parse_duration_ms(raw["pruneDays"], default_unit="d")
        except ValueError as exc:
            logger.warning(f"Ignoring session.maintenance.pruneDays: {exc}")
    if prune_after_ms is not None and prune_after_ms <= 0:
        prune_after_ms = None

    max_entries = DEFAULT_MAX_ENTRIES
    raw_max = raw.get("maxEntries")
    if raw_max is not None:
        try:
            if isinstance(raw_max, bool):
                raise ValueError(raw_max)
            candidate = int(raw_max)
            if candidate < 1:
                raise ValueError(raw_max)
            max_entries = candidate
        except (TypeError, ValueError):
            logger.warning(f"Ignoring invalid session.maintenance.maxEntries: {raw_max!r}")

    rotate_bytes = DEFAULT_ROTATE_BYTES
    if raw.get("rotateBytes") is not None:
        try:
            candidate = parse_byte_size(raw["rotateBytes"])
            if candidate <= 0:
                raise ValueError(f"Invalid byte size: {raw['rotateBytes']!r}")
            rotate_bytes = candidate
        except ValueError as exc:
            logger.warning(f"Ignoring session.maintenance.rotateBytes: {exc}")

    return SessionMaintenanceConfig(
        mode=mode,
        prune_after_ms=prune_after_ms,
        max_entries=max_entries,
        rotate_bytes=rotate_bytes,
    )


def now_ms() -> int:
    return int(time.time() * 1000)


def _stale_keys(store: Mapping[str, SessionEntry], max_age_ms: int, current_ms: int) -> list[str]:
    cutoff = current_ms - max_age_ms
    return [
        key
        for key, entry in store.items()
        if entry.updated_at is not None and entry.updated_at < cutoff
    ]


def _overflow_keys(store: Mapping[str, SessionEntry], max_entries: int) -> list[str]:
    overflow = len(store) - max_entries
    if overflow <= 0:
        return []
    # Equal timestamps at the cutoff keep whichever sorted first.
    oldest_first = sorted(store.items(), key=lambda item: item[1].updated_at or 0)
    return [key for key, _ in oldest_first[:overflow]]


def prune_stale_entries(
    store: dict[str, SessionEntry],
    max_age_ms: int,
    current_ms: Optional[int] = None,
) -> int:
    """Remove entries last updated before the retention window. Mutates ``store``."""
    keys = _stale_keys(store, max_age_ms, current_ms if current_ms is not None else now_ms())
    for key in keys:
        del store[key]
    return len(keys)


def cap_entry_count(store: dict[str, SessionEntry], max_entries: int) -> int:
    """Keep only the ``max_entries`` most recently updated entries. Mutates ``store``."""
    keys = _overflow_keys(store, max_entries)
    for key in keys:
        del store[key]
    return len(keys)


def should_rotate(store_path: str | Path, rotate_bytes: int, incoming_bytes: int = 0) -> bool:
    path = Path(store_path)
    if not path.exists():
        return False
    return max(path.stat().st_size, incoming_bytes) > rotate_bytes


def rotate_session_file(
    store_path: str | Path,
    rotate_bytes: int,
    incoming_bytes: int = 0,
    current_ms: Optional[int] = None,
) -> Optional[str]:
    """Copy the current store file to ``<path>.bak.<epoch-ms>`` when it is too big.

    Backups are never pruned here. Copy failures propagate.
    """
    path = Path(store_path)
    if not should_rotate(path, rotate_bytes, incoming_bytes):
        return None
    stamp = current_ms if current_ms is not None else now_ms()
    backup = path.with_name(f"{path.name}{BACKUP_SUFFIX}{stamp}")
    while backup.exists():
        stamp += 1
        backup = path.with_name(f"{path.name}{BACKUP_SUFFIX}{stamp}")
    shutil.copy2(path, backup)
    logger.info(f"Rotated session store {path} to {backup.name}")
    return str(backup)


def apply_session_maintenance(
    store: dict[str, SessionEntry],
    config: SessionMaintenanceConfig,
    current_ms: Optional[int] = None,
) -> SessionMaintenanceReport:
    """Prune then cap ``store`` in ``enforce`` mode; only count and log in ``warn`` mode."""
    current = current_ms if current_ms is not None else now_ms()
    before = len(store)
    report = SessionMaintenanceReport(mode=config.mode, before_count=before, after_count=before)

    if config.mode == "warn":
        stale = (
            set(_stale_keys(store, config.prune_after_ms, current))
            if config.prune_after_ms is not None
            else set()
        )
        remaining = {k: v for k, v in store.items() if k not in stale}
        report.would_prune = len(stale)
        report.would_cap = len(_overflow_keys(remaining, config.max_entries))
        if report.would_prune or report.would_cap:
            logger.warning(
                f"Session maintenance (warn): would prune {report.would_prune} stale and "
                f"cap {report.would_cap} overflow entries of {before}"
            )
        return report

    if config.prune_after_ms is not None:
        report.pruned = prune_stale_entries(store, config.prune_after_ms, current)
    report.capped = cap_entry_count(store, config.max_entries)
    report.after_count = len(store)
    if report.pruned or report.capped:
        logger.info(
            f"Session maintenance: pruned {report.pruned} stale, capped {report.capped}, "
            f"{report.after_count} entries remain"
        )
    return report
