"""DM/group access policy shared by every chat surface.

The effective allow lists are derived on every call from configuration plus a
pairing-store snapshot. The same derivation feeds both the access decision and
the diagnostics endpoint, so the two can never disagree.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any, Optional, Protocol

from trustgate.schemas import (
    AccessDecisionResult,
    ChannelAccessConfig,
    DmAllowState,
    EffectiveAllowFromLists,
)

logger = logging.getLogger(__name__)

DEFAULT_DM_POLICY = "pairing"
DEFAULT_GROUP_POLICY = "allowlist"
WILDCARD = "*"

EntryNormalizer = Callable[[str], str]
SenderPredicate = Callable[[list[str]], bool]


class PairingStoreReader(Protocol):
    """Read side of the pairing store: senders approved via pairing."""

    def read_allow_from(self, channel: str, account_id: Optional[str] = None) -> list[str]: ...


def normalize_allow_entries(
    entries: Any,
    normalize_entry: Optional[EntryNormalizer] = None,
) -> list[str]:
    """Stringify, trim, drop blanks and duplicates; first-seen order wins."""
    if not isinstance(entries, (list, tuple)):
        return []
    seen: set[str] = set()
    normalized: list[str] = []
    for raw in entries:
        if raw is None:
            continue
        value = str(raw)
        if normalize_entry is not None and value.strip() != WILDCARD:
            value = normalize_entry(value)
        value = value.strip()
        if not value or value in seen:
            continue
        seen.add(value)
        normalized.append(value)
    return normalized


def merge_dm_allow_from_sources(
    *,
    allow_from: Optional[Iterable[Any]],
    store_allow_from: Optional[Iterable[Any]],
    dm_policy: Optional[str],
) -> list[Any]:
    configured = list(allow_from or [])
    # Pairing-store entries only count while pairing is the DM policy.
    if (dm_policy or DEFAULT_DM_POLICY) != "pairing":
        return configured
    return configured + list(store_allow_from or [])


def resolve_group_allow_from_sources(
    *,
    allow_from: Optional[Iterable[Any]],
    group_allow_from: Optional[Iterable[Any]],
    fallback_to_allow_from: Optional[bool] = None,
) -> list[Any]:
    explicit = list(group_allow_from or [])
    if explicit:
        return explicit
    if fallback_to_allow_from is False:
        return []
    return list(allow_from or [])


def resolve_effective_allow_from_lists(
    *,
    allow_from: Optional[list[Any]] = None,
    group_allow_from: Optional[list[Any]] = None,
    store_allow_from: Optional[list[Any]] = None,
    dm_policy: Optional[str] = None,
    group_allow_from_fallback_to_allow_from: Optional[bool] = None,
    normalize_entry: Optional[EntryNormalizer] = None,
) -> EffectiveAllowFromLists:
    allow = allow_from if isinstance(allow_from, (list, tuple)) else None
    group = group_allow_from if isinstance(group_allow_from, (list, tuple)) else None
    store = store_allow_from if isinstance(store_allow_from, (list, tuple)) else None

    effective_allow_from = normalize_allow_entries(
        merge_dm_allow_from_sources(allow_from=allow, store_allow_from=store, dm_policy=dm_policy),
        normalize_entry,
    )
    # Group access is explicit; the pairing store is DM-only.
    effective_group_allow_from = normalize_allow_entries(
        resolve_group_allow_from_sources(
            allow_from=allow,
            group_allow_from=group,
            fallback_to_allow_from=group_allow_from_fallback_to_allow_from,
        ),
        normalize_entry,
    )
    return EffectiveAllowFromLists(
        effective_allow_from=effective_allow_from,
        effective_group_allow_from=effective_group_allow_from,
    )


def resolve_dm_group_access_decision(
    *,
    is_group: bool,
    dm_policy: Optional[str],
    group_policy: Optional[str],
    effective_allow_from: list[Any],
    effective_group_allow_from: list[Any],
    is_sender_allowed: SenderPredicate,
) -> tuple[str, str]:
    """Return (decision, reason). Denial is a value, never an exception."""
    dm = dm_policy or DEFAULT_DM_POLICY
    group = group_policy or DEFAULT_GROUP_POLICY
    allow_list = normalize_allow_entries(effective_allow_from)
    group_allow_list = normalize_allow_entries(effective_group_allow_from)

    if is_group:
        if group == "disabled":
            return "block", "groupPolicy=disabled"
        if group == "allowlist":
            if not group_allow_list:
                return "block", "groupPolicy=allowlist (empty allowlist)"
            if not is_sender_allowed(group_allow_list):
                return "block", "groupPolicy=allowlist (not allowlisted)"
        return "allow", f"groupPolicy={group}"

    if dm == "disabled":
        return "block", "dmPolicy=disabled"
    if dm == "open":
        return "allow", "dmPolicy=open"
    if is_sender_allowed(allow_list):
        return "allow", f"dmPolicy={dm} (allowlisted)"
    if dm == "pairing":
        return "pairing", "dmPolicy=pairing (not allowlisted)"
    return "block", f"dmPolicy={dm} (not allowlisted)"


def resolve_dm_group_access_with_lists(
    *,
    is_group: bool,
    dm_policy: Optional[str] = None,
    group_policy: Optional[str] = None,
    allow_from: Optional[list[Any]] = None,
    group_allow_from: Optional[list[Any]] = None,
    store_allow_from: Optional[list[Any]] = None,
    group_allow_from_fallback_to_allow_from: Optional[bool] = None,
    is_sender_allowed: SenderPredicate,
    normalize_entry: Optional[EntryNormalizer] = None,
) -> AccessDecisionResult:
    lists = resolve_effective_allow_from_lists(
        allow_from=allow_from,
        group_allow_from=group_allow_from,
        store_allow_from=store_allow_from,
        dm_policy=dm_policy,
        group_allow_from_fallback_to_allow_from=group_allow_from_fallback_to_allow_from,
        normalize_entry=normalize_entry,
    )
    decision, reason = resolve_dm_group_access_decision(
        is_group=is_group,
        dm_policy=dm_policy,
        group_policy=group_policy,
        effective_allow_from=lists.effective_allow_from,
        effective_group_allow_from=lists.effective_group_allow_from,
        is_sender_allowed=is_sender_allowed,
    )
    return AccessDecisionResult(
        decision=decision,  # type: ignore[arg-type]
        reason=reason,
        effective_allow_from=lists.effective_allow_from,
        effective_group_allow_from=lists.effective_group_allow_from,
    )


def read_store_allow_from_safe(
    reader: Optional[PairingStoreReader],
    channel: str,
    account_id: Optional[str] = None,
) -> tuple[list[str], bool]:
    """Read pairing-store entries; a failing store reads as empty.

    Returns (entries, failed). Message handling must not depend on the pairing
    subsystem being available.
    """
    if reader is None:
        return [], False
    try:
        return list(reader.read_allow_from(channel, account_id)), False
    except Exception as exc:
        logger.warning(f"Pairing store read failed for {channel}/{account_id or 'default'}: {exc}")
        return [], True


def resolve_dm_allow_state(
    *,
    channel: str,
    allow_from: Optional[list[Any]] = None,
    reader: Optional[PairingStoreReader] = None,
    account_id: Optional[str] = None,
    normalize_entry: Optional[EntryNormalizer] = None,
) -> DmAllowState:
    config_allow_from = normalize_allow_entries(allow_from)
    has_wildcard = WILDCARD in config_allow_from
    store_allow_from, _ = read_store_allow_from_safe(reader, channel, account_id)
    normalize = normalize_entry or (lambda value: value)

    normalized_cfg = [
        normalize(value).strip() for value in config_allow_from if value != WILDCARD
    ]
    normalized_store = [normalize(str(value)).strip() for value in store_allow_from]
    distinct = {value for value in normalized_cfg + normalized_store if value}
    return DmAllowState(
        config_allow_from=config_allow_from,
        has_wildcard=has_wildcard,
        allow_count=len(distinct),
        is_multi_user_dm=has_wildcard or len(distinct) > 1,
    )


# --- Sender matching ---


def _strip_prefixes(value: str, prefixes: tuple[str, ...]) -> str:
    cleaned = value.strip()
    lowered = cleaned.lower()
    for prefix in prefixes:
        if lowered.startswith(prefix):
            return cleaned[len(prefix):].strip()
    return cleaned


def _normalize_telegram_entry(value: str) -> str:
    return _strip_prefixes(value, ("telegram:", "tg:")).lstrip("@").lower()


def _normalize_slack_entry(value: str) -> str:
    return _strip_prefixes(value, ("slack:", "user:")).upper()


def _normalize_mattermost_entry(value: str) -> str:
    return _strip_prefixes(value, ("mattermost:", "user:")).lstrip("@").lower()


SENDER_ID_NORMALIZERS: dict[str, EntryNormalizer] = {
    "telegram": _normalize_telegram_entry,
    "slack": _normalize_slack_entry,
    "mattermost": _normalize_mattermost_entry,
}


def get_entry_normalizer(channel: str) -> Optional[EntryNormalizer]:
    return SENDER_ID_NORMALIZERS.get(channel.strip().lower())


def sender_matches_allow_list(
    allow_from: list[str],
    sender_id: str,
    normalize_entry: Optional[EntryNormalizer] = None,
) -> bool:
    if WILDCARD in allow_from:
        return True
    normalize = normalize_entry or (lambda value: value.strip())
    sender = normalize(str(sender_id)).strip()
    if not sender:
        return False
    return any(normalize(entry).strip() == sender for entry in allow_from)


# --- Layered channel configuration ---


_LAYER_FIELDS = (
    "dm_policy",
    "group_policy",
    "allow_from",
    "group_allow_from",
    "group_allow_from_fallback_to_allow_from",
)


def merge_access_layers(*layers: Optional[ChannelAccessConfig]) -> ChannelAccessConfig:
    """Later layers override earlier ones field by field when set."""
    merged: dict[str, Any] = {}
    for layer in layers:
        if layer is None:
            continue
        for field_name in _LAYER_FIELDS:
            value = getattr(layer, field_name)
            if value is not None:
                merged[field_name] = value
    return ChannelAccessConfig(**merged)


class ChannelAccessResolver:
    """Resolves sender access for a channel from layered config and pairing store."""

    def __init__(
        self,
        *,
        defaults: ChannelAccessConfig,
        channels: Optional[dict[str, ChannelAccessConfig]] = None,
        pairing_store: Optional[PairingStoreReader] = None,
        on_store_failure: Optional[Callable[[], None]] = None,
    ) -> None:
        self._defaults = defaults
        self._channels = {k.strip().lower(): v for k, v in (channels or {}).items()}
        self._pairing_store = pairing_store
        self._on_store_failure = on_store_failure

    def config_for(self, channel: str, account_id: Optional[str] = None) -> ChannelAccessConfig:
        channel_layer = self._channels.get(channel.strip().lower())
        account_layer = None
        if channel_layer is not None and account_id:
            account_layer = channel_layer.accounts.get(account_id)
        return merge_access_layers(self._defaults, channel_layer, account_layer)

    def _read_store(self, channel: str, account_id: Optional[str]) -> list[str]:
        entries, failed = read_store_allow_from_safe(self._pairing_store, channel, account_id)
        if failed and self._on_store_failure is not None:
            self._on_store_failure()
        return entries

    def effective_lists(self, channel: str, account_id: Optional[str] = None) -> EffectiveAllowFromLists:
        config = self.config_for(channel, account_id)
        return resolve_effective_allow_from_lists(
            allow_from=config.allow_from,
            group_allow_from=config.group_allow_from,
            store_allow_from=self._read_store(channel, account_id),
            dm_policy=config.dm_policy,
            group_allow_from_fallback_to_allow_from=config.group_allow_from_fallback_to_allow_from,
            normalize_entry=get_entry_normalizer(channel),
        )

    def dm_allow_state(self, channel: str, account_id: Optional[str] = None) -> DmAllowState:
        config = self.config_for(channel, account_id)
        return resolve_dm_allow_state(
            channel=channel,
            allow_from=config.allow_from,
            reader=self._pairing_store,
            account_id=account_id,
            normalize_entry=get_entry_normalizer(channel),
        )

    def resolve(
        self,
        *,
        channel: str,
        is_group: bool,
        sender_id: str,
        account_id: Optional[str] = None,
        is_sender_allowed: Optional[SenderPredicate] = None,
    ) -> AccessDecisionResult:
        config = self.config_for(channel, account_id)
        normalize_entry = get_entry_normalizer(channel)
        predicate = is_sender_allowed or (
            lambda allow_from: sender_matches_allow_list(allow_from, sender_id, normalize_entry)
        )
        return resolve_dm_group_access_with_lists(
            is_group=is_group,
            dm_policy=config.dm_policy,
            group_policy=config.group_policy,
            allow_from=config.allow_from,
            group_allow_from=config.group_allow_from,
            store_allow_from=self._read_store(channel, account_id),
            group_allow_from_fallback_to_allow_from=config.group_allow_from_fallback_to_allow_from,
            is_sender_allowed=predicate,
            normalize_entry=normalize_entry,
        )
