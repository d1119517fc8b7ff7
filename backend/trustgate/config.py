"""Application settings for the Trustgate backend."""

from functools import lru_cache
from typing import Any, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from trustgate.schemas import ChannelAccessConfig, DmPolicy, GroupPolicy


def _split_csv(value: str) -> list[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


class Settings(BaseSettings):
    """Runtime settings loaded from environment and .env."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "Trustgate"
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"
    api_prefix: str = "/api/v1"
    cors_origins: str = "http://localhost:5173"
    admin_api_token: str = ""

    pairing_store_backend: str = "memory"
    pairing_store_path: str = ".trustgate/pairing.sqlite3"
    pairing_pending_ttl_seconds: float = 3600
    pairing_max_pending: int = 3

    channel_dm_policy: DmPolicy = "pairing"
    channel_group_policy: GroupPolicy = "allowlist"
    channel_allow_from: str = ""
    channel_group_allow_from: str = ""
    channel_group_allow_from_fallback: bool = True
    # JSON object: {"telegram": {"dm_policy": "allowlist", "accounts": {...}}}
    channel_access: dict[str, ChannelAccessConfig] = Field(default_factory=dict)

    exec_approval_host: str = "node"
    exec_audit_max_entries: int = 5000

    session_store_path: str = ".trustgate/sessions.json"
    session_store_cache_ttl_seconds: float = 45.0
    # Kept as raw strings; resolve_maintenance_config falls back per field.
    session_maintenance_mode: Optional[str] = None
    session_maintenance_prune_after: Optional[str] = None
    session_maintenance_prune_days: Optional[str] = None
    session_maintenance_max_entries: Optional[str] = None
    session_maintenance_rotate_bytes: Optional[str] = None

    dedup_ttl_seconds: float = 1800
    dedup_max_entries: int = 1000
    dedup_cleanup_interval_seconds: float = 300

    def default_channel_access(self) -> ChannelAccessConfig:
        return ChannelAccessConfig(
            dm_policy=self.channel_dm_policy,
            group_policy=self.channel_group_policy,
            allow_from=_split_csv(self.channel_allow_from),
            group_allow_from=_split_csv(self.channel_group_allow_from),
            group_allow_from_fallback_to_allow_from=self.channel_group_allow_from_fallback,
        )

    def session_maintenance_raw(self) -> dict[str, Any]:
        """Settings in the ``session.maintenance`` shape, unset keys omitted."""
        raw = {
            "mode": self.session_maintenance_mode,
            "pruneAfter": self.session_maintenance_prune_after,
            "pruneDays": self.session_maintenance_prune_days,
            "maxEntries": self.session_maintenance_max_entries,
            "rotateBytes": self.session_maintenance_rotate_bytes,
        }
        return {k: v for k, v in raw.items() if v is not None}


@lru_cache
def get_settings() -> Settings:
    return Settings()
