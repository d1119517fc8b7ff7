from trustgate.config import Settings
from trustgate.services.session_maintenance import resolve_maintenance_config


def test_default_channel_access_splits_csv_lists() -> None:
    settings = Settings(
        channel_dm_policy="allowlist",
        channel_allow_from=" alice, bob ,,",
        channel_group_allow_from="",
        channel_group_allow_from_fallback=False,
    )
    defaults = settings.default_channel_access()
    assert defaults.dm_policy == "allowlist"
    assert defaults.allow_from == ["alice", "bob"]
    assert defaults.group_allow_from == []
    assert defaults.group_allow_from_fallback_to_allow_from is False


def test_channel_access_loads_layered_json_from_env(monkeypatch) -> None:
    monkeypatch.setenv(
        "CHANNEL_ACCESS",
        '{"slack": {"dm_policy": "open", "accounts": {"work": {"allow_from": ["U1"]}}}}',
    )
    settings = Settings()
    assert settings.channel_access["slack"].dm_policy == "open"
    assert settings.channel_access["slack"].accounts["work"].allow_from == ["U1"]


def test_session_maintenance_settings_feed_the_resolver() -> None:
    settings = Settings(
        session_maintenance_mode="enforce",
        session_maintenance_prune_days="2",
        session_maintenance_rotate_bytes="5mb",
    )
    raw = settings.session_maintenance_raw()
    assert raw == {"mode": "enforce", "pruneDays": "2", "rotateBytes": "5mb"}
    config = resolve_maintenance_config(raw)
    assert config.mode == "enforce"
    assert config.prune_after_ms == 2 * 24 * 60 * 60 * 1000
    assert config.rotate_bytes == 5 * 1024 * 1024
    assert config.max_entries == 500


def test_malformed_maintenance_env_falls_back_to_defaults(monkeypatch) -> None:
    monkeypatch.setenv("SESSION_MAINTENANCE_MAX_ENTRIES", "lots")
    monkeypatch.setenv("SESSION_MAINTENANCE_PRUNE_DAYS", "someday")
    monkeypatch.setenv("SESSION_MAINTENANCE_ROTATE_BYTES", "huge")
    settings = Settings()
    config = resolve_maintenance_config(settings.session_maintenance_raw())
    assert config.max_entries == 500
    assert config.prune_after_ms is None
    assert config.rotate_bytes == 10 * 1024 * 1024


def test_maintenance_env_accepts_suffixed_and_numeric_strings(monkeypatch) -> None:
    monkeypatch.setenv("SESSION_MAINTENANCE_MAX_ENTRIES", "100")
    monkeypatch.setenv("SESSION_MAINTENANCE_PRUNE_DAYS", "7d")
    config = resolve_maintenance_config(Settings().session_maintenance_raw())
    assert config.max_entries == 100
    assert config.prune_after_ms == 7 * 24 * 60 * 60 * 1000
