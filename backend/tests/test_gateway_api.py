from pathlib import Path

from fastapi.testclient import TestClient

import trustgate.api.routes_gateway as gateway_routes
from trustgate.main import create_app
from trustgate.schemas import ChannelAccessConfig, SessionMaintenanceConfig
from trustgate.services.access_policy import ChannelAccessResolver
from trustgate.services.approval_audit import ApprovalAuditService
from trustgate.services.approval_binding import build_env_binding
from trustgate.services.dedup import DeliveryDedupCache
from trustgate.services.gateway_observability import GatewayObservabilityService
from trustgate.services.pairing_store import PairingStore
from trustgate.services.session_store import SessionStore

_SWAPPED = (
    "_pairing_store",
    "_observability",
    "_access_resolver",
    "_dedup",
    "_session_store",
    "_session_store_path",
    "_approval_audit",
)


def install_gateway(tmp_path: Path, defaults: ChannelAccessConfig, **channels: ChannelAccessConfig) -> dict:
    originals = {name: getattr(gateway_routes, name) for name in _SWAPPED}
    pairing_store = PairingStore()
    observability = GatewayObservabilityService()
    gateway_routes._pairing_store = pairing_store
    gateway_routes._observability = observability
    gateway_routes._access_resolver = ChannelAccessResolver(
        defaults=defaults,
        channels=channels,
        pairing_store=pairing_store,
        on_store_failure=observability.record_pairing_store_failure,
    )
    gateway_routes._dedup = DeliveryDedupCache()
    gateway_routes._session_store = SessionStore(
        maintenance=SessionMaintenanceConfig(mode="enforce", max_entries=2)
    )
    gateway_routes._session_store_path = str(tmp_path / "sessions.json")
    gateway_routes._approval_audit = ApprovalAuditService()
    return originals


def restore_gateway(originals: dict) -> None:
    for name, value in originals.items():
        setattr(gateway_routes, name, value)


def inbound(message_id: str, sender_id: str, **overrides) -> dict:
    payload = {
        "channel": "telegram",
        "message_id": message_id,
        "sender_id": sender_id,
        "conversation_id": sender_id,
        "text": "hello",
    }
    payload.update(overrides)
    return payload


def test_redelivered_message_is_processed_once(tmp_path: Path) -> None:
    originals = install_gateway(tmp_path, ChannelAccessConfig(dm_policy="open"))
    try:
        client = TestClient(create_app())
        first = client.post("/api/v1/gateway/channels/telegram/inbound", json=inbound("m1", "42"))
        second = client.post("/api/v1/gateway/channels/telegram/inbound", json=inbound("m1", "42"))
        other_account = client.post(
            "/api/v1/gateway/channels/telegram/inbound",
            json=inbound("m1", "42", account_id="backup"),
        )
        assert first.json()["status"] == "allow"
        assert second.json()["status"] == "duplicate"
        assert other_account.json()["status"] == "allow"

        metrics = client.get("/api/v1/gateway/metrics").json()
        assert metrics["total_inbound_events"] == 3
        assert metrics["total_duplicates_suppressed"] == 1
        assert client.get("/api/v1/gateway/dedup").json()["entries"] == 2
    finally:
        restore_gateway(originals)


def test_channel_mismatch_is_rejected(tmp_path: Path) -> None:
    originals = install_gateway(tmp_path, ChannelAccessConfig(dm_policy="open"))
    try:
        client = TestClient(create_app())
        response = client.post("/api/v1/gateway/channels/slack/inbound", json=inbound("m1", "42"))
        assert response.status_code == 400
    finally:
        restore_gateway(originals)


def test_pairing_code_approval_admits_sender_to_dms_only(tmp_path: Path) -> None:
    originals = install_gateway(
        tmp_path,
        ChannelAccessConfig(dm_policy="pairing", group_policy="allowlist", allow_from=["owner"]),
    )
    try:
        client = TestClient(create_app())
        challenge = client.post("/api/v1/gateway/channels/telegram/inbound", json=inbound("m1", "stranger"))
        body = challenge.json()
        assert body["status"] == "pairing"
        assert body["reason"] == "dmPolicy=pairing (not allowlisted)"
        assert body["pairing_code"] in body["outbound_text"]

        pending = client.get("/api/v1/gateway/channels/telegram/pairing/pending").json()
        assert [p["user_id"] for p in pending] == ["stranger"]

        approved = client.post(
            "/api/v1/gateway/channels/telegram/pairing/approve",
            json={"code": body["pairing_code"], "actor": "owner"},
        ).json()
        assert approved["approved"] is True
        assert approved["user_id"] == "stranger"

        dm = client.post("/api/v1/gateway/channels/telegram/inbound", json=inbound("m2", "stranger"))
        assert dm.json()["status"] == "allow"
        assert dm.json()["session_key"] == "agent:main:telegram:dm:stranger"

        group = client.post(
            "/api/v1/gateway/channels/telegram/inbound",
            json=inbound("m3", "stranger", is_group=True, conversation_id="-100"),
        )
        assert group.json()["status"] == "block"
        assert group.json()["reason"] == "groupPolicy=allowlist (not allowlisted)"

        access = client.get("/api/v1/gateway/channels/telegram/access").json()
        assert access["effective_allow_from"] == ["owner", "stranger"]
        assert access["effective_group_allow_from"] == ["owner"]
        assert access["dm_allow_state"]["is_multi_user_dm"] is True
    finally:
        restore_gateway(originals)


def test_blocked_sender_gets_no_reply_and_no_session(tmp_path: Path) -> None:
    originals = install_gateway(tmp_path, ChannelAccessConfig(dm_policy="allowlist", allow_from=["owner"]))
    try:
        client = TestClient(create_app())
        response = client.post("/api/v1/gateway/channels/telegram/inbound", json=inbound("m1", "intruder"))
        body = response.json()
        assert body["status"] == "block"
        assert body["pairing_code"] is None
        assert body["outbound_text"] is None
        assert client.get("/api/v1/gateway/sessions").json() == []
    finally:
        restore_gateway(originals)


def test_allowed_turns_are_recorded_with_maintenance(tmp_path: Path) -> None:
    originals = install_gateway(tmp_path, ChannelAccessConfig(dm_policy="open"))
    try:
        client = TestClient(create_app())
        for index in range(3):
            response = client.post(
                "/api/v1/gateway/channels/telegram/inbound",
                json=inbound(f"m{index}", f"user{index}"),
            )
            assert response.json()["status"] == "allow"

        sessions = client.get("/api/v1/gateway/sessions").json()
        assert len(sessions) == 2

        report = client.post("/api/v1/gateway/sessions/maintenance").json()
        assert report["mode"] == "enforce"
        assert report["after_count"] == 2
    finally:
        restore_gateway(originals)


def test_admin_endpoints_require_token_when_configured(tmp_path: Path) -> None:
    originals = install_gateway(tmp_path, ChannelAccessConfig())
    original_settings = gateway_routes._settings
    gateway_routes._settings = original_settings.model_copy(update={"admin_api_token": "secret"})
    try:
        client = TestClient(create_app())
        denied = client.get("/api/v1/gateway/approvals/audit")
        assert denied.status_code == 401
        allowed = client.get("/api/v1/gateway/approvals/audit", headers={"x-admin-token": "secret"})
        assert allowed.status_code == 200
    finally:
        gateway_routes._settings = original_settings
        restore_gateway(originals)


def test_evaluate_system_run_records_denials(tmp_path: Path) -> None:
    originals = install_gateway(tmp_path, ChannelAccessConfig())
    try:
        client = TestClient(create_app())
        env_hash = build_env_binding({"SAFE": "1"}).env_hash
        approval = {
            "host": "node",
            "system_run_binding_v1": {"argv": ["git", "diff"], "cwd": "/repo", "env_hash": env_hash},
        }

        matched = client.post(
            "/api/v1/gateway/approvals/system-run/evaluate",
            json={
                "approval_id": "approval-1",
                "approval": approval,
                "invocation": {"argv": ["git", "diff"], "cwd": "/repo", "env": {"SAFE": "1"}},
            },
        ).json()
        assert matched["ok"] is True

        denied = client.post(
            "/api/v1/gateway/approvals/system-run/evaluate",
            json={
                "run_id": "run_evil",
                "approval_id": "approval-1",
                "approval": approval,
                "invocation": {"argv": ["git", "diff"], "cwd": "/repo", "env": {"SAFE": "2"}},
            },
        ).json()
        assert denied["ok"] is False
        assert denied["code"] == "APPROVAL_ENV_MISMATCH"

        audit = client.get("/api/v1/gateway/approvals/audit").json()
        assert len(audit) == 1
        assert audit[0]["event"] == "exec.denied"
        assert audit[0]["run_id"] == "run_evil"
        assert audit[0]["code"] == "APPROVAL_ENV_MISMATCH"

        stats = client.get("/api/v1/gateway/approvals/audit/stats").json()
        assert stats["entries"] == 1

        metrics = client.get("/api/v1/gateway/metrics").json()
        assert metrics["total_approvals_matched"] == 1
        assert metrics["total_approvals_denied"] == 1
    finally:
        restore_gateway(originals)


def test_health_endpoint() -> None:
    client = TestClient(create_app())
    assert client.get("/health").json() == {"status": "ok"}


class _FailingOnceSessionStore(SessionStore):
    def __init__(self) -> None:
        super().__init__()
        self.failures_left = 1

    def record_turn(self, path, session_key, **kwargs):
        if self.failures_left:
            self.failures_left -= 1
            raise OSError("No space left on device")
        return super().record_turn(path, session_key, **kwargs)


def test_failed_session_write_leaves_message_eligible_for_redelivery(tmp_path: Path) -> None:
    originals = install_gateway(tmp_path, ChannelAccessConfig(dm_policy="open"))
    gateway_routes._session_store = _FailingOnceSessionStore()
    try:
        client = TestClient(create_app(), raise_server_exceptions=False)
        failed = client.post("/api/v1/gateway/channels/telegram/inbound", json=inbound("m1", "42"))
        assert failed.status_code == 500

        redelivered = client.post("/api/v1/gateway/channels/telegram/inbound", json=inbound("m1", "42"))
        assert redelivered.status_code == 200
        assert redelivered.json()["status"] == "allow"
        assert [s["session_key"] for s in client.get("/api/v1/gateway/sessions").json()] == [
            "agent:main:telegram:dm:42"
        ]

        again = client.post("/api/v1/gateway/channels/telegram/inbound", json=inbound("m1", "42"))
        assert again.json()["status"] == "duplicate"
    finally:
        restore_gateway(originals)


def test_dedup_partition_ignores_channel_case(tmp_path: Path) -> None:
    originals = install_gateway(tmp_path, ChannelAccessConfig(dm_policy="open"))
    try:
        client = TestClient(create_app())
        first = client.post("/api/v1/gateway/channels/telegram/inbound", json=inbound("m1", "42"))
        second = client.post(
            "/api/v1/gateway/channels/Telegram/inbound",
            json=inbound("m1", "42", channel="Telegram"),
        )
        assert first.json()["status"] == "allow"
        assert second.json()["status"] == "duplicate"
    finally:
        restore_gateway(originals)


def test_full_pairing_queue_blocks_new_senders_silently(tmp_path: Path) -> None:
    originals = install_gateway(tmp_path, ChannelAccessConfig(dm_policy="pairing"))
    gateway_routes._pairing_store = PairingStore(max_pending=1)
    gateway_routes._access_resolver = ChannelAccessResolver(
        defaults=ChannelAccessConfig(dm_policy="pairing"),
        pairing_store=gateway_routes._pairing_store,
    )
    try:
        client = TestClient(create_app())
        first = client.post("/api/v1/gateway/channels/telegram/inbound", json=inbound("m1", "alice"))
        assert first.json()["status"] == "pairing"

        second = client.post("/api/v1/gateway/channels/telegram/inbound", json=inbound("m2", "mallory"))
        body = second.json()
        assert body["status"] == "block"
        assert body["reason"] == "dmPolicy=pairing (pairing queue full)"
        assert body["pairing_code"] is None
        assert body["outbound_text"] is None
        assert len(client.get("/api/v1/gateway/channels/telegram/pairing/pending").json()) == 1
    finally:
        restore_gateway(originals)


def test_evaluate_accepts_numeric_argv_tokens(tmp_path: Path) -> None:
    originals = install_gateway(tmp_path, ChannelAccessConfig())
    try:
        client = TestClient(create_app())
        response = client.post(
            "/api/v1/gateway/approvals/system-run/evaluate",
            json={
                "approval_id": "approval-2",
                "approval": {"host": "node", "command": "sleep 5", "command_argv": ["sleep", 5]},
                "invocation": {"cmd_text": "sleep 5", "argv": ["sleep", "5"]},
            },
        )
        assert response.status_code == 200
        assert response.json()["ok"] is True
    finally:
        restore_gateway(originals)
