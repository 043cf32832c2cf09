import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from twilio.request_validator import RequestValidator

from callbridge import main
from callbridge.errors import ProvisioningError
from callbridge.models.call_session import CallConfig
from callbridge.services.call_store import CallStore
from callbridge.services.telephony import TwilioWebhookVerifier

client = TestClient(main.app)

AUTH_TOKEN = "test_auth_token"
PUBLIC_HOST = "bridge.example.com"


def signed_post(path, data=None, signed_data=None):
    data = data or {}
    url = f"https://{PUBLIC_HOST}{path}"
    signature = RequestValidator(AUTH_TOKEN).compute_signature(url, signed_data or data)
    return client.post(path, data=data, headers={"X-Twilio-Signature": signature})


@pytest.fixture(autouse=True)
def verifier(monkeypatch):
    verifier = TwilioWebhookVerifier(AUTH_TOKEN, PUBLIC_HOST)
    monkeypatch.setattr(main, "webhook_verifier", verifier)
    return verifier


@pytest.fixture
def store(tmp_path, monkeypatch):
    store = CallStore(str(tmp_path / "calls.db"))
    store._init_sync()
    monkeypatch.setattr(main, "call_store", store)
    return store


@pytest.fixture
def notifier(monkeypatch):
    notifier = MagicMock()
    notifier.recipient.side_effect = lambda chat_id: chat_id or "admin"
    notifier.notify_status = AsyncMock(return_value=True)
    monkeypatch.setattr(main, "notifier", notifier)
    return notifier


@pytest.fixture
def placer(monkeypatch):
    placer = MagicMock()
    placer.place_call = AsyncMock(return_value={"sid": "CA-outbound-1", "status": "queued"})
    monkeypatch.setattr(main, "call_placer", placer)
    return placer


def test_incoming_returns_stream_twiml():
    response = signed_post("/incoming", {"CallSid": "CA-in", "From": "+15550002"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/xml")
    assert f'<Stream url="{main.settings.stream_url}" />' in response.text
    assert "<Connect>" in response.text


def test_incoming_rejects_missing_signature():
    response = client.post("/incoming", data={"CallSid": "CA-in"})

    assert response.status_code == 403
    assert "<Stream" not in response.text


def test_incoming_rejects_forged_signature():
    response = client.post(
        "/incoming", data={"CallSid": "CA-in"}, headers={"X-Twilio-Signature": "invalidsig"}
    )

    assert response.status_code == 403


def test_signature_covers_form_parameters():
    response = signed_post(
        "/incoming", data={"CallSid": "CA-other"}, signed_data={"CallSid": "CA-in"}
    )

    assert response.status_code == 403


def test_webhooks_are_rejected_without_auth_token(monkeypatch):
    monkeypatch.setattr(main, "webhook_verifier", TwilioWebhookVerifier(None, PUBLIC_HOST))

    assert signed_post("/incoming").status_code == 403
    assert signed_post("/webhook/call-status", {"CallSid": "CA-x"}).status_code == 403


def test_health_check(store):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["voice_backend"] == main.settings.voice_backend
    assert body["database_connected"] is True
    assert isinstance(body["active_sessions"], int)
    assert isinstance(body["provisioned_configs"], int)


def test_root_endpoint():
    response = client.get("/")

    body = response.json()
    assert body["name"] == "callbridge"
    assert "/connection" in body["endpoints"]
    assert "/outbound-call" in body["endpoints"]


def test_routes_are_registered():
    paths = [route.path for route in main.app.routes]

    for path in ("/incoming", "/connection", "/outbound-call", "/call-config/{call_sid}",
                 "/webhook/call-status", "/api/calls", "/api/calls/{call_sid}", "/health"):
        assert path in paths


@pytest.mark.asyncio
async def test_websocket_endpoint_delegates_to_stream_manager():
    websocket = MagicMock()
    with patch.object(main.stream_manager, "handle_websocket", AsyncMock()) as handle:
        await main.media_stream(websocket)

    handle.assert_awaited_once_with(websocket)


class TestOutboundCall:

    def request_body(self, **overrides):
        body = {
            "number": "+15551234567",
            "prompt": "Confirm the dentist appointment for Tuesday.",
            "first_message": "Hi, this is the dental office calling.",
            "user_chat_id": "chat-5",
            "capabilities": [{"name": "reschedule", "webhook_url": "https://hooks.example/r"}],
            "personalities": {"formal": "Use formal language."},
        }
        body.update(overrides)
        return body

    def test_call_is_placed_and_provisioned(self, store, notifier, placer):
        response = client.post("/outbound-call", json=self.request_body())

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "call_sid": "CA-outbound-1",
            "to": "+15551234567",
            "status": "queued",
        }
        placer.place_call.assert_awaited_once_with("+15551234567")

        config = main.registry.config_for("CA-outbound-1")
        assert config.prompt == "Confirm the dentist appointment for Tuesday."
        assert [c.name for c in config.capabilities] == ["reschedule"]
        assert config.personalities == {"formal": "Use formal language."}
        notifier.notify_status.assert_awaited_once_with("chat-5", "initiated", "+15551234567")
        main.registry.discard("CA-outbound-1")

    def test_call_is_recorded(self, store, notifier, placer):
        client.post("/outbound-call", json=self.request_body())

        response = client.get("/api/calls/CA-outbound-1")

        assert response.status_code == 200
        assert response.json()["call"]["status"] == "initiated"
        main.registry.discard("CA-outbound-1")

    def test_invalid_number_is_rejected(self, store, notifier, placer):
        response = client.post("/outbound-call", json=self.request_body(number="555-1234"))

        assert response.status_code == 422
        placer.place_call.assert_not_awaited()

    def test_provider_failure(self, store, notifier, placer):
        placer.place_call.side_effect = ProvisioningError("Twilio rejected call")

        response = client.post("/outbound-call", json=self.request_body())

        assert response.status_code == 502
        assert "Twilio rejected call" in response.json()["detail"]


class TestCallConfig:

    def test_unknown_call(self):
        assert client.get("/call-config/CA-unknown").status_code == 404

    def test_preview_truncates_prompt(self):
        main.registry.provision(
            "CA-preview", CallConfig(prompt="x" * 150, first_message="Hello!", user_chat_id="chat-1")
        )

        response = client.get("/call-config/CA-preview")
        main.registry.discard("CA-preview")

        body = response.json()
        assert body["streaming"] is False
        assert body["config"]["prompt_preview"] == "x" * 100 + "..."
        assert body["config"]["first_message"] == "Hello!"
        assert body["config"]["user_chat_id"] == "chat-1"


class TestCallStatusWebhook:

    def test_status_is_recorded_and_notified(self, store, notifier):
        asyncio.run(store.create_call("CA-hook", "+15550001", "p", "f", "chat-2"))

        response = signed_post(
            "/webhook/call-status",
            {"CallSid": "CA-hook", "CallStatus": "Completed", "CallDuration": "37"},
        )

        assert response.status_code == 200
        assert response.text == "OK"
        call = asyncio.run(store.get_call("CA-hook"))
        assert call["status"] == "completed"
        assert call["duration"] == 37
        notifier.notify_status.assert_awaited_once_with("chat-2", "completed", "+15550001")

    def test_unsigned_status_is_not_recorded(self, store, notifier):
        asyncio.run(store.create_call("CA-hook", "+15550001", "p", "f", "chat-2"))

        response = client.post(
            "/webhook/call-status", data={"CallSid": "CA-hook", "CallStatus": "completed"}
        )

        assert response.status_code == 403
        assert asyncio.run(store.get_call("CA-hook"))["status"] == "initiated"
        notifier.notify_status.assert_not_awaited()

    def test_unknown_call_is_acknowledged(self, store, notifier):
        response = signed_post(
            "/webhook/call-status", {"CallSid": "CA-nobody", "CallStatus": "ringing"}
        )

        assert response.text == "OK"
        notifier.notify_status.assert_not_awaited()

    def test_store_failure(self, store, notifier, monkeypatch):
        monkeypatch.setattr(store, "get_call", AsyncMock(side_effect=RuntimeError("disk full")))

        response = signed_post(
            "/webhook/call-status", {"CallSid": "CA-hook", "CallStatus": "ringing"}
        )

        assert response.status_code == 500
        assert response.text == "Error"


class TestCallHistory:

    def test_list_calls(self, store):
        asyncio.run(store.create_call("CA-a", "+15550001", "p", "f"))
        asyncio.run(store.add_transcript("CA-a", "user", "hello", 0))

        body = client.get("/api/calls").json()

        assert body["count"] == 1
        assert body["calls"][0]["transcript_count"] == 1

    def test_call_details(self, store):
        asyncio.run(store.create_call("CA-b", "+15550001", "p", "f"))
        asyncio.run(store.update_call_status("CA-b", "completed", ai_analysis=json.dumps({"user_messages": 1})))
        asyncio.run(store.add_transcript("CA-b", "user", "hello", 0))

        body = client.get("/api/calls/CA-b").json()

        assert body["call"]["ai_analysis"] == {"user_messages": 1}
        assert body["transcript_count"] == 1
        assert body["transcripts"][0]["message"] == "hello"

    def test_unknown_call(self, store):
        assert client.get("/api/calls/CA-missing").status_code == 404
