"""
Status webhook tests: envelope validation, terminal events, live events and
the HTTP endpoint.
"""
import pytest
from fastapi.testclient import TestClient

from call_relay.call import CallSource
from call_relay.errors import MalformedWebhook
from call_relay.fanout import CALL_ACTIVE, CALL_ENDED, INCOMING_CALL, fanout
from call_relay.registry import call_registry
from call_relay.server import app
from call_relay.webhook_handler import WebhookHandler, parse_webhook, webhook_numbers, webhook_state

from conftest import FakeCapability, RecordingObserver


@pytest.fixture
def handler(relay):
    return WebhookHandler(relay)


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def browser():
    observer = RecordingObserver("browser")
    fanout.register(observer)
    return observer


class TestParsing:

    @pytest.mark.parametrize("body", [
        None,
        [],
        "call.ended",
        {},
        {"event": "call.ended"},
        {"params": {"call_id": "C1"}},
        {"event": "", "params": {"call_id": "C1"}},
        {"event": "call.ended", "params": "C1"},
    ])
    def test_malformed_bodies(self, body):
        with pytest.raises(MalformedWebhook):
            parse_webhook(body)

    def test_valid_body(self):
        assert parse_webhook({"event": "call.ended", "params": {"call_id": "C1"}}) == (
            "call.ended",
            {"call_id": "C1"},
        )

    def test_state_from_params_or_event_name(self):
        assert webhook_state("calling.call.state", {"call_state": "answered"}) == "answered"
        assert webhook_state("call.ringing", {}) == "ringing"
        assert webhook_state("call.recording", {}) is None

    def test_numbers_from_device_params(self):
        params = {"device": {"params": {"from_number": "+1555", "to_number": "+1777"}}}
        assert webhook_numbers(params) == ("+1555", "+1777")


class TestHandler:

    @pytest.mark.parametrize("event", ["call.ended", "call.completed", "call.failed", "call.busy"])
    def test_terminal_event_retires_tracked_call(self, handler, relay, registry, observers, event):
        relay.on_incoming_call(FakeCapability("C1"))

        handler.handle_webhook({"event": event, "params": {"call_id": "C1"}})

        assert "C1" not in registry
        assert observers[0].events(CALL_ENDED) == [{"callId": "C1"}]

    def test_terminal_event_for_unknown_call_still_ends(self, handler, observers):
        handler.handle_webhook({"event": "call.ended", "params": {"call_id": "C5"}})
        handler.handle_webhook({"event": "call.ended", "params": {"call_id": "C5"}})

        assert observers[0].events(CALL_ENDED) == [{"callId": "C5"}]

    def test_first_live_event_tracks_silently(self, handler, registry, observers):
        handler.handle_webhook({
            "event": "call.ringing",
            "params": {"call_id": "W1", "from": "+1555", "to": "+1777"},
        })

        call = registry.get("W1")
        assert call.source == CallSource.WEBHOOK
        assert call.from_number == "+1555"
        assert observers[0].events(INCOMING_CALL) == []

    def test_state_change_emits_active(self, handler, observers):
        handler.handle_webhook({"event": "call.ringing", "params": {"call_id": "W1"}})
        handler.handle_webhook({"event": "call.answered", "params": {"call_id": "W1"}})
        handler.handle_webhook({"event": "call.answered", "params": {"call_id": "W1"}})

        assert observers[0].events(CALL_ACTIVE) == [{"callId": "W1", "state": "answered"}]

    def test_terminal_state_in_params_retires(self, handler, registry, observers):
        handler.handle_webhook({"event": "call.ringing", "params": {"call_id": "W1"}})
        handler.handle_webhook({"event": "calling.call.state", "params": {"call_id": "W1", "call_state": "ended"}})

        assert "W1" not in registry
        assert len(observers[0].events(CALL_ENDED)) == 1

    def test_unrecognized_event_is_acknowledged(self, handler, registry):
        assert handler.handle_webhook({"event": "call.recording", "params": {"call_id": "W1"}}) == {"status": "ok"}
        assert "W1" not in registry

    def test_missing_call_id_is_acknowledged(self, handler):
        assert handler.handle_webhook({"event": "call.ended", "params": {}}) == {"status": "ok"}

    def test_webhook_event_is_recorded(self, handler, capsys):
        handler.handle_webhook({"event": "call.recording", "params": {"call_id": "W1"}})

        out = capsys.readouterr().out
        assert "webhook.received" in out
        assert '"recognized": false' in out


class TestEndpoint:

    def test_terminal_webhook_returns_ok_and_ends_call(self, client, browser):
        res = client.post("/webhook/status", json={"event": "call.ended", "params": {"call_id": "C7"}})

        assert res.status_code == 200
        assert res.json() == {"status": "ok"}
        assert browser.events(CALL_ENDED) == [{"callId": "C7"}]

    def test_missing_params_is_client_error(self, client):
        res = client.post("/webhook/status", json={"event": "call.ended"})

        assert res.status_code == 400

    def test_non_json_body_is_client_error(self, client):
        res = client.post("/webhook/status", content=b"not json", headers={"Content-Type": "application/json"})

        assert res.status_code == 400
        assert res.json()["detail"] == "Invalid webhook data"

    def test_unrecognized_event_returns_ok(self, client):
        res = client.post("/webhook/status", json={"event": "call.recording", "params": {"call_id": "C8"}})

        assert res.status_code == 200
        assert "C8" not in call_registry

    def test_handler_exception_returns_500(self, client, monkeypatch):
        from call_relay import server

        def _boom(_body):
            raise RuntimeError("boom")

        monkeypatch.setattr(server.webhook_handler, "handle_webhook", _boom)

        res = client.post("/webhook/status", json={"event": "call.ended", "params": {"call_id": "C9"}})

        assert res.status_code == 500
        assert res.json() == {"error": "webhook_processing_failed"}
