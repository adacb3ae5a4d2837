"""
Tests for the HTTP surface.
"""

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from server.app import HANDOFF_REPLY, app


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


def _turn(client, utterance, session_id="call-1", tenant_id="demo", **extra):
    payload = {"tenantId": tenant_id, "sessionId": session_id, "utteranceText": utterance}
    payload.update(extra)
    return client.post("/turn", json=payload)


class TestServer:
    """Tests for the FastAPI endpoints."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_two_turn_call(self, client):
        first = _turn(client, "Hi, my name is Mark, I'm having AC problems", session_id="http-1")
        assert first.status_code == 200
        body = first.json()
        assert body["action"] == "ask"
        assert body["replyText"].endswith("And what's your last name?")
        assert isinstance(body["nextStateBlob"], str)

        second = _turn(client, "My last name is Gonzalez", session_id="http-1")
        assert second.json()["replyText"] == "And what's the best phone number to reach you?"

    def test_escalation_reason_is_returned(self, client):
        body = _turn(client, "I smell gas", session_id="http-2").json()
        assert body["action"] == "escalate"
        assert body["escalationReason"] == "triage:gas_leak"

    def test_caller_phone_and_mode(self, client):
        body = _turn(
            client, "hello", session_id="http-3", callerPhone="+15551234567", mode="afterhours"
        ).json()
        assert body["replyText"] == "May I have your name, please?"
        assert "caller_id" in body["nextStateBlob"]

    def test_unknown_tenant(self, client):
        response = _turn(client, "hello", tenant_id="nobody")
        assert response.status_code == 404

    def test_tenant_id_cannot_reach_other_files(self, client):
        response = _turn(client, "hello", tenant_id="../templates/hvac")
        assert response.status_code == 404
        assert response.json() == {"error": "tenant configuration unavailable"}

    def test_missing_session(self, client):
        response = client.post("/turn", json={"tenantId": "demo", "utteranceText": "hello"})
        assert response.status_code == 422

    def test_metrics(self, client):
        _turn(client, "what are your business hours", session_id="http-4")
        body = client.get("/metrics").json()
        assert body["total_turns"] >= 1
        assert "scenario_pools" in body
        assert body["scenario_pools"]["tenants"] >= 1

    def test_invalidate(self, client):
        _turn(client, "what are your business hours", session_id="http-5")
        response = client.post("/tenants/demo/invalidate")
        assert response.json() == {"tenantId": "demo", "invalidated": True}


def test_unhandled_error_hands_off_to_a_person():
    with TestClient(app, raise_server_exceptions=False) as client:
        client.app.state.service.handle_turn = AsyncMock(side_effect=RuntimeError("boom"))
        response = _turn(client, "hello")

    assert response.status_code == 200
    body = response.json()
    assert body["action"] == "escalate"
    assert body["replyText"] == HANDOFF_REPLY
    assert body["escalationReason"] == "internal_error"
