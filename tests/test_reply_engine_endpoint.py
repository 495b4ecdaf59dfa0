from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from app.config import settings
from app.database import get_db
from app.main import app
from app.models import Conversation, Message
from app.services.reply_engine.errors import StateVersionConflictError


@pytest.fixture
def client(sql_session):
    def _get_db():
        yield sql_session

    app.dependency_overrides[get_db] = _get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def conversation(sql_session):
    conversation = Conversation(contact_name="Omar", channel="whatsapp")
    sql_session.add(conversation)
    sql_session.commit()
    return conversation


def _inbound(sql_session, conversation_id, body):
    message = Message(conversation_id=conversation_id, direction="inbound", body=body)
    sql_session.add(message)
    sql_session.commit()
    return message


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestReplyEndpoint:
    def test_first_message_gets_greeting(self, client, sql_session, conversation):
        message = _inbound(sql_session, conversation.id, "Hi")

        response = client.post(
            "/reply-engine/reply",
            json={"conversation_id": conversation.id, "inbound_message_id": message.id, "inbound_text": "Hi"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["result"]["debug"]["template_key"] == "greeting"
        assert data["result"]["debug"]["skipped"] is False
        assert data["result"]["debug"]["plan"]["action"] == "INFO"
        assert "Omar" in data["result"]["text"]

    def test_duplicate_delivery_is_skipped(self, client, sql_session, conversation):
        message = _inbound(sql_session, conversation.id, "Hi")
        body = {"conversation_id": conversation.id, "inbound_message_id": message.id, "inbound_text": "Hi"}

        first = client.post("/reply-engine/reply", json=body).json()
        second = client.post("/reply-engine/reply", json=body).json()

        assert first["result"]["debug"]["skipped"] is False
        assert second["result"]["debug"]["skipped"] is True
        assert second["result"]["reply_key"] == first["result"]["reply_key"]

    def test_unknown_conversation_is_404(self, client):
        response = client.post(
            "/reply-engine/reply",
            json={"conversation_id": 999, "inbound_message_id": 1, "inbound_text": "Hi"},
        )
        assert response.status_code == 404

    def test_version_conflict_is_409(self, client, conversation):
        with patch(
            "app.routers.reply_engine.generate_reply",
            side_effect=StateVersionConflictError(conversation.id, 0, 1),
        ):
            response = client.post(
                "/reply-engine/reply",
                json={"conversation_id": conversation.id, "inbound_message_id": 1, "inbound_text": "Hi"},
            )
        assert response.status_code == 409

    def test_missing_template_returns_no_result(self, client, conversation):
        with patch("app.routers.reply_engine.generate_reply", return_value=None):
            response = client.post(
                "/reply-engine/reply",
                json={"conversation_id": conversation.id, "inbound_message_id": 1, "inbound_text": "Hi"},
            )
        assert response.status_code == 200
        assert response.json()["success"] is False
        assert response.json()["result"] is None


class TestStateEndpoints:
    def test_state_after_turn(self, client, sql_session, conversation):
        message = _inbound(sql_session, conversation.id, "Hi")
        client.post(
            "/reply-engine/reply",
            json={"conversation_id": conversation.id, "inbound_message_id": message.id, "inbound_text": "Hi"},
        )

        response = client.get(f"/reply-engine/conversations/{conversation.id}/state")

        assert response.status_code == 200
        data = response.json()
        assert data["version"] == 1
        assert data["state"]["collected"]["greetingSent"] is True
        assert data["state"]["lastInboundMessageId"] == str(message.id)
        assert data["violations"] == []

    def test_reset_requires_configured_token(self, client, conversation, monkeypatch):
        monkeypatch.setattr(settings, "reply_engine_admin_token", None)
        response = client.post(f"/reply-engine/conversations/{conversation.id}/reset")
        assert response.status_code == 500

    def test_reset_rejects_wrong_token(self, client, conversation, monkeypatch):
        monkeypatch.setattr(settings, "reply_engine_admin_token", "secret")
        response = client.post(
            f"/reply-engine/conversations/{conversation.id}/reset",
            headers={"X-Admin-Token": "wrong"},
        )
        assert response.status_code == 401

    def test_reset_clears_state(self, client, sql_session, conversation, monkeypatch):
        monkeypatch.setattr(settings, "reply_engine_admin_token", "secret")
        message = _inbound(sql_session, conversation.id, "Hi")
        client.post(
            "/reply-engine/reply",
            json={"conversation_id": conversation.id, "inbound_message_id": message.id, "inbound_text": "Hi"},
        )

        response = client.post(
            f"/reply-engine/conversations/{conversation.id}/reset",
            headers={"X-Admin-Token": "secret"},
        )

        assert response.status_code == 200
        state = client.get(f"/reply-engine/conversations/{conversation.id}/state").json()
        assert state["state"]["collected"] == {}
