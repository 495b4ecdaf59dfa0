from datetime import datetime, timedelta, timezone

import pytest

from app.models import Conversation, Message, ReplyEngineLog
from app.services.reply_engine.audit_log import ReplyLogEntry, SqlReplyLogStore
from app.services.reply_engine.errors import ConversationNotFoundError, StateVersionConflictError
from app.services.reply_engine.fsm import SqlStateStore
from app.services.reply_engine.history import SqlMessageHistory
from app.services.reply_engine.orchestrator import generate_reply
from app.services.reply_engine.types import GenerateReplyOptions, PlannerAction
from app.services.state_machine import Stage


@pytest.fixture
def conversation(sql_session):
    conversation = Conversation(contact_name=None, channel="whatsapp")
    sql_session.add(conversation)
    sql_session.commit()
    return conversation


def _add_message(session, conversation_id, body, direction="inbound", minutes=0):
    message = Message(
        conversation_id=conversation_id,
        direction=direction,
        body=body,
        created_at=datetime(2026, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=minutes),
    )
    session.add(message)
    session.commit()
    return message


class TestSqlStateStore:
    def test_missing_blob_loads_default(self, sql_session, conversation):
        state = SqlStateStore(sql_session).load(conversation.id)
        assert state.stage == Stage.NEW
        assert state.version == 0

    def test_update_writes_blob_and_version(self, sql_session, conversation):
        store = SqlStateStore(sql_session)
        updated = store.update(conversation.id, {"service_key": "golden_visa", "stage": Stage.QUALIFYING})
        sql_session.commit()

        assert updated.version == 1
        row = sql_session.query(Conversation).filter(Conversation.id == conversation.id).first()
        sql_session.refresh(row)
        assert row.state_version == 1
        assert '"serviceKey": "golden_visa"' in row.rule_engine_memory

    def test_stale_version_conflicts(self, sql_session, conversation):
        store = SqlStateStore(sql_session)
        store.update(conversation.id, {"follow_up_step": 1})
        with pytest.raises(StateVersionConflictError):
            store.update(conversation.id, {"follow_up_step": 2}, expected_version=0)

    def test_corrupt_blob_loads_default(self, sql_session, conversation):
        conversation.rule_engine_memory = "{broken"
        sql_session.commit()
        assert SqlStateStore(sql_session).load(conversation.id).collected == {}

    def test_unknown_conversation_cannot_be_saved(self, sql_session):
        with pytest.raises(ConversationNotFoundError):
            SqlStateStore(sql_session).update(999, {"follow_up_step": 1})


class TestSqlMessageHistory:
    def test_inbound_only_oldest_first_and_bounded(self, sql_session, conversation):
        _add_message(sql_session, conversation.id, "first", minutes=1)
        _add_message(sql_session, conversation.id, "bot reply", direction="outbound", minutes=2)
        _add_message(sql_session, conversation.id, "second", minutes=3)
        _add_message(sql_session, conversation.id, "third", minutes=4)
        current = _add_message(sql_session, conversation.id, "current", minutes=5)

        history = SqlMessageHistory(sql_session).get_history(conversation.id, limit=2, exclude_message_id=current.id)

        assert history == ["second", "third"]


class TestSqlReplyLogStore:
    def test_append_and_find_latest(self, sql_session, conversation):
        store = SqlReplyLogStore(sql_session)
        entry = ReplyLogEntry(
            conversation_id=conversation.id,
            inbound_message_id=7,
            action="ASK",
            template_key="ask_service",
            question_key="service",
            reply_key="key-1",
            reply_text="x" * 800,
            extracted_fields={"serviceKey": None},
        )

        result = store.append(entry)
        sql_session.commit()

        assert result.ok is True
        found = store.find_latest(conversation.id, 7)
        assert found.reply_key == "key-1"
        assert len(found.reply_text) == 500
        assert found.extracted_fields == {"serviceKey": None}
        assert store.find_latest(conversation.id, 8) is None


class TestGenerateReplyWithDatabase:
    def test_full_turns_persist_state_and_log(self, sql_session, conversation):
        first = _add_message(sql_session, conversation.id, "Hi", minutes=1)
        greeting = generate_reply(
            sql_session,
            GenerateReplyOptions(conversation_id=conversation.id, inbound_message_id=first.id, inbound_text="Hi"),
        )
        sql_session.commit()

        second = _add_message(sql_session, conversation.id, "I want freelance visa", minutes=2)
        options = GenerateReplyOptions(
            conversation_id=conversation.id, inbound_message_id=second.id, inbound_text="I want freelance visa"
        )
        reply = generate_reply(sql_session, options)
        sql_session.commit()
        duplicate = generate_reply(sql_session, options)

        assert greeting.debug.template_key == "greeting"
        assert reply.debug.plan.action == PlannerAction.ASK
        assert reply.debug.plan.question_key == "full_name"
        assert duplicate.debug.skipped is True
        assert duplicate.text == reply.text

        state = SqlStateStore(sql_session).load(conversation.id)
        assert state.service_key == "freelance_visa"
        assert state.version == 2
        assert sql_session.query(ReplyEngineLog).count() == 2
