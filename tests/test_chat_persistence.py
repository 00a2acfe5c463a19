import uuid
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest

from app.services.chat_persistence import (
    TurnRecord,
    get_conversation_history,
    persist_turn,
    to_llm_history,
    write_audit,
)


def _result(rowcount):
    result = Mock(rowcount=rowcount)
    result.scalar_one.return_value = uuid.uuid4()
    return result


def _turn(channel="web"):
    return TurnRecord(
        conversation_id="conv-1",
        user_external_id="guest:conv-1",
        channel=channel,
        external_event_id="evt-1",
        user_text="hola",
        bot_text="Hola! En que te ayudo?",
        intent="general",
        bot_metadata={"requestId": "req-1"},
    )


class TestPersistTurn:
    def test_writes_turn_and_commits(self, db_session):
        db_session.execute.return_value = _result(1)

        result = persist_turn(db_session, _turn())

        assert result.user_message_inserted is True
        assert result.bot_message_inserted is True
        assert result.bot_message_id is not None
        assert result.outbox_enqueued is False
        assert db_session.execute.call_count == 7
        db_session.commit.assert_called_once()

    def test_whatsapp_turn_is_queued(self, db_session):
        db_session.execute.return_value = _result(1)

        result = persist_turn(db_session, _turn(channel="whatsapp"))

        assert result.outbox_enqueued is True
        assert db_session.execute.call_count == 8

    def test_replay_inserts_nothing(self, db_session):
        db_session.execute.return_value = _result(0)

        result = persist_turn(db_session, _turn())

        assert result.bot_message_id is None
        assert result.bot_message_inserted is False
        assert result.user_message_inserted is False

    def test_store_error_rolls_back(self, db_session):
        db_session.execute.side_effect = RuntimeError("db down")

        with pytest.raises(RuntimeError):
            persist_turn(db_session, _turn())

        db_session.rollback.assert_called_once()
        db_session.commit.assert_not_called()


class TestHistory:
    def test_rows_newest_first(self, db_session):
        created = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        db_session.query().filter().order_by().limit().all.return_value = [
            Mock(sender="bot", content="Hola!", message_metadata={"routedIntent": "general"}, intent="general", created_at=created),
            Mock(sender="user", content="hola", message_metadata=None, intent="general", created_at=None),
        ]

        rows = get_conversation_history(db_session, "conv-1")

        assert [row.sender for row in rows] == ["bot", "user"]
        assert rows[0].metadata == {"routedIntent": "general"}
        assert rows[1].metadata == {}

        history = to_llm_history(rows)
        assert history[0] == {"sender": "user", "content": "hola", "createdAt": None}
        assert history[1]["createdAt"] == created.isoformat()


class TestWriteAudit:
    def test_adds_row(self, db_session):
        write_audit(
            db_session,
            request_id="req-1",
            user_id="guest:conv-1",
            conversation_id="conv-1",
            source="web",
            intent="general",
            status="success",
            message="Hola!",
            latency_ms=12,
        )
        audit = db_session.add.call_args[0][0]
        assert audit.status == "success"
        assert audit.audit_metadata == {}
        db_session.commit.assert_called_once()

    def test_failure_is_swallowed(self, db_session):
        db_session.commit.side_effect = RuntimeError("db down")

        write_audit(
            db_session,
            request_id="req-1",
            user_id=None,
            conversation_id="conv-1",
            source="web",
            intent="error",
            status="failure",
            message="x",
        )

        db_session.rollback.assert_called_once()
