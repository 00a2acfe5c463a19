from unittest.mock import Mock

import pytest

from app.services.idempotency_service import MAX_ERROR_CHARS, mark_failed, mark_processed, start_processing


def _db(rowcount):
    db = Mock()
    db.execute.return_value = Mock(rowcount=rowcount)
    return db


class TestStartProcessing:
    def test_first_delivery_is_not_duplicate(self):
        db = _db(rowcount=1)
        result = start_processing(
            db, source="web", external_event_id="evt-1", payload={"text": "hola"}, request_id="req-1"
        )
        assert result.is_duplicate is False
        db.commit.assert_called_once()

    def test_conflict_means_duplicate(self):
        db = _db(rowcount=0)
        result = start_processing(
            db, source="web", external_event_id="evt-1", payload={"text": "hola"}, request_id="req-2"
        )
        assert result.is_duplicate is True

    def test_insert_targets_source_and_event_id(self):
        db = _db(rowcount=1)
        start_processing(db, source="whatsapp", external_event_id="wamid.1", payload={}, request_id="req-1")
        stmt = db.execute.call_args.args[0]
        compiled = str(stmt)
        assert "external_events" in compiled
        assert "ON CONFLICT" in compiled

    def test_store_error_propagates(self):
        db = Mock()
        db.execute.side_effect = RuntimeError("db down")
        with pytest.raises(RuntimeError):
            start_processing(db, source="web", external_event_id="evt-1", payload={}, request_id="req-1")


class TestMarkStatus:
    def test_mark_processed_commits(self):
        db = _db(rowcount=1)
        mark_processed(db, source="web", external_event_id="evt-1")
        db.execute.assert_called_once()
        db.commit.assert_called_once()

    def test_mark_failed_truncates_error(self):
        db = _db(rowcount=1)
        mark_failed(db, source="web", external_event_id="evt-1", error_message="x" * (MAX_ERROR_CHARS + 50))
        stmt = db.execute.call_args.args[0]
        params = stmt.compile().params
        assert params["status"] == "failed"
        assert len(params["error"]) == MAX_ERROR_CHARS
