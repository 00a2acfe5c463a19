"""Exactly-once intake of inbound chat events.

The (source, external_event_id) unique constraint on ``external_events`` is
what resolves concurrent deliveries; nothing here keeps in-memory state.
Store errors propagate to the caller: duplicate protection never fails open.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import ExternalEvent

logger = get_logger("idempotency")

MAX_ERROR_CHARS = 1000


@dataclass(frozen=True)
class IdempotencyResult:
    is_duplicate: bool


def start_processing(
    db: Session,
    *,
    source: str,
    external_event_id: str,
    payload: dict[str, Any],
    request_id: str,
) -> IdempotencyResult:
    stmt = (
        insert(ExternalEvent)
        .values(
            id=uuid.uuid4(),
            source=source,
            external_event_id=external_event_id,
            request_id=request_id,
            payload=payload,
            status="received",
            received_at=datetime.now(timezone.utc),
        )
        .on_conflict_do_nothing(index_elements=["source", "external_event_id"])
    )
    result = db.execute(stmt)
    db.commit()

    is_duplicate = result.rowcount == 0
    if is_duplicate:
        logger.info(
            "Duplicate inbound event",
            extra={"context": {"source": source, "external_event_id": external_event_id, "request_id": request_id}},
        )
    return IdempotencyResult(is_duplicate=is_duplicate)


def mark_processed(db: Session, *, source: str, external_event_id: str) -> None:
    db.execute(
        update(ExternalEvent)
        .where(ExternalEvent.source == source, ExternalEvent.external_event_id == external_event_id)
        .values(status="processed", processed_at=datetime.now(timezone.utc), error=None)
    )
    db.commit()


def mark_failed(db: Session, *, source: str, external_event_id: str, error_message: str) -> None:
    db.execute(
        update(ExternalEvent)
        .where(ExternalEvent.source == source, ExternalEvent.external_event_id == external_event_id)
        .values(status="failed", error=(error_message or "unknown error")[:MAX_ERROR_CHARS])
    )
    db.commit()
