from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import httpx
from sqlalchemy import text
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import OutboxMessage

logger = get_logger("outbox")

MAX_ERROR_CHARS = 500


def enqueue_outbox_message(
    db: Session,
    *,
    conversation_id: str,
    channel: str,
    external_event_id: str,
    payload_json: dict[str, Any],
) -> bool:
    """Queue one outbound message. Does not commit; a repeat of the same key is a no-op."""
    now = datetime.now(timezone.utc)
    stmt = (
        insert(OutboxMessage)
        .values(
            id=uuid.uuid4(),
            conversation_id=conversation_id,
            channel=channel,
            external_event_id=external_event_id,
            payload_json=payload_json,
            status="PENDING",
            attempts=0,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["channel", "external_event_id"])
    )
    result = db.execute(stmt)
    return result.rowcount > 0


def claim_pending_outbox(db: Session, *, limit: int = 10) -> list[dict[str, Any]]:
    rows = (
        db.execute(
            text(
                """
                WITH cte AS (
                    SELECT id
                    FROM outbox_messages
                    WHERE status = 'PENDING'
                      AND (next_attempt_at IS NULL OR next_attempt_at <= NOW())
                    ORDER BY created_at
                    LIMIT :limit
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE outbox_messages
                SET status = 'PROCESSING',
                    attempts = attempts + 1,
                    updated_at = NOW()
                FROM cte
                WHERE outbox_messages.id = cte.id
                RETURNING outbox_messages.id,
                          outbox_messages.conversation_id,
                          outbox_messages.channel,
                          outbox_messages.external_event_id,
                          outbox_messages.payload_json,
                          outbox_messages.attempts
                """
            ),
            {"limit": limit},
        )
        .mappings()
        .all()
    )
    db.commit()
    return [dict(row) for row in rows]


def mark_outbox_status(
    db: Session,
    *,
    outbox_id,
    status: str,
    last_error: str | None = None,
    next_attempt_at: datetime | None = None,
) -> None:
    db.execute(
        text(
            """
            UPDATE outbox_messages
            SET status = :status,
                last_error = :last_error,
                next_attempt_at = :next_attempt_at,
                updated_at = NOW()
            WHERE id = :id
            """
        ),
        {"id": outbox_id, "status": status, "last_error": last_error, "next_attempt_at": next_attempt_at},
    )
    db.commit()


def send_whatsapp_message(
    payload_json: dict[str, Any],
    *,
    idempotency_key: str,
    transport: httpx.BaseTransport | None = None,
) -> None:
    """POST one message to the WhatsApp gateway; raises on any failure."""
    if not settings.whatsapp_send_url:
        raise RuntimeError("whatsapp_send_url is not configured")

    headers = {"Content-Type": "application/json", "Idempotency-Key": idempotency_key}
    if settings.whatsapp_api_token:
        headers["Authorization"] = f"Bearer {settings.whatsapp_api_token}"

    with httpx.Client(timeout=10.0, transport=transport) as client:
        response = client.post(settings.whatsapp_send_url, json=payload_json, headers=headers)
    if response.status_code >= 300:
        raise RuntimeError(f"whatsapp gateway returned {response.status_code}")


def deliver_outbox_rows(
    db: Session,
    rows: list[dict[str, Any]],
    *,
    max_attempts: int,
    retry_backoff_seconds: float,
    send: Callable[..., None] = send_whatsapp_message,
) -> dict[str, int]:
    results = {"claimed": len(rows), "sent": 0, "failed": 0, "retry_scheduled": 0}

    for row in rows:
        outbox_id = row.get("id")
        if not outbox_id:
            continue
        payload_json = row.get("payload_json") or {}
        idempotency_key = f"{row.get('channel')}:{row.get('external_event_id')}"

        try:
            send(payload_json, idempotency_key=idempotency_key)
        except Exception as exc:
            attempts = int(row.get("attempts") or 0)
            error = str(exc)[:MAX_ERROR_CHARS]
            if attempts >= max_attempts:
                mark_outbox_status(db, outbox_id=outbox_id, status="FAILED", last_error=error)
                results["failed"] += 1
                logger.warning(
                    "Outbox delivery failed permanently",
                    extra={"context": {"outbox_id": str(outbox_id), "attempts": attempts, "error": error}},
                )
                continue
            backoff = retry_backoff_seconds * (2 ** max(attempts - 1, 0))
            mark_outbox_status(
                db,
                outbox_id=outbox_id,
                status="PENDING",
                last_error=error,
                next_attempt_at=datetime.now(timezone.utc) + timedelta(seconds=backoff),
            )
            results["retry_scheduled"] += 1
            continue

        mark_outbox_status(db, outbox_id=outbox_id, status="SENT")
        results["sent"] += 1
        logger.info(
            "Outbox sent",
            extra={"context": {"outbox_id": str(outbox_id), "conversation_id": row.get("conversation_id")}},
        )

    return results
