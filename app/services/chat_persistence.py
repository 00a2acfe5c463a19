"""Turn persistence: users, conversations, messages, outbox and audit rows."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import AuditLog, Conversation, Message, User
from app.services.flows.history import HistoryRow
from app.services.outbox_service import enqueue_outbox_message

logger = get_logger("chat_persistence")

OUTBOX_CHANNELS = frozenset({"whatsapp"})


@dataclass
class TurnRecord:
    conversation_id: str
    user_external_id: str
    channel: str
    external_event_id: str
    user_text: str
    bot_text: str
    intent: str
    bot_metadata: Dict[str, Any] = field(default_factory=dict)
    user_metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PersistTurnResult:
    bot_message_id: Optional[uuid.UUID]
    user_message_inserted: bool
    bot_message_inserted: bool
    outbox_enqueued: bool


def _upsert_user(db: Session, external_id: str, channel: str, now: datetime) -> uuid.UUID:
    db.execute(
        insert(User)
        .values(id=uuid.uuid4(), external_id=external_id, channel=channel, user_metadata={}, created_at=now)
        .on_conflict_do_nothing(index_elements=["external_id"])
    )
    user_id = db.execute(select(User.id).where(User.external_id == external_id)).scalar_one()
    db.execute(update(User).where(User.id == user_id).values(last_active_at=now))
    return user_id


def _upsert_conversation(db: Session, conversation_id: str, user_id: uuid.UUID, channel: str, now: datetime) -> None:
    db.execute(
        insert(Conversation)
        .values(id=conversation_id, user_id=user_id, channel=channel, created_at=now, updated_at=now)
        .on_conflict_do_nothing(index_elements=["id"])
    )
    db.execute(update(Conversation).where(Conversation.id == conversation_id).values(updated_at=now))


def _insert_message(
    db: Session,
    *,
    message_id: uuid.UUID,
    turn: TurnRecord,
    user_id: uuid.UUID,
    sender: str,
    content: str,
    metadata: Dict[str, Any],
    now: datetime,
) -> bool:
    result = db.execute(
        insert(Message)
        .values(
            id=message_id,
            conversation_id=turn.conversation_id,
            user_id=user_id,
            sender=sender,
            content=content,
            intent=turn.intent,
            channel=turn.channel,
            external_event_id=turn.external_event_id,
            message_metadata=metadata,
            created_at=now,
        )
        .on_conflict_do_nothing(index_elements=["channel", "external_event_id", "sender"])
    )
    return result.rowcount > 0


def persist_turn(db: Session, turn: TurnRecord) -> PersistTurnResult:
    """Write one user/bot exchange atomically.

    A second call for the same (channel, external_event_id) inserts nothing.
    Any store error rolls the whole turn back and propagates.
    """
    now = datetime.now(timezone.utc)
    # The bot row is written a moment after the user row so ordering by created_at is stable.
    bot_created_at = now + timedelta(milliseconds=1)
    bot_message_id = uuid.uuid4()
    try:
        user_id = _upsert_user(db, turn.user_external_id, turn.channel, now)
        _upsert_conversation(db, turn.conversation_id, user_id, turn.channel, now)
        user_inserted = _insert_message(
            db,
            message_id=uuid.uuid4(),
            turn=turn,
            user_id=user_id,
            sender="user",
            content=turn.user_text,
            metadata=turn.user_metadata,
            now=now,
        )
        bot_inserted = _insert_message(
            db,
            message_id=bot_message_id,
            turn=turn,
            user_id=user_id,
            sender="bot",
            content=turn.bot_text,
            metadata=turn.bot_metadata,
            now=bot_created_at,
        )

        outbox_enqueued = False
        if turn.channel in OUTBOX_CHANNELS:
            outbox_enqueued = enqueue_outbox_message(
                db,
                conversation_id=turn.conversation_id,
                channel=turn.channel,
                external_event_id=turn.external_event_id,
                payload_json={"to": turn.user_external_id, "text": turn.bot_text},
            )

        db.commit()
    except Exception:
        db.rollback()
        raise

    if not bot_inserted:
        logger.info(
            "Turn already persisted",
            extra={"context": {"conversation_id": turn.conversation_id, "external_event_id": turn.external_event_id}},
        )
    return PersistTurnResult(
        bot_message_id=bot_message_id if bot_inserted else None,
        user_message_inserted=user_inserted,
        bot_message_inserted=bot_inserted,
        outbox_enqueued=outbox_enqueued,
    )


def get_conversation_history(db: Session, conversation_id: str, limit: int = 10) -> List[HistoryRow]:
    """Most recent messages, newest first."""
    messages = (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.desc())
        .limit(limit)
        .all()
    )
    return [
        HistoryRow(
            sender=message.sender,
            content=message.content,
            metadata=message.message_metadata if isinstance(message.message_metadata, dict) else {},
            intent=message.intent,
            created_at=message.created_at,
        )
        for message in messages
    ]


def to_llm_history(rows: List[HistoryRow]) -> List[Dict[str, Any]]:
    """Chronological sender/content pairs for the prompt."""
    return [
        {
            "sender": row.sender,
            "content": row.content,
            "createdAt": row.created_at.isoformat() if row.created_at else None,
        }
        for row in reversed(rows)
    ]


def get_last_bot_message_by_external_event(db: Session, channel: str, external_event_id: str) -> Optional[Message]:
    return (
        db.query(Message)
        .filter(
            Message.channel == channel,
            Message.external_event_id == external_event_id,
            Message.sender == "bot",
        )
        .order_by(Message.created_at.desc())
        .first()
    )


def write_audit(
    db: Session,
    *,
    request_id: str,
    user_id: Optional[str],
    conversation_id: str,
    source: str,
    intent: str,
    status: str,
    message: str,
    http_status: int = 200,
    latency_ms: Optional[int] = None,
    error_code: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    """Best effort: a failed audit write is logged and rolled back, never raised."""
    try:
        db.add(
            AuditLog(
                request_id=request_id,
                user_id=user_id,
                conversation_id=conversation_id,
                source=source,
                intent=intent,
                status=status,
                message=message,
                http_status=http_status,
                latency_ms=latency_ms,
                error_code=error_code,
                audit_metadata=metadata or {},
            )
        )
        db.commit()
    except Exception as exc:
        db.rollback()
        logger.error(f"Audit write failed: {exc}", extra={"context": {"request_id": request_id}})
