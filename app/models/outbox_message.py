import uuid

from sqlalchemy import Column, ForeignKey, Integer, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from app.database import Base


class OutboxMessage(Base):
    __tablename__ = "outbox_messages"
    __table_args__ = (
        UniqueConstraint("channel", "external_event_id", name="uq_outbox_channel_event"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Text, ForeignKey("conversations.id"), nullable=False)
    channel = Column(Text, nullable=False)
    external_event_id = Column(Text, nullable=False)
    payload_json = Column(JSONB, nullable=False)
    status = Column(Text, nullable=False, default="PENDING")  # PENDING, PROCESSING, SENT, FAILED
    attempts = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(TIMESTAMP(timezone=True))
    last_error = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
