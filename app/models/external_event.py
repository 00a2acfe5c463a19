import uuid

from sqlalchemy import Column, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from app.database import Base


class ExternalEvent(Base):
    __tablename__ = "external_events"
    __table_args__ = (
        UniqueConstraint("source", "external_event_id", name="uq_external_events_source_event"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    source = Column(Text, nullable=False)  # web, whatsapp
    external_event_id = Column(Text, nullable=False)
    request_id = Column(Text, nullable=False)
    payload = Column(JSONB, nullable=False, default=dict)
    status = Column(Text, nullable=False, default="received")  # received, processed, failed
    error = Column(Text)
    received_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    processed_at = Column(TIMESTAMP(timezone=True))
