import uuid

from sqlalchemy import Column, DateTime, String, Text, UniqueConstraint
from sqlalchemy.sql import func

from cohost.database import Base


class ProcessedEvent(Base):
    __tablename__ = "processed_events"
    __table_args__ = (UniqueConstraint("platform", "platform_event_id", name="uq_processed_events_platform_event"),)

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    platform = Column(String(32), nullable=False)
    platform_event_id = Column(String(255), nullable=False)
    event_type = Column(String(32), nullable=False)  # message, booking_update
    conversation_ref = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
