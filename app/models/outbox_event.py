import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, Uuid
from sqlalchemy.sql import func

from app.database import Base, JSONType


class OutboxEvent(Base):
    """Domain event. Rows are insert-or-ignore only and never updated."""

    __tablename__ = "event_outbox"
    __table_args__ = (Index("ix_event_outbox_created", "created_at"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    type = Column(Text, nullable=False)
    tenant_id = Column(Uuid)
    payload = Column(JSONType)
    hash = Column(Text, nullable=False, unique=True)  # sha256 of type + tenant_id + payload
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class OutboxDelivery(Base):
    """One row per dispatched event; its absence means the event is still pending.

    `sending` marks a dispatcher's claim while the notification is in flight.
    """

    __tablename__ = "event_outbox_deliveries"

    event_id = Column(Uuid, ForeignKey("event_outbox.id"), primary_key=True)
    status = Column(Text, nullable=False)  # sending, delivered, skipped, rejected
    detail = Column(Text)
    recorded_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
