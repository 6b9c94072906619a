import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Text, UniqueConstraint, Uuid
from sqlalchemy.sql import func

from app.database import Base, JSONType


class QueueItem(Base):
    __tablename__ = "whatsapp_message_queue"
    __table_args__ = (
        UniqueConstraint("tenant_id", "message_id", name="uq_queue_tenant_message"),
        Index("ix_queue_status_scheduled", "status", "scheduled_at"),
        Index("ix_queue_sender_sent_at", "tenant_id", "from_number", "sent_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, ForeignKey("tenants.id"), nullable=False)
    message_id = Column(Text, nullable=False)  # provider message id
    from_number = Column(Text, nullable=False)
    to_number = Column(Text)
    content = Column(Text, nullable=False)
    priority = Column(Text, nullable=False, default="normal")  # low, normal, high, urgent
    status = Column(Text, nullable=False, default="pending")  # pending, processing, completed, failed, retry
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    scheduled_at = Column(DateTime(timezone=True), nullable=False)
    processed_at = Column(DateTime(timezone=True))
    error_message = Column(Text)
    sent_at = Column(DateTime(timezone=True), nullable=False)  # provider timestamp
    item_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
