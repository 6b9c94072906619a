import uuid

from sqlalchemy import Column, DateTime, Integer, Text, UniqueConstraint, Uuid

from app.database import Base, JSONType


class DeduplicationRecord(Base):
    __tablename__ = "whatsapp_message_dedup"
    # content_hash already embeds the minute bucket of the provider timestamp
    __table_args__ = (UniqueConstraint("tenant_id", "sender", "content_hash", name="uq_dedup_sender_hash"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, nullable=False)
    sender = Column(Text, nullable=False)
    content_hash = Column(Text, nullable=False)
    original_message_id = Column(Text, nullable=False)
    duplicate_count = Column(Integer, nullable=False, default=1)
    first_seen = Column(DateTime(timezone=True), nullable=False)
    last_seen = Column(DateTime(timezone=True), nullable=False)
    record_metadata = Column("metadata", JSONType, nullable=False, default=dict)
