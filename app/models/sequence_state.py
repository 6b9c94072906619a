import uuid

from sqlalchemy import Boolean, Column, DateTime, Integer, Text, UniqueConstraint, Uuid
from sqlalchemy.sql import func

from app.database import Base, JSONType


class SequenceState(Base):
    __tablename__ = "whatsapp_message_sequences"
    __table_args__ = (UniqueConstraint("tenant_id", "sender", name="uq_sequence_sender"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, nullable=False)
    sender = Column(Text, nullable=False)
    sequence_number = Column(Integer, nullable=False, default=1)
    expected_next = Column(Integer, nullable=False, default=2)
    gap_detected = Column(Boolean, nullable=False, default=False)
    out_of_order_messages = Column(JSONType, nullable=False, default=list)
    missing_sequences = Column(JSONType, nullable=False, default=list)
    last_message_id = Column(Text)
    last_message_time = Column(DateTime(timezone=True))
    recheck_at = Column(DateTime(timezone=True))  # set while a gap waits for late arrivals
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __mapper_args__ = {"version_id_col": version}
