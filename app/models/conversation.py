import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, Text, Uuid, text
from sqlalchemy.sql import func

from app.database import Base, JSONType


class Conversation(Base):
    __tablename__ = "whatsapp_conversations"
    __table_args__ = (
        Index(
            "uq_conversation_active_sender",
            "tenant_id",
            "sender",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active"),
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)  # session id
    tenant_id = Column(Uuid, ForeignKey("tenants.id"), nullable=False)
    sender = Column(Text, nullable=False)
    current_step = Column(Text, nullable=False, default="greeting")
    context = Column(JSONType, nullable=False, default=dict)  # service, date, time, booking_id
    history = Column(JSONType, nullable=False, default=list)  # [{"role", "text", "at"}]
    is_active = Column(Boolean, nullable=False, default=True)
    last_message_id = Column(Text)  # last queue message applied to this conversation
    last_reply = Column(Text)
    started_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    last_activity = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    closed_at = Column(DateTime(timezone=True))
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}
