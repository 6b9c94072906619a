import uuid

from sqlalchemy import Boolean, Column, DateTime, Text, Uuid
from sqlalchemy.sql import func

from app.database import Base, JSONType


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    slug = Column(Text, nullable=False, unique=True)
    name = Column(Text, nullable=False)
    vertical = Column(Text, default="general")  # salon, hospitality, medical, general
    phone_number_id = Column(Text, unique=True)  # WhatsApp Cloud API sender id
    owner_phone = Column(Text)
    services = Column(JSONType, nullable=False, default=list)  # [{"name", "duration", "price"}]
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
