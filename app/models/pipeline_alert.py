import uuid

from sqlalchemy import Column, DateTime, Text, Uuid
from sqlalchemy.sql import func

from app.database import Base, JSONType


class PipelineAlert(Base):
    __tablename__ = "pipeline_alerts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid)
    kind = Column(Text, nullable=False)  # excessive_duplicates, sequence_gap, permanent_failure, ...
    level = Column(Text, nullable=False)  # INFO, WARNING, ERROR, CRITICAL
    message = Column(Text, nullable=False)
    context = Column(JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
