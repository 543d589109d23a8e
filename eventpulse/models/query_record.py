# SQLAlchemy models

from sqlalchemy import Column, String, DateTime, Integer, Text, Uuid, Index
from datetime import datetime, timezone
import uuid

from eventpulse.models.base import Base


class NLQueryRecord(Base):
    """Audit row written after every natural-language query, success or failure"""
    __tablename__ = "ai_queries"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(64), nullable=False)
    question = Column(Text, nullable=False)
    generated_query = Column(Text, nullable=True)
    execution_time_ms = Column(Integer, nullable=False, default=0)
    result_count = Column(Integer, nullable=False, default=0)
    error_kind = Column(String(64), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        # History and suggestions are always read per tenant, newest first
        Index('idx_ai_queries_tenant_created', 'tenant_id', 'created_at'),
    )
