# SQLAlchemy models

from sqlalchemy import Column, String, DateTime, JSON, Boolean, ForeignKey, Uuid, Index
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
import uuid

from eventpulse.models.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Project(Base):
    """A tenant: every event and query is scoped to one project"""
    __tablename__ = "projects"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    api_keys = relationship("ApiKey", back_populates="project")


class ApiKey(Base):
    __tablename__ = "api_keys"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id = Column(Uuid, ForeignKey("projects.id"), nullable=False)
    key_hash = Column(String(64), nullable=False, unique=True)
    permissions = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    last_used_at = Column(DateTime(timezone=True), nullable=True)

    project = relationship("Project", back_populates="api_keys")

    __table_args__ = (
        Index('idx_api_keys_project', 'project_id'),
    )
