from sqlalchemy import Column, String, Integer, DateTime, Text, Index, ForeignKey
from sqlalchemy.dialects.postgresql import JSONB
from models.base import Base, JobStatus, new_id, utcnow


class ScheduledJob(Base):
    """
    Durable unit of sync work, one page of one entity type.

    Purpose:
    - Survive restarts (the scheduler polls this table)
    - Carry the pagination cursor and syncId between pages
    - Bound retries through attempts / attempts_max
    """
    __tablename__ = "scheduled_jobs"

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String(36), nullable=False, index=True)
    integration_id = Column(String(100), nullable=False)
    data_source_id = Column(String(36), ForeignKey("data_sources.id"), nullable=True, index=True)

    action = Column(String(100), nullable=False)  # "sync.<entityType>"
    payload = Column(JSONB, nullable=False, default=dict)
    priority = Column(Integer, nullable=False, default=5)

    status = Column(String(20), nullable=False, default=JobStatus.PENDING.value)
    attempts = Column(Integer, nullable=False, default=0)
    attempts_max = Column(Integer, nullable=False, default=3)
    error = Column(Text, nullable=True)
    created_by = Column(String(50), nullable=False, default="system")

    scheduled_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    started_at = Column(DateTime(timezone=True), nullable=True)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_jobs_status_scheduled", "status", "scheduled_at"),
        Index("idx_jobs_status_retry", "status", "next_retry_at"),
        Index("idx_jobs_source_action", "data_source_id", "action"),
    )
