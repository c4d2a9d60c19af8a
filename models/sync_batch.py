from sqlalchemy import Column, String, Integer, Boolean, DateTime, Index
from models.base import Base, new_id, utcnow


class SyncBatch(Base):
    """
    Ledger row recording that one batch of a sync run reached a stage.

    Stages downstream of the adapter see batches in arrival order; this
    table lets them decide completeness by sync_id + batch_number instead.
    Rows with batch_number 0 are completion markers.
    """
    __tablename__ = "sync_batches"

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String(36), nullable=False)
    data_source_id = Column(String(36), nullable=False)
    entity_type = Column(String(50), nullable=False)
    sync_id = Column(String(36), nullable=False)
    stage = Column(String(100), nullable=False)
    batch_number = Column(Integer, nullable=False)
    is_final = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("uq_sync_batches", "sync_id", "stage", "batch_number", unique=True),
    )
