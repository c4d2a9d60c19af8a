from sqlalchemy import Column, String, DateTime, Index
from sqlalchemy.dialects.postgresql import JSONB
from models.base import Base, DataSourceStatus, SyncStatus, new_id, utcnow


class DataSource(Base):
    """
    A tenant's configured connection to one integration.

    Design:
    - config holds connector credentials and endpoints
    - metadata maps each job action to its last completion time
    - current_sync_id is set while a paginated run is in flight and
      cleared when the final page lands
    """
    __tablename__ = "data_sources"

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String(36), nullable=False, index=True)
    integration_id = Column(String(100), nullable=False, index=True)
    name = Column(String(200), nullable=True)

    config = Column(JSONB, nullable=False, default=dict)
    status = Column(String(20), nullable=False, default=DataSourceStatus.ACTIVE.value, index=True)

    # Sync state
    current_sync_id = Column(String(36), nullable=True)
    sync_status = Column(String(20), nullable=False, default=SyncStatus.IDLE.value)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    credential_expiration_at = Column(DateTime(timezone=True), nullable=True)
    extra_metadata = Column("metadata", JSONB, nullable=False, default=dict)

    # Timestamps
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_data_sources_tenant_integration", "tenant_id", "integration_id"),
    )
