from sqlalchemy import Column, String, DateTime, Index, ForeignKey, text
from sqlalchemy.dialects.postgresql import JSONB
from models.base import Base, EntityState, new_id, utcnow


class Entity(Base):
    """
    Canonical record for anything pulled from an integration.

    Design:
    - (data_source_id, entity_type, external_id) is unique among rows
      that are not soft-deleted
    - data_hash is the content hash of normalized_data and decides
      whether a re-seen record is an update or just a touch
    - sync_id / last_seen_at are the mark half of mark-and-sweep
    """
    __tablename__ = "entities"

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String(36), nullable=False, index=True)
    data_source_id = Column(String(36), ForeignKey("data_sources.id"), nullable=False)
    integration_id = Column(String(100), nullable=False)
    entity_type = Column(String(50), nullable=False)
    external_id = Column(String(255), nullable=False)

    data_hash = Column(String(64), nullable=False)
    raw_data = Column(JSONB, nullable=False, default=dict)
    normalized_data = Column(JSONB, nullable=False, default=dict)

    state = Column(String(20), nullable=False, default=EntityState.NORMAL.value)
    tags = Column(JSONB, nullable=False, default=list)

    sync_id = Column(String(36), nullable=True)
    last_seen_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index(
            "uq_entities_source_type_external",
            "data_source_id", "entity_type", "external_id",
            unique=True,
            postgresql_where=text("deleted_at IS NULL"),
        ),
        Index("idx_entities_source_type_sync", "data_source_id", "entity_type", "sync_id"),
    )
