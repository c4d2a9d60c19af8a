from sqlalchemy import Column, String, DateTime, Index, ForeignKey
from sqlalchemy.dialects.postgresql import JSONB
from models.base import Base, new_id, utcnow


class EntityRelationship(Base):
    """Directed edge between two entities of the same data source."""
    __tablename__ = "entity_relationships"

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String(36), nullable=False, index=True)
    data_source_id = Column(String(36), ForeignKey("data_sources.id"), nullable=False)

    parent_entity_id = Column(String(36), ForeignKey("entities.id"), nullable=False)
    child_entity_id = Column(String(36), ForeignKey("entities.id"), nullable=False)
    relationship_type = Column(String(50), nullable=False)
    extra_metadata = Column("metadata", JSONB, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_relationships_parent", "parent_entity_id", "relationship_type"),
        Index("uq_relationships_edge", "parent_entity_id", "child_entity_id", "relationship_type", unique=True),
    )
