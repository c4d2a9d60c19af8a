from sqlalchemy import Column, String, DateTime, Text, Index, ForeignKey, text
from sqlalchemy.dialects.postgresql import JSONB
from models.base import Base, AlertStatus, new_id, utcnow


class EntityAlert(Base):
    """Alert raised from an analyzer finding, one active row per fingerprint."""
    __tablename__ = "entity_alerts"

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String(36), nullable=False, index=True)
    data_source_id = Column(String(36), ForeignKey("data_sources.id"), nullable=False)
    entity_id = Column(String(36), ForeignKey("entities.id"), nullable=False, index=True)

    alert_type = Column(String(50), nullable=False)
    severity = Column(String(20), nullable=False)
    message = Column(Text, nullable=False)
    fingerprint = Column(String(150), nullable=False)
    extra_metadata = Column("metadata", JSONB, nullable=False, default=dict)

    status = Column(String(20), nullable=False, default=AlertStatus.ACTIVE.value)
    last_seen_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_alerts_source_type_status", "data_source_id", "alert_type", "status"),
        Index("idx_alerts_fingerprint", "data_source_id", "fingerprint"),
        # at most one active alert per fingerprint
        Index(
            "uq_alerts_active_fingerprint",
            "data_source_id", "fingerprint",
            unique=True,
            postgresql_where=text("status = 'active'"),
        ),
    )
