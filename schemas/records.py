"""
Pydantic records for rows read from the store.

Both store implementations return these models, so stages never care
whether a row came from PostgreSQL or from memory.
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime
from models.base import (
    JobStatus,
    DataSourceStatus,
    SyncStatus,
    EntityState,
    AlertSeverity,
    AlertStatus,
)


class StoreRecord(BaseModel):
    id: str
    tenant_id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True
        use_enum_values = True


# ============================================================================
# Job Store
# ============================================================================

class JobPayload(BaseModel):
    """Pagination state carried from one page's job to the next."""
    cursor: Optional[str] = None
    sync_id: Optional[str] = None
    batch_number: int = Field(1, ge=1)
    total_processed: int = Field(0, ge=0)
    started_at: Optional[datetime] = None
    next_job_id: Optional[str] = None

    class Config:
        extra = "allow"


class JobRecord(StoreRecord):
    integration_id: str
    data_source_id: Optional[str] = None
    action: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 5
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    attempts_max: int = 3
    error: Optional[str] = None
    created_by: str = "system"
    scheduled_at: datetime
    started_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None

    @property
    def entity_type(self) -> Optional[str]:
        parts = self.action.split(".")
        if len(parts) == 2 and parts[0] == "sync" and parts[1]:
            return parts[1]
        return None

    @property
    def pagination(self) -> JobPayload:
        return JobPayload.model_validate(self.payload or {})


class DataSourceRecord(StoreRecord):
    integration_id: str
    name: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    status: DataSourceStatus = DataSourceStatus.ACTIVE
    current_sync_id: Optional[str] = None
    sync_status: SyncStatus = SyncStatus.IDLE
    last_sync_at: Optional[datetime] = None
    credential_expiration_at: Optional[datetime] = None
    extra_metadata: Dict[str, Any] = Field(default_factory=dict)
    deleted_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == DataSourceStatus.ACTIVE.value and self.deleted_at is None


# ============================================================================
# Entity graph
# ============================================================================

class EntityRecord(StoreRecord):
    data_source_id: str
    integration_id: str
    entity_type: str
    external_id: str
    data_hash: str
    raw_data: Dict[str, Any] = Field(default_factory=dict)
    normalized_data: Dict[str, Any] = Field(default_factory=dict)
    state: EntityState = EntityState.NORMAL
    tags: List[str] = Field(default_factory=list)
    sync_id: Optional[str] = None
    last_seen_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None


class RelationshipRecord(StoreRecord):
    data_source_id: str
    parent_entity_id: str
    child_entity_id: str
    relationship_type: str
    extra_metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def edge(self) -> tuple:
        return (self.parent_entity_id, self.child_entity_id, self.relationship_type)


class AlertRecord(StoreRecord):
    data_source_id: str
    entity_id: str
    alert_type: str
    severity: AlertSeverity
    message: str
    fingerprint: str
    extra_metadata: Dict[str, Any] = Field(default_factory=dict)
    status: AlertStatus = AlertStatus.ACTIVE
    last_seen_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None


class SyncBatchRecord(StoreRecord):
    data_source_id: str
    entity_type: str
    sync_id: str
    stage: str
    batch_number: int
    is_final: bool = False
