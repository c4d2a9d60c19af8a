"""
Bus event envelopes.

Every message on the bus shares one envelope (tenant, integration, data
source, entity type, stage) and adds the payload of the stage that
produced it. On the wire the envelope uses the camelCase keys other
services already consume (eventID, tenantID, integrationID, dataSourceID,
syncMetadata, ...); in Python the fields are snake_case.

Topics are "<integrationId>.<stage>.<entityType>", except analysis
results which go to "analysis.<analysisType>.<entityType>".
"""

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel
from typing import Optional, List, Dict, Any, Type, TypeVar
from datetime import datetime
from models.base import AlertSeverity, new_id, utcnow
from schemas.records import JobRecord

E = TypeVar("E", bound="PipelineEvent")

# Stage names, also the middle token of each topic
STAGE_SYNC = "sync"
STAGE_FETCHED = "fetched"
STAGE_PROCESSED = "processed"
STAGE_LINKED = "linked"
STAGE_FAILED = "failed"
STAGE_ANALYSIS = "analysis"


class WireModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True
        use_enum_values = True


class SyncMetadata(WireModel):
    """Position of one batch inside a paginated sync run."""
    sync_id: str
    batch_number: int = Field(..., ge=1)
    is_final_batch: bool
    cursor: Optional[str] = None
    started_at: Optional[datetime] = None


class PipelineEvent(WireModel):
    event_id: str = Field(default_factory=new_id, alias="eventID")
    tenant_id: str = Field(..., alias="tenantID")
    integration_id: str = Field(..., alias="integrationID")
    integration_type: str
    data_source_id: str = Field(..., alias="dataSourceID")
    entity_type: str
    stage: str
    created_at: datetime = Field(default_factory=utcnow)
    parent_event_id: Optional[str] = Field(None, alias="parentEventID")
    job_id: Optional[str] = Field(None, alias="jobID")
    sync_metadata: Optional[SyncMetadata] = None

    @property
    def topic(self) -> str:
        return f"{self.integration_id}.{self.stage}.{self.entity_type}"

    def derive(self, event_cls: Type[E], stage: str, **fields) -> E:
        """Build the next stage's event, carrying the envelope forward."""
        envelope = {
            "tenant_id": self.tenant_id,
            "integration_id": self.integration_id,
            "integration_type": self.integration_type,
            "data_source_id": self.data_source_id,
            "entity_type": self.entity_type,
            "parent_event_id": self.event_id,
            "job_id": self.job_id,
            "sync_metadata": self.sync_metadata,
        }
        envelope.update(fields)
        return event_cls(stage=stage, **envelope)

    def to_message(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class SyncEvent(PipelineEvent):
    """Scheduler → Adapter: fetch one page for this job."""
    stage: str = STAGE_SYNC
    job: JobRecord


class FetchedEvent(PipelineEvent):
    """Adapter → Processor: one page of raw records."""
    stage: str = STAGE_FETCHED
    data: List[Dict[str, Any]] = Field(default_factory=list)
    total: int = 0
    has_more: bool = False


class DeadLetter(WireModel):
    """A record the processor skipped, with the reason."""
    index: int
    external_id: Optional[str] = None
    reason: str


class ProcessedEvent(PipelineEvent):
    """Processor → Linker / Sweeper: the page is persisted."""
    stage: str = STAGE_PROCESSED
    entity_ids: List[str] = Field(default_factory=list)
    changed_entity_ids: List[str] = Field(default_factory=list)
    entities_created: int = 0
    entities_updated: int = 0
    entities_unchanged: int = 0
    entities_skipped: int = 0
    dead_letters: List[DeadLetter] = Field(default_factory=list)
    metrics: Dict[str, Any] = Field(default_factory=dict)


class LinkedEvent(PipelineEvent):
    """Linker → Analyzer: relationships are up to date for this batch."""
    stage: str = STAGE_LINKED
    entity_ids: List[str] = Field(default_factory=list)
    changed_entity_ids: List[str] = Field(default_factory=list)
    relationships_created: List[str] = Field(default_factory=list)


class FailedEvent(PipelineEvent):
    """Any stage → observers: a handler failed for this batch."""
    stage: str = STAGE_FAILED
    failed_at: str
    error: Dict[str, Any] = Field(default_factory=dict)


class Finding(WireModel):
    """One observed condition on one entity."""
    entity_id: str
    alert_type: str
    severity: AlertSeverity
    message: str
    evidence: Dict[str, Any] = Field(default_factory=dict)

    @property
    def fingerprint(self) -> str:
        return f"{self.alert_type}:{self.entity_id}"


class AnalysisEvent(PipelineEvent):
    """
    Analyzer → Alert Manager.

    findings is the complete current snapshot for the analyzed scope:
    an entity in analyzed_entity_ids without a finding no longer has the
    condition.
    """
    stage: str = STAGE_ANALYSIS
    analysis_id: str = Field(default_factory=new_id)
    analysis_type: str
    scope: str = "full"
    alert_types: List[str] = Field(default_factory=list)
    analyzed_entity_ids: List[str] = Field(default_factory=list)
    findings: List[Finding] = Field(default_factory=list)

    @property
    def topic(self) -> str:
        return f"{STAGE_ANALYSIS}.{self.analysis_type}.{self.entity_type}"
