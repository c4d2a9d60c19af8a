"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from models.base import JobStatus, utcnow


# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response model"""
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")
    timestamp: datetime = Field(default_factory=utcnow)
    database_connected: bool
    scheduler_running: bool = False
    subscriptions: int = 0
    jobs_by_status: Dict[str, int] = Field(default_factory=dict)

    @model_validator(mode="after")
    def determine_status(self):
        """Determine overall health status"""
        if not self.database_connected:
            self.status = "unhealthy"
        elif self.jobs_by_status.get(JobStatus.INVALID.value, 0) > 0:
            self.status = "degraded"
        else:
            self.status = "healthy"
        return self

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "scheduler_running": True,
                "subscriptions": 12,
                "jobs_by_status": {"pending": 14, "running": 2, "completed": 310},
            }
        }


# ============================================================================
# Job Schemas
# ============================================================================

class JobResponse(BaseModel):
    """One scheduled job as the product layer sees it"""
    id: str
    tenant_id: str
    integration_id: str
    data_source_id: Optional[str]
    action: str
    status: JobStatus
    priority: int
    attempts: int
    attempts_max: int
    payload: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    created_by: str
    scheduled_at: datetime
    started_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True
        use_enum_values = True


class JobListResponse(BaseModel):
    """Paginated job list"""
    items: List[JobResponse]
    total: int
    page: int
    page_size: int
    request_id: Optional[str] = None


class TriggerSyncRequest(BaseModel):
    """Queue an immediate sync of one entity type"""
    entity_type: str = Field(..., min_length=1)
    priority: Optional[int] = Field(None, ge=0)


class TriggerSyncResponse(BaseModel):
    job_id: str
    data_source_id: str
    action: str


# ============================================================================
# Statistics Schemas
# ============================================================================

class StatsResponse(BaseModel):
    """Statistics response model"""
    timestamp: datetime = Field(default_factory=utcnow)
    tenant_id: Optional[str] = None

    jobs_by_status: Dict[str, int] = Field(default_factory=dict)
    entities_by_type: Dict[str, int] = Field(default_factory=dict)
    entities_by_state: Dict[str, int] = Field(default_factory=dict)
    active_alerts_by_type: Dict[str, int] = Field(default_factory=dict)
    data_sources_by_sync_status: Dict[str, int] = Field(default_factory=dict)

    request_id: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "timestamp": "2024-01-15T10:30:00Z",
                "jobs_by_status": {"pending": 14, "completed": 310, "invalid": 1},
                "entities_by_type": {"identities": 1200, "licenses": 40},
                "entities_by_state": {"normal": 1180, "warn": 20},
                "active_alerts_by_type": {"stale-user": 20},
                "data_sources_by_sync_status": {"idle": 3, "syncing": 1},
            }
        }


# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str
    detail: Optional[Any] = None
    timestamp: datetime = Field(default_factory=utcnow)

    class Config:
        json_schema_extra = {
            "example": {
                "error": "Resource not found",
                "detail": "The requested job does not exist",
                "timestamp": "2024-01-15T10:30:00Z"
            }
        }
