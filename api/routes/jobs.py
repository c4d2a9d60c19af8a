"""
Job status endpoints and manual sync triggers
"""

from typing import Optional
import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from api.dependencies import get_context, get_scheduler, verify_api_key
from core.context import PipelineContext
from core.exceptions import DataSourceNotFoundError, PipelineValidationError
from models.base import JobStatus
from pipeline.jobs import sync_action
from pipeline.scheduler import SyncScheduler
from schemas.api import JobListResponse, JobResponse, TriggerSyncRequest, TriggerSyncResponse
from storage.base import Table

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Jobs"], dependencies=[Depends(verify_api_key)])


@router.get("/jobs", response_model=JobListResponse)
async def list_jobs(
    request: Request,
    tenant_id: Optional[str] = Query(None, description="Filter by tenant"),
    data_source_id: Optional[str] = Query(None, description="Filter by data source"),
    status: Optional[JobStatus] = Query(None, description="Filter by job status"),
    action: Optional[str] = Query(None, description="Filter by action, e.g. sync.identities"),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=500, description="Items per page"),
    context: PipelineContext = Depends(get_context),
):
    """Jobs, most recently scheduled first."""
    request_id = getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")

    filters = {}
    if data_source_id:
        filters["data_source_id"] = data_source_id
    if status:
        filters["status"] = status.value
    if action:
        filters["action"] = action

    counts = await context.store.count(Table.SCHEDULED_JOBS, filters, tenant_id=tenant_id)
    rows = await context.store.query(
        Table.SCHEDULED_JOBS,
        filters,
        tenant_id=tenant_id,
        order_by=[("scheduled_at", True)],
        limit=page * page_size,
    )
    items = rows[(page - 1) * page_size:]

    logger.info(f"[{request_id}] GET /jobs - {len(items)} of {sum(counts.values())} (page {page})")
    return JobListResponse(
        items=[JobResponse.model_validate(job.model_dump()) for job in items],
        total=sum(counts.values()),
        page=page,
        page_size=page_size,
        request_id=request_id,
    )


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, context: PipelineContext = Depends(get_context)):
    job = await context.store.get(Table.SCHEDULED_JOBS, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return JobResponse.model_validate(job.model_dump())


@router.post("/data-sources/{data_source_id}/sync", response_model=TriggerSyncResponse, status_code=202)
async def trigger_sync(
    data_source_id: str,
    body: TriggerSyncRequest,
    scheduler: SyncScheduler = Depends(get_scheduler),
):
    """Queue an immediate sync; the next scheduler tick dispatches it."""
    try:
        job_id = await scheduler.trigger_sync(data_source_id, body.entity_type, body.priority)
    except DataSourceNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except PipelineValidationError as e:
        raise HTTPException(status_code=422, detail=e.to_dict())

    return TriggerSyncResponse(
        job_id=job_id,
        data_source_id=data_source_id,
        action=sync_action(body.entity_type),
    )
