"""
Health check endpoint with database, scheduler and job status
"""

from typing import Optional
import logging

from fastapi import APIRouter, Depends

from api.dependencies import get_context, get_runner
from core.context import PipelineContext
from core.exceptions import StorageError
from pipeline.runner import PipelineRunner
from schemas.api import HealthCheckResponse
from storage.base import Table

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(
    context: PipelineContext = Depends(get_context),
    runner: Optional[PipelineRunner] = Depends(get_runner),
):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Whether the scheduler is polling
    - Job counts by status (invalid jobs mark the service degraded)
    """
    db_connected = await context.store.ping()

    jobs_by_status = {}
    if db_connected:
        try:
            jobs_by_status = await context.store.count(Table.SCHEDULED_JOBS, group_by="status")
        except StorageError as e:
            logger.error(f"Failed to count jobs: {e}")

    subscriptions = getattr(context.bus, "subscriptions", [])
    return HealthCheckResponse(
        database_connected=db_connected,
        scheduler_running=bool(runner and runner.scheduler.running),
        subscriptions=len(subscriptions),
        jobs_by_status={str(k): v for k, v in jobs_by_status.items()},
    )
