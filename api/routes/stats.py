"""
Pipeline statistics endpoint
"""
from typing import Optional
import logging
import uuid

from fastapi import APIRouter, Depends, Query, Request

from api.dependencies import get_context, verify_api_key
from core.context import PipelineContext
from models.base import AlertStatus
from schemas.api import StatsResponse
from storage.base import Table

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Statistics"], dependencies=[Depends(verify_api_key)])


def _keyed(counts: dict) -> dict:
    return {str(k): v for k, v in counts.items() if k is not None}


@router.get("/stats", response_model=StatsResponse)
async def get_stats(
    request: Request,
    tenant_id: Optional[str] = Query(None, description="Restrict counts to one tenant"),
    context: PipelineContext = Depends(get_context),
):
    """
    Get pipeline statistics.

    Returns:
    - Job counts by status
    - Live entity counts by type and by state
    - Active alert counts by alert type
    - Data sources by sync status
    """
    request_id = getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")
    logger.info(f"[{request_id}] GET /stats")

    store = context.store
    live = {"deleted_at": None}
    stats = StatsResponse(
        tenant_id=tenant_id,
        jobs_by_status=_keyed(await store.count(Table.SCHEDULED_JOBS, tenant_id=tenant_id, group_by="status")),
        entities_by_type=_keyed(await store.count(Table.ENTITIES, live, tenant_id=tenant_id, group_by="entity_type")),
        entities_by_state=_keyed(await store.count(Table.ENTITIES, live, tenant_id=tenant_id, group_by="state")),
        active_alerts_by_type=_keyed(
            await store.count(
                Table.ALERTS, {"status": AlertStatus.ACTIVE.value}, tenant_id=tenant_id, group_by="alert_type"
            )
        ),
        data_sources_by_sync_status=_keyed(
            await store.count(Table.DATA_SOURCES, live, tenant_id=tenant_id, group_by="sync_status")
        ),
        request_id=request_id,
    )

    logger.info(
        f"[{request_id}] Stats: {sum(stats.entities_by_type.values())} entities, "
        f"{sum(stats.active_alerts_by_type.values())} active alerts"
    )
    return stats
