"""
Sweeper: the sweep half of mark-and-sweep.

Every entity the processor sees during a run is marked with the run's
sync_id and a fresh last_seen_at. Once every batch of a run has been
processed, entities of that data source and type that were not marked
(sync_id differs and last_seen_at predates the run) no longer exist
upstream and are soft-deleted, along with their active alerts.

A partial run never sweeps: the ledger only reports a run complete when
its final batch and every batch before it have landed.
"""

from typing import List
import logging

from models.base import AlertStatus
from pipeline.ledger import SyncRunLedger
from pipeline.stage import PipelineStage
from schemas.events import STAGE_PROCESSED, ProcessedEvent
from storage.base import Table, chunked

logger = logging.getLogger(__name__)

SWEEP_KEY = "sweeper"


class Sweeper(PipelineStage):
    stage_name = "sweeper"
    event_cls = ProcessedEvent

    def __init__(self, context):
        super().__init__(context)
        self.ledger = SyncRunLedger(context)

    def topics(self) -> List[str]:
        return ["*.processed.*"]

    async def handle(self, event: ProcessedEvent) -> None:
        meta = event.sync_metadata
        if meta is None:
            return
        if not await self.ledger.record(STAGE_PROCESSED, event):
            return
        if await self.ledger.completed(STAGE_PROCESSED, SWEEP_KEY, event):
            return

        await self.sweep(event)
        await self.ledger.claim_completion(STAGE_PROCESSED, SWEEP_KEY, event)

    async def sweep(self, event: ProcessedEvent) -> List[str]:
        meta = event.sync_metadata
        if meta.started_at is None:
            logger.warning(f"Run {meta.sync_id} has no start time, not sweeping {event.data_source_id}")
            return []

        stale = await self.store.query(
            Table.ENTITIES,
            {
                "data_source_id": event.data_source_id,
                "entity_type": event.entity_type,
                "deleted_at": None,
                "sync_id": ("ne", meta.sync_id),
                "last_seen_at": ("lt", meta.started_at),
            },
            tenant_id=event.tenant_id,
        )
        if not stale:
            logger.info(f"Run {meta.sync_id} complete for {event.data_source_id}/{event.entity_type}, nothing to sweep")
            return []

        now = self.context.now()
        ids = [entity.id for entity in stale]
        await self.store.update_many(Table.ENTITIES, [(entity_id, {"deleted_at": now}) for entity_id in ids])

        resolves = []
        for id_chunk in chunked(ids, 1000):
            for alert in await self.store.query(
                Table.ALERTS,
                {"entity_id": ("in", list(id_chunk)), "status": AlertStatus.ACTIVE.value},
                tenant_id=event.tenant_id,
            ):
                resolves.append((alert.id, {"status": AlertStatus.RESOLVED.value, "resolved_at": now}))
        if resolves:
            await self.store.update_many(Table.ALERTS, resolves)

        logger.info(
            f"Swept {len(ids)} {event.entity_type} from {event.data_source_id} "
            f"after run {meta.sync_id} ({len(resolves)} alerts resolved)"
        )
        return ids
