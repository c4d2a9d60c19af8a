"""
Sync run ledger.

Batches of one run can reach a downstream stage out of order (batch 3
may finish processing before batch 2). Stages that must act once per
completed run record every batch they see here and ask whether the run
is complete: the final batch has been recorded and so has every batch
number below it.
"""

from typing import List
import logging

from core.context import PipelineContext
from core.exceptions import StorageError
from schemas.events import PipelineEvent
from schemas.records import SyncBatchRecord
from storage.base import Table

logger = logging.getLogger(__name__)

DONE_BATCH = 0


def run_complete(rows: List[SyncBatchRecord]) -> bool:
    seen = {row.batch_number for row in rows}
    final = next((row.batch_number for row in rows if row.is_final), None)
    if final is None:
        return False
    return all(n in seen for n in range(1, final + 1))


class SyncRunLedger:
    def __init__(self, context: PipelineContext):
        self.context = context
        self.store = context.store

    def _row(self, event: PipelineEvent, stage: str, batch_number: int, is_final: bool) -> dict:
        return {
            "tenant_id": event.tenant_id,
            "data_source_id": event.data_source_id,
            "entity_type": event.entity_type,
            "sync_id": event.sync_metadata.sync_id,
            "stage": stage,
            "batch_number": batch_number,
            "is_final": is_final,
        }

    async def _insert_once(self, row: dict) -> bool:
        try:
            await self.store.insert(Table.SYNC_BATCHES, [row])
            return True
        except StorageError as e:
            # unique (sync_id, stage, batch_number): a concurrent writer won
            logger.debug(f"Ledger insert for {row['sync_id']}/{row['stage']}/{row['batch_number']} skipped: {e}")
            return False

    async def record(self, stage: str, event: PipelineEvent) -> bool:
        """
        Record the event's batch for a stage and return True once the run
        is complete for that stage. Recording the same batch twice is a no-op.
        """
        meta = event.sync_metadata
        if meta is None:
            return False

        filters = {"sync_id": meta.sync_id, "stage": stage}
        rows = await self.store.query(Table.SYNC_BATCHES, filters)
        if meta.batch_number not in {row.batch_number for row in rows}:
            await self._insert_once(self._row(event, stage, meta.batch_number, meta.is_final_batch))
            # re-read so a batch recorded concurrently by another worker counts
            rows = await self.store.query(Table.SYNC_BATCHES, filters)

        return run_complete(rows)

    async def completed(self, stage: str, key: str, event: PipelineEvent) -> bool:
        """True once `key` has claimed this run for the stage."""
        existing = await self.store.query(
            Table.SYNC_BATCHES,
            {"sync_id": event.sync_metadata.sync_id, "stage": f"{stage}:done:{key}"},
            limit=1,
        )
        return bool(existing)

    async def claim_completion(self, stage: str, key: str, event: PipelineEvent) -> bool:
        """
        Mark that `key` has acted on this completed run. Returns False if it
        already has, so each consumer acts at most once per run.
        """
        if await self.completed(stage, key, event):
            logger.debug(f"{key} already handled run {event.sync_metadata.sync_id}")
            return False
        return await self._insert_once(self._row(event, f"{stage}:done:{key}", DONE_BATCH, True))
