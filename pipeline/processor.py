"""
Processor: persists fetched pages as entities.

One generic implementation serves every integration and entity type; the
per-type part is the normalizer. Records are handled in fixed-size chunks
and every chunk costs at most one lookup query and three batched
mutations:

    lookup   existing entities by external_id (deleted ones included)
    insert   records never seen before                      -> created
    update   content hash changed, or entity was deleted    -> updated
    touch    same hash: only sync_id / last_seen_at move    -> unchanged

A record that fails to normalize becomes a dead letter, but a live entity
with its external_id is still touched so the sweeper keeps it. When a
page repeats an external_id the last record wins and the earlier ones are
counted as duplicates.

Processing the same page twice therefore only touches rows, which is what
makes at-least-once delivery safe.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple
import hashlib
import json
import logging
import time

from core.context import PipelineContext
from core.exceptions import RecordNormalizationError
from pipeline.stage import PipelineStage
from pipeline.transformers.normalizer import EntityNormalizer
from schemas.events import STAGE_PROCESSED, DeadLetter, FetchedEvent, ProcessedEvent
from schemas.records import EntityRecord
from storage.base import Table, chunked

logger = logging.getLogger(__name__)


def content_hash(data: Dict[str, Any]) -> str:
    """sha256 over a canonical JSON encoding (sorted keys, no whitespace)."""
    encoded = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


@dataclass
class ProcessingResult:
    entity_ids: List[str] = field(default_factory=list)
    changed_entity_ids: List[str] = field(default_factory=list)
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    dead_letters: List[DeadLetter] = field(default_factory=list)
    # earlier records superseded by a later one with the same external_id
    duplicates: int = 0
    # existing entities kept alive although their record was a dead letter
    retained: int = 0
    chunks: int = 0
    queries: int = 0
    mutations: int = 0

    @property
    def skipped(self) -> int:
        return len(self.dead_letters)


def _pick_existing(rows: Sequence[EntityRecord]) -> Dict[str, EntityRecord]:
    """One row per external_id, preferring the live one over deleted history."""
    picked: Dict[str, EntityRecord] = {}
    for row in rows:
        current = picked.get(row.external_id)
        if current is None:
            picked[row.external_id] = row
        elif current.deleted_at is not None and row.deleted_at is None:
            picked[row.external_id] = row
        elif (current.deleted_at is None) == (row.deleted_at is None) and \
                (row.updated_at or row.created_at) > (current.updated_at or current.created_at):
            picked[row.external_id] = row
    return picked


class Processor(PipelineStage):
    stage_name = "processor"
    event_cls = FetchedEvent

    def __init__(self, context: PipelineContext, chunk_size: Optional[int] = None):
        super().__init__(context)
        self.chunk_size = chunk_size or context.settings.PROCESSOR_CHUNK_SIZE
        self._normalizers: Dict[Tuple[str, str], EntityNormalizer] = {}

    def topics(self) -> List[str]:
        return ["*.fetched.*"]

    def normalizer_for(self, integration_id: str, entity_type: str) -> EntityNormalizer:
        key = (integration_id, entity_type)
        if key not in self._normalizers:
            self._normalizers[key] = EntityNormalizer(integration_id, entity_type)
        return self._normalizers[key]

    async def handle(self, event: FetchedEvent) -> None:
        started = time.monotonic()
        result = await self.process_batch(event)
        elapsed_ms = int((time.monotonic() - started) * 1000)

        processed = event.derive(
            ProcessedEvent,
            STAGE_PROCESSED,
            entity_ids=result.entity_ids,
            changed_entity_ids=result.changed_entity_ids,
            entities_created=result.created,
            entities_updated=result.updated,
            entities_unchanged=result.unchanged,
            entities_skipped=result.skipped,
            dead_letters=result.dead_letters,
            metrics={
                "records": len(event.data),
                "chunks": result.chunks,
                "duplicates": result.duplicates,
                "retained": result.retained,
                "queries": result.queries,
                "mutations": result.mutations,
                "elapsed_ms": elapsed_ms,
            },
        )
        await self.bus.publish_event(processed)

        batch = event.sync_metadata.batch_number if event.sync_metadata else "-"
        logger.info(
            f"Processed {event.integration_id}/{event.entity_type} batch {batch}: "
            f"{result.created} created, {result.updated} updated, {result.unchanged} unchanged, "
            f"{result.skipped} skipped in {elapsed_ms}ms ({result.queries} queries, {result.mutations} mutations)"
        )

    async def process_batch(self, event: FetchedEvent) -> ProcessingResult:
        normalizer = self.normalizer_for(event.integration_id, event.entity_type)
        result = ProcessingResult()
        for chunk_index, chunk in enumerate(chunked(event.data, self.chunk_size)):
            await self._process_chunk(event, normalizer, chunk, chunk_index * self.chunk_size, result)
            result.chunks += 1
        return result

    def _normalize_chunk(
        self,
        normalizer: EntityNormalizer,
        chunk: Sequence[Dict[str, Any]],
        offset: int,
        result: ProcessingResult,
    ) -> Dict[str, Tuple[Dict[str, Any], Dict[str, Any]]]:
        """external_id -> (normalized data, raw record); bad records become dead letters."""
        candidates: Dict[str, Tuple[Dict[str, Any], Dict[str, Any]]] = {}
        positions: Dict[str, int] = {}
        for i, raw in enumerate(chunk):
            index = offset + i
            try:
                normalized = normalizer.normalize(raw)
            except RecordNormalizationError as e:
                reason = str(e.original_exception or e.message)
                external_id = normalizer.external_id(raw)
                logger.warning(f"Skipping record {index} ({external_id}) of {normalizer.entity_type}: {reason}")
                result.dead_letters.append(DeadLetter(index=index, external_id=external_id, reason=reason))
                continue

            external_id = normalized.external_id
            if external_id in candidates:
                logger.debug(
                    f"Record {positions[external_id]} of {normalizer.entity_type} superseded by record {index} ({external_id})"
                )
                result.duplicates += 1
            candidates[external_id] = (normalized.to_data(), raw)
            positions[external_id] = index
        return candidates

    async def _process_chunk(
        self,
        event: FetchedEvent,
        normalizer: EntityNormalizer,
        chunk: Sequence[Dict[str, Any]],
        offset: int,
        result: ProcessingResult,
    ) -> None:
        first_letter = len(result.dead_letters)
        candidates = self._normalize_chunk(normalizer, chunk, offset, result)
        # a record that failed to normalize still proves its entity exists upstream
        held = {
            letter.external_id
            for letter in result.dead_letters[first_letter:]
            if letter.external_id and letter.external_id not in candidates
        }
        if not candidates and not held:
            return

        now = self.context.now()
        sync_id = event.sync_metadata.sync_id if event.sync_metadata else None

        rows = await self.store.query(
            Table.ENTITIES,
            {
                "data_source_id": event.data_source_id,
                "entity_type": event.entity_type,
                "external_id": ("in", list(candidates) + sorted(held)),
            },
            tenant_id=event.tenant_id,
        )
        result.queries += 1
        existing = _pick_existing(rows)

        creates: List[Dict[str, Any]] = []
        updates: List[Tuple[str, Dict[str, Any]]] = []
        touches: List[Tuple[str, Dict[str, Any]]] = []
        ids_by_external: Dict[str, str] = {}

        for external_id, (data, raw) in candidates.items():
            data_hash = content_hash(data)
            current = existing.get(external_id)

            if current is None:
                creates.append({
                    "tenant_id": event.tenant_id,
                    "data_source_id": event.data_source_id,
                    "integration_id": event.integration_id,
                    "entity_type": event.entity_type,
                    "external_id": external_id,
                    "data_hash": data_hash,
                    "raw_data": raw,
                    "normalized_data": data,
                    "tags": [],
                    "sync_id": sync_id,
                    "last_seen_at": now,
                })
                continue

            ids_by_external[external_id] = current.id
            if current.data_hash != data_hash or current.deleted_at is not None:
                updates.append((current.id, {
                    "data_hash": data_hash,
                    "raw_data": raw,
                    "normalized_data": data,
                    "sync_id": sync_id,
                    "last_seen_at": now,
                    "deleted_at": None,
                }))
            else:
                touches.append((current.id, {"sync_id": sync_id, "last_seen_at": now}))

        retained = 0
        for external_id in sorted(held):
            current = existing.get(external_id)
            if current is not None and current.deleted_at is None:
                touches.append((current.id, {"sync_id": sync_id, "last_seen_at": now}))
                retained += 1

        if creates:
            created_ids = await self.store.insert(Table.ENTITIES, creates)
            result.mutations += 1
            for row, entity_id in zip(creates, created_ids):
                ids_by_external[row["external_id"]] = entity_id
                result.changed_entity_ids.append(entity_id)
        if updates:
            await self.store.update_many(Table.ENTITIES, updates)
            result.mutations += 1
            result.changed_entity_ids.extend(entity_id for entity_id, _ in updates)
        if touches:
            await self.store.update_many(Table.ENTITIES, touches)
            result.mutations += 1

        result.created += len(creates)
        result.updated += len(updates)
        result.unchanged += len(touches) - retained
        result.retained += retained
        result.entity_ids.extend(ids_by_external[external_id] for external_id in candidates)
