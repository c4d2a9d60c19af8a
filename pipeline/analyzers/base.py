"""
Analyzer worker: turns linked batches into tags and findings.

The worker is shared by every analyzer; an Analyzer strategy only
declares what it depends on and how to evaluate one entity. Per run the
worker:

1. Selects entities
   - full context: waits until every batch of the run is linked, then
     scans the whole live target set once
   - incremental: the changed target entities plus the analyzer's own
     candidate query, deduplicated; a full scan if no ids changed
2. Batch-loads relationships (and the related entities) when needed
3. Evaluates each entity, queueing a tag patch only when the analyzer's
   managed tags differ from what is stored
4. Applies every tag patch in one mutation
5. Publishes one "analysis.<type>.<entityType>" event holding the full
   findings snapshot for the analyzed scope
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple
import asyncio
import logging

from core.config import Settings
from core.context import PipelineContext
from pipeline.ledger import SyncRunLedger
from pipeline.stage import PipelineStage
from schemas.events import STAGE_ANALYSIS, STAGE_LINKED, AnalysisEvent, Finding, LinkedEvent
from schemas.records import EntityRecord, RelationshipRecord
from storage.base import Filters, Table, chunked

logger = logging.getLogger(__name__)

ID_CHUNK = 1000


@dataclass
class Evaluation:
    """Managed tags the entity should carry, and any findings."""
    tags: Set[str] = field(default_factory=set)
    findings: List[Finding] = field(default_factory=list)


@dataclass
class AnalysisContext:
    now: datetime
    settings: Settings
    relationships: Dict[str, List[RelationshipRecord]] = field(default_factory=dict)
    # relationships keyed by their child, for analyzers that look upward
    incoming: Dict[str, List[RelationshipRecord]] = field(default_factory=dict)
    related: Dict[str, EntityRecord] = field(default_factory=dict)
    # full live sets of the analyzer's reference entity types
    references: Dict[str, List[EntityRecord]] = field(default_factory=dict)

    def children(self, entity_id: str, relationship_type: str, entity_type: Optional[str] = None) -> List[EntityRecord]:
        found = []
        for relationship in self.relationships.get(entity_id, []):
            if relationship.relationship_type != relationship_type:
                continue
            child = self.related.get(relationship.child_entity_id)
            if child is not None and (entity_type is None or child.entity_type == entity_type):
                found.append(child)
        return found

    def parents(self, entity_id: str, relationship_type: str, entity_type: Optional[str] = None) -> List[EntityRecord]:
        found = []
        for relationship in self.incoming.get(entity_id, []):
            if relationship.relationship_type != relationship_type:
                continue
            parent = self.related.get(relationship.parent_entity_id)
            if parent is not None and (entity_type is None or parent.entity_type == entity_type):
                found.append(parent)
        return found


class Analyzer(ABC):
    name: str = ""
    analysis_type: str = ""
    integration_id: str = ""
    # linked entity types that trigger this analyzer
    entity_types: Tuple[str, ...] = ()
    target_entity_type: str = ""
    managed_tags: Tuple[str, ...] = ()
    alert_types: Tuple[str, ...] = ()
    requires_full_context: bool = False
    # outgoing relationship types loaded for each target entity
    relationship_types: Tuple[str, ...] = ()
    # incoming relationship types loaded for each target entity
    parent_relationship_types: Tuple[str, ...] = ()
    # entity types loaded whole, independent of the targets
    reference_entity_types: Tuple[str, ...] = ()

    def candidate_filters(self, context: AnalysisContext) -> Optional[Filters]:
        """Extra targets for incremental runs (entities whose state may have drifted)."""
        return None

    @abstractmethod
    def evaluate(self, entity: EntityRecord, context: AnalysisContext) -> Evaluation:
        """Recompute managed tags and findings for one entity."""


def merge_tags(current: Sequence[str], managed: Sequence[str], wanted: Set[str]) -> Optional[List[str]]:
    """New tag list, or None when the managed tags already match."""
    present = {tag for tag in current if tag in managed}
    if present == wanted:
        return None
    kept = [tag for tag in current if tag not in managed]
    return kept + sorted(wanted)


class AnalyzerWorker(PipelineStage):
    stage_name = "analyzer"
    event_cls = LinkedEvent

    def __init__(self, context: PipelineContext, analyzer: Analyzer, debounce_seconds: Optional[float] = None):
        super().__init__(context)
        self.analyzer = analyzer
        self.ledger = SyncRunLedger(context)
        if debounce_seconds is None:
            debounce_seconds = context.settings.ANALYZER_DEBOUNCE_SECONDS
        self.debounce_seconds = debounce_seconds
        self._buffer: Dict[str, List[LinkedEvent]] = {}
        self._timers: Dict[str, asyncio.Task] = {}

    @property
    def name(self) -> str:
        return f"AnalyzerWorker[{self.analyzer.name}]"

    def topics(self) -> List[str]:
        return [f"{self.analyzer.integration_id}.linked.{t}" for t in self.analyzer.entity_types]

    async def handle(self, event: LinkedEvent) -> None:
        if self.analyzer.requires_full_context and event.sync_metadata is not None:
            if not await self.ledger.record(STAGE_LINKED, event):
                logger.debug(
                    f"{self.analyzer.name}: run {event.sync_metadata.sync_id} not fully linked yet "
                    f"(batch {event.sync_metadata.batch_number})"
                )
                return
            if await self.ledger.completed(STAGE_LINKED, self.analyzer.name, event):
                return

        if self.debounce_seconds > 0:
            self._schedule(event)
            return

        await self.run(event, None if self.analyzer.requires_full_context else event.changed_entity_ids)

    # ========================================================================
    # Debounce
    # ========================================================================

    def _schedule(self, event: LinkedEvent) -> None:
        key = event.data_source_id
        self._buffer.setdefault(key, []).append(event)
        timer = self._timers.get(key)
        if timer is not None and not timer.done():
            timer.cancel()
        self._timers[key] = asyncio.create_task(self._flush_later(key))

    async def _flush_later(self, key: str) -> None:
        await asyncio.sleep(self.debounce_seconds)
        self._timers.pop(key, None)
        await self._flush_key(key)

    async def _flush_key(self, key: str) -> None:
        events = self._buffer.pop(key, [])
        if not events:
            return
        changed: List[str] = []
        for buffered in events:
            changed.extend(i for i in buffered.changed_entity_ids if i not in changed)
        latest = events[-1]
        logger.info(f"{self.analyzer.name}: executing {len(events)} aggregated events for {key}")
        try:
            await self.run(latest, None if self.analyzer.requires_full_context else changed)
        except Exception as e:
            await self.on_failure(latest, e)

    async def flush(self) -> None:
        """Run every buffered aggregation now."""
        for timer in list(self._timers.values()):
            timer.cancel()
        self._timers.clear()
        for key in list(self._buffer):
            await self._flush_key(key)

    def stop(self) -> None:
        super().stop()
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()

    # ========================================================================
    # Analysis
    # ========================================================================

    async def select_entities(
        self,
        event: LinkedEvent,
        changed_ids: Optional[List[str]],
        context: AnalysisContext,
    ) -> List[EntityRecord]:
        base = {
            "data_source_id": event.data_source_id,
            "entity_type": self.analyzer.target_entity_type,
            "deleted_at": None,
        }
        if not changed_ids:
            return await self.store.query(Table.ENTITIES, base, tenant_id=event.tenant_id)

        selected: Dict[str, EntityRecord] = {}
        for id_chunk in chunked(list(changed_ids), ID_CHUNK):
            for entity in await self.store.query(
                Table.ENTITIES, {**base, "id": ("in", list(id_chunk))}, tenant_id=event.tenant_id
            ):
                selected[entity.id] = entity

        candidate_filters = self.analyzer.candidate_filters(context)
        if candidate_filters:
            for entity in await self.store.query(
                Table.ENTITIES, {**base, **candidate_filters}, tenant_id=event.tenant_id
            ):
                selected.setdefault(entity.id, entity)
        return list(selected.values())

    async def load_relationships(self, event: LinkedEvent, entities: List[EntityRecord], context: AnalysisContext) -> None:
        if not entities:
            return
        analyzer = self.analyzer
        entity_ids = [e.id for e in entities]
        lookups = [
            ("parent_entity_id", analyzer.relationship_types, context.relationships),
            ("child_entity_id", analyzer.parent_relationship_types, context.incoming),
        ]
        related_ids: Set[str] = set()
        for column, relationship_types, target in lookups:
            if not relationship_types:
                continue
            other = "child_entity_id" if column == "parent_entity_id" else "parent_entity_id"
            for id_chunk in chunked(entity_ids, ID_CHUNK):
                rows = await self.store.query(
                    Table.RELATIONSHIPS,
                    {column: ("in", list(id_chunk)), "relationship_type": ("in", list(relationship_types))},
                    tenant_id=event.tenant_id,
                )
                for row in rows:
                    target.setdefault(getattr(row, column), []).append(row)
                    related_ids.add(getattr(row, other))

        for id_chunk in chunked(sorted(related_ids), ID_CHUNK):
            for entity in await self.store.query(
                Table.ENTITIES,
                {"id": ("in", list(id_chunk)), "deleted_at": None},
                tenant_id=event.tenant_id,
            ):
                context.related[entity.id] = entity

    async def load_references(self, event: LinkedEvent, context: AnalysisContext) -> None:
        for entity_type in self.analyzer.reference_entity_types:
            context.references[entity_type] = await self.store.query(
                Table.ENTITIES,
                {"data_source_id": event.data_source_id, "entity_type": entity_type, "deleted_at": None},
                tenant_id=event.tenant_id,
            )

    async def run(self, event: LinkedEvent, changed_ids: Optional[List[str]]) -> AnalysisEvent:
        analyzer = self.analyzer
        context = AnalysisContext(now=self.context.now(), settings=self.settings)
        incremental = bool(changed_ids)

        entities = await self.select_entities(event, changed_ids, context)
        await self.load_relationships(event, entities, context)
        await self.load_references(event, context)

        patches: List[Tuple[str, Dict[str, Any]]] = []
        findings: List[Finding] = []
        for entity in entities:
            evaluation = analyzer.evaluate(entity, context)
            findings.extend(evaluation.findings)
            tags = merge_tags(entity.tags, analyzer.managed_tags, evaluation.tags)
            if tags is not None:
                patches.append((entity.id, {"tags": tags}))

        if patches:
            await self.store.update_many(Table.ENTITIES, patches)

        analysis = event.derive(
            AnalysisEvent,
            STAGE_ANALYSIS,
            entity_type=analyzer.target_entity_type,
            analysis_type=analyzer.analysis_type,
            scope="incremental" if incremental else "full",
            alert_types=list(analyzer.alert_types),
            analyzed_entity_ids=[e.id for e in entities],
            findings=findings,
        )
        await self.bus.publish_event(analysis)

        if analyzer.requires_full_context and event.sync_metadata is not None:
            await self.ledger.claim_completion(STAGE_LINKED, analyzer.name, event)

        logger.info(
            f"{analyzer.name} analyzed {len(entities)} {analyzer.target_entity_type} "
            f"({'incremental' if incremental else 'full'}) for {event.data_source_id}: "
            f"{len(findings)} findings, {len(patches)} tag changes"
        )
        return analysis
