"""
Linker: derives relationships between entities of one data source.

The driver loads the full live entity sets a strategy needs, asks the
strategy which edges should exist, batch-loads the edges that already do
(one query per parent-id chunk, never one per entity) and inserts only the
missing ones. Re-running over unchanged data inserts nothing.

A linked event is published for every processed event, whether or not an
edge changed, so analyzers always see each batch.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence, Tuple
import logging

from core.context import PipelineContext
from pipeline.stage import PipelineStage
from schemas.events import STAGE_LINKED, LinkedEvent, ProcessedEvent
from schemas.records import EntityRecord
from storage.base import Table, chunked

logger = logging.getLogger(__name__)

PARENT_ID_CHUNK = 1000


@dataclass(frozen=True)
class RelationshipCandidate:
    parent_entity_id: str
    child_entity_id: str
    relationship_type: str
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def edge(self) -> Tuple[str, str, str]:
        return (self.parent_entity_id, self.child_entity_id, self.relationship_type)


class LinkStrategy(ABC):
    """One family of relationships an integration knows how to derive."""

    entity_types: Tuple[str, ...] = ()
    relationship_types: Tuple[str, ...] = ()

    @abstractmethod
    def match_relationships(self, entities: Dict[str, List[EntityRecord]]) -> List[RelationshipCandidate]:
        """Edges that should exist given the full live sets keyed by entity type."""


def index_by(entities: Sequence[EntityRecord], key: str) -> Dict[str, List[EntityRecord]]:
    """Group entities by a normalized_data field (or "external_id")."""
    index: Dict[str, List[EntityRecord]] = {}
    for entity in entities:
        value = entity.external_id if key == "external_id" else entity.normalized_data.get(key)
        if value:
            index.setdefault(str(value), []).append(entity)
    return index


class Linker(PipelineStage):
    stage_name = "linker"
    event_cls = ProcessedEvent

    def __init__(self, context: PipelineContext, integration_id: str, strategies: Sequence[LinkStrategy]):
        super().__init__(context)
        self.integration_id = integration_id
        self.strategies = list(strategies)

    @property
    def name(self) -> str:
        return f"Linker[{self.integration_id}]"

    def topics(self) -> List[str]:
        spec = self.context.registry.get(self.integration_id)
        entity_types = spec.entity_types if spec else []
        return [f"{self.integration_id}.processed.{entity_type}" for entity_type in entity_types]

    async def handle(self, event: ProcessedEvent) -> None:
        strategies = [s for s in self.strategies if event.entity_type in s.entity_types]
        created_ids: List[str] = []
        if strategies:
            created_ids = await self.link(event, strategies)

        linked = event.derive(
            LinkedEvent,
            STAGE_LINKED,
            entity_ids=event.entity_ids,
            changed_entity_ids=event.changed_entity_ids,
            relationships_created=created_ids,
        )
        await self.bus.publish_event(linked)

    async def load_entities(self, event: ProcessedEvent, entity_types: Sequence[str]) -> Dict[str, List[EntityRecord]]:
        entities = {}
        for entity_type in entity_types:
            entities[entity_type] = await self.store.query(
                Table.ENTITIES,
                {"data_source_id": event.data_source_id, "entity_type": entity_type, "deleted_at": None},
                tenant_id=event.tenant_id,
            )
        return entities

    async def link(self, event: ProcessedEvent, strategies: Sequence[LinkStrategy]) -> List[str]:
        needed = sorted({t for s in strategies for t in s.entity_types})
        entities = await self.load_entities(event, needed)

        candidates: Dict[Tuple[str, str, str], RelationshipCandidate] = {}
        for strategy in strategies:
            for candidate in strategy.match_relationships(entities):
                candidates.setdefault(candidate.edge, candidate)
        if not candidates:
            logger.debug(f"No relationships to link for {event.data_source_id}/{event.entity_type}")
            return []

        relationship_types = sorted({t for s in strategies for t in s.relationship_types})
        parent_ids = sorted({c.parent_entity_id for c in candidates.values()})
        existing = set()
        for parent_chunk in chunked(parent_ids, PARENT_ID_CHUNK):
            rows = await self.store.query(
                Table.RELATIONSHIPS,
                {"parent_entity_id": ("in", list(parent_chunk)), "relationship_type": ("in", relationship_types)},
                tenant_id=event.tenant_id,
            )
            existing.update(row.edge for row in rows)

        new = [c for edge, c in candidates.items() if edge not in existing]
        if not new:
            logger.info(f"Linked {event.data_source_id}/{event.entity_type}: {len(candidates)} relationships already present")
            return []

        # an overlapping run of the same sync may have inserted some of these already
        created_ids = await self.store.insert(
            Table.RELATIONSHIPS,
            [
                {
                    "tenant_id": event.tenant_id,
                    "data_source_id": event.data_source_id,
                    "parent_entity_id": c.parent_entity_id,
                    "child_entity_id": c.child_entity_id,
                    "relationship_type": c.relationship_type,
                    "extra_metadata": c.metadata,
                }
                for c in new
            ],
            ignore_conflicts=True,
        )
        logger.info(
            f"Linked {event.data_source_id}/{event.entity_type}: {len(created_ids)} created, "
            f"{len(candidates) - len(created_ids)} already present"
        )
        return created_ids
