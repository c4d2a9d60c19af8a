"""
Store contract shared by every pipeline stage.

The pipeline only needs tenant-scoped CRUD over a handful of logical
tables. Filters are plain dictionaries:

    {"status": "pending"}                        equality (None means IS NULL)
    {"external_id": ("in", ["a", "b"])}          membership
    {"scheduled_at": ("lte", now)}               comparison: lt, lte, gt, gte
    {"sync_id": ("ne", run_id)}                  not equal, NULL counts as different
    {"normalized_data.enabled": True}            dot path into a JSON column

Comparison operators never match NULL values.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Type
import enum

from pydantic import BaseModel

from schemas.records import (
    AlertRecord,
    DataSourceRecord,
    EntityRecord,
    JobRecord,
    RelationshipRecord,
    SyncBatchRecord,
)


class Table(str, enum.Enum):
    DATA_SOURCES = "data_sources"
    SCHEDULED_JOBS = "scheduled_jobs"
    ENTITIES = "entities"
    RELATIONSHIPS = "entity_relationships"
    ALERTS = "entity_alerts"
    SYNC_BATCHES = "sync_batches"


RECORD_TYPES: Dict[Table, Type[BaseModel]] = {
    Table.DATA_SOURCES: DataSourceRecord,
    Table.SCHEDULED_JOBS: JobRecord,
    Table.ENTITIES: EntityRecord,
    Table.RELATIONSHIPS: RelationshipRecord,
    Table.ALERTS: AlertRecord,
    Table.SYNC_BATCHES: SyncBatchRecord,
}


def to_plain(value: Any) -> Any:
    """Strip enums so values compare and serialize as their raw form."""
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, dict):
        return {k: to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(v) for v in value]
    return value


OPERATORS = ("eq", "ne", "in", "lt", "lte", "gt", "gte")

Filters = Dict[str, Any]
OrderBy = Sequence[Tuple[str, bool]]  # (field, descending)


def parse_filter(value: Any) -> Tuple[str, Any]:
    """Split a filter value into (operator, operand)."""
    if isinstance(value, tuple) and len(value) == 2 and value[0] in OPERATORS:
        op, operand = value
        if op == "in":
            operand = list(operand)
        return op, operand
    return "eq", value


def chunked(items: Sequence, size: int) -> Iterable[Sequence]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class Store(ABC):
    """
    Abstract storage engine.

    Implementations:
        InMemoryStore: dictionaries guarded by an asyncio lock
        PostgresStore: SQLAlchemy async sessions over asyncpg
    """

    @abstractmethod
    async def get(self, table: Table, record_id: str) -> Optional[BaseModel]:
        """Fetch one row by primary key."""

    @abstractmethod
    async def query(
        self,
        table: Table,
        filters: Optional[Filters] = None,
        *,
        tenant_id: Optional[str] = None,
        order_by: Optional[OrderBy] = None,
        limit: Optional[int] = None,
    ) -> List[BaseModel]:
        """Return rows matching every filter, optionally scoped to a tenant."""

    @abstractmethod
    async def count(
        self,
        table: Table,
        filters: Optional[Filters] = None,
        *,
        tenant_id: Optional[str] = None,
        group_by: Optional[str] = None,
    ) -> Dict[Any, int]:
        """Count matching rows, keyed by the group_by column (or None)."""

    @abstractmethod
    async def insert(
        self,
        table: Table,
        rows: List[Dict[str, Any]],
        *,
        ignore_conflicts: bool = False,
    ) -> List[str]:
        """
        Insert rows in one mutation and return their ids in order.

        A row that violates a unique key raises StorageError, or with
        ignore_conflicts is skipped and left out of the returned ids.
        """

    @abstractmethod
    async def update(self, table: Table, record_id: str, patch: Dict[str, Any]) -> None:
        """Apply a partial update to one row."""

    @abstractmethod
    async def update_many(self, table: Table, patches: List[Tuple[str, Dict[str, Any]]]) -> int:
        """Apply several partial updates as one batched mutation."""

    @abstractmethod
    async def claim(
        self,
        table: Table,
        record_id: str,
        expected: Dict[str, Any],
        patch: Dict[str, Any],
    ) -> bool:
        """
        Compare-and-set: apply patch only if every expected column still
        holds its value. Returns False when another writer got there first.
        """

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass
