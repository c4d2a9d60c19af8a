"""
In-memory store.

Backs the test suite and local dry runs. It follows the same contract as
the PostgreSQL store, including compare-and-set claims and the unique
indexes declared on the ORM models, and counts every operation so tests
can assert how many queries a stage issued.
"""

from collections import Counter, defaultdict
from copy import deepcopy
from datetime import datetime
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Set, Tuple
import asyncio
import logging

from pydantic import BaseModel

from core.context import utcnow
from core.exceptions import StorageError
from models.base import AlertStatus, new_id
from storage.base import RECORD_TYPES, Filters, OrderBy, Store, Table, parse_filter, to_plain

logger = logging.getLogger(__name__)

_MISSING = object()


class UniqueKey(NamedTuple):
    name: str
    columns: Tuple[str, ...]
    # partial index predicate; None covers every row
    where: Optional[Callable[[Dict[str, Any]], bool]] = None


# mirrors the unique indexes in models/
UNIQUE_KEYS: Dict[Table, List[UniqueKey]] = {
    Table.ENTITIES: [
        UniqueKey(
            "uq_entities_source_type_external",
            ("data_source_id", "entity_type", "external_id"),
            lambda row: row.get("deleted_at") is None,
        ),
    ],
    Table.RELATIONSHIPS: [
        UniqueKey("uq_relationships_edge", ("parent_entity_id", "child_entity_id", "relationship_type")),
    ],
    Table.ALERTS: [
        UniqueKey(
            "uq_alerts_active_fingerprint",
            ("data_source_id", "fingerprint"),
            lambda row: row.get("status") == AlertStatus.ACTIVE.value,
        ),
    ],
    Table.SYNC_BATCHES: [
        UniqueKey("uq_sync_batches", ("sync_id", "stage", "batch_number")),
    ],
}


def _key_values(row: Dict[str, Any], key: UniqueKey) -> Optional[Tuple[Any, ...]]:
    if key.where is not None and not key.where(row):
        return None
    return tuple(row.get(column) for column in key.columns)


def _build_index(table: Table, rows) -> Dict[str, Set[Tuple[Any, ...]]]:
    index: Dict[str, Set[Tuple[Any, ...]]] = {}
    for key in UNIQUE_KEYS.get(table, []):
        index[key.name] = set()
        for row in rows:
            values = _key_values(row, key)
            if values is not None:
                index[key.name].add(values)
    return index


def _violation(table: Table, index: Dict[str, Set[Tuple[Any, ...]]], row: Dict[str, Any]) -> Optional[str]:
    for key in UNIQUE_KEYS.get(table, []):
        values = _key_values(row, key)
        if values is not None and values in index[key.name]:
            return key.name
    return None


def _add_to_index(table: Table, index: Dict[str, Set[Tuple[Any, ...]]], row: Dict[str, Any]) -> None:
    for key in UNIQUE_KEYS.get(table, []):
        values = _key_values(row, key)
        if values is not None:
            index[key.name].add(values)


def _unique_error(operation: str, table: Table, constraint: str) -> StorageError:
    return StorageError(
        f"{operation} failed: duplicate key value violates unique constraint \"{constraint}\"",
        context={"operation": operation, "table": Table(table).value, "constraint": constraint},
    )


def _resolve(row: Dict[str, Any], path: str) -> Any:
    value: Any = row
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part, _MISSING)
        if value is _MISSING:
            return None
    return value


def _matches(row: Dict[str, Any], filters: Filters) -> bool:
    for path, raw in filters.items():
        op, operand = parse_filter(raw)
        value = _resolve(row, path)
        operand = to_plain(operand)
        if op == "eq":
            if value != operand:
                return False
        elif op == "ne":
            if value == operand:
                return False
        elif op == "in":
            if value not in operand:
                return False
        else:
            if value is None or operand is None:
                return False
            if op == "lt" and not value < operand:
                return False
            if op == "lte" and not value <= operand:
                return False
            if op == "gt" and not value > operand:
                return False
            if op == "gte" and not value >= operand:
                return False
    return True


class InMemoryStore(Store):
    """Dictionary-backed store with per-table operation counters."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self._tables: Dict[Table, Dict[str, Dict[str, Any]]] = defaultdict(dict)
        self._lock = asyncio.Lock()
        self.stats: Counter = Counter()

    def _record(self, table: Table, row: Dict[str, Any]) -> BaseModel:
        return RECORD_TYPES[table].model_validate(deepcopy(row))

    def _count_op(self, table: Table, op: str) -> None:
        self.stats[(Table(table), op)] += 1

    def reset_stats(self) -> None:
        self.stats.clear()

    def ops(self, table: Table, op: str) -> int:
        return self.stats[(Table(table), op)]

    async def get(self, table: Table, record_id: str) -> Optional[BaseModel]:
        self._count_op(table, "get")
        row = self._tables[Table(table)].get(record_id)
        return self._record(table, row) if row is not None else None

    async def query(
        self,
        table: Table,
        filters: Optional[Filters] = None,
        *,
        tenant_id: Optional[str] = None,
        order_by: Optional[OrderBy] = None,
        limit: Optional[int] = None,
    ) -> List[BaseModel]:
        self._count_op(table, "query")
        filters = dict(filters or {})
        if tenant_id is not None:
            filters["tenant_id"] = tenant_id
        rows = [r for r in self._tables[Table(table)].values() if _matches(r, filters)]

        for field, descending in reversed(list(order_by or [])):
            present = [r for r in rows if _resolve(r, field) is not None]
            absent = [r for r in rows if _resolve(r, field) is None]
            present.sort(key=lambda r: _resolve(r, field), reverse=descending)
            rows = present + absent

        if limit is not None:
            rows = rows[:limit]
        return [self._record(table, r) for r in rows]

    async def count(
        self,
        table: Table,
        filters: Optional[Filters] = None,
        *,
        tenant_id: Optional[str] = None,
        group_by: Optional[str] = None,
    ) -> Dict[Any, int]:
        self._count_op(table, "count")
        filters = dict(filters or {})
        if tenant_id is not None:
            filters["tenant_id"] = tenant_id
        counts: Counter = Counter()
        for row in self._tables[Table(table)].values():
            if _matches(row, filters):
                counts[_resolve(row, group_by) if group_by else None] += 1
        return dict(counts)

    async def insert(
        self,
        table: Table,
        rows: List[Dict[str, Any]],
        *,
        ignore_conflicts: bool = False,
    ) -> List[str]:
        if not rows:
            return []
        table = Table(table)
        self._count_op(table, "insert")
        now = self.clock()
        accepted: List[Dict[str, Any]] = []
        async with self._lock:
            index = _build_index(table, self._tables[table].values())
            for row in rows:
                row = to_plain(deepcopy(row))
                row.setdefault("id", new_id())
                row.setdefault("created_at", now)
                row.setdefault("updated_at", now)
                # validate once so stored rows carry the record defaults
                stored = to_plain(RECORD_TYPES[table].model_validate(row).model_dump())

                violated = _violation(table, index, stored)
                if violated:
                    if ignore_conflicts:
                        logger.debug(f"Insert into {table.value} skipped a row conflicting on {violated}")
                        continue
                    raise _unique_error("insert", table, violated)
                _add_to_index(table, index, stored)
                accepted.append(stored)

            # all or nothing, like the single INSERT statement it stands in for
            for stored in accepted:
                self._tables[table][stored["id"]] = stored
        return [stored["id"] for stored in accepted]

    async def update(self, table: Table, record_id: str, patch: Dict[str, Any]) -> None:
        await self.update_many(table, [(record_id, patch)])

    def _check_patched(self, table: Table, patched: Dict[str, Dict[str, Any]], operation: str) -> None:
        """Raise if applying the patched rows would break a unique key."""
        if not UNIQUE_KEYS.get(table):
            return
        untouched = [row for row_id, row in self._tables[table].items() if row_id not in patched]
        index = _build_index(table, untouched)
        for row in patched.values():
            violated = _violation(table, index, row)
            if violated:
                raise _unique_error(operation, table, violated)
            _add_to_index(table, index, row)

    async def update_many(self, table: Table, patches: List[Tuple[str, Dict[str, Any]]]) -> int:
        if not patches:
            return 0
        table = Table(table)
        self._count_op(table, "update")
        now = self.clock()
        async with self._lock:
            rows = self._tables[table]
            patched: Dict[str, Dict[str, Any]] = {}
            for record_id, patch in patches:
                row = patched.get(record_id) or rows.get(record_id)
                if row is None:
                    logger.warning(f"Update skipped, {table} row {record_id} not found")
                    continue
                row = dict(row)
                row.update(to_plain(deepcopy(patch)))
                row["updated_at"] = now
                patched[record_id] = row

            self._check_patched(table, patched, "update")
            rows.update(patched)
        return len(patched)

    async def claim(
        self,
        table: Table,
        record_id: str,
        expected: Dict[str, Any],
        patch: Dict[str, Any],
    ) -> bool:
        table = Table(table)
        self._count_op(table, "claim")
        async with self._lock:
            row = self._tables[table].get(record_id)
            if row is None:
                return False
            for key, value in expected.items():
                if row.get(key) != to_plain(value):
                    return False
            row = dict(row)
            row.update(to_plain(deepcopy(patch)))
            row["updated_at"] = self.clock()
            self._check_patched(table, {record_id: row}, "claim")
            self._tables[table][record_id] = row
            return True
