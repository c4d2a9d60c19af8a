"""
PostgreSQL store built on SQLAlchemy async sessions.

Ensures:
- Every call runs in its own short transaction
- Batched updates go out as one executemany
- Claims are a single conditional UPDATE ... RETURNING
- Inserts can skip unique conflicts with ON CONFLICT DO NOTHING
"""

from typing import Any, Dict, List, Optional, Tuple
import logging

from pydantic import BaseModel
from sqlalchemy import select, update, insert, func, or_, and_, false
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from core.config import Settings
from core.context import utcnow
from core.database import create_engine, create_session_factory
from core.exceptions import StorageError
from models import (
    DataSource,
    Entity,
    EntityAlert,
    EntityRelationship,
    ScheduledJob,
    SyncBatch,
)
from models.base import new_id
from storage.base import RECORD_TYPES, Filters, OrderBy, Store, Table, parse_filter, to_plain

logger = logging.getLogger(__name__)

MODELS = {
    Table.DATA_SOURCES: DataSource,
    Table.SCHEDULED_JOBS: ScheduledJob,
    Table.ENTITIES: Entity,
    Table.RELATIONSHIPS: EntityRelationship,
    Table.ALERTS: EntityAlert,
    Table.SYNC_BATCHES: SyncBatch,
}


def _json_element(element, sample: Any):
    """Cast a JSONB path element to the SQL type of the value it is compared with."""
    if isinstance(sample, bool):
        return element.as_boolean()
    if isinstance(sample, int):
        return element.as_integer()
    if isinstance(sample, float):
        return element.as_float()
    return element.as_string()


def column_for(model, path: str, sample: Any = None):
    """Resolve "column" or "json_column.key.subkey" to a SQL expression."""
    parts = path.split(".")
    column = getattr(model, parts[0])
    if len(parts) == 1:
        return column
    if len(parts) == 2:
        element = column[parts[1]]
    else:
        element = column[tuple(parts[1:])]
    return _json_element(element, sample)


def build_clauses(model, filters: Optional[Filters]) -> list:
    """Translate a filter dictionary into SQLAlchemy where clauses."""
    clauses = []
    for path, raw in (filters or {}).items():
        op, operand = parse_filter(raw)
        operand = to_plain(operand)
        sample = operand[0] if op == "in" and operand else operand
        column = column_for(model, path, sample)

        if op == "eq":
            clauses.append(column.is_(None) if operand is None else column == operand)
        elif op == "ne":
            if operand is None:
                clauses.append(column.isnot(None))
            else:
                clauses.append(or_(column != operand, column.is_(None)))
        elif op == "in":
            # empty IN matches nothing
            clauses.append(column.in_(operand) if operand else false())
        elif op == "lt":
            clauses.append(column < operand)
        elif op == "lte":
            clauses.append(column <= operand)
        elif op == "gt":
            clauses.append(column > operand)
        elif op == "gte":
            clauses.append(column >= operand)
    return clauses


class PostgresStore(Store):
    """
    Store backed by PostgreSQL.

    Uses:
    - JSONB path operators for dot-path filters
    - Partial unique index so only one live row exists per external id
    """

    def __init__(self, session_factory: async_sessionmaker, engine: Optional[AsyncEngine] = None):
        self.session_factory = session_factory
        self.engine = engine

    @classmethod
    def from_settings(cls, settings: Settings) -> "PostgresStore":
        engine = create_engine(settings)
        return cls(create_session_factory(engine), engine)

    def _record(self, table: Table, row) -> BaseModel:
        return RECORD_TYPES[Table(table)].model_validate(row)

    def _error(self, operation: str, table: Table, error: Exception) -> StorageError:
        logger.error(f"Store {operation} on {Table(table).value} failed: {error}")
        return StorageError(
            f"{operation} failed",
            context={"operation": operation, "table": Table(table).value},
            original_exception=error,
        )

    async def get(self, table: Table, record_id: str) -> Optional[BaseModel]:
        model = MODELS[Table(table)]
        try:
            async with self.session_factory() as session:
                row = await session.get(model, record_id)
                return self._record(table, row) if row is not None else None
        except SQLAlchemyError as e:
            raise self._error("get", table, e)

    async def query(
        self,
        table: Table,
        filters: Optional[Filters] = None,
        *,
        tenant_id: Optional[str] = None,
        order_by: Optional[OrderBy] = None,
        limit: Optional[int] = None,
    ) -> List[BaseModel]:
        model = MODELS[Table(table)]
        stmt = select(model)
        clauses = build_clauses(model, filters)
        if tenant_id is not None:
            clauses.append(model.tenant_id == tenant_id)
        if clauses:
            stmt = stmt.where(and_(*clauses))
        for field, descending in order_by or []:
            column = column_for(model, field)
            stmt = stmt.order_by(column.desc().nulls_last() if descending else column.asc().nulls_last())
        if limit is not None:
            stmt = stmt.limit(limit)

        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                return [self._record(table, row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise self._error("query", table, e)

    async def count(
        self,
        table: Table,
        filters: Optional[Filters] = None,
        *,
        tenant_id: Optional[str] = None,
        group_by: Optional[str] = None,
    ) -> Dict[Any, int]:
        model = MODELS[Table(table)]
        clauses = build_clauses(model, filters)
        if tenant_id is not None:
            clauses.append(model.tenant_id == tenant_id)

        if group_by:
            column = column_for(model, group_by)
            stmt = select(column, func.count()).group_by(column)
        else:
            stmt = select(func.count()).select_from(model)
        if clauses:
            stmt = stmt.where(and_(*clauses))

        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                if group_by:
                    return {key: total for key, total in result.all()}
                return {None: result.scalar_one()}
        except SQLAlchemyError as e:
            raise self._error("count", table, e)

    async def insert(
        self,
        table: Table,
        rows: List[Dict[str, Any]],
        *,
        ignore_conflicts: bool = False,
    ) -> List[str]:
        if not rows:
            return []
        model = MODELS[Table(table)]
        now = utcnow()
        values = []
        for row in rows:
            row = to_plain(dict(row))
            row.setdefault("id", new_id())
            row.setdefault("created_at", now)
            row.setdefault("updated_at", now)
            values.append(row)

        try:
            async with self.session_factory() as session:
                if ignore_conflicts:
                    # no conflict target: skips rows hitting any unique index, partial ones included
                    stmt = pg_insert(model).values(values).on_conflict_do_nothing().returning(model.id)
                    result = await session.execute(stmt)
                    inserted = {row_id for (row_id,) in result.all()}
                else:
                    await session.execute(insert(model), values)
                    inserted = {row["id"] for row in values}
                await session.commit()
        except SQLAlchemyError as e:
            raise self._error("insert", table, e)

        skipped = len(values) - len(inserted)
        logger.debug(
            f"Inserted {len(inserted)} rows into {Table(table).value}"
            + (f", {skipped} skipped on conflict" if skipped else "")
        )
        return [row["id"] for row in values if row["id"] in inserted]

    async def update(self, table: Table, record_id: str, patch: Dict[str, Any]) -> None:
        await self.update_many(table, [(record_id, patch)])

    async def update_many(self, table: Table, patches: List[Tuple[str, Dict[str, Any]]]) -> int:
        if not patches:
            return 0
        model = MODELS[Table(table)]
        now = utcnow()
        params = [dict(to_plain(patch), id=record_id, updated_at=now) for record_id, patch in patches]

        try:
            async with self.session_factory() as session:
                # ORM bulk UPDATE by primary key, one executemany
                await session.execute(update(model), params)
                await session.commit()
        except SQLAlchemyError as e:
            raise self._error("update", table, e)
        return len(params)

    async def claim(
        self,
        table: Table,
        record_id: str,
        expected: Dict[str, Any],
        patch: Dict[str, Any],
    ) -> bool:
        model = MODELS[Table(table)]
        conditions = [model.id == record_id]
        for key, value in to_plain(expected).items():
            column = getattr(model, key)
            conditions.append(column.is_(None) if value is None else column == value)

        stmt = (
            update(model)
            .where(and_(*conditions))
            .values(**to_plain(patch), updated_at=utcnow())
            .returning(model.id)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                claimed = result.first() is not None
                await session.commit()
                return claimed
        except SQLAlchemyError as e:
            raise self._error("claim", table, e)

    async def ping(self) -> bool:
        try:
            async with self.session_factory() as session:
                await session.execute(select(1))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database ping failed: {e}")
            return False

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()
