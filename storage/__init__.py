"""
Storage engines behind the pipeline's tenant-scoped CRUD contract.

Modules:
    base: Store contract, logical table names and the filter mini-language
    memory: InMemoryStore used by tests and dry runs
    postgres: PostgresStore on SQLAlchemy async + asyncpg

Usage:
    from storage import InMemoryStore, Table
    from storage.postgres import PostgresStore
"""

from storage.base import Store, Table
from storage.memory import InMemoryStore

__all__ = ["Store", "Table", "InMemoryStore"]
