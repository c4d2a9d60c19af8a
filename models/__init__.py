"""
SQLAlchemy ORM models for database tables.

Models:
    base: Declarative base and shared enums (JobStatus, EntityState, ...)
    data_source: A tenant's configured integration connection
    scheduled_job: Durable job queue polled by the scheduler
    entity: Canonical synced records
    relationship: Edges between entities
    alert: Alerts reconciled from analyzer findings
    sync_batch: Per-stage ledger of sync run batches

Database Schema:
    All models inherit from the Base declarative class and use
    PostgreSQL-specific features like JSONB for flexible payloads.
    Importing this package registers every table on Base.metadata.

Relationships:
    - DataSource → Entity (one-to-many)
    - DataSource → ScheduledJob (one-to-many)
    - Entity → EntityRelationship (parent/child)
    - Entity → EntityAlert (one-to-many)
"""

from models.base import (
    Base,
    JobStatus,
    DataSourceStatus,
    SyncStatus,
    EntityState,
    AlertSeverity,
    AlertStatus,
)
from models.data_source import DataSource
from models.scheduled_job import ScheduledJob
from models.entity import Entity
from models.relationship import EntityRelationship
from models.alert import EntityAlert
from models.sync_batch import SyncBatch

__all__ = [
    "Base",
    "JobStatus",
    "DataSourceStatus",
    "SyncStatus",
    "EntityState",
    "AlertSeverity",
    "AlertStatus",
    "DataSource",
    "ScheduledJob",
    "Entity",
    "EntityRelationship",
    "EntityAlert",
    "SyncBatch",
]
