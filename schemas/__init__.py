"""
Pydantic schemas for data validation and serialization.

Schemas:
    records: rows read from the store (jobs, data sources, entities, ...)
    events: bus event envelopes, one per pipeline stage
    normalized: canonical shapes of each entity type's normalized_data
    api: API endpoint request/response schemas

Usage:
    from schemas.events import FetchedEvent, SyncMetadata
    from schemas.records import JobRecord
"""

__all__ = ["api", "events", "normalized", "records"]
