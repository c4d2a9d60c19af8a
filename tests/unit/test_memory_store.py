"""
In-memory store tests: unique keys behave like the database indexes
"""

import asyncio
import pytest
from dataclasses import replace

from core.exceptions import StorageError
from pipeline.ledger import SyncRunLedger
from storage.base import Table
from storage.memory import UNIQUE_KEYS

from conftest import TENANT_ID, YieldingStore
from test_analyzers import _linked


def _entity(external_id, **extra):
    row = {
        "tenant_id": TENANT_ID,
        "data_source_id": "ds-1",
        "integration_id": "microsoft-365",
        "entity_type": "identities",
        "external_id": external_id,
        "data_hash": "h",
    }
    row.update(extra)
    return row


def _edge(parent, child):
    return {
        "tenant_id": TENANT_ID,
        "data_source_id": "ds-1",
        "parent_entity_id": parent,
        "child_entity_id": child,
        "relationship_type": "has_license",
    }


def test_unique_keys_mirror_model_indexes():
    from models import Entity, EntityAlert, EntityRelationship, SyncBatch

    models = {
        Table.ENTITIES: Entity,
        Table.RELATIONSHIPS: EntityRelationship,
        Table.ALERTS: EntityAlert,
        Table.SYNC_BATCHES: SyncBatch,
    }
    for table, keys in UNIQUE_KEYS.items():
        indexes = {index.name: index for index in models[table].__table__.indexes if index.unique}
        for key in keys:
            assert key.name in indexes
            assert tuple(column.name for column in indexes[key.name].columns) == key.columns


@pytest.mark.asyncio
async def test_duplicate_live_entity_rejected(store):
    await store.insert(Table.ENTITIES, [_entity("user-1")])

    with pytest.raises(StorageError) as excinfo:
        await store.insert(Table.ENTITIES, [_entity("user-2"), _entity("user-1")])

    assert excinfo.value.context["constraint"] == "uq_entities_source_type_external"
    # nothing from the failed statement was written
    assert len(await store.query(Table.ENTITIES)) == 1


@pytest.mark.asyncio
async def test_soft_deleted_entity_does_not_hold_its_key(store, clock):
    [old_id] = await store.insert(Table.ENTITIES, [_entity("user-1")])
    await store.update(Table.ENTITIES, old_id, {"deleted_at": clock.now})

    [new_id] = await store.insert(Table.ENTITIES, [_entity("user-1")])

    assert new_id != old_id
    # reviving the old row would now collide with the new one
    with pytest.raises(StorageError):
        await store.update(Table.ENTITIES, old_id, {"deleted_at": None})
    assert (await store.get(Table.ENTITIES, old_id)).deleted_at == clock.now


@pytest.mark.asyncio
async def test_ignore_conflicts_returns_only_inserted_ids(store):
    [first] = await store.insert(Table.RELATIONSHIPS, [_edge("a", "b")])

    inserted = await store.insert(
        Table.RELATIONSHIPS,
        [_edge("a", "b"), _edge("a", "c"), _edge("a", "c")],
        ignore_conflicts=True,
    )

    assert len(inserted) == 1
    assert first not in inserted
    assert len(await store.query(Table.RELATIONSHIPS)) == 2


@pytest.mark.asyncio
async def test_claim_that_would_break_a_key_raises(store):
    ids = await store.insert(Table.ENTITIES, [_entity("user-1"), _entity("user-2")])

    with pytest.raises(StorageError):
        await store.claim(Table.ENTITIES, ids[1], {"external_id": "user-2"}, {"external_id": "user-1"})

    assert (await store.get(Table.ENTITIES, ids[1])).external_id == "user-2"


@pytest.mark.asyncio
async def test_concurrent_completion_claims_have_one_winner(context, clock, m365_source):
    store = YieldingStore(clock=clock)
    ledger = SyncRunLedger(replace(context, store=store))
    event = _linked(m365_source, "policies")

    results = await asyncio.gather(
        ledger.claim_completion("linked", "microsoft-365-mfa", event),
        ledger.claim_completion("linked", "microsoft-365-mfa", event),
    )

    assert sorted(results) == [False, True]
    markers = await store.query(Table.SYNC_BATCHES, {"stage": "linked:done:microsoft-365-mfa"})
    assert len(markers) == 1
