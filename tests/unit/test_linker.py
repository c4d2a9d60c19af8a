"""
Linker tests: relationship matching, idempotence, batched lookups
"""

import pytest
from dataclasses import replace

from pipeline.linkers import LINK_STRATEGIES, Linker
from pipeline.processor import Processor
from schemas.events import ProcessedEvent, SyncMetadata
from storage.base import Table
from storage.memory import InMemoryStore

from conftest import TENANT_ID, m365_group, m365_role, m365_sku, m365_user, sophos_firewall, sophos_license
from test_processor import _fetched


async def _persist(context, source, entity_type, records):
    return await Processor(context).process_batch(_fetched(source, records, entity_type=entity_type))


def _processed(source, entity_type, entity_ids=(), changed=()):
    return ProcessedEvent(
        tenant_id=TENANT_ID,
        integration_id=source.integration_id,
        integration_type=source.integration_id,
        data_source_id=source.id,
        entity_type=entity_type,
        stage="processed",
        sync_metadata=SyncMetadata(sync_id="run-1", batch_number=1, is_final_batch=True),
        entity_ids=list(entity_ids),
        changed_entity_ids=list(changed),
    )


def _linker(context, integration_id):
    return Linker(context, integration_id, LINK_STRATEGIES[integration_id])


@pytest.mark.asyncio
async def test_firewall_license_matched_by_serial(context, store, sophos_source):
    await _persist(context, sophos_source, "firewalls", [sophos_firewall(1), sophos_firewall(2)])
    await _persist(context, sophos_source, "licenses", [
        sophos_license(1, "SN0001"),
        sophos_license(2, "SN0001"),
        sophos_license(3, "SN9999"),
    ])

    await _linker(context, "sophos-partner").handle(_processed(sophos_source, "licenses"))

    relationships = await store.query(Table.RELATIONSHIPS, {"data_source_id": sophos_source.id})
    assert len(relationships) == 2
    [firewall] = await store.query(Table.ENTITIES, {"external_id": "fw-1"})
    assert {r.parent_entity_id for r in relationships} == {firewall.id}
    assert {r.relationship_type for r in relationships} == {"has_license"}
    assert relationships[0].extra_metadata == {"serial_number": "SN0001"}


@pytest.mark.asyncio
async def test_m365_licenses_and_memberships(context, store, m365_source):
    await _persist(context, m365_source, "identities", [
        m365_user(1, skus=["sku-e3"]),
        m365_user(2, skus=["sku-e3", "sku-visio"]),
        m365_user(3),
    ])
    await _persist(context, m365_source, "licenses", [m365_sku("sku-e3"), m365_sku("sku-visio", "VISIO")])
    await _persist(context, m365_source, "groups", [m365_group(1, ["user-1", "user-3", "user-missing"])])
    await _persist(context, m365_source, "roles", [m365_role(1, ["user-2"])])

    await _linker(context, "microsoft-365").handle(_processed(m365_source, "identities"))

    relationships = await store.query(Table.RELATIONSHIPS, {"data_source_id": m365_source.id})
    by_type = {}
    for relationship in relationships:
        by_type.setdefault(relationship.relationship_type, []).append(relationship)
    assert len(by_type["has_license"]) == 3
    assert len(by_type["member_of"]) == 2
    [has_role] = by_type["has_role"]
    [user_2] = await store.query(Table.ENTITIES, {"external_id": "user-2"})
    assert has_role.parent_entity_id == user_2.id


@pytest.mark.asyncio
async def test_relinking_creates_nothing(context, store, bus, sophos_source):
    await _persist(context, sophos_source, "firewalls", [sophos_firewall(i) for i in range(5)])
    await _persist(context, sophos_source, "licenses", [sophos_license(i, f"SN{i:04d}") for i in range(5)])
    linker = _linker(context, "sophos-partner")

    await linker.handle(_processed(sophos_source, "firewalls"))
    store.reset_stats()
    await linker.handle(_processed(sophos_source, "firewalls"))

    assert store.ops(Table.RELATIONSHIPS, "insert") == 0
    # existing edges come from one batched lookup, not one query per entity
    assert store.ops(Table.RELATIONSHIPS, "query") == 1
    assert len(await store.query(Table.RELATIONSHIPS)) == 5
    second = bus.published("sophos-partner.linked.firewalls")[-1]
    assert "relationshipsCreated" not in second or second["relationshipsCreated"] == []


class StaleRelationshipReadStore(InMemoryStore):
    """Answers relationship lookups as if a concurrent run had not committed yet."""

    async def query(self, table, filters=None, **kwargs):
        if table == Table.RELATIONSHIPS and filters and "parent_entity_id" in filters:
            return []
        return await super().query(table, filters, **kwargs)


@pytest.mark.asyncio
async def test_overlapping_runs_insert_each_edge_once(context, sophos_source, clock):
    store = StaleRelationshipReadStore(clock=clock)
    context = replace(context, store=store)
    await _persist(context, sophos_source, "firewalls", [sophos_firewall(i) for i in range(3)])
    await _persist(context, sophos_source, "licenses", [sophos_license(i, f"SN{i:04d}") for i in range(3)])
    linker = _linker(context, "sophos-partner")

    first = await linker.link(_processed(sophos_source, "firewalls"), LINK_STRATEGIES["sophos-partner"])
    second = await linker.link(_processed(sophos_source, "licenses"), LINK_STRATEGIES["sophos-partner"])

    assert len(first) == 3
    assert second == []
    assert len(await store.query(Table.RELATIONSHIPS)) == 3


@pytest.mark.asyncio
async def test_linked_event_forwarded_for_types_without_strategy(context, bus, sophos_source):
    persisted = await _persist(context, sophos_source, "endpoints", [{"id": "ep-1", "hostname": "laptop"}])
    event = _processed(sophos_source, "endpoints", persisted.entity_ids, persisted.changed_entity_ids)

    await _linker(context, "sophos-partner").handle(event)

    [linked] = bus.published("sophos-partner.linked.endpoints")
    assert linked["changedEntityIds"] == persisted.changed_entity_ids
    assert linked["parentEventID"] == event.event_id
    assert linked["syncMetadata"]["syncId"] == "run-1"


@pytest.mark.asyncio
async def test_deleted_entities_are_not_linked(context, store, sophos_source):
    firewalls = await _persist(context, sophos_source, "firewalls", [sophos_firewall(1)])
    await _persist(context, sophos_source, "licenses", [sophos_license(1, "SN0001")])
    await store.update(Table.ENTITIES, firewalls.entity_ids[0], {"deleted_at": context.now()})

    await _linker(context, "sophos-partner").handle(_processed(sophos_source, "licenses"))

    assert await store.query(Table.RELATIONSHIPS) == []


def test_linker_subscribes_to_every_integration_type(context):
    linker = _linker(context, "microsoft-365")
    assert linker.topics() == [
        "microsoft-365.processed.identities",
        "microsoft-365.processed.groups",
        "microsoft-365.processed.licenses",
        "microsoft-365.processed.roles",
        "microsoft-365.processed.policies",
    ]
