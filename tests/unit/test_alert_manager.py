"""
Alert Manager tests: reconciliation and entity state
"""

import asyncio
import pytest
from dataclasses import replace

from core.exceptions import StorageError
from models.base import AlertStatus, EntityState
from pipeline.analyzers.alert_manager import AlertManager, entity_state
from schemas.events import AnalysisEvent, Finding
from schemas.records import AlertRecord
from storage.base import Table

from conftest import TENANT_ID, YieldingStore, m365_user
from test_linker import _persist


def _analysis(source, findings, analyzed, scope="full"):
    return AnalysisEvent(
        tenant_id=TENANT_ID,
        integration_id=source.integration_id,
        integration_type=source.integration_id,
        data_source_id=source.id,
        entity_type="identities",
        analysis_type="stale-users",
        scope=scope,
        alert_types=["stale-user"],
        analyzed_entity_ids=list(analyzed),
        findings=findings,
    )


def _finding(entity_id, severity="medium"):
    return Finding(entity_id=entity_id, alert_type="stale-user", severity=severity, message="stale")


async def _alerts(store, source):
    return {a.entity_id: a for a in await store.query(Table.ALERTS, {"data_source_id": source.id})}


@pytest.fixture
def manager(context):
    return AlertManager(context)


@pytest.mark.asyncio
async def test_findings_create_alerts_and_set_state(context, store, manager, m365_source):
    ids = (await _persist(context, m365_source, "identities", [m365_user(i) for i in range(3)])).entity_ids

    await manager.handle(_analysis(m365_source, [_finding(ids[0], "high"), _finding(ids[1], "low")], ids))

    alerts = await _alerts(store, m365_source)
    assert set(alerts) == {ids[0], ids[1]}
    assert alerts[ids[0]].fingerprint == f"stale-user:{ids[0]}"
    assert alerts[ids[0]].status == AlertStatus.ACTIVE.value

    states = {e.id: e.state for e in await store.query(Table.ENTITIES)}
    assert states[ids[0]] == EntityState.CRITICAL.value
    assert states[ids[1]] == EntityState.LOW.value
    assert states[ids[2]] == EntityState.NORMAL.value


@pytest.mark.asyncio
async def test_repeated_finding_refreshes_existing_alert(context, store, clock, manager, m365_source):
    ids = (await _persist(context, m365_source, "identities", [m365_user(1)])).entity_ids
    await manager.handle(_analysis(m365_source, [_finding(ids[0], "low")], ids))

    clock.advance(hours=1)
    await manager.handle(_analysis(m365_source, [_finding(ids[0], "high")], ids))

    [alert] = await store.query(Table.ALERTS)
    assert alert.severity == "high"
    assert alert.last_seen_at == clock.now
    assert (await store.get(Table.ENTITIES, ids[0])).state == EntityState.CRITICAL.value


@pytest.mark.asyncio
async def test_missing_finding_resolves_alert(context, store, clock, manager, m365_source):
    ids = (await _persist(context, m365_source, "identities", [m365_user(1), m365_user(2)])).entity_ids
    await manager.handle(_analysis(m365_source, [_finding(ids[0]), _finding(ids[1])], ids))

    await manager.handle(_analysis(m365_source, [_finding(ids[1])], ids))

    alerts = await _alerts(store, m365_source)
    assert alerts[ids[0]].status == AlertStatus.RESOLVED.value
    assert alerts[ids[0]].resolved_at == clock.now
    assert alerts[ids[1]].status == AlertStatus.ACTIVE.value
    assert (await store.get(Table.ENTITIES, ids[0])).state == EntityState.NORMAL.value


@pytest.mark.asyncio
async def test_resolved_alert_is_reopened_not_duplicated(context, store, manager, m365_source):
    ids = (await _persist(context, m365_source, "identities", [m365_user(1)])).entity_ids
    await manager.handle(_analysis(m365_source, [_finding(ids[0])], ids))
    await manager.handle(_analysis(m365_source, [], ids))

    await manager.handle(_analysis(m365_source, [_finding(ids[0])], ids))

    [alert] = await store.query(Table.ALERTS)
    assert alert.status == AlertStatus.ACTIVE.value
    assert alert.resolved_at is None


@pytest.mark.asyncio
async def test_incremental_scope_only_resolves_analyzed_entities(context, store, manager, m365_source):
    ids = (await _persist(context, m365_source, "identities", [m365_user(i) for i in range(3)])).entity_ids
    await manager.handle(_analysis(m365_source, [_finding(i) for i in ids], ids))

    # only ids[0] was re-analyzed and it is no longer stale
    await manager.handle(_analysis(m365_source, [], [ids[0]], scope="incremental"))

    alerts = await _alerts(store, m365_source)
    assert alerts[ids[0]].status == AlertStatus.RESOLVED.value
    assert alerts[ids[1]].status == AlertStatus.ACTIVE.value
    assert alerts[ids[2]].status == AlertStatus.ACTIVE.value


@pytest.mark.asyncio
async def test_concurrent_reconciles_keep_one_active_alert(context, clock, m365_source):
    store = YieldingStore(clock=clock)
    context = replace(context, store=store)
    ids = (await _persist(context, m365_source, "identities", [m365_user(1)])).entity_ids

    results = await asyncio.gather(
        AlertManager(context).reconcile(_analysis(m365_source, [_finding(ids[0], "low")], ids)),
        AlertManager(context).reconcile(_analysis(m365_source, [_finding(ids[0], "high")], ids)),
    )

    assert sorted(created for created, _, _, _ in results) == [0, 1]
    [alert] = await store.query(Table.ALERTS)
    assert alert.status == AlertStatus.ACTIVE.value
    # the reconcile that lost the insert refreshed the winner's row
    assert alert.severity == "high"

    await AlertManager(context).handle(_analysis(m365_source, [], ids))

    assert await store.query(Table.ALERTS, {"status": AlertStatus.ACTIVE.value}) == []
    assert (await store.get(Table.ENTITIES, ids[0])).state == EntityState.NORMAL.value


@pytest.mark.asyncio
async def test_second_active_row_for_a_fingerprint_is_rejected(context, store, manager, m365_source):
    ids = (await _persist(context, m365_source, "identities", [m365_user(1)])).entity_ids
    await manager.handle(_analysis(m365_source, [_finding(ids[0])], ids))
    [existing] = await store.query(Table.ALERTS)

    with pytest.raises(StorageError):
        await store.insert(Table.ALERTS, [existing.model_dump(exclude={"id", "created_at", "updated_at"})])

    # a resolved row does not hold the fingerprint
    await manager.handle(_analysis(m365_source, [], ids))
    [reopened_id] = await store.insert(Table.ALERTS, [existing.model_dump(exclude={"id", "created_at", "updated_at"})])
    assert (await store.get(Table.ALERTS, reopened_id)).status == AlertStatus.ACTIVE.value


@pytest.mark.asyncio
async def test_other_alert_types_left_alone(context, store, manager, m365_source):
    ids = (await _persist(context, m365_source, "identities", [m365_user(1)])).entity_ids
    await store.insert(Table.ALERTS, [{
        "tenant_id": TENANT_ID,
        "data_source_id": m365_source.id,
        "entity_id": ids[0],
        "alert_type": "mfa-not-enforced",
        "severity": "medium",
        "message": "no mfa",
        "fingerprint": f"mfa-not-enforced:{ids[0]}",
        "status": AlertStatus.ACTIVE.value,
    }])

    await manager.handle(_analysis(m365_source, [], ids))

    [alert] = await store.query(Table.ALERTS)
    assert alert.status == AlertStatus.ACTIVE.value


@pytest.mark.asyncio
async def test_alert_failures_do_not_fail_jobs(context, store, bus, manager, m365_source):
    from pipeline.jobs import JobStore
    from models.base import JobStatus

    jobs = JobStore(context)
    job_id = await jobs.create_job(
        tenant_id=TENANT_ID, integration_id="microsoft-365", data_source_id=m365_source.id, entity_type="identities"
    )
    event = _analysis(m365_source, [], []).model_copy(update={"job_id": job_id})

    async def broken(*args, **kwargs):
        raise RuntimeError("alerts table unavailable")

    manager.reconcile = broken
    await manager.on_message(event.to_message())

    assert (await jobs.get_job(job_id)).status == JobStatus.PENDING.value
    [failed] = bus.published("microsoft-365.failed.identities")
    assert failed["failedAt"] == "alert_manager"


def _alert(severity):
    return AlertRecord(
        id="a", tenant_id=TENANT_ID, data_source_id="ds", entity_id="e",
        alert_type="t", severity=severity, message="m", fingerprint="t:e",
    )


def test_entity_state_takes_worst_alert():
    assert entity_state([]) == EntityState.NORMAL.value
    assert entity_state([_alert("low")]) == EntityState.LOW.value
    assert entity_state([_alert("low"), _alert("medium")]) == EntityState.WARN.value
    assert entity_state([_alert("medium"), _alert("critical")]) == EntityState.CRITICAL.value
    assert entity_state([_alert("high")]) == EntityState.CRITICAL.value
