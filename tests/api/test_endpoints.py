"""
API endpoint tests
"""

import httpx
import pytest
import pytest_asyncio
from datetime import timedelta

from api.dependencies import get_context, get_runner
from api.main import app
from models.base import AlertStatus, JobStatus
from pipeline.jobs import JobStore
from pipeline.processor import Processor
from storage.base import Table

from conftest import TENANT_ID, m365_user


@pytest_asyncio.fixture
async def client(context):
    """ASGI client against the app with the test pipeline context"""
    app.dependency_overrides[get_context] = lambda: context
    app.dependency_overrides[get_runner] = lambda: None

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as test_client:
        yield test_client

    app.dependency_overrides.clear()


async def _jobs(context, source, count):
    jobs = JobStore(context)
    ids = []
    for i in range(count):
        ids.append(await jobs.create_job(
            tenant_id=source.tenant_id,
            integration_id=source.integration_id,
            data_source_id=source.id,
            entity_type="identities",
            scheduled_at=context.now() + timedelta(minutes=i),
        ))
    return ids


@pytest.mark.asyncio
async def test_root(client):
    response = await client.get("/")

    assert response.status_code == 200
    assert response.json()["endpoints"]["jobs"] == "/jobs"


@pytest.mark.asyncio
async def test_health_reports_database_and_jobs(client, context, m365_source):
    await _jobs(context, m365_source, 2)

    response = await client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["database_connected"] is True
    assert data["scheduler_running"] is False
    assert data["jobs_by_status"] == {"pending": 2}


@pytest.mark.asyncio
async def test_health_degraded_by_invalid_jobs(client, context, store, m365_source):
    [job_id] = await _jobs(context, m365_source, 1)
    await store.update(Table.SCHEDULED_JOBS, job_id, {"status": JobStatus.INVALID.value})

    response = await client.get("/health")

    assert response.json()["status"] == "degraded"


@pytest.mark.asyncio
async def test_list_jobs_paginates_newest_first(client, context, m365_source):
    ids = await _jobs(context, m365_source, 3)

    first = (await client.get("/jobs", params={"page_size": 2})).json()
    second = (await client.get("/jobs", params={"page_size": 2, "page": 2})).json()

    assert first["total"] == 3
    assert [job["id"] for job in first["items"]] == [ids[2], ids[1]]
    assert [job["id"] for job in second["items"]] == [ids[0]]
    assert first["items"][0]["action"] == "sync.identities"
    assert first["items"][0]["status"] == "pending"


@pytest.mark.asyncio
async def test_list_jobs_filters(client, context, store, m365_source, make_data_source):
    other = await make_data_source("sophos-partner", tenant_id="tenant-2")
    ids = await _jobs(context, m365_source, 2)
    await _jobs(context, other, 1)
    await store.update(Table.SCHEDULED_JOBS, ids[0], {"status": JobStatus.FAILED.value})

    by_status = (await client.get("/jobs", params={"status": "failed"})).json()
    by_tenant = (await client.get("/jobs", params={"tenant_id": "tenant-2"})).json()
    by_source = (await client.get("/jobs", params={"data_source_id": m365_source.id})).json()

    assert [job["id"] for job in by_status["items"]] == [ids[0]]
    assert by_tenant["total"] == 1
    assert by_source["total"] == 2


@pytest.mark.asyncio
async def test_invalid_status_filter_rejected(client):
    response = await client.get("/jobs", params={"status": "sleeping"})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_get_job(client, context, m365_source):
    [job_id] = await _jobs(context, m365_source, 1)

    found = await client.get(f"/jobs/{job_id}")
    missing = await client.get("/jobs/does-not-exist")

    assert found.status_code == 200
    assert found.json()["data_source_id"] == m365_source.id
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_trigger_sync_queues_job(client, store, m365_source):
    response = await client.post(f"/data-sources/{m365_source.id}/sync", json={"entity_type": "groups"})

    assert response.status_code == 202
    body = response.json()
    assert body["action"] == "sync.groups"
    job = await store.get(Table.SCHEDULED_JOBS, body["job_id"])
    assert job.status == JobStatus.PENDING.value
    assert job.created_by == "manual"


@pytest.mark.asyncio
async def test_trigger_sync_errors(client, m365_source):
    unsupported = await client.post(f"/data-sources/{m365_source.id}/sync", json={"entity_type": "firewalls"})
    missing = await client.post("/data-sources/nope/sync", json={"entity_type": "identities"})

    assert unsupported.status_code == 422
    assert unsupported.json()["detail"]["retryable"] is False
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_api_key_enforced_when_configured(client, settings):
    settings.API_KEY = "secret"

    assert (await client.get("/jobs")).status_code == 401
    assert (await client.get("/jobs", headers={"X-API-Key": "secret"})).status_code == 200
    # health stays open for probes
    assert (await client.get("/health")).status_code == 200


@pytest.mark.asyncio
async def test_stats(client, context, store, m365_source):
    result = await Processor(context).process_batch(_fetched(m365_source, [m365_user(i) for i in range(3)]))
    await store.update(Table.ENTITIES, result.entity_ids[0], {"deleted_at": context.now()})
    await store.update(Table.ENTITIES, result.entity_ids[1], {"state": "warn"})
    await store.insert(Table.ALERTS, [{
        "tenant_id": TENANT_ID,
        "data_source_id": m365_source.id,
        "entity_id": result.entity_ids[1],
        "alert_type": "stale-user",
        "severity": "medium",
        "message": "stale",
        "fingerprint": f"stale-user:{result.entity_ids[1]}",
        "status": AlertStatus.ACTIVE.value,
    }])

    response = await client.get("/stats", params={"tenant_id": TENANT_ID})

    data = response.json()
    assert data["entities_by_type"] == {"identities": 2}
    assert data["entities_by_state"] == {"normal": 1, "warn": 1}
    assert data["active_alerts_by_type"] == {"stale-user": 1}
    assert data["data_sources_by_sync_status"] == {"idle": 1}


@pytest.mark.asyncio
async def test_request_id_is_echoed(client):
    response = await client.get("/", headers={"X-Request-ID": "req_fixed"})

    assert response.headers["X-Request-ID"] == "req_fixed"


def _fetched(source, records):
    from schemas.events import FetchedEvent, SyncMetadata

    return FetchedEvent(
        tenant_id=source.tenant_id,
        integration_id=source.integration_id,
        integration_type=source.integration_id,
        data_source_id=source.id,
        entity_type="identities",
        stage="fetched",
        sync_metadata=SyncMetadata(sync_id="run-1", batch_number=1, is_final_batch=True),
        data=records,
    )
