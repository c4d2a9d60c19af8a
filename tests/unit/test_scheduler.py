"""
Scheduler and Job Store tests
"""

import pytest
from datetime import timedelta

from core.exceptions import AuthenticationError, NetworkError
from models.base import DataSourceStatus, JobStatus
from pipeline.jobs import JobStore
from pipeline.scheduler import SyncScheduler
from storage.base import Table

from conftest import TENANT_ID


async def _job(jobs, source, entity_type="identities", **kwargs):
    job_id = await jobs.create_job(
        tenant_id=source.tenant_id,
        integration_id=source.integration_id,
        data_source_id=source.id,
        entity_type=entity_type,
        **kwargs,
    )
    return await jobs.get_job(job_id)


@pytest.mark.asyncio
async def test_due_jobs_ordered_by_priority_then_schedule(context, clock, m365_source):
    jobs = JobStore(context)
    low = await _job(jobs, m365_source, priority=1, scheduled_at=clock.now - timedelta(minutes=10))
    high_late = await _job(jobs, m365_source, priority=9, scheduled_at=clock.now - timedelta(minutes=1))
    high_early = await _job(jobs, m365_source, priority=9, scheduled_at=clock.now - timedelta(minutes=5))
    await _job(jobs, m365_source, priority=9, scheduled_at=clock.now + timedelta(minutes=5))

    due = await jobs.due_jobs(clock.now)

    assert [job.id for job in due] == [high_early.id, high_late.id, low.id]


@pytest.mark.asyncio
async def test_failed_job_is_due_again_after_backoff(context, clock, m365_source):
    jobs = JobStore(context)
    job = await _job(jobs, m365_source)

    status = await jobs.fail_job(job, NetworkError("boom"))
    assert status == JobStatus.FAILED.value

    failed = await jobs.get_job(job.id)
    assert failed.attempts == 1
    assert failed.next_retry_at == clock.now + timedelta(seconds=60)
    assert failed.error is not None
    assert await jobs.due_jobs(clock.now) == []

    clock.advance(seconds=60)
    assert [j.id for j in await jobs.due_jobs(clock.now)] == [job.id]


@pytest.mark.asyncio
async def test_fail_job_goes_invalid_at_attempts_max(context, m365_source):
    jobs = JobStore(context)
    job = await _job(jobs, m365_source, attempts_max=2)

    assert await jobs.fail_job(job, NetworkError("one")) == JobStatus.FAILED.value
    job = await jobs.get_job(job.id)
    assert await jobs.fail_job(job, NetworkError("two")) == JobStatus.INVALID.value

    job = await jobs.get_job(job.id)
    assert job.status == JobStatus.INVALID.value
    assert job.attempts == job.attempts_max == 2
    assert job.next_retry_at is None


@pytest.mark.asyncio
async def test_non_retryable_error_is_terminal_immediately(context, m365_source):
    jobs = JobStore(context)
    job = await _job(jobs, m365_source)

    assert await jobs.fail_job(job, AuthenticationError("bad token")) == JobStatus.INVALID.value
    assert (await jobs.get_job(job.id)).attempts == 1


@pytest.mark.asyncio
async def test_retry_bound_never_exceeds_attempts_max(context, clock, m365_source):
    jobs = JobStore(context)
    job = await _job(jobs, m365_source)

    for _ in range(10):
        for due in await jobs.due_jobs(clock.now):
            assert await jobs.claim_job(due, clock.now)
            await jobs.fail_job(await jobs.get_job(due.id), NetworkError("down"))
        clock.advance(minutes=5)

    job = await jobs.get_job(job.id)
    assert job.status == JobStatus.INVALID.value
    assert job.attempts == context.settings.JOB_ATTEMPTS_MAX


@pytest.mark.asyncio
async def test_claim_is_compare_and_set(context, clock, m365_source):
    jobs = JobStore(context)
    job = await _job(jobs, m365_source)

    assert await jobs.claim_job(job, clock.now) is True
    # a second scheduler holding the same stale snapshot loses
    assert await jobs.claim_job(job, clock.now) is False
    assert (await jobs.get_job(job.id)).status == JobStatus.RUNNING.value


@pytest.mark.asyncio
async def test_two_schedulers_never_double_dispatch(context, bus, m365_source):
    jobs = JobStore(context)
    await _job(jobs, m365_source)
    first, second = SyncScheduler(context), SyncScheduler(context)

    due = await jobs.due_jobs(context.now())
    results = [await first.process_job(due[0]), await second.process_job(due[0])]

    assert results == [True, False]
    assert len(bus.published("*.sync.*")) == 1


@pytest.mark.asyncio
async def test_process_job_publishes_sync_event(context, bus, m365_source):
    jobs = JobStore(context)
    job = await _job(jobs, m365_source)

    assert await SyncScheduler(context).process_job(job)
    await bus.drain()

    [message] = bus.published("microsoft-365.sync.identities")
    assert message["tenantID"] == TENANT_ID
    assert message["dataSourceID"] == m365_source.id
    assert message["jobID"] == job.id
    assert message["job"]["status"] == JobStatus.RUNNING.value
    assert (await jobs.get_job(job.id)).started_at == context.now()


@pytest.mark.asyncio
async def test_invalid_action_fails_job(context, store, clock, m365_source):
    [job_id] = await store.insert(Table.SCHEDULED_JOBS, [{
        "tenant_id": TENANT_ID,
        "integration_id": "microsoft-365",
        "data_source_id": m365_source.id,
        "action": "refresh",
        "scheduled_at": clock.now,
    }])
    scheduler = SyncScheduler(context)

    assert await scheduler.process_job(await store.get(Table.SCHEDULED_JOBS, job_id)) is False

    job = await store.get(Table.SCHEDULED_JOBS, job_id)
    assert job.status == JobStatus.INVALID.value


@pytest.mark.asyncio
async def test_poll_skips_inactive_sources_and_busy_tenants(context, settings, make_data_source, bus):
    settings.TENANT_CONCURRENT_JOB_LIMIT = 1
    jobs = JobStore(context)
    active = await make_data_source()
    inactive = await make_data_source(status=DataSourceStatus.INACTIVE.value)
    await _job(jobs, active, "identities")
    await _job(jobs, active, "groups")
    await _job(jobs, inactive, "identities")

    dispatched = await SyncScheduler(context).poll_jobs()

    assert dispatched == 1
    assert len(bus.published("*.sync.*")) == 1


@pytest.mark.asyncio
async def test_stale_running_jobs_are_reaped(context, clock, m365_source):
    jobs = JobStore(context)
    job = await _job(jobs, m365_source)
    await jobs.claim_job(job, clock.now)

    clock.advance(seconds=context.settings.JOB_RUNNING_TIMEOUT_SECONDS + 1)
    assert await SyncScheduler(context).reap_stale_jobs() == 1

    job = await jobs.get_job(job.id)
    assert job.status == JobStatus.FAILED.value
    assert "timed out" in job.error


async def _running(jobs, clock, source, **kwargs):
    job = await _job(jobs, source, **kwargs)
    assert await jobs.claim_job(job, clock.now)
    return await jobs.get_job(job.id)


@pytest.mark.asyncio
async def test_complete_job_stamps_action_and_schedules_next_iteration(context, store, clock, m365_source):
    jobs = JobStore(context)
    job = await _running(jobs, clock, m365_source)

    assert await jobs.complete_job(job, data_source=m365_source, action=job.action) is True

    assert (await jobs.get_job(job.id)).status == JobStatus.COMPLETED.value
    source = await store.get(Table.DATA_SOURCES, m365_source.id)
    assert source.extra_metadata["sync.identities"] == clock.now.isoformat()

    [next_job] = await store.query(
        Table.SCHEDULED_JOBS, {"status": JobStatus.PENDING.value, "created_by": "auto-schedule"}
    )
    rate = context.registry.get("microsoft-365").type_config("identities").rate_minutes
    assert next_job.scheduled_at == clock.now + timedelta(minutes=rate)

    # a pending iteration already exists, so scheduling again adds nothing
    assert await jobs.schedule_next_iteration(job, m365_source, job.action, clock.now) is None
    assert len(await store.query(Table.SCHEDULED_JOBS, {"created_by": "auto-schedule"})) == 1


@pytest.mark.asyncio
async def test_complete_job_keeps_a_failure_recorded_meanwhile(context, store, clock, m365_source):
    jobs = JobStore(context)
    job = await _running(jobs, clock, m365_source)

    # a downstream stage fails the job while the adapter is still finishing
    await jobs.fail_job_by_id(job.id, NetworkError("processor lost the database"))

    completed = await jobs.complete_job(job, data_source=m365_source, action=job.action)

    assert completed is False
    job = await jobs.get_job(job.id)
    assert job.status == JobStatus.FAILED.value
    assert job.attempts == 1
    assert "processor lost the database" in job.error
    assert job.next_retry_at is not None
    source = await store.get(Table.DATA_SOURCES, m365_source.id)
    assert "sync.identities" not in source.extra_metadata
    assert await store.query(Table.SCHEDULED_JOBS, {"created_by": "auto-schedule"}) == []


@pytest.mark.asyncio
async def test_complete_job_is_one_shot_per_attempt(context, clock, m365_source):
    jobs = JobStore(context)
    job = await _running(jobs, clock, m365_source)

    assert await jobs.complete_job(job) is True
    assert await jobs.complete_job(job) is False


@pytest.mark.asyncio
async def test_bootstrap_creates_one_job_per_global_type(context, store, m365_source):
    scheduler = SyncScheduler(context)

    created = await scheduler.bootstrap()
    assert created == len(context.registry.get("microsoft-365").supported_types)
    # running it again finds the open jobs
    assert await scheduler.bootstrap() == 0

    actions = sorted(job.action for job in await store.query(Table.SCHEDULED_JOBS))
    assert actions == ["sync.groups", "sync.identities", "sync.licenses", "sync.policies", "sync.roles"]


@pytest.mark.asyncio
async def test_bootstrap_respects_rate_window(context, store, clock, make_data_source):
    source = await make_data_source(extra_metadata={"sync.identities": clock.now.isoformat()})

    await SyncScheduler(context).bootstrap()

    [job] = await store.query(Table.SCHEDULED_JOBS, {"action": "sync.identities"})
    rate = context.registry.get("microsoft-365").type_config("identities").rate_minutes
    assert job.data_source_id == source.id
    assert job.scheduled_at == clock.now + timedelta(minutes=rate)


@pytest.mark.asyncio
async def test_trigger_sync_rejects_unsupported_type(context, m365_source):
    from core.exceptions import UnsupportedEntityTypeError

    with pytest.raises(UnsupportedEntityTypeError):
        await SyncScheduler(context).trigger_sync(m365_source.id, "firewalls")


def test_scheduler_is_idle_until_started(context):
    scheduler = SyncScheduler(context)
    assert scheduler.scheduler is not None
    assert scheduler.running is False
