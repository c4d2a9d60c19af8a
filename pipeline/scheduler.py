"""
Scheduler: polls the Job Store and dispatches due jobs onto the bus.

Runs on APScheduler's AsyncIOScheduler. Each tick:
1. Fails jobs stuck in running past the timeout (crashed workers)
2. Loads due jobs ordered by priority, then scheduled time
3. Skips jobs of inactive data sources and tenants at their concurrency limit
4. Claims each job and publishes "<integrationId>.sync.<entityType>"

Several scheduler processes may poll the same table; the compare-and-set
claim guarantees a job is dispatched by exactly one of them.
"""

from datetime import timedelta, timezone
from typing import Optional
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from core.context import PipelineContext
from core.exceptions import (
    DataSourceInactiveError,
    DataSourceNotFoundError,
    InvalidActionError,
    UnsupportedEntityTypeError,
)
from models.base import JobStatus
from pipeline.jobs import JobStore, parse_timestamp, sync_action
from schemas.events import SyncEvent
from schemas.records import JobRecord
from storage.base import Table

logger = logging.getLogger(__name__)


class SyncScheduler:
    def __init__(self, context: PipelineContext):
        self.context = context
        self.settings = context.settings
        self.store = context.store
        self.bus = context.bus
        self.jobs = JobStore(context)
        self.scheduler = AsyncIOScheduler(timezone=timezone.utc)

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def start(self):
        """Start polling; must be called from inside the running event loop"""
        self.scheduler.add_job(
            self.poll_jobs,
            trigger=IntervalTrigger(seconds=self.settings.SCHEDULER_POLL_SECONDS),
            id="poll_jobs",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        if self.settings.SCHEDULER_BOOTSTRAP_ON_START:
            # no trigger: run once, now
            self.scheduler.add_job(self.bootstrap, id="bootstrap", replace_existing=True)
        self.scheduler.start()
        logger.info(f"Sync scheduler started, polling every {self.settings.SCHEDULER_POLL_SECONDS}s")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Sync scheduler stopped")

    @property
    def running(self) -> bool:
        return self.scheduler.running

    # ========================================================================
    # Polling and dispatch
    # ========================================================================

    async def poll_jobs(self) -> int:
        """One scheduler tick. Returns the number of jobs dispatched."""
        now = self.context.now()
        await self.reap_stale_jobs()

        due = await self.jobs.due_jobs(now)
        if not due:
            logger.debug("No due jobs")
            return 0

        source_ids = sorted({job.data_source_id for job in due if job.data_source_id})
        sources = await self.store.query(Table.DATA_SOURCES, {"id": ("in", source_ids)})
        active_sources = {source.id for source in sources if source.is_active}

        running = dict(await self.jobs.running_counts_by_tenant())
        limit = self.settings.TENANT_CONCURRENT_JOB_LIMIT

        dispatched = 0
        skipped = 0
        for job in due:
            if job.data_source_id and job.data_source_id not in active_sources:
                skipped += 1
                continue
            if running.get(job.tenant_id, 0) >= limit:
                logger.debug(f"Tenant {job.tenant_id} at concurrency limit ({limit}), deferring job {job.id}")
                skipped += 1
                continue
            if await self.process_job(job):
                dispatched += 1
                running[job.tenant_id] = running.get(job.tenant_id, 0) + 1

        logger.info(f"Poll: {len(due)} due, {dispatched} dispatched, {skipped} deferred")
        return dispatched

    async def process_job(self, job: JobRecord) -> bool:
        """Claim one job and publish its sync event."""
        now = self.context.now()
        if not await self.jobs.claim_job(job, now):
            logger.info(f"Job {job.id} already claimed elsewhere, skipping")
            return False
        job = job.model_copy(update={"status": JobStatus.RUNNING.value, "started_at": now, "next_retry_at": None})

        entity_type = job.entity_type
        if entity_type is None:
            await self.jobs.fail_job(
                job,
                InvalidActionError(f"Invalid action '{job.action}'", context={"job_id": job.id}),
            )
            return False
        if not job.data_source_id:
            await self.jobs.fail_job(
                job,
                DataSourceNotFoundError("Job has no data source", context={"job_id": job.id}),
            )
            return False

        event = SyncEvent(
            tenant_id=job.tenant_id,
            integration_id=job.integration_id,
            integration_type=job.integration_id,
            data_source_id=job.data_source_id,
            entity_type=entity_type,
            job_id=job.id,
            job=job,
        )
        try:
            await self.bus.publish_event(event)
        except Exception as e:
            logger.error(f"Failed to publish {event.topic} for job {job.id}: {e}")
            await self.jobs.fail_job(job, e)
            return False

        logger.info(f"Dispatched job {job.id} to {event.topic} (priority {job.priority}, attempt {job.attempts + 1})")
        return True

    async def reap_stale_jobs(self) -> int:
        """Fail jobs whose worker disappeared mid-run so they get retried."""
        stale = await self.jobs.stale_running_jobs(self.context.now())
        for job in stale:
            await self.jobs.fail_job(job, f"Job timed out after {self.settings.JOB_RUNNING_TIMEOUT_SECONDS}s in running")
        if stale:
            logger.warning(f"Reaped {len(stale)} stale running jobs")
        return len(stale)

    # ========================================================================
    # Job creation
    # ========================================================================

    async def bootstrap(self) -> int:
        """
        Make sure every active data source has a job for each global entity
        type of its integration. Runs at start-up; safe to run repeatedly.
        """
        now = self.context.now()
        sources = await self.store.query(
            Table.DATA_SOURCES,
            {"status": "active", "deleted_at": None},
        )

        created = 0
        for source in sources:
            spec = self.context.registry.get(source.integration_id)
            if spec is None:
                logger.warning(f"Data source {source.id} uses unknown integration {source.integration_id}")
                continue

            for type_config in spec.supported_types:
                if not type_config.is_global:
                    continue
                action = sync_action(type_config.entity_type)
                if await self.jobs.has_open_job(source.id, action):
                    continue

                scheduled_at = now
                last_sync = parse_timestamp((source.extra_metadata or {}).get(action))
                if last_sync is not None:
                    scheduled_at = max(now, last_sync + timedelta(minutes=type_config.rate_minutes))

                await self.jobs.create_job(
                    tenant_id=source.tenant_id,
                    integration_id=source.integration_id,
                    data_source_id=source.id,
                    entity_type=type_config.entity_type,
                    priority=type_config.priority,
                    scheduled_at=scheduled_at,
                    created_by="bootstrap",
                )
                created += 1

        logger.info(f"Bootstrap created {created} jobs for {len(sources)} active data sources")
        return created

    async def trigger_sync(self, data_source_id: str, entity_type: str, priority: Optional[int] = None) -> str:
        """Queue an immediate run for one data source and entity type."""
        source = await self.store.get(Table.DATA_SOURCES, data_source_id)
        if source is None:
            raise DataSourceNotFoundError("Data source not found", context={"data_source_id": data_source_id})
        if not source.is_active:
            raise DataSourceInactiveError("Data source is inactive", context={"data_source_id": data_source_id})

        spec = self.context.registry.get(source.integration_id)
        if spec is None or not spec.supports(entity_type):
            raise UnsupportedEntityTypeError(
                f"{source.integration_id} does not sync {entity_type}",
                context={"integration_id": source.integration_id, "entity_type": entity_type},
            )

        type_config = spec.type_config(entity_type)
        return await self.jobs.create_job(
            tenant_id=source.tenant_id,
            integration_id=source.integration_id,
            data_source_id=source.id,
            entity_type=entity_type,
            priority=type_config.priority if priority is None else priority,
            created_by="manual",
        )
