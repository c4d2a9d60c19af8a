"""
Job Store: durable scheduled jobs and their state transitions.

Every transition (claim, fail, complete) is exactly one write to the
scheduled_jobs table. Retry policy lives here:

    pending/failed --claim--> running --complete--> completed
                                   \\--fail--> failed (attempts < max, retried after backoff)
                                   \\--fail--> invalid (attempts == max, or non-retryable)
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
import logging

from core.context import PipelineContext
from core.exceptions import is_retryable
from models.base import JobStatus
from schemas.records import DataSourceRecord, JobPayload, JobRecord
from storage.base import Table

logger = logging.getLogger(__name__)

OPEN_STATUSES = [JobStatus.PENDING.value, JobStatus.RUNNING.value, JobStatus.FAILED.value]


def sync_action(entity_type: str) -> str:
    return f"sync.{entity_type}"


def parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    return None


class JobStore:
    """Job lifecycle operations over the store's scheduled_jobs table."""

    def __init__(self, context: PipelineContext):
        self.context = context
        self.store = context.store
        self.settings = context.settings

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        return await self.store.get(Table.SCHEDULED_JOBS, job_id)

    async def due_jobs(self, now: datetime) -> List[JobRecord]:
        """
        Jobs ready to dispatch, highest priority first, then oldest.

        A failed job whose backoff has elapsed is due exactly like a
        pending one. Jobs that used up their attempts never are.
        """
        pending = await self.store.query(
            Table.SCHEDULED_JOBS,
            {"status": JobStatus.PENDING.value, "scheduled_at": ("lte", now)},
        )
        retries = await self.store.query(
            Table.SCHEDULED_JOBS,
            {"status": JobStatus.FAILED.value, "next_retry_at": ("lte", now)},
        )
        due = [job for job in pending + retries if job.attempts < job.attempts_max]
        due.sort(key=lambda job: (-job.priority, job.scheduled_at))
        return due

    async def running_counts_by_tenant(self) -> Dict[str, int]:
        return await self.store.count(
            Table.SCHEDULED_JOBS,
            {"status": JobStatus.RUNNING.value},
            group_by="tenant_id",
        )

    async def stale_running_jobs(self, now: datetime) -> List[JobRecord]:
        cutoff = now - timedelta(seconds=self.settings.JOB_RUNNING_TIMEOUT_SECONDS)
        return await self.store.query(
            Table.SCHEDULED_JOBS,
            {"status": JobStatus.RUNNING.value, "started_at": ("lt", cutoff)},
        )

    async def has_open_job(self, data_source_id: str, action: str, statuses: Optional[List[str]] = None) -> bool:
        jobs = await self.store.query(
            Table.SCHEDULED_JOBS,
            {
                "data_source_id": data_source_id,
                "action": action,
                "status": ("in", statuses or OPEN_STATUSES),
            },
            limit=1,
        )
        return bool(jobs)

    # ========================================================================
    # Writes
    # ========================================================================

    async def create_job(
        self,
        *,
        tenant_id: str,
        integration_id: str,
        data_source_id: str,
        entity_type: str,
        payload: Optional[Dict[str, Any]] = None,
        priority: Optional[int] = None,
        scheduled_at: Optional[datetime] = None,
        attempts_max: Optional[int] = None,
        created_by: str = "manual",
    ) -> str:
        [job_id] = await self.store.insert(
            Table.SCHEDULED_JOBS,
            [{
                "tenant_id": tenant_id,
                "integration_id": integration_id,
                "data_source_id": data_source_id,
                "action": sync_action(entity_type),
                "payload": payload or {},
                "priority": self.settings.JOB_DEFAULT_PRIORITY if priority is None else priority,
                "status": JobStatus.PENDING.value,
                "attempts": 0,
                "attempts_max": attempts_max or self.settings.JOB_ATTEMPTS_MAX,
                "scheduled_at": scheduled_at or self.context.now(),
                "created_by": created_by,
            }],
        )
        logger.info(
            f"Scheduled job {job_id} ({sync_action(entity_type)}) for data source "
            f"{data_source_id} by {created_by}"
        )
        return job_id

    async def claim_job(self, job: JobRecord, now: datetime) -> bool:
        """Atomically move a due job to running; False if someone else claimed it."""
        return await self.store.claim(
            Table.SCHEDULED_JOBS,
            job.id,
            expected={"status": job.status, "attempts": job.attempts},
            patch={"status": JobStatus.RUNNING.value, "started_at": now, "next_retry_at": None},
        )

    async def fail_job(self, job: JobRecord, error: Any, retryable: Optional[bool] = None) -> str:
        """
        Record a failed attempt.

        Returns the resulting status: failed (will be retried after the
        fixed backoff) or invalid (terminal).
        """
        if retryable is None:
            retryable = is_retryable(error) if isinstance(error, Exception) else True

        now = self.context.now()
        attempts = job.attempts + 1
        if not retryable or attempts >= job.attempts_max:
            status = JobStatus.INVALID.value
            next_retry_at = None
        else:
            status = JobStatus.FAILED.value
            next_retry_at = now + timedelta(seconds=self.settings.JOB_RETRY_BACKOFF_SECONDS)

        await self.store.update(
            Table.SCHEDULED_JOBS,
            job.id,
            {
                "status": status,
                "attempts": attempts,
                "next_retry_at": next_retry_at,
                "error": str(error)[:2000],
            },
        )

        if status == JobStatus.INVALID.value:
            logger.error(
                f"Job {job.id} ({job.action}) invalid after {attempts}/{job.attempts_max} attempts: {error}",
                extra={"error_context": {"job_id": job.id, "tenant_id": job.tenant_id, "retryable": retryable}},
            )
        else:
            logger.warning(
                f"Job {job.id} ({job.action}) failed attempt {attempts}/{job.attempts_max}, "
                f"retrying at {next_retry_at.isoformat()}: {error}"
            )
        return status

    async def fail_job_by_id(self, job_id: str, error: Any, retryable: Optional[bool] = None) -> Optional[str]:
        job = await self.get_job(job_id)
        if job is None:
            logger.warning(f"Cannot fail job {job_id}: not found")
            return None
        if job.status == JobStatus.INVALID.value:
            return job.status
        return await self.fail_job(job, error, retryable)

    async def complete_job(
        self,
        job: JobRecord,
        *,
        data_source: Optional[DataSourceRecord] = None,
        action: Optional[str] = None,
        job_patch: Optional[Dict[str, Any]] = None,
        data_source_patch: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Mark the running job completed.

        The transition is a compare-and-set on the running attempt: a stage
        downstream of the adapter may already have failed this job, and
        that failure must stand so the page is fetched again. Returns False
        (and touches nothing else) when the job is no longer this attempt.

        With a data source and action, also stamps the action's completion
        time on the data source and schedules the next recurring run.
        """
        now = self.context.now()
        patch = {"status": JobStatus.COMPLETED.value, "error": None, "next_retry_at": None}
        patch.update(job_patch or {})
        completed = await self.store.claim(
            Table.SCHEDULED_JOBS,
            job.id,
            expected={"status": JobStatus.RUNNING.value, "attempts": job.attempts},
            patch=patch,
        )
        if not completed:
            current = await self.get_job(job.id)
            logger.warning(
                f"Job {job.id} ({job.action}) not completed: it is "
                f"{current.status if current else 'gone'} after attempt {job.attempts + 1}"
            )
            return False

        if data_source is None:
            return True

        ds_patch = dict(data_source_patch or {})
        if action:
            metadata = dict(data_source.extra_metadata or {})
            metadata[action] = now.isoformat()
            ds_patch["extra_metadata"] = metadata
        if ds_patch:
            await self.store.update(Table.DATA_SOURCES, data_source.id, ds_patch)

        if action:
            await self.schedule_next_iteration(job, data_source, action, now)
        return True

    async def schedule_next_batch(
        self,
        job: JobRecord,
        *,
        cursor: str,
        sync_id: str,
        batch_number: int,
        total_processed: int,
        started_at: datetime,
    ) -> str:
        """Continuation job for the next page, boosted so a run finishes before new runs start."""
        payload = JobPayload(
            cursor=cursor,
            sync_id=sync_id,
            batch_number=batch_number,
            total_processed=total_processed,
            started_at=started_at,
        )
        # the boost applies once per run, not once per page
        priority = job.priority
        if job.created_by != "pagination":
            priority += self.settings.PAGINATION_PRIORITY_BOOST
        return await self.create_job(
            tenant_id=job.tenant_id,
            integration_id=job.integration_id,
            data_source_id=job.data_source_id,
            entity_type=job.entity_type,
            payload=payload.model_dump(mode="json", exclude_none=True),
            priority=priority,
            scheduled_at=self.context.now(),
            attempts_max=job.attempts_max,
            created_by="pagination",
        )

    async def schedule_next_iteration(
        self,
        job: JobRecord,
        data_source: DataSourceRecord,
        action: str,
        last_sync_time: datetime,
    ) -> Optional[str]:
        """Recurring run at last_sync_time + the entity type's rate, unless one is queued."""
        entity_type = job.entity_type
        spec = self.context.registry.get(job.integration_id)
        type_config = spec.type_config(entity_type) if spec else None
        if type_config is None:
            logger.warning(f"No schedule configured for {job.integration_id}/{entity_type}, not rescheduling")
            return None

        if await self.has_open_job(data_source.id, action, [JobStatus.PENDING.value]):
            logger.debug(f"Pending {action} job already exists for data source {data_source.id}")
            return None

        return await self.create_job(
            tenant_id=job.tenant_id,
            integration_id=job.integration_id,
            data_source_id=data_source.id,
            entity_type=entity_type,
            priority=type_config.priority,
            scheduled_at=last_sync_time + timedelta(minutes=type_config.rate_minutes),
            created_by="auto-schedule",
        )
