"""
Adapter: turns one sync job into one fetched page.

The driver (SyncAdapter) is shared by every integration. What differs per
integration is a single step, fetching one page for an entity type, which
an IntegrationAdapter strategy provides.

Per job the driver:
1. Validates the entity type and loads the data source
2. Reads cursor / syncId / batchNumber from the job payload, starting a
   new run (fresh syncId, stamped on the data source) when there is none
3. Fetches one page through the integration's connector
4. Publishes "<integrationId>.fetched.<entityType>" with syncMetadata
5. Schedules the continuation job (more pages) or closes the run
   (final page), then completes the job
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional
import logging

from core.context import PipelineContext
from core.exceptions import (
    DataSourceInactiveError,
    DataSourceNotFoundError,
    UnsupportedEntityTypeError,
)
from models.base import JobStatus, SyncStatus, new_id
from pipeline.connectors.base import Connector, Page
from pipeline.connectors.http import CircuitBreaker, Endpoint, HTTPConnector
from pipeline.stage import PipelineStage
from schemas.events import STAGE_FETCHED, FetchedEvent, SyncEvent, SyncMetadata
from schemas.records import DataSourceRecord, JobPayload, JobRecord
from storage.base import Table

logger = logging.getLogger(__name__)


class IntegrationAdapter(ABC):
    """Per-integration strategy: how to get one page of one entity type."""

    integration_id: str = ""

    def __init__(self, context: PipelineContext):
        self.context = context
        self.settings = context.settings

    def supports(self, entity_type: str) -> bool:
        spec = self.context.registry.get(self.integration_id)
        return spec is not None and spec.supports(entity_type)

    @abstractmethod
    def build_connector(self, data_source: DataSourceRecord, entity_type: str) -> Connector:
        """Create the connector for one data source and entity type."""

    def connector_for(self, data_source: DataSourceRecord, entity_type: str) -> Connector:
        if self.context.connector_factory is not None:
            return self.context.connector_factory(data_source, entity_type)
        return self.build_connector(data_source, entity_type)

    async def fetch_page(self, data_source: DataSourceRecord, entity_type: str, cursor: Optional[str]) -> Page:
        connector = self.connector_for(data_source, entity_type)
        try:
            return await connector.fetch(cursor)
        finally:
            await connector.close()


class HTTPIntegrationAdapter(IntegrationAdapter):
    """
    Strategy for integrations reachable over cursor-paginated REST.

    Subclasses declare ENDPOINTS and may override base_url / headers to
    read their data source config.
    """

    ENDPOINTS: Dict[str, Endpoint] = {}
    DEFAULT_BASE_URL: str = ""

    def __init__(self, context: PipelineContext):
        super().__init__(context)
        # shared per data source so failures accumulate across jobs
        self._breakers: Dict[str, CircuitBreaker] = {}

    def supports(self, entity_type: str) -> bool:
        return super().supports(entity_type) and entity_type in self.ENDPOINTS

    def base_url(self, data_source: DataSourceRecord) -> str:
        return data_source.config.get("base_url") or self.DEFAULT_BASE_URL

    def headers(self, data_source: DataSourceRecord) -> Dict[str, str]:
        return {}

    def breaker(self, data_source: DataSourceRecord) -> CircuitBreaker:
        if data_source.id not in self._breakers:
            self._breakers[data_source.id] = CircuitBreaker(f"{self.integration_id}:{data_source.id}")
        return self._breakers[data_source.id]

    def build_connector(self, data_source: DataSourceRecord, entity_type: str) -> Connector:
        return HTTPConnector(
            base_url=self.base_url(data_source),
            endpoint=self.ENDPOINTS[entity_type],
            api_token=data_source.config.get("api_token"),
            headers=self.headers(data_source),
            name=f"{self.integration_id}:{data_source.id}:{entity_type}",
            max_retries=self.settings.CONNECTOR_MAX_RETRIES,
            timeout=self.settings.CONNECTOR_TIMEOUT_SECONDS,
            circuit_breaker=self.breaker(data_source),
        )


class SyncAdapter(PipelineStage):
    stage_name = "adapter"
    event_cls = SyncEvent

    def __init__(self, context: PipelineContext, integration: IntegrationAdapter):
        super().__init__(context)
        self.integration = integration

    @property
    def name(self) -> str:
        return f"SyncAdapter[{self.integration.integration_id}]"

    def topics(self) -> List[str]:
        return [f"{self.integration.integration_id}.sync.*"]

    async def handle(self, event: SyncEvent) -> None:
        job = await self.jobs.get_job(event.job.id) or event.job
        if job.status != JobStatus.RUNNING.value:
            # redelivered after another worker already finished it
            logger.info(f"Job {job.id} is {job.status}, ignoring sync event {event.event_id}")
            return

        entity_type = event.entity_type
        if not self.integration.supports(entity_type):
            await self.jobs.fail_job(
                job,
                UnsupportedEntityTypeError(
                    f"{self.integration.integration_id} does not sync {entity_type}",
                    context={"integration_id": self.integration.integration_id, "entity_type": entity_type},
                ),
            )
            return

        data_source = await self.store.get(Table.DATA_SOURCES, event.data_source_id)
        if data_source is None:
            await self.jobs.fail_job(
                job,
                DataSourceNotFoundError("Data source not found", context={"data_source_id": event.data_source_id}),
            )
            return
        if not data_source.is_active:
            await self.jobs.fail_job(
                job,
                DataSourceInactiveError("Data source is inactive", context={"data_source_id": data_source.id}),
            )
            return

        await self.fetch_batch(event, job, data_source)

    async def fetch_batch(self, event: SyncEvent, job: JobRecord, data_source: DataSourceRecord) -> None:
        now = self.context.now()
        entity_type = event.entity_type
        payload = job.pagination

        sync_id = payload.sync_id
        started_at = payload.started_at
        batch_number = payload.batch_number
        if sync_id is None:
            sync_id = new_id()
            started_at = now
            batch_number = 1
            await self.store.update(
                Table.DATA_SOURCES,
                data_source.id,
                {"current_sync_id": sync_id, "sync_status": SyncStatus.SYNCING.value},
            )
            logger.info(f"Starting sync run {sync_id} for {data_source.id}/{entity_type}")

        try:
            page = await self.integration.fetch_page(data_source, entity_type, payload.cursor)
        except Exception as e:
            logger.error(
                f"Fetch failed for {data_source.id}/{entity_type} batch {batch_number}: {e}",
                extra={"error_context": {"job_id": job.id, "sync_id": sync_id, "cursor": payload.cursor}},
            )
            status = await self.jobs.fail_job(job, e)
            if status == JobStatus.INVALID.value:
                await self._close_run(data_source, sync_id)
            return

        is_final = not (page.has_more and page.next_cursor)
        meta = SyncMetadata(
            sync_id=sync_id,
            batch_number=batch_number,
            is_final_batch=is_final,
            cursor=None if is_final else page.next_cursor,
            started_at=started_at,
        )
        fetched = event.derive(
            FetchedEvent,
            STAGE_FETCHED,
            sync_metadata=meta,
            data=page.records,
            total=len(page.records),
            has_more=not is_final,
        )
        try:
            await self.bus.publish_event(fetched)
        except Exception as e:
            logger.error(f"Failed to publish {fetched.topic} for job {job.id}: {e}")
            await self.jobs.fail_job(job, e)
            return

        total_processed = payload.total_processed + len(page.records)
        progress = payload.model_copy(
            update={"sync_id": sync_id, "started_at": started_at, "batch_number": batch_number}
        )

        if not is_final:
            if progress.next_job_id is None:
                progress.next_job_id = await self.jobs.schedule_next_batch(
                    job,
                    cursor=page.next_cursor,
                    sync_id=sync_id,
                    batch_number=batch_number + 1,
                    total_processed=total_processed,
                    started_at=started_at,
                )
            else:
                logger.info(f"Continuation {progress.next_job_id} already scheduled for job {job.id}")
            if not await self.jobs.complete_job(
                job,
                job_patch={"payload": progress.model_dump(mode="json", exclude_none=True)},
            ):
                await self._keep_progress(job, progress)
                return
            logger.info(
                f"Run {sync_id} batch {batch_number}: {len(page.records)} records "
                f"({total_processed} so far), more pages pending"
            )
            return

        ds_patch = {"last_sync_at": now}
        if data_source.current_sync_id in (None, sync_id):
            ds_patch.update({"current_sync_id": None, "sync_status": SyncStatus.IDLE.value})
        if not await self.jobs.complete_job(
            job,
            data_source=data_source,
            action=job.action,
            job_patch={"payload": progress.model_dump(mode="json", exclude_none=True)},
            data_source_patch=ds_patch,
        ):
            # failed downstream meanwhile: the run stays open until the retry lands
            await self._keep_progress(job, progress)
            return
        logger.info(
            f"Run {sync_id} for {data_source.id}/{entity_type} finished: "
            f"{batch_number} batches, {total_processed} records"
        )

    async def _keep_progress(self, job: JobRecord, progress: JobPayload) -> None:
        """Persist the run position on a job that was failed before it could complete."""
        await self.store.update(
            Table.SCHEDULED_JOBS,
            job.id,
            {"payload": progress.model_dump(mode="json", exclude_none=True)},
        )

    async def _close_run(self, data_source: DataSourceRecord, sync_id: str) -> None:
        current = await self.store.get(Table.DATA_SOURCES, data_source.id)
        if current is not None and current.current_sync_id == sync_id:
            await self.store.update(
                Table.DATA_SOURCES,
                data_source.id,
                {"current_sync_id": None, "sync_status": SyncStatus.IDLE.value},
            )
