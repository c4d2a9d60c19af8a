"""
Base class for bus-driven pipeline stages.

Every handler runs inside the stage boundary: a failure is logged with
structured context, announced on "<integrationId>.failed.<entityType>",
and, when the event traces back to a job, recorded on that job through
the Job Store so the page is fetched and processed again later.
"""

from abc import ABC, abstractmethod
from typing import List, Type
import logging

from pydantic import ValidationError

from core.context import PipelineContext
from core.exceptions import is_retryable
from pipeline.bus import Subscription
from pipeline.jobs import JobStore
from schemas.events import STAGE_FAILED, FailedEvent, PipelineEvent

logger = logging.getLogger(__name__)


class PipelineStage(ABC):
    stage_name: str = "stage"
    event_cls: Type[PipelineEvent] = PipelineEvent
    # fail the originating job when the handler raises
    fails_job_on_error: bool = True

    def __init__(self, context: PipelineContext):
        self.context = context
        self.settings = context.settings
        self.store = context.store
        self.bus = context.bus
        self.jobs = JobStore(context)
        self.subscriptions: List[Subscription] = []

    @abstractmethod
    def topics(self) -> List[str]:
        """Subscription patterns for this stage."""

    @abstractmethod
    async def handle(self, event: PipelineEvent) -> None:
        """Process one event."""

    @property
    def name(self) -> str:
        return self.__class__.__name__

    def start(self) -> None:
        for pattern in self.topics():
            self.subscriptions.append(
                self.bus.subscribe(
                    pattern,
                    self.on_message,
                    name=f"{self.name}:{pattern}",
                    concurrency=self.settings.STAGE_CONCURRENCY,
                )
            )

    def stop(self) -> None:
        for subscription in self.subscriptions:
            self.bus.unsubscribe(subscription)
        self.subscriptions = []

    async def on_message(self, message: dict) -> None:
        try:
            event = self.event_cls.model_validate(message)
        except ValidationError as e:
            logger.error(f"{self.name} dropped malformed message: {e}")
            return

        try:
            await self.handle(event)
        except Exception as e:
            await self.on_failure(event, e)

    async def on_failure(self, event: PipelineEvent, error: Exception) -> None:
        retryable = is_retryable(error)
        logger.error(
            f"{self.name} failed on {event.topic}: {error}",
            exc_info=True,
            extra={
                "error_context": {
                    "stage": self.stage_name,
                    "event_id": event.event_id,
                    "tenant_id": event.tenant_id,
                    "data_source_id": event.data_source_id,
                    "job_id": event.job_id,
                    "retryable": retryable,
                }
            },
        )

        failed = event.derive(
            FailedEvent,
            STAGE_FAILED,
            failed_at=self.stage_name,
            error={"message": str(error), "error_type": type(error).__name__, "retryable": retryable},
        )
        try:
            await self.bus.publish_event(failed)
        except Exception as publish_error:
            logger.error(f"Could not publish failure event for {event.event_id}: {publish_error}")

        if self.fails_job_on_error and event.job_id:
            try:
                await self.jobs.fail_job_by_id(event.job_id, error, retryable)
            except Exception as store_error:
                logger.error(f"Could not record failure on job {event.job_id}: {store_error}")
