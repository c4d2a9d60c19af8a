"""
Pipeline runner: builds every stage from one context and owns their lifecycle.

Stages are wired only through the bus:

    scheduler -> <integration>.sync.<type>      -> SyncAdapter
              -> <integration>.fetched.<type>   -> Processor
              -> <integration>.processed.<type> -> Linker, Sweeper
              -> <integration>.linked.<type>    -> AnalyzerWorker
              -> analysis.<analysis>.<type>     -> AlertManager
"""

from typing import List, Optional, Sequence
import logging

from core.config import Settings
from core.context import PipelineContext
from pipeline.adapters import ADAPTERS, SyncAdapter
from pipeline.analyzers import AlertManager, Analyzer, AnalyzerWorker, default_analyzers
from pipeline.bus import EventBus, InMemoryEventBus
from pipeline.linkers import LINK_STRATEGIES, Linker
from pipeline.processor import Processor
from pipeline.registry import IntegrationRegistry, default_registry
from pipeline.scheduler import SyncScheduler
from pipeline.stage import PipelineStage
from pipeline.sweeper import Sweeper
from storage.base import Store

logger = logging.getLogger(__name__)


def build_context(
    settings: Settings,
    store: Optional[Store] = None,
    bus: Optional[EventBus] = None,
    registry: Optional[IntegrationRegistry] = None,
) -> PipelineContext:
    """Production context: PostgreSQL store and the in-process bus unless given."""
    if store is None:
        from storage.postgres import PostgresStore
        store = PostgresStore.from_settings(settings)
    return PipelineContext(
        settings=settings,
        store=store,
        bus=bus or InMemoryEventBus(concurrency=settings.STAGE_CONCURRENCY),
        registry=registry or default_registry(),
    )


class PipelineRunner:
    def __init__(self, context: PipelineContext, analyzers: Optional[Sequence[Analyzer]] = None):
        self.context = context
        self.scheduler = SyncScheduler(context)
        self.analyzer_workers: List[AnalyzerWorker] = [
            AnalyzerWorker(context, analyzer)
            for analyzer in (default_analyzers() if analyzers is None else analyzers)
            if analyzer.integration_id in context.registry
        ]
        self.stages: List[PipelineStage] = self._build_stages()
        self.started = False

    def _build_stages(self) -> List[PipelineStage]:
        context = self.context
        stages: List[PipelineStage] = []
        for spec in context.registry:
            adapter_cls = ADAPTERS.get(spec.integration_id)
            if adapter_cls is None:
                logger.warning(f"No adapter for integration {spec.integration_id}, its jobs will not run")
            else:
                stages.append(SyncAdapter(context, adapter_cls(context)))
            stages.append(Linker(context, spec.integration_id, LINK_STRATEGIES.get(spec.integration_id, [])))
        stages.append(Processor(context))
        stages.append(Sweeper(context))
        stages.extend(self.analyzer_workers)
        stages.append(AlertManager(context))
        return stages

    def start(self, with_scheduler: bool = True) -> None:
        """Subscribe every stage, then start polling (inside the running loop)."""
        for stage in self.stages:
            stage.start()
        if with_scheduler:
            self.scheduler.start()
        self.started = True
        logger.info(f"Pipeline started with {len(self.stages)} stages")

    async def drain(self) -> None:
        """Wait for in-flight work, flushing debounced analyzers along the way."""
        await self.context.bus.drain()
        for worker in self.analyzer_workers:
            await worker.flush()
        await self.context.bus.drain()

    async def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.stop()
        await self.drain()
        for stage in self.stages:
            stage.stop()
        await self.context.bus.close()
        await self.context.store.close()
        self.started = False
        logger.info("Pipeline stopped")
