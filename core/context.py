"""
Explicit pipeline context.

Built once at process start and handed to every stage. Stages never reach
for module-level managers; anything they share (store, bus, clock,
integration registry, connector factory) travels through this object,
which also lets tests swap any collaborator.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Optional

from core.config import Settings

if TYPE_CHECKING:
    from pipeline.bus import EventBus
    from pipeline.connectors.base import ConnectorFactory
    from pipeline.registry import IntegrationRegistry
    from storage.base import Store


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PipelineContext:
    settings: Settings
    store: "Store"
    bus: "EventBus"
    registry: "IntegrationRegistry"
    connector_factory: Optional["ConnectorFactory"] = None
    clock: Callable[[], datetime] = field(default=utcnow)

    def now(self) -> datetime:
        return self.clock()
