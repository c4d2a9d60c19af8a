"""
Event bus.

Stages only talk to each other through topics shaped like
"<integrationId>.<stage>.<entityType>". Subscriptions use NATS-style
wildcards: "*" matches exactly one token and ">" matches one or more
trailing tokens.

Messages are JSON-encoded on publish and decoded per subscriber, so a
handler can never mutate another handler's copy. A handler that raises
is logged and counted; it never takes the bus or the process down.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple
import asyncio
import json
import logging

from core.exceptions import PublishError

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Awaitable[None]]


def topic_matches(pattern: str, topic: str) -> bool:
    pattern_tokens = pattern.split(".")
    topic_tokens = topic.split(".")
    for i, token in enumerate(pattern_tokens):
        if token == ">":
            return len(topic_tokens) > i
        if i >= len(topic_tokens):
            return False
        if token != "*" and token != topic_tokens[i]:
            return False
    return len(pattern_tokens) == len(topic_tokens)


@dataclass
class Subscription:
    pattern: str
    handler: Handler
    name: str
    semaphore: asyncio.Semaphore
    delivered: int = 0
    errors: int = 0
    active: bool = True


class EventBus(ABC):
    """Publish/subscribe contract the stages are written against."""

    @abstractmethod
    async def publish(self, topic: str, message: Dict[str, Any]) -> None:
        """Publish one JSON-serializable message."""

    @abstractmethod
    def subscribe(
        self,
        pattern: str,
        handler: Handler,
        *,
        name: Optional[str] = None,
        concurrency: Optional[int] = None,
    ) -> Subscription:
        """Register a handler for every topic matching pattern."""

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.active = False

    async def publish_event(self, event) -> None:
        await self.publish(event.topic, event.to_message())

    async def drain(self) -> None:
        """Wait until every in-flight delivery has finished."""

    async def close(self) -> None:
        pass


class InMemoryEventBus(EventBus):
    """
    Single-process bus on asyncio tasks.

    Each delivery runs as its own task; a per-subscription semaphore caps
    how many deliveries of one subscription run at once.
    """

    def __init__(self, concurrency: int = 5, record_history: bool = False):
        self.concurrency = concurrency
        self.record_history = record_history
        self.history: List[Tuple[str, Dict[str, Any]]] = []
        self._subscriptions: List[Subscription] = []
        self._pending: Set[asyncio.Task] = set()
        self._closed = False

    @property
    def subscriptions(self) -> List[Subscription]:
        return [s for s in self._subscriptions if s.active]

    def subscribe(
        self,
        pattern: str,
        handler: Handler,
        *,
        name: Optional[str] = None,
        concurrency: Optional[int] = None,
    ) -> Subscription:
        subscription = Subscription(
            pattern=pattern,
            handler=handler,
            name=name or getattr(handler, "__qualname__", pattern),
            semaphore=asyncio.Semaphore(concurrency or self.concurrency),
        )
        self._subscriptions.append(subscription)
        logger.info(f"Subscribed {subscription.name} to {pattern}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.active = False
        self._subscriptions = [s for s in self._subscriptions if s is not subscription]

    async def publish(self, topic: str, message: Dict[str, Any]) -> None:
        if self._closed:
            raise PublishError("Bus is closed", context={"topic": topic})
        try:
            encoded = json.dumps(message, default=str)
        except (TypeError, ValueError) as e:
            raise PublishError("Message is not JSON-serializable", context={"topic": topic}, original_exception=e)

        if self.record_history:
            self.history.append((topic, json.loads(encoded)))

        matched = [s for s in self.subscriptions if topic_matches(s.pattern, topic)]
        if not matched:
            logger.debug(f"No subscribers for {topic}")
        for subscription in matched:
            task = asyncio.create_task(self._deliver(subscription, topic, json.loads(encoded)))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _deliver(self, subscription: Subscription, topic: str, message: Dict[str, Any]) -> None:
        async with subscription.semaphore:
            try:
                await subscription.handler(message)
                subscription.delivered += 1
            except Exception as e:
                subscription.errors += 1
                logger.error(
                    f"Handler {subscription.name} failed on {topic}: {e}",
                    exc_info=True,
                    extra={"error_context": {"topic": topic, "subscription": subscription.name}},
                )

    def published(self, pattern: str = ">") -> List[Dict[str, Any]]:
        """Messages seen so far on topics matching pattern (needs record_history)."""
        return [message for topic, message in self.history if topic_matches(pattern, topic)]

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending))

    async def close(self) -> None:
        await self.drain()
        self._closed = True
        self._subscriptions.clear()
