"""
Event bus tests: wildcard routing, isolation, failure containment
"""

import pytest

from core.exceptions import PublishError
from pipeline.bus import InMemoryEventBus, topic_matches


@pytest.mark.parametrize("pattern, topic, expected", [
    ("microsoft-365.sync.identities", "microsoft-365.sync.identities", True),
    ("microsoft-365.sync.*", "microsoft-365.sync.identities", True),
    ("*.processed.*", "sophos-partner.processed.firewalls", True),
    ("*.processed.*", "sophos-partner.linked.firewalls", False),
    ("analysis.>", "analysis.stale-users.identities", True),
    ("analysis.>", "analysis", False),
    ("microsoft-365.*", "microsoft-365.sync.identities", False),
    ("microsoft-365.sync.identities.extra", "microsoft-365.sync.identities", False),
])
def test_topic_matches(pattern, topic, expected):
    assert topic_matches(pattern, topic) is expected


@pytest.mark.asyncio
async def test_publish_reaches_every_matching_subscriber():
    bus = InMemoryEventBus()
    received = []

    async def exact(message):
        received.append(("exact", message["n"]))

    async def wildcard(message):
        received.append(("wildcard", message["n"]))

    async def other(message):
        received.append(("other", message["n"]))

    bus.subscribe("microsoft-365.fetched.identities", exact)
    bus.subscribe("*.fetched.*", wildcard)
    bus.subscribe("*.processed.*", other)

    await bus.publish("microsoft-365.fetched.identities", {"n": 1})
    await bus.drain()

    assert sorted(received) == [("exact", 1), ("wildcard", 1)]


@pytest.mark.asyncio
async def test_each_handler_gets_its_own_copy():
    bus = InMemoryEventBus()
    seen = []

    async def mutate(message):
        message["records"].append("mutated")

    async def observe(message):
        seen.append(list(message["records"]))

    bus.subscribe("a.b.c", mutate)
    bus.subscribe("a.b.c", observe)
    original = {"records": ["r1"]}

    await bus.publish("a.b.c", original)
    await bus.drain()

    assert seen == [["r1"]]
    assert original == {"records": ["r1"]}


@pytest.mark.asyncio
async def test_failing_handler_is_counted_and_contained():
    bus = InMemoryEventBus()
    delivered = []

    async def broken(message):
        raise RuntimeError("boom")

    async def healthy(message):
        delivered.append(message)

    failing = bus.subscribe("a.b.c", broken)
    working = bus.subscribe("a.b.c", healthy)

    await bus.publish("a.b.c", {"n": 1})
    await bus.drain()

    assert failing.errors == 1 and failing.delivered == 0
    assert working.delivered == 1
    assert len(delivered) == 1


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery():
    bus = InMemoryEventBus()
    delivered = []

    async def handler(message):
        delivered.append(message)

    subscription = bus.subscribe("a.b.c", handler)
    bus.unsubscribe(subscription)
    await bus.publish("a.b.c", {"n": 1})
    await bus.drain()

    assert delivered == []
    assert bus.subscriptions == []


@pytest.mark.asyncio
async def test_drain_waits_for_cascading_publishes():
    bus = InMemoryEventBus(record_history=True)

    async def forward(message):
        await bus.publish("x.second.y", {"n": message["n"] + 1})

    bus.subscribe("x.first.y", forward)
    await bus.publish("x.first.y", {"n": 1})
    await bus.drain()

    assert bus.published("x.second.*") == [{"n": 2}]


@pytest.mark.asyncio
async def test_publish_rejects_unserializable_and_closed():
    bus = InMemoryEventBus()
    circular = {}
    circular["self"] = circular

    with pytest.raises(PublishError):
        await bus.publish("a.b.c", circular)

    await bus.close()
    with pytest.raises(PublishError):
        await bus.publish("a.b.c", {"n": 1})
