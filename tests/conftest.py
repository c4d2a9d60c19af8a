"""
Pytest configuration and fixtures

Every stage runs against the in-memory store and bus, a frozen clock and
a fake connector factory, so the whole pipeline is exercised without a
database or network.
"""

import asyncio
import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from core.config import Settings
from core.context import PipelineContext
from models.base import DataSourceStatus
from pipeline.bus import InMemoryEventBus
from pipeline.connectors.base import Connector, Page
from pipeline.registry import default_registry
from storage.base import Table
from storage.memory import InMemoryStore

FROZEN_NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

TENANT_ID = "tenant-1"


class FrozenClock:
    """Callable clock that only moves when told to"""

    def __init__(self, now: datetime = FROZEN_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class ListConnector(Connector):
    """Serves a fixed record list in pages; the cursor is the next offset"""

    def __init__(self, records: List[Dict[str, Any]], page_size: int = 100, error: Optional[Exception] = None):
        self.records = records
        self.page_size = page_size
        self.error = error
        self.cursors: List[Optional[str]] = []
        self.closed = False

    async def check_health(self) -> bool:
        return self.error is None

    async def fetch(self, cursor: Optional[str] = None) -> Page:
        self.cursors.append(cursor)
        if self.error is not None:
            raise self.error
        start = int(cursor or 0)
        end = start + self.page_size
        has_more = end < len(self.records)
        return Page(
            records=self.records[start:end],
            next_cursor=str(end) if has_more else None,
            has_more=has_more,
        )

    async def close(self) -> None:
        self.closed = True


class FakeConnectors:
    """connector_factory serving records per (data source, entity type)"""

    def __init__(self, page_size: int = 100):
        self.page_size = page_size
        self.records: Dict[tuple, List[Dict[str, Any]]] = {}
        self.errors: Dict[tuple, Exception] = {}
        self.built: List[ListConnector] = []

    def set(self, data_source_id: str, entity_type: str, records: List[Dict[str, Any]]) -> None:
        self.records[(data_source_id, entity_type)] = records

    def fail(self, data_source_id: str, entity_type: str, error: Optional[Exception]) -> None:
        if error is None:
            self.errors.pop((data_source_id, entity_type), None)
        else:
            self.errors[(data_source_id, entity_type)] = error

    def __call__(self, data_source, entity_type: str) -> ListConnector:
        key = (data_source.id, entity_type)
        connector = ListConnector(self.records.get(key, []), self.page_size, self.errors.get(key))
        self.built.append(connector)
        return connector

    @property
    def fetched_cursors(self) -> List[Optional[str]]:
        return [cursor for connector in self.built for cursor in connector.cursors]


class YieldingStore(InMemoryStore):
    """In-memory store that gives up the event loop before every call, as a database round trip would."""

    async def query(self, *args, **kwargs):
        await asyncio.sleep(0)
        return await super().query(*args, **kwargs)

    async def insert(self, *args, **kwargs):
        await asyncio.sleep(0)
        return await super().insert(*args, **kwargs)

    async def update_many(self, *args, **kwargs):
        await asyncio.sleep(0)
        return await super().update_many(*args, **kwargs)

    async def claim(self, *args, **kwargs):
        await asyncio.sleep(0)
        return await super().claim(*args, **kwargs)


# ============================================================================
# Raw record builders (shapes as the integrations' APIs return them)
# ============================================================================

def m365_user(i: int, last_login: Optional[datetime] = FROZEN_NOW, enabled: bool = True,
              skus: Optional[List[str]] = None, **extra) -> Dict[str, Any]:
    record = {
        "id": f"user-{i}",
        "displayName": f"User {i}",
        "mail": f"User{i}@Example.com",
        "userPrincipalName": f"user{i}@example.com",
        "accountEnabled": enabled,
        "signInActivity": {"lastSignInDateTime": last_login.isoformat() if last_login else None},
        "assignedLicenses": [{"skuId": sku} for sku in (skus or [])],
    }
    record.update(extra)
    return record


def m365_group(i: int, member_ids: List[str]) -> Dict[str, Any]:
    return {
        "id": f"group-{i}",
        "displayName": f"Group {i}",
        "securityEnabled": True,
        "members": [{"id": member_id} for member_id in member_ids],
    }


def m365_role(i: int, member_ids: List[str], name: str = "Global Administrator") -> Dict[str, Any]:
    return {
        "id": f"role-{i}",
        "displayName": name,
        "roleTemplateId": f"template-{i}",
        "members": [{"id": member_id} for member_id in member_ids],
    }


def m365_policy(i: int, include_users: Optional[List[str]] = None, include_groups: Optional[List[str]] = None,
                exclude_users: Optional[List[str]] = None, exclude_groups: Optional[List[str]] = None,
                state: str = "enabled", controls: Optional[List[str]] = None) -> Dict[str, Any]:
    return {
        "id": f"policy-{i}",
        "displayName": f"Policy {i}",
        "state": state,
        "conditions": {
            "users": {
                "includeUsers": include_users or [],
                "excludeUsers": exclude_users or [],
                "includeGroups": include_groups or [],
                "excludeGroups": exclude_groups or [],
            },
        },
        "grantControls": {"operator": "OR", "builtInControls": ["mfa"] if controls is None else controls},
    }


def m365_security_defaults(enabled: bool = True) -> Dict[str, Any]:
    return {"id": "security-defaults", "displayName": "Security Defaults", "isEnabled": enabled}


def m365_sku(sku_id: str, part_number: str = "ENTERPRISEPACK") -> Dict[str, Any]:
    return {"skuId": sku_id, "skuPartNumber": part_number, "prepaidUnits": {"enabled": 25}, "consumedUnits": 10}


def sophos_firewall(i: int, serial: Optional[str] = None) -> Dict[str, Any]:
    return {
        "id": f"fw-{i}",
        "name": f"Firewall {i}",
        "hostname": f"fw{i}.example.net",
        "serialNumber": serial or f"SN{i:04d}",
        "model": "XGS2100",
        "status": {"connected": True},
    }


def sophos_license(i: int, serial: str, end: Optional[datetime] = None) -> Dict[str, Any]:
    return {
        "id": f"lic-{i}",
        "licenseIdentifier": f"LIC-{i}",
        "serialNumber": serial,
        "type": "term",
        "quantity": 1,
        "product": {"code": "FW-XSTREAM", "name": "Xstream Protection"},
        "startDate": "2024-01-01T00:00:00Z",
        "endDate": (end or FROZEN_NOW + timedelta(days=365)).isoformat(),
    }


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def settings():
    """Settings isolated from the environment and any .env file"""
    return Settings(
        _env_file=None,
        SCHEDULER_BOOTSTRAP_ON_START=False,
        JOB_RETRY_BACKOFF_SECONDS=60,
        JOB_ATTEMPTS_MAX=3,
        TENANT_CONCURRENT_JOB_LIMIT=50,
        ANALYZER_DEBOUNCE_SECONDS=0.0,
    )


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store(clock):
    return InMemoryStore(clock=clock)


@pytest.fixture
def bus():
    return InMemoryEventBus(record_history=True)


@pytest.fixture
def connectors():
    return FakeConnectors()


@pytest.fixture
def context(settings, store, bus, connectors, clock):
    return PipelineContext(
        settings=settings,
        store=store,
        bus=bus,
        registry=default_registry(),
        connector_factory=connectors,
        clock=clock,
    )


@pytest_asyncio.fixture
async def make_data_source(store):
    """Insert a data source and return its record"""

    async def _make(integration_id: str = "microsoft-365", tenant_id: str = TENANT_ID, **fields):
        row = {
            "tenant_id": tenant_id,
            "integration_id": integration_id,
            "name": f"{integration_id} test",
            "config": {"api_token": "token"},
            "status": DataSourceStatus.ACTIVE.value,
            "extra_metadata": {},
        }
        row.update(fields)
        [data_source_id] = await store.insert(Table.DATA_SOURCES, [row])
        return await store.get(Table.DATA_SOURCES, data_source_id)

    return _make


@pytest_asyncio.fixture
async def m365_source(make_data_source):
    return await make_data_source("microsoft-365")


@pytest_asyncio.fixture
async def sophos_source(make_data_source):
    return await make_data_source("sophos-partner")


async def run_until_idle(runner, max_ticks: int = 50) -> int:
    """Poll and drain until a tick dispatches nothing; returns jobs dispatched"""
    total = 0
    for _ in range(max_ticks):
        dispatched = await runner.scheduler.poll_jobs()
        await runner.drain()
        if dispatched == 0:
            break
        total += dispatched
    return total


@pytest.fixture
def runner(context):
    from pipeline.runner import PipelineRunner

    pipeline = PipelineRunner(context)
    pipeline.start(with_scheduler=False)
    yield pipeline
    for stage in pipeline.stages:
        stage.stop()
