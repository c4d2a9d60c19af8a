"""
Connector contract.

A connector knows how to talk to one external API endpoint for one
entity type. It is stateless between calls apart from the opaque cursor
it hands back: fetch(None) returns the first page, fetch(page.next_cursor)
the next one.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from schemas.records import DataSourceRecord


@dataclass
class Page:
    records: List[Dict[str, Any]] = field(default_factory=list)
    next_cursor: Optional[str] = None
    has_more: bool = False


class Connector(ABC):
    @abstractmethod
    async def check_health(self) -> bool:
        """Cheap reachability and credential check."""

    @abstractmethod
    async def fetch(self, cursor: Optional[str] = None) -> Page:
        """Fetch one page starting at cursor."""

    async def close(self) -> None:
        pass


# (data source, entity type) -> connector
ConnectorFactory = Callable[[DataSourceRecord, str], Connector]
