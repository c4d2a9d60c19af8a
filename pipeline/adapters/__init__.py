"""
Adapters: the sync driver plus one fetch strategy per integration.
"""

from pipeline.adapters.base import HTTPIntegrationAdapter, IntegrationAdapter, SyncAdapter
from pipeline.adapters.microsoft_365 import Microsoft365Adapter
from pipeline.adapters.sophos_partner import SophosPartnerAdapter

ADAPTERS = {
    SophosPartnerAdapter.integration_id: SophosPartnerAdapter,
    Microsoft365Adapter.integration_id: Microsoft365Adapter,
}

__all__ = [
    "ADAPTERS",
    "HTTPIntegrationAdapter",
    "IntegrationAdapter",
    "Microsoft365Adapter",
    "SophosPartnerAdapter",
    "SyncAdapter",
]
