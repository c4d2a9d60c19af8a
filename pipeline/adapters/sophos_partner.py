"""
Sophos Partner / Central integration.

Records are paged with pageFromKey / pages.nextKey. Every tenant-level
call needs the X-Tenant-ID header and goes to the tenant's data region
host (stored on the data source as api_host).
"""

from typing import Dict

from pipeline.adapters.base import HTTPIntegrationAdapter
from pipeline.connectors.http import Endpoint
from schemas.records import DataSourceRecord


def _sophos_endpoint(path: str) -> Endpoint:
    return Endpoint(
        path=path,
        records_key="items",
        next_cursor_key="pages.nextKey",
        cursor_param="pageFromKey",
        page_size_param="pageSize",
        page_size=100,
        extra_params={"pageTotal": "false"},
    )


class SophosPartnerAdapter(HTTPIntegrationAdapter):
    integration_id = "sophos-partner"
    DEFAULT_BASE_URL = "https://api.central.sophos.com"

    ENDPOINTS = {
        "companies": _sophos_endpoint("/partner/v1/tenants"),
        "endpoints": _sophos_endpoint("/endpoint/v1/endpoints"),
        "firewalls": _sophos_endpoint("/firewall/v1/firewalls"),
        "licenses": _sophos_endpoint("/licenses/v1/licenses/firewalls"),
    }

    def base_url(self, data_source: DataSourceRecord) -> str:
        return data_source.config.get("api_host") or super().base_url(data_source)

    def headers(self, data_source: DataSourceRecord) -> Dict[str, str]:
        headers = {}
        if data_source.config.get("sophos_tenant_id"):
            headers["X-Tenant-ID"] = data_source.config["sophos_tenant_id"]
        if data_source.config.get("partner_id"):
            headers["X-Partner-ID"] = data_source.config["partner_id"]
        return headers
