"""
Microsoft 365 integration over Microsoft Graph.

Graph pages by handing back a full @odata.nextLink URL, which becomes the
job cursor as-is. Directory roles and groups come with their member ids
expanded. The policies type is the conditional access policies plus one
pseudo-policy holding the tenant's security defaults, appended to the
last page.
"""

from typing import Any, Dict, Optional

from pipeline.adapters.base import HTTPIntegrationAdapter
from pipeline.connectors.base import Page
from pipeline.connectors.http import Endpoint
from schemas.normalized import SECURITY_DEFAULTS_ID
from schemas.records import DataSourceRecord

USER_FIELDS = ",".join([
    "id",
    "displayName",
    "mail",
    "userPrincipalName",
    "accountEnabled",
    "signInActivity",
    "assignedLicenses",
])

# connector key of the security defaults lookup; not a syncable entity type
SECURITY_DEFAULTS = "security-defaults"


def _graph_list(path: str, params: Optional[Dict[str, Any]] = None, paged: bool = True) -> Endpoint:
    return Endpoint(
        path=path,
        records_key="value",
        next_cursor_key="@odata.nextLink",
        cursor_param=None,
        page_size_param="$top" if paged else None,
        page_size=100,
        cursor_is_url=True,
        extra_params=params,
    )


class Microsoft365Adapter(HTTPIntegrationAdapter):
    integration_id = "microsoft-365"
    DEFAULT_BASE_URL = "https://graph.microsoft.com"

    ENDPOINTS = {
        "identities": _graph_list("/v1.0/users", {"$select": USER_FIELDS}),
        "groups": _graph_list("/v1.0/groups", {"$expand": "members($select=id)"}),
        "licenses": _graph_list("/v1.0/subscribedSkus", paged=False),
        "roles": _graph_list("/v1.0/directoryRoles", {"$expand": "members($select=id)"}, paged=False),
        "policies": _graph_list("/v1.0/identity/conditionalAccess/policies", paged=False),
        SECURITY_DEFAULTS: Endpoint(
            path="/v1.0/policies/identitySecurityDefaultsEnforcementPolicy",
            cursor_param=None,
            page_size_param=None,
            single_record=True,
        ),
    }

    async def fetch_page(self, data_source: DataSourceRecord, entity_type: str, cursor: Optional[str]) -> Page:
        page = await super().fetch_page(data_source, entity_type, cursor)
        if entity_type == "policies" and not (page.has_more and page.next_cursor):
            defaults = await super().fetch_page(data_source, SECURITY_DEFAULTS, None)
            page.records = page.records + [{**record, "id": SECURITY_DEFAULTS_ID} for record in defaults.records]
        return page
