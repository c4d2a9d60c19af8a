"""
Transform raw integration records into normalized entity schemas with Pydantic validation
"""

from typing import Dict, Any, Callable, Optional, Tuple
from pydantic import ValidationError
from core.exceptions import RecordNormalizationError, UnsupportedEntityTypeError
from schemas.normalized import (
    Company,
    Endpoint,
    Firewall,
    Group,
    Identity,
    License,
    NormalizedEntity,
    Policy,
    Role,
    SECURITY_DEFAULTS_ID,
)
import logging

logger = logging.getLogger(__name__)


class EntityNormalizer:
    """
    Normalize records of one (integration, entity type) into a schema.

    Handles:
    - Field mapping per integration
    - Type conversion and defaults (via the Pydantic schemas)
    - Wrapping validation failures in RecordNormalizationError
    """

    def __init__(self, integration_id: str, entity_type: str):
        self.integration_id = integration_id
        self.entity_type = entity_type
        self._normalize = NORMALIZERS.get((integration_id, entity_type))
        if self._normalize is None:
            raise UnsupportedEntityTypeError(
                f"No normalizer for {integration_id}/{entity_type}",
                context={"integration_id": integration_id, "entity_type": entity_type},
            )

    def external_id(self, raw_record: Any) -> Optional[str]:
        """Best-effort external id of a raw record, also for records that fail to normalize."""
        if not isinstance(raw_record, dict):
            return None
        for key in EXTERNAL_ID_FIELDS.get((self.integration_id, self.entity_type), ("id",)):
            value = raw_record.get(key)
            if value:
                return str(value)
        return None

    @staticmethod
    def supports(integration_id: str, entity_type: str) -> bool:
        return (integration_id, entity_type) in NORMALIZERS

    def normalize(self, raw_record: Dict[str, Any]) -> NormalizedEntity:
        """
        Normalize a raw record.

        Returns:
            Validated NormalizedEntity subclass
        """
        if not isinstance(raw_record, dict):
            raise RecordNormalizationError(
                "Record is not an object",
                context={"integration_id": self.integration_id, "entity_type": self.entity_type},
            )
        try:
            return self._normalize(raw_record)
        except (ValidationError, ValueError, TypeError, KeyError) as e:
            raise RecordNormalizationError(
                f"Failed to normalize {self.entity_type} record",
                context={
                    "integration_id": self.integration_id,
                    "entity_type": self.entity_type,
                    "external_id": self.external_id(raw_record),
                },
                original_exception=e,
            )


# ============================================================================
# Sophos Partner
# ============================================================================

def _normalize_sophos_company(record: Dict[str, Any]) -> Company:
    return Company(
        external_id=record.get("id"),
        name=record.get("name") or record.get("showAs"),
        data_region=record.get("dataRegion"),
        status=record.get("status"),
    )


def _normalize_sophos_endpoint(record: Dict[str, Any]) -> Endpoint:
    health = record.get("health") or {}
    os_info = record.get("os") or {}
    return Endpoint(
        external_id=record.get("id"),
        name=record.get("hostname"),
        hostname=record.get("hostname"),
        endpoint_type=record.get("type"),
        os_name=os_info.get("name"),
        health=health.get("overall"),
        last_seen_at=record.get("lastSeenAt"),
    )


def _normalize_sophos_firewall(record: Dict[str, Any]) -> Firewall:
    status = record.get("status") or {}
    return Firewall(
        external_id=record.get("id"),
        name=record.get("name") or record.get("hostname"),
        serial=record.get("serialNumber"),
        hostname=record.get("hostname"),
        model=record.get("model"),
        firmware_version=record.get("firmwareVersion"),
        connected=bool(status.get("connected", False)),
    )


def _normalize_sophos_license(record: Dict[str, Any]) -> License:
    product = record.get("product") or {}
    return License(
        external_id=record.get("id") or record.get("licenseIdentifier"),
        name=product.get("name"),
        serial_number=record.get("serialNumber"),
        sku=product.get("code"),
        product=product.get("name"),
        license_type=record.get("type"),
        quantity=record.get("quantity"),
        start_date=record.get("startDate"),
        end_date=record.get("endDate"),
    )


# ============================================================================
# Microsoft 365
# ============================================================================

def _normalize_m365_identity(record: Dict[str, Any]) -> Identity:
    sign_in = record.get("signInActivity") or {}
    licenses = record.get("assignedLicenses") or []
    return Identity(
        external_id=record.get("id"),
        name=record.get("displayName"),
        email=record.get("mail"),
        user_principal_name=record.get("userPrincipalName"),
        enabled=record.get("accountEnabled", True),
        last_login_at=sign_in.get("lastSignInDateTime"),
        license_skus=[l.get("skuId") for l in licenses if isinstance(l, dict) and l.get("skuId")],
    )


def _normalize_m365_group(record: Dict[str, Any]) -> Group:
    members = record.get("members") or []
    return Group(
        external_id=record.get("id"),
        name=record.get("displayName"),
        description=record.get("description"),
        security_enabled=bool(record.get("securityEnabled", False)),
        member_ids=[m.get("id") if isinstance(m, dict) else m for m in members],
    )


def _normalize_m365_license(record: Dict[str, Any]) -> License:
    prepaid = record.get("prepaidUnits") or {}
    return License(
        external_id=record.get("skuId"),
        name=record.get("skuPartNumber"),
        sku=record.get("skuId"),
        product=record.get("skuPartNumber"),
        quantity=prepaid.get("enabled"),
        consumed=record.get("consumedUnits"),
    )


# Graph names the admin roles "<Area> Administrator"
ADMIN_ROLE_MARKER = "Administrator"


def _normalize_m365_role(record: Dict[str, Any]) -> Role:
    members = record.get("members") or []
    name = record.get("displayName") or ""
    return Role(
        external_id=record.get("id"),
        name=name or None,
        description=record.get("description"),
        role_template_id=record.get("roleTemplateId"),
        is_admin=ADMIN_ROLE_MARKER in name,
        member_ids=[m.get("id") if isinstance(m, dict) else m for m in members],
    )


def _normalize_m365_policy(record: Dict[str, Any]) -> Policy:
    if record.get("id") == SECURITY_DEFAULTS_ID:
        enabled = record.get("isEnabled") is True
        return Policy(
            external_id=SECURITY_DEFAULTS_ID,
            name=record.get("displayName") or "Security Defaults",
            state="enabled" if enabled else "disabled",
            is_security_defaults=True,
            requires_mfa=enabled,
            include_users=["All"],
        )

    users = (record.get("conditions") or {}).get("users") or {}
    controls = (record.get("grantControls") or {}).get("builtInControls") or []
    return Policy(
        external_id=record.get("id"),
        name=record.get("displayName"),
        state=record.get("state"),
        requires_mfa="mfa" in controls,
        include_users=users.get("includeUsers"),
        exclude_users=users.get("excludeUsers"),
        include_groups=users.get("includeGroups"),
        exclude_groups=users.get("excludeGroups"),
    )


NORMALIZERS: Dict[Tuple[str, str], Callable[[Dict[str, Any]], NormalizedEntity]] = {
    ("sophos-partner", "companies"): _normalize_sophos_company,
    ("sophos-partner", "endpoints"): _normalize_sophos_endpoint,
    ("sophos-partner", "firewalls"): _normalize_sophos_firewall,
    ("sophos-partner", "licenses"): _normalize_sophos_license,
    ("microsoft-365", "identities"): _normalize_m365_identity,
    ("microsoft-365", "groups"): _normalize_m365_group,
    ("microsoft-365", "licenses"): _normalize_m365_license,
    ("microsoft-365", "roles"): _normalize_m365_role,
    ("microsoft-365", "policies"): _normalize_m365_policy,
}

# raw fields holding the external id, for types that do not use "id"
EXTERNAL_ID_FIELDS: Dict[Tuple[str, str], Tuple[str, ...]] = {
    ("sophos-partner", "licenses"): ("id", "licenseIdentifier"),
    ("microsoft-365", "licenses"): ("skuId",),
}
