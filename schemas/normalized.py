"""
Pydantic schemas for normalized entity data with validation
"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone

# Users who never signed in get this timestamp so range queries on
# last_login_at still see them.
NEVER = datetime(1970, 1, 1, tzinfo=timezone.utc)

# external_id of the pseudo-policy that carries the tenant's security defaults
SECURITY_DEFAULTS_ID = "security-defaults"


def _as_utc(v):
    if v is None or v == "":
        return None
    if isinstance(v, str):
        v = datetime.fromisoformat(v.replace("Z", "+00:00"))
    if isinstance(v, datetime):
        v = v.replace(tzinfo=timezone.utc) if v.tzinfo is None else v.astimezone(timezone.utc)
    return v


class NormalizedEntity(BaseModel):
    """
    Base schema for every normalized entity.

    Ensures:
    - external_id is present and stripped
    - timestamps are timezone-aware UTC
    """

    external_id: str = Field(..., min_length=1, max_length=255)
    name: Optional[str] = Field(None, max_length=500)

    @field_validator("external_id", mode="before")
    @classmethod
    def clean_external_id(cls, v):
        if v is None:
            raise ValueError("external_id is required")
        v = str(v).strip()
        if not v:
            raise ValueError("external_id cannot be empty after stripping")
        return v

    class Config:
        extra = "ignore"

    def to_data(self) -> Dict[str, Any]:
        """JSON-safe dict stored as Entity.normalized_data"""
        return self.model_dump(mode="json", exclude={"external_id"})


# ============================================================================
# Sophos Partner
# ============================================================================

class Company(NormalizedEntity):
    data_region: Optional[str] = None
    status: Optional[str] = None


class Endpoint(NormalizedEntity):
    hostname: Optional[str] = None
    endpoint_type: Optional[str] = None
    os_name: Optional[str] = None
    health: Optional[str] = None
    last_seen_at: Optional[datetime] = None

    @field_validator("last_seen_at", mode="before")
    @classmethod
    def utc_timestamps(cls, v):
        return _as_utc(v)


class Firewall(NormalizedEntity):
    serial: str = Field(..., min_length=1)
    hostname: Optional[str] = None
    model: Optional[str] = None
    firmware_version: Optional[str] = None
    connected: bool = False


class License(NormalizedEntity):
    """Sophos firewall subscriptions and Microsoft 365 SKUs share this shape."""
    serial_number: Optional[str] = None
    sku: Optional[str] = None
    product: Optional[str] = None
    license_type: Optional[str] = None
    quantity: Optional[int] = Field(None, ge=0)
    consumed: Optional[int] = Field(None, ge=0)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def utc_timestamps(cls, v):
        return _as_utc(v)


# ============================================================================
# Microsoft 365
# ============================================================================

class Identity(NormalizedEntity):
    email: Optional[str] = None
    user_principal_name: Optional[str] = None
    enabled: bool = True
    last_login_at: datetime = NEVER
    license_skus: List[str] = Field(default_factory=list)

    @field_validator("email", "user_principal_name", mode="before")
    @classmethod
    def lower_addresses(cls, v):
        if isinstance(v, str):
            v = v.strip().lower()
        return v or None

    @field_validator("last_login_at", mode="before")
    @classmethod
    def default_last_login(cls, v):
        return _as_utc(v) or NEVER

    @field_validator("license_skus", mode="before")
    @classmethod
    def clean_skus(cls, v):
        if v is None:
            return []
        return sorted({str(x).strip() for x in v if str(x).strip()})


class Group(NormalizedEntity):
    description: Optional[str] = None
    security_enabled: bool = False
    member_ids: List[str] = Field(default_factory=list)

    @field_validator("member_ids", mode="before")
    @classmethod
    def clean_members(cls, v):
        if v is None:
            return []
        return sorted({str(x) for x in v if x})


class Role(NormalizedEntity):
    """An activated directory role and the ids of the users holding it."""
    description: Optional[str] = None
    role_template_id: Optional[str] = None
    is_admin: bool = False
    member_ids: List[str] = Field(default_factory=list)

    @field_validator("member_ids", mode="before")
    @classmethod
    def clean_members(cls, v):
        if v is None:
            return []
        return sorted({str(x) for x in v if x})


class Policy(NormalizedEntity):
    """
    A conditional access policy, or the tenant's security defaults.

    Security defaults arrive as a single pseudo-policy with
    is_security_defaults set; they require MFA for every user while enabled.
    """
    state: Optional[str] = None
    is_security_defaults: bool = False
    requires_mfa: bool = False
    include_users: List[str] = Field(default_factory=list)
    exclude_users: List[str] = Field(default_factory=list)
    include_groups: List[str] = Field(default_factory=list)
    exclude_groups: List[str] = Field(default_factory=list)

    @field_validator("include_users", "exclude_users", "include_groups", "exclude_groups", mode="before")
    @classmethod
    def clean_targets(cls, v):
        if v is None:
            return []
        return sorted({str(x) for x in v if x})
