"""
Stale user analyzer (Microsoft 365 identities).

An identity is stale when its last sign-in is at least
STALE_USER_THRESHOLD_DAYS old. Users who never signed in carry the 1970
sentinel and are therefore stale. Only enabled stale users raise a
finding; a disabled one keeps the tag but its alert resolves.
"""

from datetime import datetime, timedelta
from typing import Optional

from pydantic import TypeAdapter

from pipeline.analyzers.base import AnalysisContext, Analyzer, Evaluation
from pipeline.jobs import parse_timestamp
from schemas.events import Finding
from schemas.normalized import NEVER
from schemas.records import EntityRecord
from storage.base import Filters

STALE_TAG = "Stale"

_datetime_json = TypeAdapter(datetime)


def json_timestamp(value: datetime) -> str:
    """Format a timestamp exactly like normalized_data stores it."""
    return _datetime_json.dump_python(value.replace(microsecond=0), mode="json")


def is_admin_identity(identity: EntityRecord, context: AnalysisContext) -> bool:
    """True when any role linked to the identity is an admin role."""
    return any(role.normalized_data.get("is_admin") for role in context.children(identity.id, "has_role", "roles"))


class StaleUserAnalyzer(Analyzer):
    name = "microsoft-365-stale-users"
    analysis_type = "stale-users"
    integration_id = "microsoft-365"
    # a role run can change the severity of existing findings
    entity_types = ("identities", "roles")
    target_entity_type = "identities"
    managed_tags = (STALE_TAG,)
    alert_types = ("stale-user",)
    requires_full_context = False
    relationship_types = ("has_role",)

    def threshold(self, context: AnalysisContext) -> datetime:
        return context.now - timedelta(days=context.settings.STALE_USER_THRESHOLD_DAYS)

    def candidate_filters(self, context: AnalysisContext) -> Optional[Filters]:
        return {
            "normalized_data.enabled": True,
            "normalized_data.last_login_at": ("lt", json_timestamp(self.threshold(context))),
        }

    def evaluate(self, entity: EntityRecord, context: AnalysisContext) -> Evaluation:
        data = entity.normalized_data
        last_login = parse_timestamp(data.get("last_login_at")) or NEVER
        days_since_login = (context.now - last_login).total_seconds() / 86400
        is_stale = days_since_login >= context.settings.STALE_USER_THRESHOLD_DAYS
        enabled = bool(data.get("enabled", True))
        has_licenses = bool(data.get("license_skus"))
        is_admin = is_admin_identity(entity, context)

        evaluation = Evaluation(tags={STALE_TAG} if is_stale else set())
        if not (is_stale and enabled):
            return evaluation

        if is_admin:
            severity = "high"
        elif not has_licenses:
            severity = "low"
        else:
            severity = "medium"

        who = data.get("user_principal_name") or data.get("name") or entity.external_id
        if last_login == NEVER:
            message = f"{who} has never signed in"
        else:
            message = f"{who} has not signed in for {int(days_since_login)} days"

        evaluation.findings.append(
            Finding(
                entity_id=entity.id,
                alert_type="stale-user",
                severity=severity,
                message=message,
                evidence={
                    "isStale": True,
                    "daysSinceLogin": int(days_since_login),
                    "hasLicenses": has_licenses,
                    "isAdmin": is_admin,
                    "isEnabled": enabled,
                },
            )
        )
        return evaluation
