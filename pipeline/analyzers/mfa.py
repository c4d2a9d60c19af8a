"""
MFA enforcement analyzer (Microsoft 365 identities).

An identity has MFA enforced when the tenant's security defaults are on,
or when an enabled conditional access policy that requires MFA applies to
it. A policy applies unless the user or one of their groups is excluded;
otherwise it applies when the user, "All", or one of their groups is
included. Enabled users without MFA raise a finding, critical for admins.

Coverage depends on every policy, group and role, so the analyzer runs
with full context once a run of any of those types is linked.
"""

from typing import Any, Dict, List, Set

from pipeline.analyzers.base import AnalysisContext, Analyzer, Evaluation
from pipeline.analyzers.stale_users import is_admin_identity
from schemas.events import Finding
from schemas.records import EntityRecord

MFA_ENABLED_TAG = "mfa-enabled"
MFA_DISABLED_TAG = "mfa-disabled"
SECURITY_DEFAULTS_TAG = "security-defaults-enabled"

ALL_USERS = "All"


def _applies(policy: Dict[str, Any], user_id: str, group_ids: Set[str]) -> bool:
    if user_id in policy.get("exclude_users", []) or ALL_USERS in policy.get("exclude_users", []):
        return False
    if group_ids.intersection(policy.get("exclude_groups", [])):
        return False
    include_users = policy.get("include_users", [])
    if user_id in include_users or ALL_USERS in include_users:
        return True
    return bool(group_ids.intersection(policy.get("include_groups", [])))


class MFAAnalyzer(Analyzer):
    name = "microsoft-365-mfa"
    analysis_type = "mfa"
    integration_id = "microsoft-365"
    entity_types = ("identities", "groups", "roles", "policies")
    target_entity_type = "identities"
    managed_tags = (MFA_ENABLED_TAG, MFA_DISABLED_TAG, SECURITY_DEFAULTS_TAG)
    alert_types = ("mfa-not-enforced",)
    requires_full_context = True
    relationship_types = ("has_role",)
    parent_relationship_types = ("member_of",)
    reference_entity_types = ("policies",)

    def mfa_policies(self, context: AnalysisContext) -> List[Dict[str, Any]]:
        return [
            policy.normalized_data
            for policy in context.references.get("policies", [])
            if policy.normalized_data.get("state") == "enabled" and policy.normalized_data.get("requires_mfa")
        ]

    def evaluate(self, entity: EntityRecord, context: AnalysisContext) -> Evaluation:
        policies = self.mfa_policies(context)
        security_defaults = any(p.get("is_security_defaults") for p in policies)
        group_ids = {group.external_id for group in context.parents(entity.id, "member_of", "groups")}

        if security_defaults or any(_applies(p, entity.external_id, group_ids) for p in policies):
            tags = {MFA_ENABLED_TAG}
            if security_defaults:
                tags.add(SECURITY_DEFAULTS_TAG)
            return Evaluation(tags=tags)

        evaluation = Evaluation(tags={MFA_DISABLED_TAG})
        data = entity.normalized_data
        if not data.get("enabled", True):
            return evaluation

        is_admin = is_admin_identity(entity, context)
        who = data.get("user_principal_name") or data.get("name") or entity.external_id
        evaluation.findings.append(
            Finding(
                entity_id=entity.id,
                alert_type="mfa-not-enforced",
                severity="critical" if is_admin else "high",
                message=f"{'Admin user' if is_admin else 'User'} {who} does not have MFA enforced",
                evidence={
                    "userPrincipalName": data.get("user_principal_name"),
                    "isAdmin": is_admin,
                    "securityDefaultsEnabled": False,
                    "mfaPoliciesCount": len(policies),
                },
            )
        )
        return evaluation
