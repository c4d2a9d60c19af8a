"""
Microsoft 365 relationships.
"""

from typing import Dict, List

from pipeline.linkers.base import LinkStrategy, RelationshipCandidate, index_by
from schemas.records import EntityRecord


class IdentityLicenseStrategy(LinkStrategy):
    """identity --has_license--> license, matched on assigned SKU ids."""

    entity_types = ("identities", "licenses")
    relationship_types = ("has_license",)

    def match_relationships(self, entities: Dict[str, List[EntityRecord]]) -> List[RelationshipCandidate]:
        licenses_by_sku = index_by(entities.get("licenses", []), "external_id")
        candidates = []
        for identity in entities.get("identities", []):
            for sku in identity.normalized_data.get("license_skus") or []:
                for license in licenses_by_sku.get(sku, []):
                    candidates.append(
                        RelationshipCandidate(identity.id, license.id, "has_license", {"sku": sku})
                    )
        return candidates


class GroupMembershipStrategy(LinkStrategy):
    """group --member_of--> identity."""

    entity_types = ("groups", "identities")
    relationship_types = ("member_of",)

    def match_relationships(self, entities: Dict[str, List[EntityRecord]]) -> List[RelationshipCandidate]:
        identities = index_by(entities.get("identities", []), "external_id")
        candidates = []
        for group in entities.get("groups", []):
            for member_id in group.normalized_data.get("member_ids") or []:
                for identity in identities.get(member_id, []):
                    candidates.append(RelationshipCandidate(group.id, identity.id, "member_of"))
        return candidates


class IdentityRoleStrategy(LinkStrategy):
    """identity --has_role--> role, from the role's member ids."""

    entity_types = ("identities", "roles")
    relationship_types = ("has_role",)

    def match_relationships(self, entities: Dict[str, List[EntityRecord]]) -> List[RelationshipCandidate]:
        identities = index_by(entities.get("identities", []), "external_id")
        candidates = []
        for role in entities.get("roles", []):
            for member_id in role.normalized_data.get("member_ids") or []:
                for identity in identities.get(member_id, []):
                    candidates.append(RelationshipCandidate(identity.id, role.id, "has_role"))
        return candidates


STRATEGIES = [IdentityLicenseStrategy(), GroupMembershipStrategy(), IdentityRoleStrategy()]
