"""
Sophos Partner relationships.

Firewall licenses carry the serial number of the firewall they belong to.
"""

from typing import Dict, List

from pipeline.linkers.base import LinkStrategy, RelationshipCandidate, index_by
from schemas.records import EntityRecord


class FirewallLicenseStrategy(LinkStrategy):
    """firewall --has_license--> license, matched on serial number."""

    entity_types = ("firewalls", "licenses")
    relationship_types = ("has_license",)

    def match_relationships(self, entities: Dict[str, List[EntityRecord]]) -> List[RelationshipCandidate]:
        firewalls_by_serial = index_by(entities.get("firewalls", []), "serial")
        candidates = []
        for license in entities.get("licenses", []):
            serial = license.normalized_data.get("serial_number")
            for firewall in firewalls_by_serial.get(str(serial), []) if serial else []:
                candidates.append(
                    RelationshipCandidate(
                        parent_entity_id=firewall.id,
                        child_entity_id=license.id,
                        relationship_type="has_license",
                        metadata={"serial_number": serial},
                    )
                )
        return candidates


STRATEGIES = [FirewallLicenseStrategy()]
