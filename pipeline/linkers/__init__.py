"""
Linkers: the relationship driver plus per-integration match strategies.
"""

from pipeline.linkers import microsoft_365, sophos_partner
from pipeline.linkers.base import Linker, LinkStrategy, RelationshipCandidate

LINK_STRATEGIES = {
    "sophos-partner": sophos_partner.STRATEGIES,
    "microsoft-365": microsoft_365.STRATEGIES,
}

__all__ = ["LINK_STRATEGIES", "Linker", "LinkStrategy", "RelationshipCandidate"]
