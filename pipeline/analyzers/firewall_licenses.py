"""
Firewall licensing analyzer (Sophos Partner firewalls).

Needs the whole run: a firewall only counts as unlicensed once every
license page has been linked.
"""

from pipeline.analyzers.base import AnalysisContext, Analyzer, Evaluation
from pipeline.jobs import parse_timestamp
from schemas.events import Finding
from schemas.records import EntityRecord

UNLICENSED_TAG = "Unlicensed"
EXPIRED_TAG = "License Expired"


class FirewallLicenseAnalyzer(Analyzer):
    name = "sophos-partner-firewall-licenses"
    analysis_type = "firewall-licenses"
    integration_id = "sophos-partner"
    entity_types = ("firewalls", "licenses")
    target_entity_type = "firewalls"
    managed_tags = (UNLICENSED_TAG, EXPIRED_TAG)
    alert_types = ("firewall-unlicensed", "firewall-license-expired")
    requires_full_context = True
    relationship_types = ("has_license",)

    def evaluate(self, entity: EntityRecord, context: AnalysisContext) -> Evaluation:
        licenses = context.children(entity.id, "has_license", "licenses")
        label = entity.normalized_data.get("hostname") or entity.normalized_data.get("name") or entity.external_id
        serial = entity.normalized_data.get("serial")

        if not licenses:
            return Evaluation(
                tags={UNLICENSED_TAG},
                findings=[
                    Finding(
                        entity_id=entity.id,
                        alert_type="firewall-unlicensed",
                        severity="high",
                        message=f"Firewall {label} has no license",
                        evidence={"serialNumber": serial, "licenseCount": 0},
                    )
                ],
            )

        end_dates = [parse_timestamp(l.normalized_data.get("end_date")) for l in licenses]
        if all(end is not None and end < context.now for end in end_dates):
            latest = max(end_dates)
            return Evaluation(
                tags={EXPIRED_TAG},
                findings=[
                    Finding(
                        entity_id=entity.id,
                        alert_type="firewall-license-expired",
                        severity="medium",
                        message=f"Every license of firewall {label} has expired",
                        evidence={
                            "serialNumber": serial,
                            "licenseCount": len(licenses),
                            "expiredAt": latest.isoformat(),
                        },
                    )
                ],
            )

        return Evaluation()
