"""
Integration registry: which entity types each integration syncs, and how often.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple


@dataclass(frozen=True)
class EntityTypeConfig:
    entity_type: str
    priority: int = 5
    rate_minutes: int = 60
    # global types are bootstrapped for every active data source
    is_global: bool = True


@dataclass(frozen=True)
class IntegrationSpec:
    integration_id: str
    supported_types: Tuple[EntityTypeConfig, ...]
    display_name: Optional[str] = None

    @property
    def entity_types(self) -> List[str]:
        return [t.entity_type for t in self.supported_types]

    def supports(self, entity_type: str) -> bool:
        return entity_type in self.entity_types

    def type_config(self, entity_type: str) -> Optional[EntityTypeConfig]:
        for config in self.supported_types:
            if config.entity_type == entity_type:
                return config
        return None


class IntegrationRegistry:
    def __init__(self, specs: Iterable[IntegrationSpec] = ()):
        self._specs: Dict[str, IntegrationSpec] = {}
        for spec in specs:
            self.register(spec)

    def register(self, spec: IntegrationSpec) -> None:
        self._specs[spec.integration_id] = spec

    def get(self, integration_id: str) -> Optional[IntegrationSpec]:
        return self._specs.get(integration_id)

    def __contains__(self, integration_id: str) -> bool:
        return integration_id in self._specs

    def __iter__(self):
        return iter(self._specs.values())


SOPHOS_PARTNER = IntegrationSpec(
    integration_id="sophos-partner",
    display_name="Sophos Partner",
    supported_types=(
        EntityTypeConfig("companies", priority=8, rate_minutes=360),
        EntityTypeConfig("firewalls", priority=6, rate_minutes=60),
        EntityTypeConfig("licenses", priority=6, rate_minutes=60),
        EntityTypeConfig("endpoints", priority=5, rate_minutes=30),
    ),
)

MICROSOFT_365 = IntegrationSpec(
    integration_id="microsoft-365",
    display_name="Microsoft 365",
    supported_types=(
        EntityTypeConfig("identities", priority=7, rate_minutes=60),
        EntityTypeConfig("groups", priority=6, rate_minutes=120),
        EntityTypeConfig("licenses", priority=5, rate_minutes=720),
        EntityTypeConfig("roles", priority=6, rate_minutes=360),
        EntityTypeConfig("policies", priority=6, rate_minutes=360),
    ),
)


def default_registry() -> IntegrationRegistry:
    return IntegrationRegistry([SOPHOS_PARTNER, MICROSOFT_365])
