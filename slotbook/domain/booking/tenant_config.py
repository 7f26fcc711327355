"""
Tenant configuration lookups used at the HTTP boundary.

The tenant configuration loader is the source of truth for per-service
capacity; routes resolve it once and pass it into the services as a plain
argument.
"""

import json
import logging
from typing import Optional

from ...config import (
    DEFAULT_MAX_SIMULTANEOUS_BOOKINGS,
    TENANT_CAPACITY_JSON,
    TENANT_SERVICE_ALIASES_JSON,
)

logger = logging.getLogger(__name__)


def _load_mapping(raw: str, name: str) -> dict:
    try:
        mapping = json.loads(raw or "{}")
    except json.JSONDecodeError as e:
        logger.error(f"❌ {name} is not valid JSON, ignoring it: {e}")
        return {}
    if not isinstance(mapping, dict):
        logger.error(f"❌ {name} must be a JSON object, ignoring it")
        return {}
    return mapping


class TenantConfigProvider:
    """Per-service capacity and service id resolution"""

    def __init__(
        self,
        capacities: Optional[dict] = None,
        aliases: Optional[dict] = None,
        default_capacity: int = DEFAULT_MAX_SIMULTANEOUS_BOOKINGS,
    ):
        self.capacities = {str(k): int(v) for k, v in (capacities or {}).items()}
        self.aliases = {str(k): str(v) for k, v in (aliases or {}).items()}
        self.default_capacity = default_capacity

    @classmethod
    def from_env(cls) -> "TenantConfigProvider":
        return cls(
            capacities=_load_mapping(TENANT_CAPACITY_JSON, "TENANT_CAPACITY_JSON"),
            aliases=_load_mapping(TENANT_SERVICE_ALIASES_JSON, "TENANT_SERVICE_ALIASES_JSON"),
        )

    def get_max_simultaneous_bookings(self, business_id: str, service_id: str) -> int:
        """Service entry, then the business wildcard, then the default"""
        for key in (f"{business_id}:{service_id}", f"{business_id}:*"):
            if key in self.capacities:
                return self.capacities[key]
        return self.default_capacity

    def resolve_service_id(self, business_id: str, identifier: str) -> str:
        """Map a service slug to its canonical id; canonical ids pass through"""
        identifier = (identifier or "").strip()
        return self.aliases.get(f"{business_id}:{identifier}", identifier)


_provider: Optional[TenantConfigProvider] = None


def get_tenant_config() -> TenantConfigProvider:
    """FastAPI dependency; tests override it with their own provider"""
    global _provider
    if _provider is None:
        _provider = TenantConfigProvider.from_env()
    return _provider
