"""Provider registry: identifier -> adapter lookup.

Adapters register themselves when `bizhealth.integrations.providers` is
imported. The orchestrator only ever resolves adapters through here.
"""

import logging
from typing import Any, Dict, List, Optional

from bizhealth.integrations.base import ProviderAdapter

logger = logging.getLogger(__name__)


# Providers shown in the catalog before an adapter exists for them
COMING_SOON: List[Dict[str, Any]] = [
    {
        "id": "mailchimp",
        "name": "Mailchimp",
        "description": "Email list growth and campaign engagement",
        "category": "marketing",
        "pillars_affected": ["acquisition", "retention"],
        "required_scopes": [],
        "available": False,
    },
]


class ProviderRegistry:
    """In-memory map of provider id to adapter instance."""

    def __init__(self) -> None:
        self._adapters: Dict[str, ProviderAdapter] = {}

    def register(self, adapter: ProviderAdapter) -> ProviderAdapter:
        if not adapter.id:
            raise ValueError("Adapter must define an id")
        if adapter.id in self._adapters:
            logger.debug("[REGISTRY] Replacing adapter for %s", adapter.id)
        self._adapters[adapter.id] = adapter
        return adapter

    def get(self, provider_id: str) -> Optional[ProviderAdapter]:
        return self._adapters.get(provider_id)

    def all(self) -> List[ProviderAdapter]:
        return list(self._adapters.values())

    def ids(self) -> List[str]:
        return sorted(self._adapters)

    def catalog(self) -> List[Dict[str, Any]]:
        entries = [adapter.catalog_entry() for adapter in self.all()]
        registered = {entry["id"] for entry in entries}
        entries.extend(dict(e) for e in COMING_SOON if e["id"] not in registered)
        return entries


registry = ProviderRegistry()


def register(adapter: ProviderAdapter) -> ProviderAdapter:
    return registry.register(adapter)


def get_adapter(provider_id: str) -> Optional[ProviderAdapter]:
    return registry.get(provider_id)
