"""Provider adapters, their shared types and the registry."""

from bizhealth.integrations.registry import ProviderRegistry, get_adapter, registry

__all__ = ["ProviderRegistry", "get_adapter", "registry"]
