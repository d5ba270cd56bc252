"""Provider registry and catalog."""

from bizhealth.deps import get_registry
from bizhealth.integrations.registry import ProviderRegistry


def test_bundled_providers_are_registered():
    registry = get_registry()

    assert registry.ids() == ["google-analytics", "quickbooks", "shopify", "stripe-data"]


def test_catalog_lists_coming_soon_providers_as_unavailable():
    catalog = {entry["id"]: entry for entry in get_registry().catalog()}

    assert catalog["mailchimp"]["available"] is False
    assert catalog["shopify"]["available"] is True
    assert "revenue" in catalog["shopify"]["pillars_affected"]


def test_unknown_provider_resolves_to_none(fake_adapter_cls):
    registry = ProviderRegistry()
    registry.register(fake_adapter_cls("alpha"))

    assert registry.get("alpha").id == "alpha"
    assert registry.get("beta") is None
