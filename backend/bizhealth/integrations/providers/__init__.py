"""Concrete provider adapters. Importing this package registers all of them."""

from bizhealth.integrations.providers import google_analytics, quickbooks, shopify, stripe_data  # noqa: F401
