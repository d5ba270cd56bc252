"""
Telemetry Module
================

Error tracking for the API and workers.

Usage:
    from bizhealth.telemetry import init_sentry, capture_exception
"""

from bizhealth.telemetry.sentry import capture_exception, init_sentry

__all__ = ["init_sentry", "capture_exception"]
