"""
Sentry Error Tracking
=====================

Centralized error tracking for the API and the arq worker.

Related files:
- bizhealth/main.py: Initializes Sentry on app startup
- bizhealth/workers/arq_worker.py: Initializes Sentry on worker startup
- bizhealth/services/sync_service.py: Reports unexpected sync failures

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays disabled when unset)
- ENVIRONMENT: Environment name (production, staging, development)
"""

from __future__ import annotations

import logging
import os
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)


def init_sentry(dsn: Optional[str] = None, environment: Optional[str] = None) -> bool:
    """Initialize the Sentry SDK.

    Returns:
        True if Sentry was initialized, False when no DSN is configured.
    """
    dsn = dsn or os.environ.get("SENTRY_DSN")
    if not dsn:
        logger.debug("[SENTRY] SENTRY_DSN not set - error tracking disabled")
        return False

    environment = environment or os.environ.get("ENVIRONMENT", "development")
    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            LoggingIntegration(
                level=logging.INFO,         # Capture INFO+ as breadcrumbs
                event_level=logging.ERROR,  # Send ERROR+ as events
            ),
        ],
        traces_sample_rate=0.1,
        send_default_pii=False,
        release=os.environ.get("RELEASE_VERSION"),
    )
    logger.debug("[SENTRY] Initialized for %s environment", environment)
    return True


def capture_exception(exception: BaseException, extra: Optional[dict] = None) -> None:
    """Report a handled exception with extra context.

    Example:
        except Exception as e:
            capture_exception(e, extra={"operation": "sync", "connection_id": cid})
    """
    with sentry_sdk.new_scope() as scope:
        for key, value in (extra or {}).items():
            scope.set_extra(key, value)
        sentry_sdk.capture_exception(exception)
