"""OAuth connect/callback/disconnect flows shared by every provider.

WHAT:
    - `build_authorization_url`: consent-screen redirect with signed state.
    - `complete_authorization`: verify state, exchange the code, upsert the
      connection through the credential store.
    - `select_account`: choose the external account after connecting
      (e.g. the GA4 property to read from).
    - `disconnect_connection`: background upstream revocation, then local
      deletion of the connection and its sync logs.

WHY:
    Routers stay thin and provider agnostic; the callback path is the only
    unauthenticated entry point, so state verification lives here in one
    place instead of once per provider.

REFERENCES:
    - bizhealth/security.py (create_oauth_state / verify_oauth_state)
    - bizhealth/routers/integrations.py
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from sqlalchemy.orm import Session

from bizhealth.exceptions import AuthExchangeError, ConnectionNotFound, ProviderNotConfigured, ProviderNotRegistered
from bizhealth.integrations.base import ProviderAdapter
from bizhealth.integrations.registry import ProviderRegistry
from bizhealth.models import Connection
from bizhealth.security import verify_oauth_state
from bizhealth.services.credential_store import (
    credentials_for,
    delete_connections,
    get_connection,
    save_oauth_result,
    set_external_account,
)
from bizhealth.services.notification_service import BackgroundDispatcher

logger = logging.getLogger(__name__)


def resolve_adapter(registry: ProviderRegistry, provider_id: str) -> ProviderAdapter:
    adapter = registry.get(provider_id)
    if adapter is None:
        raise ProviderNotRegistered(provider_id)
    return adapter


def build_authorization_url(
    registry: ProviderRegistry,
    provider_id: str,
    user_id: str,
    extra: Optional[Mapping[str, Any]] = None,
) -> str:
    """Consent URL for `provider_id`.

    Raises:
        ProviderNotRegistered: unknown provider id.
        ProviderNotConfigured: client id/secret missing.
        ValueError: provider-specific input is missing or invalid (Shopify store domain).
    """
    adapter = resolve_adapter(registry, provider_id)
    if not adapter.is_configured():
        raise ProviderNotConfigured(provider_id)
    url = adapter.authorization_url(user_id, extra)
    logger.info("[OAUTH] Redirecting user %s to %s consent", user_id, provider_id)
    return url


async def complete_authorization(
    db: Session,
    registry: ProviderRegistry,
    provider_id: str,
    code: Optional[str],
    state: Optional[str],
    callback_params: Optional[Mapping[str, Any]] = None,
) -> Connection:
    """Finish the callback: verify state, exchange the code, store credentials.

    Values carried in the signed state take precedence over callback query
    parameters of the same name.

    Raises:
        InvalidStateToken: state missing, forged, stale or for another provider.
        AuthExchangeError: missing code or upstream rejection.
    """
    adapter = resolve_adapter(registry, provider_id)
    verified = verify_oauth_state(state, provider_id)
    if not code:
        raise AuthExchangeError("Missing authorization code", provider_id=provider_id, stage="exchange")

    extra = {**dict(callback_params or {}), **verified.data}
    result = await adapter.exchange_code(code, verified.user_id, extra)

    connection = save_oauth_result(db, verified.user_id, provider_id, result)
    db.commit()
    db.refresh(connection)
    logger.info("[OAUTH] %s connected for user %s (connection %s)", provider_id, verified.user_id, connection.id)
    return connection


def select_account(
    db: Session,
    connection_id: str,
    user_id: str,
    external_account_id: str,
    account_name: Optional[str] = None,
) -> Connection:
    """Point the connection at one external account. The caller schedules the sync."""
    connection = get_connection(db, connection_id, user_id=user_id)
    if connection is None:
        raise ConnectionNotFound(connection_id)
    external_account_id = external_account_id.strip()
    set_external_account(db, connection, external_account_id)
    connection.extra = {**(connection.extra or {}), "selected_account_name": account_name or external_account_id}
    db.commit()
    db.refresh(connection)
    logger.info("[OAUTH] %s account set to %s for user %s", connection.provider, external_account_id, user_id)
    return connection


def disconnect_connection(
    db: Session,
    registry: ProviderRegistry,
    dispatcher: BackgroundDispatcher,
    connection_id: str,
    user_id: str,
) -> None:
    """Delete locally and revoke upstream in the background.

    Revocation failures are logged by the dispatcher and never block the
    local delete.
    """
    connection = get_connection(db, connection_id, user_id=user_id)
    if connection is None:
        raise ConnectionNotFound(connection_id)

    provider_id = connection.provider
    adapter = registry.get(provider_id)
    credentials = None
    if adapter is not None and connection.access_token_enc:
        try:
            credentials = credentials_for(connection)
        except ValueError as exc:
            logger.warning("[OAUTH] Skipping %s revocation, stored token unreadable: %s", provider_id, exc)

    delete_connections(db, [connection])
    db.commit()
    logger.info("[OAUTH] %s disconnected for user %s", provider_id, user_id)

    if adapter is not None and credentials is not None:
        dispatcher.spawn(adapter.disconnect(credentials), label=f"disconnect:{provider_id}:{connection_id}")
