"""Integration endpoints: catalog, connect/callback, manual sync, disconnect.

WHAT:
    Provider-agnostic OAuth flow plus connection management. Every provider
    uses the same four routes; provider-specific behaviour lives in its
    adapter.

WHY:
    The callback is a browser redirect, so failures there redirect back to
    the frontend with an `error` query parameter instead of returning JSON.

REFERENCES:
    - bizhealth/services/oauth_service.py
    - bizhealth/services/sync_service.py
"""

import asyncio
import logging
from typing import List, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from bizhealth import schemas
from bizhealth.database import get_db
from bizhealth.deps import (
    get_current_user_id,
    get_dispatcher,
    get_orchestrator,
    get_registry,
    get_settings,
)
from bizhealth.exceptions import (
    AuthExchangeError,
    ConnectionNotFound,
    InvalidStateToken,
    ProviderNotConfigured,
    ProviderNotRegistered,
)
from bizhealth.services import oauth_service
from bizhealth.services.credential_store import connections_for_user, get_connection
from bizhealth.services.snapshot_service import snapshot_history
from bizhealth.workers.arq_enqueue import enqueue_connection_sync

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/integrations", tags=["Integrations"])

# Query parameters consumed by the callback itself, never forwarded to adapters
_CALLBACK_RESERVED = {"code", "state", "error", "error_description"}


def _frontend_redirect(provider: str, **params: str) -> RedirectResponse:
    settings = get_settings()
    query = urlencode({"provider": provider, **params})
    return RedirectResponse(url=f"{settings.FRONTEND_URL.rstrip('/')}/settings/integrations?{query}")


def _schedule_sync(background_tasks: BackgroundTasks, orchestrator, connection_id: str) -> None:
    """Run a sync after the response: on the arq worker or in this process."""
    if get_settings().SYNC_VIA_WORKER:
        background_tasks.add_task(enqueue_connection_sync, connection_id)
    else:
        background_tasks.add_task(orchestrator.sync_one, connection_id)


@router.get("/providers", response_model=List[schemas.ProviderCatalogEntry])
def list_providers(registry=Depends(get_registry)):
    """Catalog of supported providers, including ones not yet available."""
    return registry.catalog()


@router.get("", response_model=schemas.ConnectionListResponse)
def list_connections(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    connections = connections_for_user(db, user_id)
    return schemas.ConnectionListResponse(
        connections=[schemas.ConnectionOut.model_validate(c) for c in connections],
        total=len(connections),
    )


@router.get("/score-history", response_model=List[schemas.ScoreSnapshotOut])
def score_history(
    limit: int = Query(52, ge=1, le=520),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Recorded scores for the caller, newest first."""
    return snapshot_history(db, user_id, limit=limit)


@router.get("/{provider}/connect")
def connect(
    provider: str,
    store_domain: Optional[str] = Query(None, description="Shopify store domain (e.g. 'mystore' or 'mystore.myshopify.com')"),
    user_id: str = Depends(get_current_user_id),
    registry=Depends(get_registry),
):
    """Redirect the user to the provider's consent screen.

    WHAT:
        Builds the authorization URL with a signed state carrying the user id.
    WHY:
        Starts the OAuth flow; the callback trusts nothing but that state.
    """
    extra = {"store_domain": store_domain} if store_domain else None
    try:
        url = oauth_service.build_authorization_url(registry, provider, user_id, extra)
    except ProviderNotRegistered:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown provider: {provider}")
    except ProviderNotConfigured as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return RedirectResponse(url=url)


@router.get("/{provider}/callback")
async def callback(
    provider: str,
    request: Request,
    background_tasks: BackgroundTasks,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    orchestrator=Depends(get_orchestrator),
):
    """Handle the OAuth redirect from the provider.

    WHAT:
        Verifies state, exchanges the code, stores encrypted credentials and
        schedules the first sync.
    WHY:
        Completes the OAuth flow; the user lands back in the app either way.
    """
    if error:
        logger.error("[OAUTH] %s returned error: %s - %s", provider, error, error_description)
        return _frontend_redirect(provider, status="error", error=error)

    params = {k: v for k, v in request.query_params.items() if k not in _CALLBACK_RESERVED}
    try:
        connection = await oauth_service.complete_authorization(db, registry, provider, code, state, params)
    except ProviderNotRegistered:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown provider: {provider}")
    except InvalidStateToken as exc:
        logger.warning("[OAUTH] %s callback rejected: %s", provider, exc)
        return _frontend_redirect(provider, status="error", error="invalid_state")
    except AuthExchangeError as exc:
        return _frontend_redirect(provider, status="error", error="exchange_failed", message=exc.message[:200])

    if not connection.external_account_id:
        # Nothing to read from yet (several or no GA4 properties); sync after selection
        return _frontend_redirect(provider, status="connected", connection_id=connection.id, needs_account_select="true")

    _schedule_sync(background_tasks, orchestrator, connection.id)
    return _frontend_redirect(provider, status="connected", connection_id=connection.id)


@router.put("/connections/{connection_id}/account", response_model=schemas.ConnectionOut)
def select_account(
    connection_id: str,
    body: schemas.AccountSelection,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    orchestrator=Depends(get_orchestrator),
):
    """Choose which external account to read from (e.g. the GA4 property) and sync it."""
    try:
        connection = oauth_service.select_account(
            db, connection_id, user_id, body.external_account_id, account_name=body.account_name
        )
    except ConnectionNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Connection not found")
    _schedule_sync(background_tasks, orchestrator, connection.id)
    return connection


@router.post("/connections/{connection_id}/sync", response_model=schemas.SyncResult)
async def sync_connection(
    connection_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    orchestrator=Depends(get_orchestrator),
):
    """Run a manual sync now and return its outcome.

    A connection already being synced returns `status=skipped`. With
    SYNC_VIA_WORKER the sync is queued for the arq worker instead.
    """
    connection = await asyncio.to_thread(get_connection, db, connection_id, user_id)
    if connection is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Connection not found")

    if get_settings().SYNC_VIA_WORKER:
        job = await enqueue_connection_sync(connection_id)
        logger.info("[SYNC] Manual sync for %s handed to worker (job %s)", connection_id, job["job_id"])
        return schemas.SyncResult(
            connection_id=connection_id, user_id=user_id, provider=connection.provider, status="queued"
        )
    return await orchestrator.sync_one(connection_id)


@router.delete("/connections/{connection_id}", status_code=status.HTTP_204_NO_CONTENT)
async def disconnect(
    connection_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    dispatcher=Depends(get_dispatcher),
):
    """Delete the connection locally; upstream revocation runs in the background."""
    try:
        oauth_service.disconnect_connection(db, registry, dispatcher, connection_id, user_id)
    except ConnectionNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Connection not found")
