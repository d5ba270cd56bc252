"""Credential store for provider connections.

WHAT:
    The only code that writes `connections` rows: encrypts tokens on the way
    in, hands adapters a decrypted read-only view, and owns the `syncing`
    advisory lock.

WHY:
    - Keeps encryption and token lifecycle out of adapters and routers.
    - The lock is a compare-and-set in the database so a scheduled sync and
      a manual sync for the same connection cannot both pass the claim.

REFERENCES:
    - bizhealth/security.py (encrypt_secret / decrypt_secret)
    - bizhealth/services/sync_service.py (lock consumer)
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from bizhealth.integrations.types import ConnectionCredentials, OAuthResult, RefreshedToken, as_utc
from bizhealth.models import Connection, ConnectionStatusEnum, SyncLog, SyncStatusEnum
from bizhealth.security import decrypt_secret, encrypt_secret

logger = logging.getLogger(__name__)

SYNCABLE_STATUSES = (ConnectionStatusEnum.connected, ConnectionStatusEnum.error)
MAX_ERROR_LENGTH = 2000
INTERRUPTED_ERROR = "Sync interrupted before completion"


def _label(connection: Connection) -> str:
    return f"{connection.provider}:{connection.external_account_id or connection.user_id}"


def get_connection(db: Session, connection_id: str, user_id: Optional[str] = None) -> Optional[Connection]:
    query = db.query(Connection).filter(Connection.id == connection_id)
    if user_id is not None:
        query = query.filter(Connection.user_id == user_id)
    return query.first()


def connections_for_user(db: Session, user_id: str) -> List[Connection]:
    return db.query(Connection).filter(Connection.user_id == user_id).order_by(Connection.created_at).all()


def syncable_connection_ids(db: Session, user_id: Optional[str] = None) -> List[tuple]:
    """(connection_id, user_id) pairs eligible for a scheduled or bulk sync."""
    query = db.query(Connection.id, Connection.user_id).filter(Connection.status.in_(SYNCABLE_STATUSES))
    if user_id is not None:
        query = query.filter(Connection.user_id == user_id)
    return [(row[0], row[1]) for row in query.order_by(Connection.user_id, Connection.created_at).all()]


def credentials_for(connection: Connection) -> ConnectionCredentials:
    """Decrypt a connection into the read-only view adapters receive."""
    label = _label(connection)
    access_token = decrypt_secret(connection.access_token_enc, context=label) if connection.access_token_enc else ""
    refresh_token = (
        decrypt_secret(connection.refresh_token_enc, context=label) if connection.refresh_token_enc else None
    )
    return ConnectionCredentials(
        connection_id=connection.id,
        user_id=connection.user_id,
        provider_id=connection.provider,
        access_token=access_token,
        refresh_token=refresh_token,
        token_expires_at=connection.token_expires_at,
        external_account_id=connection.external_account_id,
        scopes=connection.scopes or "",
        extra=dict(connection.extra or {}),
    )


def save_oauth_result(db: Session, user_id: str, provider_id: str, result: OAuthResult) -> Connection:
    """Create or update the (user, provider) connection after a successful callback.

    The caller commits.
    """
    if not result.access_token:
        raise ValueError("Provider returned an empty access token")

    connection = (
        db.query(Connection)
        .filter(Connection.user_id == user_id, Connection.provider == provider_id)
        .first()
    )
    if connection is None:
        connection = Connection(user_id=user_id, provider=provider_id, extra={})
        db.add(connection)

    connection.external_account_id = result.external_account_id or connection.external_account_id
    label = f"{provider_id}:{connection.external_account_id or user_id}"
    connection.access_token_enc = encrypt_secret(result.access_token, context=label)
    connection.refresh_token_enc = (
        encrypt_secret(result.refresh_token, context=label) if result.refresh_token else None
    )
    connection.token_expires_at = result.expires_at
    connection.scopes = result.scopes or ""
    connection.extra = {**(connection.extra or {}), **(result.extra or {})}
    connection.status = ConnectionStatusEnum.connected
    connection.last_sync_error = None
    connection.sync_started_at = None

    db.flush()
    logger.info("[CREDENTIALS] Stored credentials for %s (user=%s)", label, user_id)
    return connection


def store_refreshed_token(db: Session, connection: Connection, refreshed: RefreshedToken) -> None:
    """Persist a refreshed access token. Keeps the old refresh token unless rotated.

    The caller commits immediately so the new token survives a later failure.
    """
    if not refreshed.access_token:
        raise ValueError("Refresh returned an empty access token")
    label = _label(connection)
    connection.access_token_enc = encrypt_secret(refreshed.access_token, context=label)
    if refreshed.refresh_token:
        connection.refresh_token_enc = encrypt_secret(refreshed.refresh_token, context=label)
    connection.token_expires_at = refreshed.expires_at
    db.flush()
    logger.info("[CREDENTIALS] Refreshed token stored for %s", label)


def set_external_account(db: Session, connection: Connection, external_account_id: str) -> Connection:
    connection.external_account_id = external_account_id
    db.flush()
    return connection


def claim_for_sync(
    db: Session,
    connection_id: str,
    *,
    now: Optional[datetime] = None,
    stale_after: timedelta = timedelta(minutes=30),
) -> bool:
    """Atomically move a connection into `syncing`.

    Succeeds from `connected`/`error`, or from a `syncing` lock older than
    `stale_after` (a worker that died mid-sync). Commits on success.
    """
    now = now or datetime.now(timezone.utc)
    cutoff = now - stale_after
    result = db.execute(
        update(Connection)
        .where(
            Connection.id == connection_id,
            or_(
                Connection.status.in_(SYNCABLE_STATUSES),
                and_(
                    Connection.status == ConnectionStatusEnum.syncing,
                    or_(Connection.sync_started_at.is_(None), Connection.sync_started_at < cutoff),
                ),
            ),
        )
        .values(status=ConnectionStatusEnum.syncing, sync_started_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    claimed = result.rowcount == 1
    if not claimed:
        logger.info("[CREDENTIALS] Connection %s not claimable (busy or not connected)", connection_id)
    return claimed


def mark_sync_succeeded(db: Session, connection: Connection, now: Optional[datetime] = None) -> None:
    connection.status = ConnectionStatusEnum.connected
    connection.last_sync_at = now or datetime.now(timezone.utc)
    connection.last_sync_status = SyncStatusEnum.success
    connection.last_sync_error = None
    connection.sync_started_at = None


def mark_sync_failed(db: Session, connection: Connection, error: str, now: Optional[datetime] = None) -> None:
    connection.status = ConnectionStatusEnum.error
    connection.last_sync_at = now or datetime.now(timezone.utc)
    connection.last_sync_status = SyncStatusEnum.failed
    connection.last_sync_error = (error or "Unknown error")[:MAX_ERROR_LENGTH]
    connection.sync_started_at = None


def reset_stale_locks(db: Session, *, now: Optional[datetime] = None, stale_after: timedelta) -> int:
    """Release `syncing` locks left behind by dead workers. Returns rows reset.

    Each released connection is marked failed and gets a failed SyncLog so
    the interrupted attempt shows up in its history.
    """
    now = now or datetime.now(timezone.utc)
    stale_claim = and_(
        Connection.status == ConnectionStatusEnum.syncing,
        or_(Connection.sync_started_at.is_(None), Connection.sync_started_at < now - stale_after),
    )
    stale = db.execute(select(Connection.id, Connection.sync_started_at).where(stale_claim)).all()

    released = 0
    for connection_id, started_at in stale:
        # Same predicate again: a worker may have finished the row since the select
        result = db.execute(
            update(Connection)
            .where(Connection.id == connection_id, stale_claim)
            .values(
                status=ConnectionStatusEnum.error,
                last_sync_at=now,
                last_sync_status=SyncStatusEnum.failed,
                last_sync_error=INTERRUPTED_ERROR,
                sync_started_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            continue
        started_at = as_utc(started_at)
        db.add(SyncLog(
            connection_id=connection_id,
            status=SyncStatusEnum.failed,
            stage="interrupted",
            error=INTERRUPTED_ERROR,
            duration_ms=int((now - started_at).total_seconds() * 1000) if started_at else 0,
            created_at=now,
        ))
        released += 1

    db.commit()
    if released:
        logger.warning("[CREDENTIALS] Reset %d stale syncing connections", released)
    return released


def delete_connections(db: Session, connections: Iterable[Connection]) -> None:
    for connection in connections:
        db.delete(connection)
    db.flush()
