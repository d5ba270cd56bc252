"""Sync Orchestrator - refresh, pull, map, merge, score, snapshot, notify.

WHAT:
    Drives one connection through the sync pipeline and records the outcome:

        idle -> refreshing (if token expired) -> pulling -> mapping -> merging
             -> scoring -> snapshotting -> notifying -> success

    Any stage can end in `failed`. Public entry points are `sync_one`,
    `sync_all_for_user` and `run_fleet_sync`.

WHY:
    - The orchestrator never names a provider; adapters come from the
      registry and everything provider specific lives behind them.
    - Each stage commits what it owns before the next suspension point, so a
      refreshed token or a merged profile survives a later failure, and a
      snapshot is only ever written after the merge it reflects committed.
    - Failures stop at the connection boundary: the connection goes to
      `error`, a failed SyncLog is written, and the caller gets a result.

CONCURRENCY:
    `status=syncing` is the advisory lock (see credential_store.claim_for_sync).
    Fleet mode runs one user's connections sequentially so merges into one
    profile never interleave, and runs users concurrently under a semaphore.

REFERENCES:
    - bizhealth/services/credential_store.py
    - bizhealth/services/merge_service.py
    - bizhealth/services/snapshot_service.py
    - bizhealth/workers/arq_worker.py (scheduled fleet sync)
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bizhealth.exceptions import IntegrationError, ProviderNotRegistered, PullError
from bizhealth.integrations.registry import ProviderRegistry
from bizhealth.integrations.types import PILLAR_LABELS, ConnectionCredentials, Pillar, PillarMetrics
from bizhealth.models import Connection, SyncLog, SyncStatusEnum
from bizhealth.schemas import FleetSyncResult, SyncResult
from bizhealth.services.credential_store import (
    claim_for_sync,
    credentials_for,
    get_connection,
    mark_sync_failed,
    mark_sync_succeeded,
    store_refreshed_token,
    syncable_connection_ids,
)
from bizhealth.services.merge_service import (
    apply_profile_updates,
    get_or_create_profile,
    profile_metrics,
    profile_updates_from_pull,
)
from bizhealth.services.notification_service import (
    PREF_SCORE_UPDATES,
    SCORE_UPDATE,
    BackgroundDispatcher,
    Notifier,
    build_notifier,
    should_notify,
)
from bizhealth.services.scoring import ScoreFunction, ScoreResult, coerce_score_result, load_score_function
from bizhealth.services.snapshot_service import (
    build_change_reason,
    latest_snapshot,
    pillar_scores,
    record_snapshot,
    upsert_weekly_history,
)
from bizhealth.telemetry.sentry import capture_exception

logger = logging.getLogger(__name__)


class SyncStage(str, enum.Enum):
    idle = "idle"
    refreshing = "refreshing"
    pulling = "pulling"
    mapping = "mapping"
    merging = "merging"
    scoring = "scoring"
    snapshotting = "snapshotting"
    notifying = "notifying"
    success = "success"
    failed = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _Attempt:
    """Progress of one attempt, used to build the SyncLog and SyncResult."""

    connection_id: str
    user_id: Optional[str] = None
    provider: Optional[str] = None
    stage: SyncStage = SyncStage.idle
    metrics_updated: Dict[str, bool] = field(default_factory=dict)
    pillar_impact: Dict[str, int] = field(default_factory=dict)
    changes: List[str] = field(default_factory=list)
    data_snapshot: Optional[Dict[str, Any]] = None
    score: Optional[int] = None
    previous_score: Optional[int] = None
    change_reason: Optional[str] = None
    started: float = field(default_factory=time.monotonic)

    @property
    def duration_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)

    def result(self, status: str, error: Optional[str] = None) -> SyncResult:
        return SyncResult(
            connection_id=self.connection_id,
            user_id=self.user_id,
            provider=self.provider,
            status=status,
            stage=self.stage.value,
            metrics_updated=self.metrics_updated,
            pillar_impact=self.pillar_impact,
            changes=self.changes,
            score=self.score,
            previous_score=self.previous_score,
            change_reason=self.change_reason,
            error=error,
            duration_ms=self.duration_ms,
        )


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class SyncOrchestrator:
    """Runs sync attempts with injected collaborators.

    Args:
        session_factory: Zero-arg callable returning a new SQLAlchemy Session.
            Every connection attempt gets its own session.
        score_function: `compute_score(profile_metrics, business_type)`.
        registry: Provider registry adapters are resolved from.
        notifier: Notification collaborator (`notify(user_id, kind, payload)`).
        dispatcher: Owns fire-and-forget notification tasks.
        settings: Settings instance (timeouts, lock staleness, fleet concurrency).
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        score_function: ScoreFunction,
        registry: ProviderRegistry,
        notifier: Notifier,
        dispatcher: Optional[BackgroundDispatcher] = None,
        settings=None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        if settings is None:
            from bizhealth.deps import get_settings

            settings = get_settings()
        self.session_factory = session_factory
        self.score_function = score_function
        self.registry = registry
        self.notifier = notifier
        self.dispatcher = dispatcher or BackgroundDispatcher()
        self.settings = settings
        self.clock = clock

    @property
    def stale_after(self) -> timedelta:
        return timedelta(minutes=self.settings.SYNC_LOCK_STALE_MINUTES)

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def sync_one(self, connection_id: str) -> SyncResult:
        """Sync one connection. Never raises for pipeline failures."""
        db = self.session_factory()
        try:
            return await self._run(db, connection_id)
        finally:
            await asyncio.to_thread(db.close)

    async def sync_all_for_user(self, user_id: str) -> List[SyncResult]:
        """Sync every eligible connection of one user, one after another."""
        pairs = await asyncio.to_thread(self._syncable, user_id)

        results = []
        for connection_id, _ in pairs:
            results.append(await self._sync_guarded(connection_id))
        return results

    async def run_fleet_sync(self) -> FleetSyncResult:
        """Sync every `connected`/`error` connection across all users.

        Errored connections are retried on every run. One connection's
        failure never aborts the batch.
        """
        pairs = await asyncio.to_thread(self._syncable)

        by_user: Dict[str, List[str]] = {}
        for connection_id, user_id in pairs:
            by_user.setdefault(user_id, []).append(connection_id)

        logger.info(
            "[FLEET_SYNC] Starting fleet sync: %d connections across %d users",
            len(pairs),
            len(by_user),
        )

        semaphore = asyncio.Semaphore(max(1, int(self.settings.FLEET_SYNC_CONCURRENCY)))

        async def run_user(connection_ids: List[str]) -> List[SyncResult]:
            async with semaphore:
                out = []
                for connection_id in connection_ids:
                    out.append(await self._sync_guarded(connection_id))
                return out

        batches = await asyncio.gather(*(run_user(ids) for ids in by_user.values()))
        results = [result for batch in batches for result in batch]

        summary = FleetSyncResult(
            total_integrations=len(results),
            synced=sum(1 for r in results if r.status == "success"),
            failed=sum(1 for r in results if r.status == "failed"),
            skipped=sum(1 for r in results if r.status == "skipped"),
            results=results,
        )
        logger.info(
            "[FLEET_SYNC] Complete: total=%d synced=%d failed=%d skipped=%d",
            summary.total_integrations,
            summary.synced,
            summary.failed,
            summary.skipped,
        )
        return summary

    def _syncable(self, user_id: Optional[str] = None) -> List[tuple]:
        db = self.session_factory()
        try:
            return syncable_connection_ids(db, user_id=user_id)
        finally:
            db.close()

    async def _sync_guarded(self, connection_id: str) -> SyncResult:
        # sync_one only raises when no session could be opened at all
        try:
            return await self.sync_one(connection_id)
        except Exception as exc:
            logger.exception("[SYNC] Could not run sync for connection %s", connection_id)
            capture_exception(exc, extra={"operation": "sync", "connection_id": connection_id})
            return SyncResult(connection_id=connection_id, status="failed", stage=SyncStage.failed.value, error=str(exc))

    # -------------------------------------------------------------------------
    # Pipeline
    #
    # Database work and the synchronous scorer run in worker threads via
    # asyncio.to_thread; the session is only ever used by one thread at a time.
    # -------------------------------------------------------------------------

    async def _run(self, db: Session, connection_id: str) -> SyncResult:
        attempt = _Attempt(connection_id=connection_id)

        connection, claimed = await asyncio.to_thread(self._claim, db, attempt)
        if connection is None:
            logger.warning("[SYNC] Connection %s not found", connection_id)
            return attempt.result("failed", error=f"Connection {connection_id} not found")
        if not claimed:
            return attempt.result("skipped", error="Connection is already syncing or not connected")

        logger.info("[SYNC] Starting %s sync for user %s (connection %s)", attempt.provider, attempt.user_id, connection_id)

        try:
            await self._pipeline(db, connection, attempt)
        except Exception as exc:
            return await self._record_failure(db, connection_id, attempt, exc)

        attempt.stage = SyncStage.success
        await asyncio.to_thread(self._record_success, db, connection, attempt)
        logger.info(
            "[SYNC] %s sync succeeded for user %s in %dms (score=%s)",
            attempt.provider,
            attempt.user_id,
            attempt.duration_ms,
            attempt.score,
        )
        return attempt.result("success")

    async def _pipeline(self, db: Session, connection: Connection, attempt: _Attempt) -> None:
        # Refresh
        attempt.stage = SyncStage.refreshing
        adapter = self.registry.get(attempt.provider)
        if adapter is None:
            raise ProviderNotRegistered(attempt.provider)

        credentials = await asyncio.to_thread(credentials_for, connection)
        if adapter.supports_refresh and credentials.is_expired(self.clock()):
            logger.info("[SYNC] %s token expired, refreshing", adapter.id)
            refreshed = await adapter.refresh(credentials)
            credentials = await asyncio.to_thread(self._store_refresh, db, connection, refreshed)

        # Pull
        attempt.stage = SyncStage.pulling
        timeout = self.settings.PULL_TIMEOUT_SECONDS
        try:
            pulled = await asyncio.wait_for(adapter.pull(credentials), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise PullError(
                f"{adapter.name} pull timed out after {timeout:g}s", provider_id=adapter.id, stage="pulling"
            ) from exc
        except httpx.HTTPError as exc:
            raise PullError(f"{adapter.name} pull failed: {exc}", provider_id=adapter.id, stage="pulling") from exc
        attempt.data_snapshot = pulled.metrics.populated()

        # Map, then merge
        attempt.stage = SyncStage.mapping
        pillar_results = await asyncio.to_thread(self._map_and_merge, db, adapter, pulled, attempt)
        if not pillar_results:
            logger.info("[SYNC] %s reported nothing to score for user %s", adapter.id, attempt.user_id)
            return

        # Score
        attempt.stage = SyncStage.scoring
        previous, metrics, business_type = await asyncio.to_thread(self._score_inputs, db, attempt.user_id)
        before = pillar_scores(previous) if previous is not None else {}
        attempt.previous_score = previous.score if previous is not None else None

        result = coerce_score_result(await self._compute_score(metrics, business_type))
        attempt.score = result.score
        attempt.change_reason = build_change_reason(previous, result, pillar_results)

        # Snapshot
        attempt.stage = SyncStage.snapshotting
        await asyncio.to_thread(
            self._write_snapshot, db, attempt.user_id, result, source=adapter.id, change_reason=attempt.change_reason
        )

        # Notify
        attempt.stage = SyncStage.notifying
        if await asyncio.to_thread(self._wants_notification, db, attempt.user_id):
            self._notify(attempt.user_id, result, attempt, before)

    def _claim(self, db: Session, attempt: _Attempt):
        connection = get_connection(db, attempt.connection_id)
        if connection is None:
            return None, False
        attempt.user_id = connection.user_id
        attempt.provider = connection.provider
        claimed = claim_for_sync(db, attempt.connection_id, now=self.clock(), stale_after=self.stale_after)
        return connection, claimed

    def _store_refresh(self, db: Session, connection: Connection, refreshed) -> ConnectionCredentials:
        store_refreshed_token(db, connection, refreshed)
        db.commit()
        return credentials_for(connection)

    def _map_and_merge(self, db: Session, adapter, pulled, attempt: _Attempt) -> PillarMetrics:
        profile = get_or_create_profile(db, attempt.user_id)
        pillar_results = adapter.map_to_pillars(pulled, profile_metrics(profile))
        attempt.pillar_impact = {pillar.value: res.score for pillar, res in pillar_results.items()}
        attempt.changes = [change for res in pillar_results.values() for change in res.changes]
        if not pillar_results:
            return pillar_results

        attempt.stage = SyncStage.merging
        attempt.metrics_updated = apply_profile_updates(db, profile, profile_updates_from_pull(pulled), adapter.id)
        db.commit()
        return pillar_results

    def _score_inputs(self, db: Session, user_id: str):
        previous = latest_snapshot(db, user_id)
        profile = get_or_create_profile(db, user_id)
        return previous, profile_metrics(profile), profile.business_type

    async def _compute_score(self, metrics, business_type) -> Any:
        if inspect.iscoroutinefunction(self.score_function):
            return await self.score_function(metrics, business_type)
        raw = await asyncio.to_thread(self.score_function, metrics, business_type)
        if inspect.isawaitable(raw):
            raw = await raw
        return raw

    def _write_snapshot(
        self,
        db: Session,
        user_id: str,
        result: ScoreResult,
        *,
        source: str,
        change_reason: Optional[str],
    ) -> None:
        """Snapshot and weekly history commit together; retried once on a week-row race."""
        for tries in range(2):
            now = self.clock()
            try:
                record_snapshot(db, user_id, result, source=source, change_reason=change_reason, now=now)
                upsert_weekly_history(db, user_id, result, source=source, now=now)
                db.commit()
                return
            except IntegrityError:
                db.rollback()
                if tries:
                    raise
                logger.warning("[SNAPSHOT] Weekly history conflict for user %s, retrying", user_id)

    def _wants_notification(self, db: Session, user_id: str) -> bool:
        """Best effort: a failed lookup is logged and the sync still succeeds."""
        try:
            return should_notify(db, user_id, PREF_SCORE_UPDATES)
        except Exception as exc:
            logger.warning("[NOTIFY] Preference lookup failed for user %s: %s", user_id, exc)
            db.rollback()
            return False

    def _notify(self, user_id: str, result: ScoreResult, attempt: _Attempt, before: Dict[Pillar, int]) -> None:
        payload = {
            "score": result.score,
            "previous_score": attempt.previous_score,
            "change_reason": attempt.change_reason,
            "pillar_changes": [
                {
                    "pillar": pillar.value,
                    "label": PILLAR_LABELS[pillar],
                    "score": score,
                    "delta": score - before[pillar] if pillar in before else None,
                }
                for pillar, score in result.pillar_scores().items()
            ],
        }
        self.dispatcher.spawn(
            self.notifier.notify(user_id, SCORE_UPDATE, payload),
            label=f"notify:{SCORE_UPDATE}:{user_id}",
        )

    # -------------------------------------------------------------------------
    # Outcome recording
    # -------------------------------------------------------------------------

    def _sync_log(self, attempt: _Attempt, status: SyncStatusEnum, error: Optional[str] = None) -> SyncLog:
        return SyncLog(
            connection_id=attempt.connection_id,
            status=status,
            stage=attempt.stage.value,
            metrics_updated=attempt.metrics_updated,
            pillar_impact=attempt.pillar_impact,
            data_snapshot=attempt.data_snapshot,
            error=error,
            duration_ms=attempt.duration_ms,
            created_at=self.clock(),
        )

    def _record_success(self, db: Session, connection: Connection, attempt: _Attempt) -> None:
        mark_sync_succeeded(db, connection, now=self.clock())
        db.add(self._sync_log(attempt, SyncStatusEnum.success))
        db.commit()

    async def _record_failure(self, db: Session, connection_id: str, attempt: _Attempt, exc: Exception) -> SyncResult:
        message = str(exc) or exc.__class__.__name__
        failed_stage = attempt.stage

        if isinstance(exc, IntegrationError):
            logger.warning("[SYNC] %s sync failed at %s: %s", attempt.provider, failed_stage.value, message)
        else:
            logger.error("[SYNC] %s sync crashed at %s", attempt.provider, failed_stage.value, exc_info=exc)
            capture_exception(
                exc,
                extra={
                    "operation": "sync",
                    "connection_id": connection_id,
                    "provider": attempt.provider,
                    "stage": failed_stage.value,
                },
            )

        await asyncio.to_thread(self._persist_failure, db, connection_id, attempt, message)
        return attempt.result("failed", error=message)

    def _persist_failure(self, db: Session, connection_id: str, attempt: _Attempt, message: str) -> None:
        db.rollback()
        try:
            connection = get_connection(db, connection_id)
            if connection is not None:
                mark_sync_failed(db, connection, message, now=self.clock())
                db.add(self._sync_log(attempt, SyncStatusEnum.failed, error=message))
            db.commit()
        except Exception:
            # The stale-lock reset releases this connection later
            logger.exception("[SYNC] Could not record failure for connection %s", connection_id)
            db.rollback()


# =============================================================================
# DEFAULT WIRING
# =============================================================================

def build_orchestrator(settings=None) -> SyncOrchestrator:
    """Orchestrator wired from settings: SessionLocal, SCORE_FUNCTION, notifier, registry."""
    if settings is None:
        from bizhealth.deps import get_settings

        settings = get_settings()

    from bizhealth.database import SessionLocal
    from bizhealth.integrations import providers  # noqa: F401  (registers adapters)
    from bizhealth.integrations.registry import registry

    return SyncOrchestrator(
        session_factory=SessionLocal,
        score_function=load_score_function(settings.SCORE_FUNCTION),
        registry=registry,
        notifier=build_notifier(settings),
        dispatcher=BackgroundDispatcher(),
        settings=settings,
    )


async def _drain(orchestrator: SyncOrchestrator) -> None:
    await orchestrator.dispatcher.drain(timeout=orchestrator.settings.HTTP_TIMEOUT_SECONDS)


async def sync_one(connection_id: str, orchestrator: Optional[SyncOrchestrator] = None) -> SyncResult:
    orchestrator = orchestrator or build_orchestrator()
    try:
        return await orchestrator.sync_one(connection_id)
    finally:
        await _drain(orchestrator)


async def sync_all_for_user(user_id: str, orchestrator: Optional[SyncOrchestrator] = None) -> List[SyncResult]:
    orchestrator = orchestrator or build_orchestrator()
    try:
        return await orchestrator.sync_all_for_user(user_id)
    finally:
        await _drain(orchestrator)


async def run_fleet_sync(orchestrator: Optional[SyncOrchestrator] = None) -> FleetSyncResult:
    orchestrator = orchestrator or build_orchestrator()
    try:
        return await orchestrator.run_fleet_sync()
    finally:
        await _drain(orchestrator)
