"""ARQ async worker - sync jobs and the weekly fleet sync.

WHAT:
    Processes sync jobs enqueued by the API and runs the scheduled fleet
    sync every Monday at 06:00 UTC. All sync logic lives in
    bizhealth.services.sync_service; jobs only wire it up and report.

WHY:
    - Syncs are I/O bound and can take a minute per provider; they do not
      belong in a request.
    - A worker that died mid-sync leaves connections in `syncing`; startup
      releases those stale locks so the next run retries them.

USAGE:
    # Start worker
    arq bizhealth.workers.arq_worker.WorkerSettings

REFERENCES:
    - https://arq-docs.helpmanual.io/
    - bizhealth/services/sync_service.py
    - bizhealth/workers/arq_enqueue.py
"""

from __future__ import annotations

import logging
import platform
from datetime import datetime, timedelta, timezone
from typing import Dict

from arq import cron

from bizhealth.database import get_sync_session, init_db
from bizhealth.deps import get_settings
from bizhealth.services.credential_store import reset_stale_locks
from bizhealth.services.sync_service import SyncOrchestrator, build_orchestrator
from bizhealth.telemetry import capture_exception, init_sentry
from bizhealth.workers.arq_enqueue import QUEUE_NAME, get_redis_settings

logger = logging.getLogger(__name__)


def _orchestrator(ctx: Dict) -> SyncOrchestrator:
    orchestrator = ctx.get("orchestrator")
    if orchestrator is None:
        orchestrator = build_orchestrator()
        ctx["orchestrator"] = orchestrator
    return orchestrator


async def _drain(orchestrator: SyncOrchestrator) -> None:
    # Notifications spawned by the job must finish before the job returns
    await orchestrator.dispatcher.drain(timeout=orchestrator.settings.HTTP_TIMEOUT_SECONDS)


# =============================================================================
# SYNC JOBS
# =============================================================================

async def sync_connection_job(ctx: Dict, connection_id: str) -> Dict:
    """Sync one connection.

    Returns:
        SyncResult as a dict
    """
    logger.info("[ARQ_WORKER] Starting sync job for connection %s", connection_id)
    orchestrator = _orchestrator(ctx)
    try:
        result = await orchestrator.sync_one(connection_id)
        return result.model_dump()
    except Exception as e:
        logger.exception("[ARQ_WORKER] Sync job failed for %s: %s", connection_id, e)
        capture_exception(e, extra={"operation": "sync_connection_job", "connection_id": connection_id})
        return {"connection_id": connection_id, "status": "failed", "error": str(e)}
    finally:
        await _drain(orchestrator)


async def sync_user_job(ctx: Dict, user_id: str) -> Dict:
    """Sync every `connected`/`error` connection of one user."""
    logger.info("[ARQ_WORKER] Starting user sync for %s", user_id)
    orchestrator = _orchestrator(ctx)
    try:
        results = await orchestrator.sync_all_for_user(user_id)
        return {
            "user_id": user_id,
            "synced": sum(1 for r in results if r.status == "success"),
            "failed": sum(1 for r in results if r.status == "failed"),
            "skipped": sum(1 for r in results if r.status == "skipped"),
            "results": [r.model_dump() for r in results],
        }
    except Exception as e:
        logger.exception("[ARQ_WORKER] User sync failed for %s: %s", user_id, e)
        capture_exception(e, extra={"operation": "sync_user_job", "user_id": user_id})
        return {"user_id": user_id, "error": str(e)}
    finally:
        await _drain(orchestrator)


async def fleet_sync_job(ctx: Dict) -> Dict:
    """Scheduled sync of every eligible connection (errored ones included)."""
    logger.info("[ARQ_WORKER] Starting scheduled fleet sync")
    orchestrator = _orchestrator(ctx)
    try:
        summary = await orchestrator.run_fleet_sync()
        return summary.model_dump(exclude={"results"})
    except Exception as e:
        logger.exception("[ARQ_WORKER] Fleet sync failed: %s", e)
        capture_exception(e, extra={"operation": "fleet_sync_job"})
        return {"error": str(e)}
    finally:
        await _drain(orchestrator)


# =============================================================================
# WORKER LIFECYCLE
# =============================================================================

def release_stale_locks() -> int:
    settings = get_settings()
    with get_sync_session() as db:
        return reset_stale_locks(
            db,
            now=datetime.now(timezone.utc),
            stale_after=timedelta(minutes=settings.SYNC_LOCK_STALE_MINUTES),
        )


async def startup(ctx: Dict) -> None:
    """Worker startup - init Sentry, release stale locks, log config."""
    settings = get_settings()
    init_sentry(settings.SENTRY_DSN, settings.ENVIRONMENT)

    logger.info("=" * 60)
    logger.info("[ARQ_WORKER] Worker starting up")
    logger.info("=" * 60)
    logger.info("[ARQ_WORKER] Python: %s", platform.python_version())
    logger.info("[ARQ_WORKER] Host: %s", platform.node())
    logger.info("[ARQ_WORKER] Queue: %s", QUEUE_NAME)
    logger.info("[ARQ_WORKER] Fleet concurrency: %s users", settings.FLEET_SYNC_CONCURRENCY)
    logger.info("=" * 60)

    init_db()
    released = release_stale_locks()
    if released:
        logger.info("[ARQ_WORKER] Released %d stale sync locks", released)

    ctx["orchestrator"] = build_orchestrator(settings)
    ctx["startup_time"] = datetime.now(timezone.utc)
    ctx["jobs_processed"] = 0


async def shutdown(ctx: Dict) -> None:
    """Worker shutdown - log stats."""
    jobs = ctx.get("jobs_processed", 0)
    uptime = datetime.now(timezone.utc) - ctx.get("startup_time", datetime.now(timezone.utc))

    logger.info("=" * 60)
    logger.info("[ARQ_WORKER] Worker shutting down")
    logger.info("[ARQ_WORKER] Jobs processed: %s", jobs)
    logger.info("[ARQ_WORKER] Uptime: %s", uptime)
    logger.info("=" * 60)


async def on_job_end(ctx: Dict) -> None:
    """Called after each job completes."""
    ctx["jobs_processed"] = ctx.get("jobs_processed", 0) + 1


# =============================================================================
# WORKER SETTINGS
# =============================================================================

class WorkerSettings:
    """ARQ worker configuration.

    - max_jobs=10: Process up to 10 sync jobs concurrently
    - job_timeout=1800: A fleet run covers every connection
    - retry_jobs=False: Failed syncs are retried by the next scheduled run
    """

    functions = [
        sync_connection_job,
        sync_user_job,
        fleet_sync_job,
    ]

    # Weekly fleet sync, Mondays 06:00 UTC
    cron_jobs = [
        cron(fleet_sync_job, weekday="mon", hour=6, minute=0, unique=True),
    ]

    # Lifecycle hooks
    on_startup = startup
    on_shutdown = shutdown
    after_job_end = on_job_end

    # Redis connection
    redis_settings = get_redis_settings()

    # Performance settings
    max_jobs = 10
    job_timeout = 1800
    keep_result = 3600
    retry_jobs = False
    max_tries = 1
    health_check_interval = 30

    queue_name = QUEUE_NAME
