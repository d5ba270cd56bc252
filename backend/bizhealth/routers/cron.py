"""Scheduler trigger for the fleet sync.

WHAT:
    `POST /cron/fleet-sync` runs the scheduled sync over every
    `connected`/`error` connection and returns the aggregate.

WHY:
    Lets an external scheduler (platform cron) drive the weekly run when the
    arq worker's own cron is not deployed. Guarded by `CRON_SECRET`.
"""

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status

from bizhealth import schemas
from bizhealth.deps import get_orchestrator, get_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["Cron"])


def verify_cron_secret(authorization: Optional[str] = Header(default=None)) -> None:
    secret = get_settings().CRON_SECRET
    if not secret:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="CRON_SECRET is not configured")
    if not authorization or not hmac.compare_digest(authorization, f"Bearer {secret}"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


@router.post("/fleet-sync", response_model=schemas.FleetSyncResult, dependencies=[Depends(verify_cron_secret)])
async def fleet_sync(orchestrator=Depends(get_orchestrator)):
    logger.info("[FLEET_SYNC] Triggered via cron endpoint")
    try:
        return await orchestrator.run_fleet_sync()
    finally:
        await orchestrator.dispatcher.drain(timeout=orchestrator.settings.HTTP_TIMEOUT_SECONDS)
