"""
Admin endpoints for the maintenance scheduler.

GET  /admin/scheduler/status
POST /admin/scheduler/{trigger}/run

Security: expected to sit behind the upstream admin gateway.
"""
from fastapi import APIRouter, Depends, HTTPException

from consensus_ai.core.logging import get_logger
from consensus_ai.dependencies import Services, get_services
from consensus_ai.services.scheduler import SCHEDULES

logger = get_logger(__name__)

router = APIRouter()


@router.get("/scheduler/status")
async def scheduler_status(services: Services = Depends(get_services)):
    return services.scheduler.status()


@router.post("/scheduler/{trigger}/run")
async def run_trigger(trigger: str, services: Services = Depends(get_services)):
    """
    Run a scheduler trigger immediately.

    A run that finds the trigger's lease held reports status "skipped".
    """
    if trigger not in SCHEDULES:
        raise HTTPException(status_code=404, detail=f"Unknown trigger: {trigger}")
    logger.info("scheduler_manual_run", trigger=trigger)
    return await services.scheduler.run(trigger)
