"""
Health check endpoints.
"""
from fastapi import APIRouter, Depends

from consensus_ai.core.cache import get_redis_client
from consensus_ai.core.logging import get_logger
from consensus_ai.dependencies import Services, get_services

logger = get_logger(__name__)
router = APIRouter()


@router.get("/")
async def health_check(services: Services = Depends(get_services)):
    """
    Basic health check endpoint.
    """
    return {
        "status": "ok",
        "message": "API is running",
        "providers": len(services.providers),
        "store": type(services.store).__name__,
        "redis": get_redis_client() is not None,
        "scheduler": services.scheduler.running,
    }


@router.get("/providers")
async def provider_health(services: Services = Depends(get_services)):
    """
    Health of each configured LLM provider.

    Returns:
        Per-provider model and circuit breaker state. Status is "degraded"
        when any breaker is open and "unavailable" when no provider is
        configured or fewer than the drafting quorum are usable.
    """
    providers = services.providers.health()
    usable = [
        provider_id
        for provider_id, info in providers.items()
        if info["circuit_breaker"]["state"] != "open"
    ]
    quorum = services.settings.orchestrator.quorum

    if not providers or len(usable) < quorum:
        status = "unavailable"
    elif len(usable) < len(providers):
        status = "degraded"
    else:
        status = "ok"

    return {
        "status": status,
        "quorum": quorum,
        "usable": usable,
        "providers": providers,
    }
