"""Storage backend status routes."""

from fastapi import APIRouter, Depends

from orchestrator.auth import get_current_principal
from orchestrator.security import Principal
from orchestrator.service_locator import get_runtime

router = APIRouter(prefix="/backends", tags=["Backends"])


@router.get("/health")
async def backends_health(principal: Principal = Depends(get_current_principal)):
    """
    Last known health of every configured backend.

    Returns:
        - backends: {name: {healthy, detail, checked_at}}
    """
    return {"backends": get_runtime().storage_service.backend_health()}


@router.get("/metrics")
async def backends_metrics(principal: Principal = Depends(get_current_principal)):
    """
    Transfer counters per backend since startup.

    Returns:
        - backends: {name: {uploads, downloads, recent_average_ms, last_activity}}
    """
    return {"backends": get_runtime().metrics.snapshot()}
