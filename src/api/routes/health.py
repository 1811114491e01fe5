"""
Health check endpoints.

Provides endpoints for monitoring application health and status.
"""

from typing import Any, Dict

from fastapi import APIRouter

from config.settings import get_settings
from styling.service import get_recommendation_service


router = APIRouter(tags=["Health"])


@router.get("/health")
async def health_check() -> Dict[str, Any]:
    """
    Basic health check endpoint.

    Returns:
        Health status with basic info
    """
    return {
        "status": "healthy",
        "service": "outfit-recommendation-api",
    }


@router.get("/health/detailed")
async def detailed_health_check() -> Dict[str, Any]:
    """
    Detailed health check with dependency status.

    Checks:
    - Text providers configured
    - Key pools (counts only, never credentials)
    - Request cache occupancy

    Returns:
        Detailed health status
    """
    settings = get_settings()
    stats = get_recommendation_service().stats()

    pools_ok = all(pool["available"] > 0 for pool in stats["key_pools"]) if stats["key_pools"] else True
    healthy = bool(stats["text_providers"]) and pools_ok

    return {
        "status": "healthy" if healthy else "degraded",
        "service": "outfit-recommendation-api",
        "environment": settings.environment,
        "checks": {
            "config": "ok",
            "supabase": "configured" if settings.supabase_configured else "not_configured",
            "redis": "enabled" if settings.redis_enabled else "disabled",
            **stats,
        },
    }


@router.get("/ready")
async def readiness_check() -> Dict[str, str]:
    """
    Kubernetes-style readiness probe.

    Ready once at least one text provider is configured.
    """
    if not get_recommendation_service().orchestrator.provider_names:
        return {"status": "not_ready", "reason": "no_text_provider_configured"}

    return {"status": "ready"}


@router.get("/live")
async def liveness_check() -> Dict[str, str]:
    """
    Kubernetes-style liveness probe.

    Returns 200 if the service is alive.
    """
    return {"status": "alive"}
