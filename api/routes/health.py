"""Health check endpoints."""

import asyncio

from fastapi import APIRouter, Depends

from core.factory import ProviderRegistry, get_provider_registry

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> dict:
    """Basic health check."""
    return {"status": "healthy"}


@router.get("/health/ready")
async def readiness_check(
    registry: ProviderRegistry = Depends(get_provider_registry),
) -> dict:
    """Readiness check including inference providers.

    The service is ready when at least one provider answers.
    """
    providers = registry.all()
    statuses = await asyncio.gather(*(p.get_status() for p in providers), return_exceptions=True)

    services = {}
    for provider, status in zip(providers, statuses):
        if isinstance(status, Exception):
            services[provider.name] = "error"
        else:
            services[provider.name] = "healthy" if status.available else "unavailable"

    ready = any(state == "healthy" for state in services.values())
    return {
        "status": "ready" if ready else "degraded",
        "services": services,
    }
