"""Provider status and reconnect endpoints."""

import asyncio
import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from api.schemas import ProviderStatusResponse
from core.factory import ProviderRegistry, get_provider_registry
from core.interfaces import ILlmProvider, ProviderStatus

logger = logging.getLogger(__name__)

router = APIRouter(tags=["providers"])


def provider_not_found(name: str | None) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": f"Provider '{name}' not found"})


async def _status(provider: ILlmProvider) -> ProviderStatus:
    try:
        return await provider.get_status()
    except Exception as e:
        logger.exception("Status check failed for %s", provider.name)
        return ProviderStatus(provider=provider.name, available=False, error=str(e))


@router.get("/status", response_model=list[ProviderStatusResponse])
async def get_status(
    registry: ProviderRegistry = Depends(get_provider_registry),
) -> list[ProviderStatusResponse]:
    """Current availability of every registered provider."""
    statuses = await asyncio.gather(*(_status(p) for p in registry.all()))
    return [ProviderStatusResponse.from_status(s) for s in statuses]


@router.post("/reconnect", response_model=ProviderStatusResponse)
async def reconnect(
    provider: str = Query(default="foundry"),
    registry: ProviderRegistry = Depends(get_provider_registry),
):
    """Drop cached endpoint and catalog state, then check the provider again."""
    p = registry.get(provider)
    if p is None:
        return provider_not_found(provider)

    logger.info("Reconnect requested for %s", p.name)
    status = await p.reconnect()
    return ProviderStatusResponse.from_status(status)
