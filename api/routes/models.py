"""Model listing, download and delete endpoints."""

import asyncio
import logging
from collections.abc import AsyncGenerator

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, StreamingResponse

from api.routes.providers import provider_not_found
from api.schemas import DeleteResponse, DownloadProgressResponse, DownloadRequest, ModelInfo
from api.sse import event_stream, sse_event
from core.factory import ProviderRegistry, get_provider_registry
from core.interfaces import DeleteOutcome, ILlmProvider, ModelRecord

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/models", tags=["models"])

DELETE_STATUS_CODES = {
    DeleteOutcome.DELETED: 200,
    DeleteOutcome.NOT_FOUND: 404,
    DeleteOutcome.PERMISSION_DENIED: 403,
    DeleteOutcome.CACHE_UNAVAILABLE: 503,
    DeleteOutcome.IO_ERROR: 500,
}


async def _list_models(provider: ILlmProvider) -> list[ModelRecord]:
    try:
        return await provider.list_models()
    except Exception:
        logger.exception("Failed to get models from %s", provider.name)
        return []


async def _list_local(provider: ILlmProvider) -> list[ModelRecord]:
    try:
        return await provider.list_local_models()
    except Exception:
        logger.exception("Failed to get loaded models from %s", provider.name)
        return []


@router.get("", response_model=list[ModelInfo])
async def list_models(
    provider: str | None = Query(default=None),
    registry: ProviderRegistry = Depends(get_provider_registry),
):
    """Unified model listing: local models first, then downloadable ones.

    Without ``provider`` every registered provider is included.
    """
    if provider:
        p = registry.get(provider)
        if p is None:
            return provider_not_found(provider)
        providers = [p]
    else:
        providers = registry.all()

    results = await asyncio.gather(*(_list_models(p) for p in providers))
    return [ModelInfo.from_record(r) for records in results for r in records]


@router.get("/loaded", response_model=list[ModelInfo])
async def list_loaded_models(
    registry: ProviderRegistry = Depends(get_provider_registry),
) -> list[ModelInfo]:
    """Downloaded or loaded models from every provider, for the model picker."""
    results = await asyncio.gather(*(_list_local(p) for p in registry.all()))
    return [ModelInfo.from_record(r) for records in results for r in records]


@router.post("/download")
async def download_model(
    request: DownloadRequest,
    registry: ProviderRegistry = Depends(get_provider_registry),
) -> StreamingResponse:
    """Download a model, streaming ``progress`` events until complete or error."""
    p = registry.get(request.provider)

    async def generate(cancel: asyncio.Event) -> AsyncGenerator[str, None]:
        if p is None:
            yield sse_event("error", {"error": f"Provider '{request.provider}' not found"})
            return

        logger.info("Download requested for %s via %s", request.model_id, p.name)
        progress_stream = p.download_model(request.model_id, cancel)
        try:
            async for progress in progress_stream:
                yield sse_event("progress", DownloadProgressResponse.from_progress(progress))
        except Exception as e:
            logger.exception("Download error for %s", request.model_id)
            yield sse_event("error", {"error": str(e)})
        finally:
            await progress_stream.aclose()

    return event_stream(generate)


@router.delete("/{model_id:path}", response_model=DeleteResponse)
async def delete_model(
    model_id: str,
    provider: str = Query(default="foundry"),
    registry: ProviderRegistry = Depends(get_provider_registry),
):
    """Remove a downloaded model from disk."""
    p = registry.get(provider)
    if p is None:
        return provider_not_found(provider)

    logger.info("Delete request for model %s via %s", model_id, p.name)
    result = await p.delete_model(model_id)
    if not result.success:
        logger.warning("Delete of %s failed (%s): %s", model_id, result.outcome.value, result.message)

    return JSONResponse(
        status_code=DELETE_STATUS_CODES[result.outcome],
        content=DeleteResponse.from_result(result).model_dump(by_alias=True),
    )
