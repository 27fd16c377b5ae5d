"""Streaming chat endpoint."""

import asyncio
import logging
from collections.abc import AsyncGenerator

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse

from api.schemas import ChatChunk, ChatRequest
from api.sse import event_stream, sse_event
from core.factory import ProviderRegistry, get_provider_registry

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])


@router.post("/chat")
async def chat(
    request: ChatRequest,
    provider: str = Query(default="foundry"),
    registry: ProviderRegistry = Depends(get_provider_registry),
) -> StreamingResponse:
    """Stream a chat completion as ``message`` events.

    Each event carries ``{content, done, error}``; the last one has
    ``done`` set.
    """
    p = registry.get(provider)

    async def generate(cancel: asyncio.Event) -> AsyncGenerator[str, None]:
        if p is None:
            yield sse_event("message", ChatChunk(content=f"⚠️ Provider '{provider}' not found", done=True))
            return

        deltas = p.stream_chat(request.to_messages(), request.to_options(), cancel)
        try:
            async for delta in deltas:
                yield sse_event("message", ChatChunk.from_delta(delta))
        except Exception as e:
            logger.exception("Chat error with provider %s", p.name)
            yield sse_event("message", ChatChunk(content=f"\n\n⚠️ Error: {e}", done=True, error=str(e)))
        finally:
            await deltas.aclose()

    return event_stream(generate)
