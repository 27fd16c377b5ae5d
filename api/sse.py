"""Server-sent event framing for the streaming routes."""

import asyncio
import json
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from typing import Any

from fastapi.responses import StreamingResponse
from pydantic import BaseModel

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


def sse_event(event: str, data: BaseModel | dict[str, Any]) -> str:
    """Format one ``event: <type>`` / ``data: <json>`` frame."""
    if isinstance(data, BaseModel):
        payload = data.model_dump_json(by_alias=True)
    else:
        payload = json.dumps(data, ensure_ascii=False)
    return f"event: {event}\ndata: {payload}\n\n"


def event_stream(
    produce: Callable[[asyncio.Event], AsyncGenerator[str, None]],
) -> StreamingResponse:
    """Wrap a frame generator in a streaming response.

    ``produce`` receives a cancellation flag that is set as soon as the
    response ends for any reason, including the client disconnecting.
    """

    async def body() -> AsyncIterator[str]:
        cancel = asyncio.Event()
        frames = produce(cancel)
        try:
            async for frame in frames:
                yield frame
        finally:
            cancel.set()
            await frames.aclose()

    return StreamingResponse(body(), media_type="text/event-stream", headers=SSE_HEADERS)
