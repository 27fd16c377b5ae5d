"""Ollama provider adapter.

Implements ILlmProvider for an Ollama server at a fixed address. Ollama has
no separate catalog and no port discovery; local models are what is
available.
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Any

import httpx

from core.interfaces import (
    ChatDelta,
    ChatMessage,
    ChatOptions,
    DeleteOutcome,
    DeleteResult,
    DownloadProgress,
    ILlmProvider,
    ModelRecord,
    ProviderStatus,
)
from services.streaming import until_cancelled

logger = logging.getLogger(__name__)


def _parse_line(line: str) -> dict[str, Any] | None:
    line = line.strip()
    if not line:
        return None
    try:
        obj = json.loads(line)
    except ValueError:
        logger.warning("Skipping unparsable Ollama line: %.200s", line)
        return None
    return obj if isinstance(obj, dict) else None


def _pull_progress(model_id: str, frame: dict[str, Any]) -> DownloadProgress:
    """Convert one ``/api/pull`` frame into a progress event."""
    status = str(frame.get("status") or "")
    if status == "success":
        return DownloadProgress(model_id=model_id, status="complete", percent=100.0)

    total = frame.get("total")
    completed = frame.get("completed")
    total = total if isinstance(total, int) else None
    completed = completed if isinstance(completed, int) else None
    percent = None
    if total and completed is not None:
        percent = round(completed / total * 100, 1)
    return DownloadProgress(
        model_id=model_id,
        status=status or "downloading",
        percent=percent,
        total=total,
        completed=completed,
    )


class OllamaProvider(ILlmProvider):
    """Ollama server via its HTTP API.

    Uses:
    - GET /api/tags - status and local models
    - POST /api/chat - NDJSON chat stream
    - POST /api/pull - NDJSON download progress
    - DELETE /api/delete - remove a model
    """

    name = "ollama"

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        timeout: float = 600.0,
        status_timeout: float = 5.0,
        download_timeout: float = 4 * 60 * 60,
        client: httpx.AsyncClient | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._status_timeout = status_timeout
        self._download_timeout = httpx.Timeout(download_timeout, connect=10.0)
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout)
        return self._client

    async def get_status(self) -> ProviderStatus:
        client = await self._get_client()
        try:
            response = await client.get(f"{self._base_url}/api/tags", timeout=self._status_timeout)
        except Exception as e:  # includes malformed endpoint URLs
            return ProviderStatus(
                provider=self.name,
                available=False,
                endpoint=self._base_url,
                error=str(e) or type(e).__name__,
            )
        if not response.is_success:
            return ProviderStatus(
                provider=self.name,
                available=False,
                endpoint=self._base_url,
                error=f"HTTP {response.status_code}",
            )
        return ProviderStatus(provider=self.name, available=True, endpoint=self._base_url)

    async def list_local_models(self) -> list[ModelRecord]:
        client = await self._get_client()
        try:
            response = await client.get(f"{self._base_url}/api/tags", timeout=self._status_timeout)
            response.raise_for_status()
            payload = response.json()
        except Exception as e:
            logger.error("Failed to get models from Ollama: %s", e)
            return []

        models = []
        for item in payload.get("models", []) if isinstance(payload, dict) else []:
            if not isinstance(item, dict) or not item.get("name"):
                continue
            details = item.get("details") if isinstance(item.get("details"), dict) else {}
            size = item.get("size")
            models.append(
                ModelRecord(
                    id=item["name"],
                    name=item["name"],
                    provider=self.name,
                    size=size if isinstance(size, int) else None,
                    status="downloaded",
                    parameter_size=details.get("parameter_size"),
                    family=details.get("family"),
                )
            )
        return models

    async def list_available_models(self) -> list[ModelRecord]:
        return await self.list_local_models()

    async def list_models(self) -> list[ModelRecord]:
        return await self.list_local_models()

    async def stream_chat(
        self,
        messages: list[ChatMessage],
        options: ChatOptions,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[ChatDelta]:
        client = await self._get_client()
        model_options: dict[str, Any] = {"temperature": options.temperature}
        if options.max_tokens is not None:
            model_options["num_predict"] = options.max_tokens
        payload = {
            "model": options.model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "stream": True,
            "options": model_options,
        }

        try:
            async with client.stream("POST", f"{self._base_url}/api/chat", json=payload) as response:
                if not response.is_success:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    yield ChatDelta(done=True, error=f"HTTP {response.status_code}: {body[:500]}".strip())
                    return

                lines = until_cancelled(response.aiter_lines(), cancel)
                async with aclosing(lines):
                    async for line in lines:
                        frame = _parse_line(line)
                        if frame is None:
                            continue
                        if frame.get("error"):
                            yield ChatDelta(done=True, error=str(frame["error"]))
                            return
                        done = bool(frame.get("done"))
                        message = frame.get("message")
                        content = message.get("content", "") if isinstance(message, dict) else ""
                        if content or done:
                            yield ChatDelta(content=content or "", done=done)
                        if done:
                            return
        except httpx.HTTPError as e:
            logger.warning("Ollama chat stream failed: %s", e)
            yield ChatDelta(done=True, error=str(e) or type(e).__name__)
            return

        if cancel is None or not cancel.is_set():
            yield ChatDelta(done=True)

    async def download_model(
        self,
        model_id: str,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[DownloadProgress]:
        client = await self._get_client()
        yield DownloadProgress(model_id=model_id, status="starting")

        payload = {"model": model_id, "stream": True}
        try:
            async with client.stream(
                "POST",
                f"{self._base_url}/api/pull",
                json=payload,
                timeout=self._download_timeout,
            ) as response:
                if not response.is_success:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    yield DownloadProgress(
                        model_id=model_id,
                        status=f"error: HTTP {response.status_code}: {body[:300]}".strip(),
                    )
                    return

                lines = until_cancelled(response.aiter_lines(), cancel)
                async with aclosing(lines):
                    async for line in lines:
                        frame = _parse_line(line)
                        if frame is None:
                            continue
                        if frame.get("error"):
                            yield DownloadProgress(model_id=model_id, status=f"error: {frame['error']}")
                            return
                        progress = _pull_progress(model_id, frame)
                        yield progress
                        if progress.is_terminal:
                            return
        except httpx.HTTPError as e:
            logger.warning("Ollama pull of %s failed: %s", model_id, e)
            yield DownloadProgress(model_id=model_id, status=f"error: {str(e) or type(e).__name__}")
            return

        if cancel is None or not cancel.is_set():
            yield DownloadProgress(model_id=model_id, status="error: download stream ended before success")

    async def delete_model(self, model_id: str) -> DeleteResult:
        client = await self._get_client()
        try:
            response = await client.request(
                "DELETE",
                f"{self._base_url}/api/delete",
                json={"model": model_id, "name": model_id},
                timeout=30.0,
            )
        except httpx.HTTPError as e:
            logger.error("Failed to delete %s from Ollama: %s", model_id, e)
            return DeleteResult(DeleteOutcome.IO_ERROR, f"Could not reach Ollama: {e}")

        if response.status_code == 404:
            return DeleteResult(DeleteOutcome.NOT_FOUND, f"Model '{model_id}' was not found in Ollama.")
        if not response.is_success:
            return DeleteResult(
                DeleteOutcome.IO_ERROR,
                f"Ollama returned HTTP {response.status_code}: {response.text[:300]}",
            )
        logger.info("Deleted Ollama model %s", model_id)
        return DeleteResult(DeleteOutcome.DELETED, f"Model '{model_id}' removed successfully")

    async def reconnect(self) -> ProviderStatus:
        return await self.get_status()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
