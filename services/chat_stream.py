"""Translate Foundry Local streaming completions into ChatDelta events.

Service builds have framed the stream as SSE (``data: {...}``) and as bare
JSON lines, sometimes sending the final text in ``choices[].message``
instead of ``choices[].delta``. All variants end up as the same sequence:
zero or more content deltas followed by exactly one terminal delta.
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Any
from urllib.parse import quote

import httpx

from core.interfaces import ChatDelta, ChatMessage, ChatOptions
from services.endpoint_locator import EndpointLocator
from services.streaming import until_cancelled

logger = logging.getLogger(__name__)

COMPLETIONS_PATH = "/v1/chat/completions"
LOAD_PATH = "/openai/load/{name}"
DONE_MARKER = "[DONE]"
EMPTY_RESPONSE_NOTICE = (
    "⚠️ No response received. The model may still be loading, try again in a moment."
)


def frame_payload(line: str) -> str | None:
    """Return the JSON payload of a stream line, or None for non-data lines."""
    line = line.strip()
    if not line:
        return None
    if line.startswith("data:"):
        return line[len("data:"):].strip()
    if line.startswith("{"):
        return line
    return None


def _describe_error(error: Any) -> str:
    if isinstance(error, dict):
        code = error.get("code")
        if isinstance(code, str) and code:
            return code
        message = error.get("message")
        if message:
            return str(message)
        return json.dumps(error)
    return str(error)


def extract_error(frame: dict[str, Any]) -> str | None:
    """Find an ``error`` field at the top level or inside a choice."""
    candidates = [frame.get("error")]
    choices = frame.get("choices")
    if isinstance(choices, list):
        candidates.extend(c.get("error") for c in choices if isinstance(c, dict))

    for error in candidates:
        if error not in (None, "", False, {}):
            return _describe_error(error)
    return None


async def translate_stream(lines: AsyncIterator[str]) -> AsyncIterator[ChatDelta]:
    """Convert raw stream lines into deltas, ending with one terminal delta.

    Unparsable lines are logged and skipped. If the stream produced no
    content at all, the terminal delta carries :data:`EMPTY_RESPONSE_NOTICE`.
    """
    emitted = False

    async for line in lines:
        payload = frame_payload(line)
        if payload is None:
            continue

        if payload == DONE_MARKER:
            yield ChatDelta(content="" if emitted else EMPTY_RESPONSE_NOTICE, done=True)
            return

        try:
            frame = json.loads(payload)
        except ValueError:
            logger.warning("Skipping unparsable stream line: %.200s", payload)
            continue
        if not isinstance(frame, dict):
            continue

        error = extract_error(frame)
        if error:
            logger.warning("Inference service reported an error mid-stream: %s", error)
            yield ChatDelta(done=True, error=error)
            return

        for choice in frame.get("choices") or []:
            if not isinstance(choice, dict):
                continue

            delta = choice.get("delta")
            if isinstance(delta, dict):
                content = delta.get("content")
                if isinstance(content, str) and content:
                    emitted = True
                    yield ChatDelta(content=content)
                continue

            message = choice.get("message")
            if isinstance(message, dict) and isinstance(message.get("content"), str):
                content = message["content"]
                if not content and not emitted:
                    content = EMPTY_RESPONSE_NOTICE
                yield ChatDelta(content=content, done=True)
                return

    if emitted:
        yield ChatDelta(done=True)
    else:
        logger.warning("Chat stream closed without any content")
        yield ChatDelta(content=EMPTY_RESPONSE_NOTICE, done=True)


def build_completion_payload(messages: list[ChatMessage], options: ChatOptions) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "model": options.model,
        "messages": [{"role": m.role, "content": m.content} for m in messages],
        "stream": True,
        "temperature": options.temperature,
    }
    if options.max_tokens is not None:
        payload["max_tokens"] = options.max_tokens
    return payload


class ChatStreamTranslator:
    """Issues streaming completions against the located endpoint."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        locator: EndpointLocator,
        load_timeout: float = 600.0,
    ):
        self._client = client
        self._locator = locator
        self._load_timeout = load_timeout

    async def _load_model(self, endpoint: str, model: str) -> None:
        """Ask the service to load the model. Failures are not fatal."""
        url = endpoint + LOAD_PATH.format(name=quote(model, safe=""))
        try:
            response = await self._client.get(url, timeout=self._load_timeout)
            if not response.is_success:
                logger.info("Load of %s returned HTTP %d", model, response.status_code)
        except httpx.HTTPError as e:
            logger.warning("Could not pre-load model %s: %s", model, e)
        except Exception:
            logger.warning("Could not pre-load model %s", model, exc_info=True)

    async def stream_chat(
        self,
        messages: list[ChatMessage],
        options: ChatOptions,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[ChatDelta]:
        endpoint = await self._locator.resolve()
        await self._load_model(endpoint, options.model)
        if cancel is not None and cancel.is_set():
            return

        payload = build_completion_payload(messages, options)
        url = f"{endpoint}{COMPLETIONS_PATH}"
        logger.info("Streaming chat from %s (model=%s, messages=%d)", url, options.model, len(messages))

        try:
            async with self._client.stream("POST", url, json=payload) as response:
                if not response.is_success:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    logger.error("Chat request failed: HTTP %d %s", response.status_code, body[:500])
                    yield ChatDelta(done=True, error=f"HTTP {response.status_code}: {body[:500]}".strip())
                    return

                lines = until_cancelled(response.aiter_lines(), cancel)
                async with aclosing(lines), aclosing(translate_stream(lines)) as deltas:
                    async for delta in deltas:
                        if cancel is not None and cancel.is_set():
                            logger.info("Chat stream cancelled by caller")
                            return
                        yield delta
        except httpx.HTTPError as e:
            logger.warning("Chat stream to %s failed: %s", url, e)
            yield ChatDelta(done=True, error=str(e) or type(e).__name__)
        except Exception as e:
            logger.exception("Chat stream to %s failed", url)
            yield ChatDelta(done=True, error=str(e) or type(e).__name__)
