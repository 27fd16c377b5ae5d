"""Pytest configuration and fixtures."""

import asyncio
import os
from collections.abc import AsyncGenerator, AsyncIterator, Callable

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Keep tests independent of a developer's .env and installed CLI
os.environ.setdefault("FOUNDRY_WEBUI_OLLAMA_ENABLED", "false")

from api.main import app
from core.factory import ProviderRegistry, get_provider_registry
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

FOUNDRY_URL = "http://127.0.0.1:5273"


class FakeProvider(ILlmProvider):
    """In-memory provider with scripted responses."""

    def __init__(self, name: str = "foundry"):
        self.name = name
        self.available = True
        self.local: list[ModelRecord] = []
        self.available_models: list[ModelRecord] = []
        self.deltas: list[ChatDelta] = [ChatDelta(content="Hello"), ChatDelta(done=True)]
        self.progress: list[DownloadProgress] = []
        self.delete_result = DeleteResult(DeleteOutcome.DELETED, "Model removed successfully")
        self.chat_calls: list[tuple[list[ChatMessage], ChatOptions]] = []
        self.deleted: list[str] = []
        self.reconnects = 0

    async def get_status(self) -> ProviderStatus:
        if self.available:
            return ProviderStatus(provider=self.name, available=True, endpoint=FOUNDRY_URL)
        return ProviderStatus(provider=self.name, available=False, error="connection refused")

    async def list_available_models(self) -> list[ModelRecord]:
        return list(self.available_models)

    async def list_local_models(self) -> list[ModelRecord]:
        return list(self.local)

    async def stream_chat(
        self,
        messages: list[ChatMessage],
        options: ChatOptions,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[ChatDelta]:
        self.chat_calls.append((messages, options))
        for delta in self.deltas:
            yield delta

    async def download_model(
        self,
        model_id: str,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[DownloadProgress]:
        for progress in self.progress:
            yield progress

    async def delete_model(self, model_id: str) -> DeleteResult:
        self.deleted.append(model_id)
        return self.delete_result

    async def reconnect(self) -> ProviderStatus:
        self.reconnects += 1
        return await self.get_status()


def mock_http_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    """An AsyncClient whose requests are answered by ``handler``."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def parse_sse(body: str) -> list[tuple[str, str]]:
    """Split an event-stream body into (event, data) pairs."""
    events = []
    for block in body.split("\n\n"):
        if not block.strip():
            continue
        event, data = "message", ""
        for line in block.splitlines():
            if line.startswith("event: "):
                event = line[len("event: "):]
            elif line.startswith("data: "):
                data = line[len("data: "):]
        events.append((event, data))
    return events


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider("foundry")


@pytest.fixture
def registry(fake_provider: FakeProvider) -> ProviderRegistry:
    return ProviderRegistry([fake_provider])


@pytest_asyncio.fixture
async def client(registry: ProviderRegistry) -> AsyncGenerator[AsyncClient, None]:
    """Create test client with the provider registry overridden."""
    app.dependency_overrides[get_provider_registry] = lambda: registry

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
