"""LLM provider interface definitions.

This module defines the contract every inference backend adapter fulfils,
so the HTTP API can treat Foundry Local, Ollama, etc. uniformly.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum


@dataclass
class ChatMessage:
    """A message in a chat conversation."""

    role: str  # system, user, assistant
    content: str


@dataclass
class ChatOptions:
    """Options for chat completion."""

    model: str
    temperature: float = 0.7
    max_tokens: int | None = None


@dataclass
class ChatDelta:
    """One unit of streamed chat output."""

    content: str = ""
    done: bool = False
    error: str | None = None  # Error code or message, terminal when set


@dataclass
class ModelRecord:
    """Provider-agnostic description of a model."""

    id: str
    name: str
    provider: str
    description: str | None = None
    size: int | None = None  # bytes
    estimated_ram_mb: float | None = None
    status: str = "available"  # available, downloaded, loaded
    parameter_size: str | None = None
    family: str | None = None


@dataclass
class DownloadProgress:
    """Progress update for a model download."""

    model_id: str
    status: str
    percent: float | None = None
    total: int | None = None
    completed: int | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status == "complete" or self.status.startswith("error")


@dataclass
class ProviderStatus:
    """Point-in-time availability of a provider."""

    provider: str
    available: bool
    endpoint: str | None = None
    error: str | None = None


class DeleteOutcome(str, Enum):
    DELETED = "deleted"
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    CACHE_UNAVAILABLE = "cache_unavailable"
    IO_ERROR = "io_error"


@dataclass
class DeleteResult:
    """Result of a model delete. Truthy when the model was removed."""

    outcome: DeleteOutcome
    message: str
    path: str | None = field(default=None)

    @property
    def success(self) -> bool:
        return self.outcome is DeleteOutcome.DELETED

    def __bool__(self) -> bool:
        return self.success


class ILlmProvider(ABC):
    """Interface for a local inference backend.

    Implementations never let transport or parsing failures escape:
    status calls report them, listings degrade to empty, streams end
    with an error event, deletes return a failed DeleteResult.
    """

    name: str

    @abstractmethod
    async def get_status(self) -> ProviderStatus:
        """Check reachability of the backend."""
        ...

    @abstractmethod
    async def list_available_models(self) -> list[ModelRecord]:
        """List models the backend can download."""
        ...

    @abstractmethod
    async def list_local_models(self) -> list[ModelRecord]:
        """List models present on disk (status downloaded or loaded)."""
        ...

    async def list_models(self) -> list[ModelRecord]:
        """Unified listing: local models first, then the rest of the catalog."""
        local = await self.list_local_models()
        available = await self.list_available_models()
        local_ids = {m.id.lower() for m in local}
        return local + [m for m in available if m.id.lower() not in local_ids]

    @abstractmethod
    def stream_chat(
        self,
        messages: list[ChatMessage],
        options: ChatOptions,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[ChatDelta]:
        """Stream a chat completion.

        Args:
            messages: Conversation history
            options: Model and sampling options
            cancel: Optional flag; once set the stream stops and the
                underlying connection is released

        Yields:
            ChatDelta items, the last one terminal
        """
        ...

    @abstractmethod
    def download_model(
        self,
        model_id: str,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[DownloadProgress]:
        """Download a model, yielding progress until complete or error."""
        ...

    @abstractmethod
    async def delete_model(self, model_id: str) -> DeleteResult:
        """Remove a downloaded model."""
        ...

    @abstractmethod
    async def reconnect(self) -> ProviderStatus:
        """Drop cached connection state and check the backend again."""
        ...

    async def close(self) -> None:
        """Release network resources."""
