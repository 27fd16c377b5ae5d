"""Core interfaces for the provider adapter pattern.

These interfaces define the contract that lets the HTTP API talk to
different local inference backends (Foundry Local, Ollama) the same way.
"""

from .llm import (
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

__all__ = [
    "ILlmProvider",
    # Chat
    "ChatMessage",
    "ChatOptions",
    "ChatDelta",
    # Models
    "ModelRecord",
    "DownloadProgress",
    "DeleteOutcome",
    "DeleteResult",
    # Status
    "ProviderStatus",
]
