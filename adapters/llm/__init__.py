"""LLM provider adapter implementations.

FoundryLocalProvider: Foundry Local (discovered endpoint, catalog, downloads)
OllamaProvider: Ollama at a fixed address
"""

from .foundry_local import FoundryLocalProvider
from .ollama import OllamaProvider

__all__ = ["FoundryLocalProvider", "OllamaProvider"]
