"""Core configuration, interfaces, and provider factory.

This module provides the foundation for the adapter pattern architecture:
- Settings: Application configuration
- Interfaces: Contracts every LLM provider implements
- Factory: Builds the configured providers and the process-wide registry
"""

from .config import Settings, settings
from .factory import (
    ProviderConfig,
    ProviderFactory,
    ProviderRegistry,
    create_factory_from_settings,
    get_provider_registry,
)

__all__ = [
    # Configuration
    "Settings",
    "settings",
    # Factory
    "ProviderConfig",
    "ProviderFactory",
    "ProviderRegistry",
    "create_factory_from_settings",
    "get_provider_registry",
]
