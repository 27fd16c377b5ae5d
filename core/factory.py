"""Provider factory and registry for dependency injection.

Builds the configured LLM provider adapters from settings and keeps one
instance of each for the lifetime of the process, so endpoint and catalog
caches are shared across requests.
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .config import Settings

if TYPE_CHECKING:
    from core.interfaces import ILlmProvider

logger = logging.getLogger(__name__)


@dataclass
class ProviderConfig:
    """Configuration for provider construction."""

    # Foundry Local
    foundry_endpoint: str | None = None
    foundry_cli_path: str | None = None
    foundry_discovery: list[str] = field(default_factory=lambda: ["cli", "port_scan"])
    foundry_probe_ports: list[int] = field(default_factory=lambda: [5272, 5273, 5274])
    foundry_default_endpoint: str = "http://localhost:5272"
    foundry_cli_timeout: float = 15.0
    foundry_probe_timeout: float = 3.0

    # Ollama
    ollama_enabled: bool = True
    ollama_endpoint: str = "http://localhost:11434"

    # Timeouts and streaming
    request_timeout: float = 600.0
    unload_timeout: float = 5.0
    download_timeout: float = 4 * 60 * 60
    download_poll_interval: float = 2.0
    download_queue_size: int = 64


class ProviderFactory:
    """Factory for creating provider adapters.

    Usage:
        from core.config import settings
        from core.factory import create_factory_from_settings

        factory = create_factory_from_settings(settings)
        foundry = factory.create_foundry_provider()
    """

    def __init__(self, config: ProviderConfig):
        self._config = config

    @property
    def config(self) -> ProviderConfig:
        return self._config

    def create_foundry_provider(self) -> "ILlmProvider":
        """Create the Foundry Local provider.

        Discovery is skipped entirely when an endpoint is configured.
        """
        from adapters.llm.foundry_local import FoundryLocalProvider
        from services.endpoint_locator import default_cli_path

        config = self._config
        cli_path = default_cli_path(config.foundry_cli_path)
        if config.foundry_endpoint:
            logger.info("Creating Foundry Local provider (endpoint=%s, pinned)", config.foundry_endpoint)
        else:
            logger.info(
                "Creating Foundry Local provider (discovery=%s, cli=%s)",
                ",".join(config.foundry_discovery),
                cli_path or "not found",
            )

        return FoundryLocalProvider(
            configured_endpoint=config.foundry_endpoint,
            cli_path=cli_path,
            discovery=config.foundry_discovery,
            probe_ports=config.foundry_probe_ports,
            default_endpoint=config.foundry_default_endpoint,
            cli_timeout=config.foundry_cli_timeout,
            probe_timeout=config.foundry_probe_timeout,
            timeout=config.request_timeout,
            unload_timeout=config.unload_timeout,
            download_timeout=config.download_timeout,
            poll_interval=config.download_poll_interval,
            queue_size=config.download_queue_size,
        )

    def create_ollama_provider(self) -> "ILlmProvider":
        from adapters.llm.ollama import OllamaProvider

        logger.info("Creating Ollama provider (endpoint=%s)", self._config.ollama_endpoint)
        return OllamaProvider(
            base_url=self._config.ollama_endpoint,
            timeout=self._config.request_timeout,
            download_timeout=self._config.download_timeout,
        )

    def create_providers(self) -> list["ILlmProvider"]:
        """Create every enabled provider, Foundry Local first."""
        providers = [self.create_foundry_provider()]
        if self._config.ollama_enabled:
            providers.append(self.create_ollama_provider())
        return providers


class ProviderRegistry:
    """Named providers, looked up case-insensitively."""

    def __init__(self, providers: list["ILlmProvider"] | None = None):
        self._providers: dict[str, "ILlmProvider"] = {}
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: "ILlmProvider") -> None:
        self._providers[provider.name.lower()] = provider

    def get(self, name: str | None) -> "ILlmProvider | None":
        """Get a provider by name. None or empty selects the first one."""
        if not name:
            return next(iter(self._providers.values()), None)
        return self._providers.get(name.lower())

    def all(self) -> list["ILlmProvider"]:
        return list(self._providers.values())

    @property
    def names(self) -> list[str]:
        return list(self._providers)

    async def close(self) -> None:
        for provider in self._providers.values():
            try:
                await provider.close()
            except Exception:
                logger.warning("Error closing provider %s", provider.name, exc_info=True)


def create_factory_from_settings(settings: Settings) -> ProviderFactory:
    """Create a ProviderFactory from application settings."""
    config = ProviderConfig(
        foundry_endpoint=settings.FOUNDRY_ENDPOINT,
        foundry_cli_path=settings.FOUNDRY_CLI_PATH,
        foundry_discovery=list(settings.FOUNDRY_DISCOVERY),
        foundry_probe_ports=list(settings.FOUNDRY_PROBE_PORTS),
        foundry_default_endpoint=settings.FOUNDRY_DEFAULT_ENDPOINT,
        foundry_cli_timeout=settings.FOUNDRY_CLI_TIMEOUT,
        foundry_probe_timeout=settings.FOUNDRY_PROBE_TIMEOUT,
        ollama_enabled=settings.OLLAMA_ENABLED,
        ollama_endpoint=settings.OLLAMA_ENDPOINT,
        request_timeout=settings.REQUEST_TIMEOUT,
        unload_timeout=settings.UNLOAD_TIMEOUT,
        download_timeout=settings.DOWNLOAD_TIMEOUT,
        download_poll_interval=settings.DOWNLOAD_POLL_INTERVAL,
        download_queue_size=settings.DOWNLOAD_QUEUE_SIZE,
    )
    return ProviderFactory(config)


_registry: ProviderRegistry | None = None


def get_provider_registry() -> ProviderRegistry:
    """Get the process-wide provider registry, creating it on first use.

    Used as a FastAPI dependency; tests override it with isolated instances.
    """
    global _registry
    if _registry is None:
        from .config import settings

        _registry = ProviderRegistry(create_factory_from_settings(settings).create_providers())
    return _registry


async def close_providers() -> None:
    """Close and forget the process-wide registry."""
    global _registry
    if _registry is not None:
        await _registry.close()
        _registry = None
