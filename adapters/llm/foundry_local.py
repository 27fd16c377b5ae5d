"""Foundry Local provider adapter.

Implements ILlmProvider on top of the Foundry Local REST API. The service
binds to a different port on every start, so every call goes through an
EndpointLocator; the catalog, chat and lifecycle components share that
locator and one HTTP client.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Sequence
from typing import Any

import httpx

from core.interfaces import (
    ChatDelta,
    ChatMessage,
    ChatOptions,
    DeleteResult,
    DownloadProgress,
    ILlmProvider,
    ModelRecord,
    ProviderStatus,
)
from services.catalog import CatalogNormalizer, merge_models
from services.chat_stream import ChatStreamTranslator
from services.endpoint_locator import (
    DEFAULT_ENDPOINT,
    DEFAULT_PROBE_PORTS,
    STATUS_PATH,
    CliStatusDiscovery,
    DiscoveryStrategy,
    EndpointLocator,
    PortScanDiscovery,
)
from services.model_lifecycle import ModelLifecycleManager

logger = logging.getLogger(__name__)

MODELS_PATH = "/openai/models"
LOADED_MODELS_PATH = "/openai/loadedmodels"
ENDPOINT_ENV_VAR = "FOUNDRY_WEBUI_FOUNDRY_ENDPOINT"


def build_strategies(
    names: Sequence[str],
    client: httpx.AsyncClient,
    cli_path: str | None = None,
    probe_ports: Sequence[int] = DEFAULT_PROBE_PORTS,
    cli_timeout: float = 15.0,
    probe_timeout: float = 3.0,
) -> list[DiscoveryStrategy]:
    """Build discovery strategies in the configured order.

    The CLI strategy is left out when no executable is available.
    """
    strategies: list[DiscoveryStrategy] = []
    for name in names:
        key = name.strip().lower()
        if key == "cli":
            if cli_path:
                strategies.append(CliStatusDiscovery(cli_path, timeout=cli_timeout))
            else:
                logger.info("Foundry CLI not found, skipping CLI discovery")
        elif key == "port_scan":
            strategies.append(PortScanDiscovery(client, ports=probe_ports, timeout=probe_timeout))
        else:
            logger.warning("Unknown discovery strategy '%s' ignored", name)
    return strategies


def _model_ids(payload: Any) -> list[str]:
    """Extract ids from a list of plain strings or ``{"id": ...}`` objects."""
    if isinstance(payload, dict):
        payload = payload.get("data") or payload.get("models") or []
    if not isinstance(payload, list):
        return []
    ids = []
    for item in payload:
        if isinstance(item, str) and item:
            ids.append(item)
        elif isinstance(item, dict):
            model_id = item.get("id") or item.get("name")
            if model_id:
                ids.append(str(model_id))
    return ids


class FoundryLocalProvider(ILlmProvider):
    """Foundry Local inference service.

    Uses these routes of the service:
    - GET /openai/status - health and model cache location
    - GET /foundry/list - downloadable catalog
    - GET /openai/models, /openai/loadedmodels - local models
    - POST /v1/chat/completions - streamed chat
    - POST /openai/download - streamed download progress
    """

    name = "foundry"

    def __init__(
        self,
        configured_endpoint: str | None = None,
        cli_path: str | None = None,
        discovery: Sequence[str] = ("cli", "port_scan"),
        probe_ports: Sequence[int] = DEFAULT_PROBE_PORTS,
        default_endpoint: str = DEFAULT_ENDPOINT,
        cli_timeout: float = 15.0,
        probe_timeout: float = 3.0,
        timeout: float = 600.0,
        unload_timeout: float = 5.0,
        download_timeout: float = 4 * 60 * 60,
        poll_interval: float = 2.0,
        queue_size: int = 64,
        client: httpx.AsyncClient | None = None,
        strategies: Sequence[DiscoveryStrategy] | None = None,
    ):
        """Initialize the provider.

        Args:
            configured_endpoint: Pinned base URL; disables discovery
            cli_path: Foundry CLI executable, if installed
            discovery: Ordered discovery strategy names
            client: Shared HTTP client (created and owned here if None)
            strategies: Explicit strategies, overriding ``discovery``
        """
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._probe_timeout = probe_timeout
        self._request_timeout = min(timeout, 30.0)

        if strategies is None:
            strategies = build_strategies(
                discovery,
                self._client,
                cli_path=cli_path,
                probe_ports=probe_ports,
                cli_timeout=cli_timeout,
                probe_timeout=probe_timeout,
            )
        self.locator = EndpointLocator(configured_endpoint, strategies, default_endpoint)
        self.catalog = CatalogNormalizer(self._client, self.locator, timeout=self._request_timeout)
        self.chat = ChatStreamTranslator(self._client, self.locator, load_timeout=timeout)
        self.lifecycle = ModelLifecycleManager(
            self._client,
            self.locator,
            self.catalog,
            cli_path=cli_path,
            request_timeout=self._request_timeout,
            unload_timeout=unload_timeout,
            download_timeout=download_timeout,
            poll_interval=poll_interval,
            queue_size=queue_size,
        )

    async def _probe(self, endpoint: str) -> str | None:
        """Return None if the status route answers, else an error description."""
        try:
            response = await self._client.get(f"{endpoint}{STATUS_PATH}", timeout=self._probe_timeout)
        except httpx.HTTPError as e:
            return str(e) or type(e).__name__
        except Exception as e:
            # A malformed URL (e.g. an out-of-range port) fails below httpx
            logger.warning("Status probe of %s failed", endpoint, exc_info=True)
            return str(e) or type(e).__name__
        if not response.is_success:
            return f"HTTP {response.status_code}"
        return None

    async def get_status(self) -> ProviderStatus:
        endpoint = await self.locator.resolve()
        error = await self._probe(endpoint)
        if error:
            logger.debug("Foundry Local not reachable at %s: %s", endpoint, error)
            return ProviderStatus(provider=self.name, available=False, endpoint=endpoint, error=error)
        return ProviderStatus(provider=self.name, available=True, endpoint=endpoint)

    async def list_available_models(self) -> list[ModelRecord]:
        entries = await self.catalog.get_entries()
        return [entry.to_record(self.name) for entry in entries]

    async def _get_ids(self, endpoint: str, path: str) -> list[str]:
        try:
            response = await self._client.get(f"{endpoint}{path}", timeout=self._request_timeout)
            if not response.is_success:
                logger.warning("GET %s returned HTTP %d", path, response.status_code)
                return []
            return _model_ids(response.json())
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Could not read %s from %s: %s", path, endpoint, e)
            return []
        except Exception:
            logger.warning("Could not read %s from %s", path, endpoint, exc_info=True)
            return []

    async def list_local_models(self) -> list[ModelRecord]:
        endpoint = await self.locator.resolve()
        downloaded, loaded = await asyncio.gather(
            self._get_ids(endpoint, MODELS_PATH),
            self._get_ids(endpoint, LOADED_MODELS_PATH),
        )
        loaded_ids = {model_id.lower() for model_id in loaded}

        records = []
        seen = set()
        for model_id in downloaded + loaded:
            key = model_id.lower()
            if key in seen:
                continue
            seen.add(key)
            records.append(
                ModelRecord(
                    id=model_id,
                    name=model_id,
                    provider=self.name,
                    status="loaded" if key in loaded_ids else "downloaded",
                )
            )
        # Loaded models first
        records.sort(key=lambda r: r.status != "loaded")
        return records

    async def list_models(self) -> list[ModelRecord]:
        local = await self.list_local_models()
        catalog = await self.catalog.get_entries()
        return merge_models(local, catalog, self.name)

    async def stream_chat(
        self,
        messages: list[ChatMessage],
        options: ChatOptions,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[ChatDelta]:
        async for delta in self.chat.stream_chat(messages, options, cancel):
            yield delta

    async def download_model(
        self,
        model_id: str,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[DownloadProgress]:
        async for progress in self.lifecycle.download(model_id, cancel):
            yield progress

    async def delete_model(self, model_id: str) -> DeleteResult:
        return await self.lifecycle.delete(model_id)

    async def reconnect(self) -> ProviderStatus:
        """Forget the discovered endpoint and catalog, then check again.

        A configured endpoint is only re-probed. If it does not answer the
        result says so instead of scanning for another instance.
        """
        self.locator.invalidate()

        configured = self.locator.configured_endpoint
        if configured:
            error = await self._probe(configured)
            if error:
                logger.warning("Configured Foundry Local endpoint %s is not responding: %s", configured, error)
                return ProviderStatus(
                    provider=self.name,
                    available=False,
                    endpoint=configured,
                    error=(
                        f"Foundry Local is not responding at {configured} ({error}). "
                        "Start the service with 'foundry service start', or fix or clear "
                        f"{ENDPOINT_ENV_VAR} to use automatic discovery."
                    ),
                )
            return ProviderStatus(provider=self.name, available=True, endpoint=configured)

        status = await self.get_status()
        if status.available:
            logger.info("Reconnected to Foundry Local at %s", status.endpoint)
        return status

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
