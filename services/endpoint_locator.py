"""Endpoint discovery for the Foundry Local inference service.

Foundry Local binds to a different port on each start, so the base URL is
located at runtime:

1. An explicitly configured endpoint is used verbatim.
2. A previously discovered endpoint is reused for the rest of the process.
3. Each discovery strategy is tried in order (CLI status, port scan).
4. A hardcoded default is returned as a best-effort last resort.

Discovery never raises; a failing strategy just hands over to the next one.
"""

import asyncio
import logging
import re
import shutil
from collections.abc import Callable, Sequence
from typing import Protocol, runtime_checkable

import httpx

logger = logging.getLogger(__name__)

STATUS_PATH = "/openai/status"
DEFAULT_PROBE_PORTS = (5272, 5273, 5274)
DEFAULT_ENDPOINT = "http://localhost:5272"

_URL_PATTERN = re.compile(r"https?://[\w.\-]+:\d+")


def extract_endpoint(output: str) -> str | None:
    """Return the first ``scheme://host:port`` found in CLI output."""
    match = _URL_PATTERN.search(output)
    return match.group(0).rstrip("/") if match else None


@runtime_checkable
class DiscoveryStrategy(Protocol):
    """One way of finding a live service endpoint."""

    name: str

    async def try_resolve(self) -> str | None:
        """Return a base URL, or None when this method found nothing."""
        ...


class CliStatusDiscovery:
    """Ask the service CLI (``foundry service status``) where it listens."""

    name = "cli"

    def __init__(self, cli_path: str, timeout: float = 15.0):
        self._cli_path = cli_path
        self._timeout = timeout

    async def try_resolve(self) -> str | None:
        try:
            process = await asyncio.create_subprocess_exec(
                self._cli_path,
                "service",
                "status",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            logger.warning("Could not run %s: %s", self._cli_path, e)
            return None

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "'%s service status' did not exit within %.0fs, killing it",
                self._cli_path,
                self._timeout,
            )
            process.kill()
            await process.wait()
            return None

        output = stdout.decode("utf-8", errors="replace")
        endpoint = extract_endpoint(output)
        if endpoint is None:
            logger.debug("No endpoint in CLI status output: %r", output[:500])
        return endpoint


class PortScanDiscovery:
    """Probe the well-known default ports for a healthy status route."""

    name = "port_scan"

    def __init__(
        self,
        client: httpx.AsyncClient,
        ports: Sequence[int] = DEFAULT_PROBE_PORTS,
        host: str = "localhost",
        timeout: float = 3.0,
    ):
        self._client = client
        self._ports = tuple(ports)
        self._host = host
        self._timeout = timeout

    async def try_resolve(self) -> str | None:
        for port in self._ports:
            base_url = f"http://{self._host}:{port}"
            try:
                response = await self._client.get(f"{base_url}{STATUS_PATH}", timeout=self._timeout)
            except httpx.HTTPError as e:
                logger.debug("Probe of %s failed: %s", base_url, e)
                continue
            if response.is_success:
                return base_url
        return None


def default_cli_path(configured: str | None = None) -> str | None:
    """Resolve the CLI executable, or None when it is not installed."""
    if configured:
        return configured
    return shutil.which("foundry")


class EndpointLocator:
    """Resolves and caches the service base URL for one provider instance."""

    def __init__(
        self,
        configured_endpoint: str | None = None,
        strategies: Sequence[DiscoveryStrategy] = (),
        default_endpoint: str = DEFAULT_ENDPOINT,
    ):
        self._configured = configured_endpoint.rstrip("/") if configured_endpoint else None
        self._strategies = list(strategies)
        self._default = default_endpoint.rstrip("/")
        self._cached: str | None = None
        self._lock = asyncio.Lock()
        self._invalidation_hooks: list[Callable[[], None]] = []

    @property
    def configured_endpoint(self) -> str | None:
        return self._configured

    @property
    def cached_endpoint(self) -> str | None:
        return self._cached

    def on_invalidate(self, hook: Callable[[], None]) -> None:
        """Register a callback run whenever the cached endpoint is dropped."""
        self._invalidation_hooks.append(hook)

    async def resolve(self) -> str:
        """Return the current endpoint, discovering it if needed."""
        if self._configured:
            return self._configured

        if self._cached is not None:
            return self._cached

        async with self._lock:
            if self._cached is not None:
                return self._cached

            for strategy in self._strategies:
                try:
                    endpoint = await strategy.try_resolve()
                except Exception:
                    logger.warning("Discovery strategy '%s' failed", strategy.name, exc_info=True)
                    continue
                if endpoint:
                    self._cached = endpoint
                    logger.info("Discovered Foundry Local at %s via %s", endpoint, strategy.name)
                    return endpoint

        logger.warning(
            "Foundry Local endpoint could not be discovered, falling back to %s",
            self._default,
        )
        return self._default

    def invalidate(self) -> None:
        """Forget the discovered endpoint and everything derived from it."""
        self._cached = None
        for hook in self._invalidation_hooks:
            hook()
