"""Model download and delete workflows for Foundry Local.

Downloads are driven through ``POST /openai/download``, whose response is a
long-lived body of free-text progress (``Total 42.5% ...``) ending in a JSON
fragment such as ``{"success": true, "errorMessage": null}``. One producer
task reads that body and hands parsed events to the consuming generator
over a bounded queue.

Deletes unload the model, ask the service where its cache lives and remove
the model directory from disk.
"""

import asyncio
import json
import logging
import re
import shutil
import time
from collections.abc import AsyncIterator
from contextlib import aclosing, suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import quote

import httpx

from core.interfaces import DeleteOutcome, DeleteResult, DownloadProgress
from services.catalog import CatalogEntry, CatalogNormalizer, strip_version
from services.endpoint_locator import STATUS_PATH, EndpointLocator
from services.streaming import until_cancelled

logger = logging.getLogger(__name__)

DOWNLOAD_PATH = "/openai/download"
UNLOAD_PATH = "/openai/unload/{name}"
FOUNDRY_PROVIDER_TYPE = "AzureFoundryLocal"
COMPLETE_THRESHOLD = 99.0

_TOTAL_PERCENT = re.compile(r"Total\s+(\d+(?:\.\d+)?)\s*%")
_FLAT_OBJECT = re.compile(r"\{[^{}]*\}")
_TAIL_LIMIT = 8192


# -- Progress parsing ---------------------------------------------------------

def parse_total_percent(chunk: str) -> float | None:
    """Return the last ``Total N%`` value in a chunk, or None."""
    matches = _TOTAL_PERCENT.findall(chunk)
    if not matches:
        return None
    return min(float(matches[-1]), 100.0)


@dataclass
class DownloadOutcome:
    """Explicit success/failure reported by the service."""

    success: bool
    message: str | None = None


def _outcome_from_object(obj: dict[str, Any]) -> DownloadOutcome | None:
    for key in ("success", "Success"):
        if isinstance(obj.get(key), bool):
            success = obj[key]
            break
    else:
        return None
    message = obj.get("errorMessage", obj.get("ErrorMessage"))
    return DownloadOutcome(success=success, message=str(message) if message else None)


class DownloadStreamParser:
    """Incremental parser for a download response body.

    Keeps a bounded tail of recent text so a completion fragment split
    across two reads is still recognised.
    """

    def __init__(self) -> None:
        self._tail = ""
        self.last_percent: float | None = None
        self.outcome: DownloadOutcome | None = None

    def feed(self, chunk: str) -> tuple[float | None, DownloadOutcome | None]:
        percent = parse_total_percent(chunk)
        if percent is not None:
            self.last_percent = percent

        self._tail = (self._tail + chunk)[-_TAIL_LIMIT:]
        if "success" not in self._tail.lower():
            return percent, None

        for fragment in reversed(_FLAT_OBJECT.findall(self._tail)):
            try:
                obj = json.loads(fragment)
            except ValueError:
                continue
            if isinstance(obj, dict):
                outcome = _outcome_from_object(obj)
                if outcome is not None:
                    self.outcome = outcome
                    return percent, outcome
        return percent, None


def format_elapsed(seconds: float) -> str:
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    minutes, seconds = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {seconds:02d}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes:02d}m"


def infer_outcome(model_id: str, last_percent: float | None) -> DownloadProgress:
    """Decide the result of a stream that ended without a completion signal."""
    percent = last_percent or 0.0
    if percent >= COMPLETE_THRESHOLD:
        return DownloadProgress(model_id=model_id, status="complete", percent=100.0)
    return DownloadProgress(
        model_id=model_id,
        status=f"error: download stream ended at {percent:.1f}%",
        percent=percent,
    )


def build_download_payload(entry: CatalogEntry) -> dict[str, Any]:
    return {
        "model": {
            "Uri": entry.uri or "",
            "Name": entry.versioned_name,
            "ProviderType": FOUNDRY_PROVIDER_TYPE,
            "Publisher": entry.publisher or "",
            "PromptTemplate": entry.prompt_template,
        },
        "ignorePipeReport": True,
    }


# -- Cache directory matching -------------------------------------------------

def _subdirectories(path: Path) -> list[Path]:
    return sorted(p for p in path.iterdir() if p.is_dir())


def find_model_directory(cache_root: Path, model_id: str) -> Path | None:
    """Locate a model's directory under ``<cache_root>/<publisher>/``.

    Tries ``model:id`` -> ``model-id`` as an exact name first, then any
    directory starting with the unversioned id.

    Raises:
        PermissionError: If the cache root or a publisher folder cannot be listed.
    """
    exact = model_id.replace(":", "-").lower()
    prefix = strip_version(model_id).replace(":", "-").lower()

    candidates = [d for publisher in _subdirectories(cache_root) for d in _subdirectories(publisher)]

    for directory in candidates:
        if directory.name.lower() == exact:
            return directory

    for directory in candidates:
        if directory.name.lower().startswith(prefix):
            logger.info("No exact cache match for %s, using prefix match %s", model_id, directory.name)
            return directory
    return None


# -- Manager ------------------------------------------------------------------

@dataclass
class _Event:
    kind: str  # percent, outcome, failed, end
    percent: float | None = None
    outcome: DownloadOutcome | None = None
    message: str | None = None


class ModelLifecycleManager:
    """Downloads and deletes Foundry Local models."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        locator: EndpointLocator,
        catalog: CatalogNormalizer,
        cli_path: str | None = None,
        request_timeout: float = 30.0,
        unload_timeout: float = 5.0,
        download_timeout: float = 4 * 60 * 60,
        poll_interval: float = 2.0,
        queue_size: int = 64,
    ):
        self._client = client
        self._locator = locator
        self._catalog = catalog
        self._cli_path = cli_path
        self._request_timeout = request_timeout
        self._unload_timeout = unload_timeout
        self._download_timeout = httpx.Timeout(download_timeout, connect=10.0)
        self._poll_interval = poll_interval
        self._queue_size = queue_size

    # -- Download -------------------------------------------------------------

    async def download(
        self,
        model_id: str,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[DownloadProgress]:
        yield DownloadProgress(model_id=model_id, status="starting")

        entry = await self._catalog.lookup(model_id)
        if entry is None:
            logger.warning("Download requested for %s, which is not in the catalog", model_id)
            yield DownloadProgress(model_id=model_id, status="error: model not found in catalog")
            return

        endpoint = await self._locator.resolve()
        logger.info("Downloading %s (%s) via %s", model_id, entry.versioned_name, endpoint)

        queue: asyncio.Queue[_Event] = asyncio.Queue(maxsize=self._queue_size)
        producer = asyncio.create_task(self._produce(endpoint, entry, queue, cancel))
        started = time.monotonic()
        last_percent: float | None = None

        try:
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=self._poll_interval)
                except asyncio.TimeoutError:
                    event = None

                if cancel is not None and cancel.is_set():
                    logger.info("Download of %s cancelled by caller", model_id)
                    return

                if event is None and producer.done() and queue.empty():
                    error = None if producer.cancelled() else producer.exception()
                    if error is not None:
                        message = str(error) or type(error).__name__
                        logger.error("Download of %s failed: %s", model_id, message)
                        yield DownloadProgress(model_id=model_id, status=f"error: {message}", percent=last_percent)
                    else:
                        yield infer_outcome(model_id, last_percent)
                    return

                if event is None or event.kind == "percent":
                    if event is not None:
                        last_percent = event.percent
                    elapsed = format_elapsed(time.monotonic() - started)
                    yield DownloadProgress(
                        model_id=model_id,
                        status=f"downloading ({elapsed})",
                        percent=last_percent,
                    )
                elif event.kind == "outcome":
                    if event.outcome.success:
                        logger.info("Download of %s complete", model_id)
                        yield DownloadProgress(model_id=model_id, status="complete", percent=100.0)
                    else:
                        message = event.outcome.message or "download failed"
                        logger.error("Download of %s failed: %s", model_id, message)
                        yield DownloadProgress(model_id=model_id, status=f"error: {message}", percent=last_percent)
                    return
                elif event.kind == "failed":
                    logger.error("Download of %s failed: %s", model_id, event.message)
                    yield DownloadProgress(model_id=model_id, status=f"error: {event.message}", percent=last_percent)
                    return
                else:
                    yield infer_outcome(model_id, last_percent)
                    return
        finally:
            producer.cancel()
            # wait() leaves a crashed producer's exception on the task
            with suppress(asyncio.CancelledError):
                await asyncio.wait({producer})

    def _offer(self, queue: asyncio.Queue[_Event], event: _Event) -> None:
        """Enqueue a percent update without blocking, dropping the oldest if full."""
        if queue.full():
            with suppress(asyncio.QueueEmpty):
                queue.get_nowait()
        queue.put_nowait(event)

    async def _pump(
        self,
        chunks: AsyncIterator[str],
        queue: asyncio.Queue[_Event],
    ) -> DownloadStreamParser:
        parser = DownloadStreamParser()
        async with aclosing(chunks):
            async for chunk in chunks:
                percent, outcome = parser.feed(chunk)
                if percent is not None:
                    self._offer(queue, _Event("percent", percent=percent))
                if outcome is not None:
                    await queue.put(_Event("outcome", outcome=outcome))
                    break
        return parser

    async def _produce(
        self,
        endpoint: str,
        entry: CatalogEntry,
        queue: asyncio.Queue[_Event],
        cancel: asyncio.Event | None,
    ) -> None:
        url = f"{endpoint}{DOWNLOAD_PATH}"
        payload = build_download_payload(entry)
        route_missing = False

        try:
            async with self._client.stream(
                "POST", url, json=payload, timeout=self._download_timeout
            ) as response:
                if response.status_code in (404, 405) and self._cli_path:
                    route_missing = True
                elif not response.is_success:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    await queue.put(_Event("failed", message=f"HTTP {response.status_code}: {body[:300]}".strip()))
                    return
                else:
                    parser = await self._pump(until_cancelled(response.aiter_text(), cancel), queue)
                    if parser.outcome is None:
                        await queue.put(_Event("end"))
                    return
        except httpx.HTTPError as e:
            await queue.put(_Event("failed", message=str(e) or type(e).__name__))
            return
        except Exception as e:
            logger.exception("Download stream from %s broke", url)
            await queue.put(_Event("failed", message=str(e) or type(e).__name__))
            return

        if route_missing:
            logger.info("Download route not available at %s, falling back to the CLI", endpoint)
            await self._produce_cli(entry, queue, cancel)

    async def _produce_cli(
        self,
        entry: CatalogEntry,
        queue: asyncio.Queue[_Event],
        cancel: asyncio.Event | None,
    ) -> None:
        try:
            process = await asyncio.create_subprocess_exec(
                self._cli_path,
                "model",
                "download",
                entry.name,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            await queue.put(_Event("failed", message=f"could not run {self._cli_path}: {e}"))
            return

        async def read_output() -> AsyncIterator[str]:
            while chunk := await process.stdout.read(4096):
                yield chunk.decode("utf-8", errors="replace")

        try:
            parser = await self._pump(until_cancelled(read_output(), cancel), queue)
            if cancel is not None and cancel.is_set():
                return
            returncode = await process.wait()
            if returncode == 0:
                await queue.put(_Event("outcome", outcome=DownloadOutcome(success=True)))
            elif parser.last_percent is not None:
                await queue.put(_Event("end"))
            else:
                await queue.put(_Event("failed", message=f"{Path(self._cli_path).name} exited with code {returncode}"))
        finally:
            if process.returncode is None:
                process.kill()
                await process.wait()

    # -- Delete ---------------------------------------------------------------

    async def _unload(self, endpoint: str, model_id: str) -> None:
        url = endpoint + UNLOAD_PATH.format(name=quote(model_id, safe=""))
        try:
            await self._client.get(url, params={"force": "true"}, timeout=self._unload_timeout)
        except httpx.HTTPError as e:
            logger.debug("Unload of %s failed (model may not be loaded): %s", model_id, e)
        except Exception:
            logger.warning("Unload of %s failed", model_id, exc_info=True)

    async def get_cache_root(self, endpoint: str) -> Path | None:
        """Ask the service for its on-disk model cache directory."""
        try:
            response = await self._client.get(f"{endpoint}{STATUS_PATH}", timeout=self._request_timeout)
            if not response.is_success:
                logger.warning("Status request returned HTTP %d", response.status_code)
                return None
            status = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Could not read model cache path from %s: %s", endpoint, e)
            return None
        except Exception:
            logger.warning("Status request to %s failed", endpoint, exc_info=True)
            return None

        if not isinstance(status, dict):
            return None
        path = status.get("modelDirPath") or status.get("ModelDirPath")
        return Path(path) if path else None

    async def delete(self, model_id: str) -> DeleteResult:
        endpoint = await self._locator.resolve()
        await self._unload(endpoint, model_id)

        cache_root = await self.get_cache_root(endpoint)
        if cache_root is None:
            return DeleteResult(
                DeleteOutcome.CACHE_UNAVAILABLE,
                "Could not determine the Foundry Local model cache directory.",
            )
        if not cache_root.is_dir():
            return DeleteResult(
                DeleteOutcome.CACHE_UNAVAILABLE,
                f"Model cache directory {cache_root} does not exist.",
            )

        try:
            target = find_model_directory(cache_root, model_id)
        except PermissionError:
            logger.error("Permission denied listing model cache %s", cache_root)
            return DeleteResult(
                DeleteOutcome.PERMISSION_DENIED,
                f"Cannot list the model cache at {cache_root}: permission denied. "
                "Grant this service read and write access to that directory.",
            )
        except OSError as e:
            logger.error("Could not list model cache %s: %s", cache_root, e)
            return DeleteResult(DeleteOutcome.IO_ERROR, f"Could not list {cache_root}: {e}")

        if target is None:
            logger.warning("No cache directory found for %s under %s", model_id, cache_root)
            return DeleteResult(
                DeleteOutcome.NOT_FOUND,
                f"Model '{model_id}' was not found in {cache_root}.",
            )

        try:
            await asyncio.to_thread(shutil.rmtree, target)
        except PermissionError:
            logger.error("Permission denied deleting %s", target)
            return DeleteResult(
                DeleteOutcome.PERMISSION_DENIED,
                f"Permission denied deleting {target}. "
                "Grant this service write access to the model cache directory.",
                path=str(target),
            )
        except OSError as e:
            logger.error("Failed to delete %s: %s", target, e)
            return DeleteResult(DeleteOutcome.IO_ERROR, f"Failed to delete {target}: {e}", path=str(target))

        logger.info("Deleted model %s from %s", model_id, target)
        return DeleteResult(
            DeleteOutcome.DELETED,
            f"Model '{model_id}' removed successfully",
            path=str(target),
        )
