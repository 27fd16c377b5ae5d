"""Foundry Local model catalog: fetching, normalisation and merging.

The ``/foundry/list`` route has returned three different shapes across
service releases:

- ``[ {...}, ... ]`` - bare array, camelCase fields
- ``{"models": [ {...}, ... ]}`` - wrapped array, camelCase fields
- ``{"data": [ {...}, ... ]}`` - OpenAI-style list, snake_case fields

Shape detection is confined to :func:`detect_catalog_shape`; everything
downstream works on :class:`CatalogEntry`.
"""

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

import httpx

from core.interfaces import ModelRecord
from services.endpoint_locator import EndpointLocator

logger = logging.getLogger(__name__)

CATALOG_PATH = "/foundry/list"
BYTES_PER_MB = 1024 * 1024
RAM_OVERHEAD_FACTOR = 1.2  # Weights plus runtime overhead


class MalformedCatalogError(ValueError):
    """Raised when the catalog payload matches none of the known shapes."""


class CatalogShape(str, Enum):
    BARE_ARRAY = "bare_array"
    MODELS_OBJECT = "models_object"
    DATA_OBJECT = "data_object"


@dataclass(frozen=True)
class CatalogEntry:
    """A downloadable model as described by the service catalog."""

    name: str
    display_name: str | None = None
    alias: str | None = None
    publisher: str | None = None
    file_size_mb: float | None = None
    device_type: str | None = None
    task: str | None = None
    uri: str | None = None
    provider_type: str | None = None
    version: str | None = None
    prompt_template: dict[str, str] = field(default_factory=dict)

    @property
    def record_id(self) -> str:
        return self.alias or self.name

    @property
    def versioned_name(self) -> str:
        return f"{self.name}:{self.version}" if self.version else self.name

    @property
    def size_bytes(self) -> int | None:
        if self.file_size_mb is None:
            return None
        return math.floor(self.file_size_mb * BYTES_PER_MB)

    @property
    def estimated_ram_mb(self) -> float | None:
        if self.file_size_mb is None:
            return None
        return float(round(self.file_size_mb * RAM_OVERHEAD_FACTOR))

    def to_record(self, provider: str) -> ModelRecord:
        """Project this entry to a not-yet-downloaded model record."""
        device = self.device_type or ""
        if self.publisher:
            description = f"by {self.publisher} ({device})" if device else f"by {self.publisher}"
        else:
            description = device or None
        return ModelRecord(
            id=self.record_id,
            name=self.display_name or self.name,
            provider=provider,
            description=description,
            size=self.size_bytes,
            estimated_ram_mb=self.estimated_ram_mb,
            status="available",
            # The catalog has no parameter count; the UI shows the device type here
            parameter_size=self.device_type,
            family=self.task,
        )


# -- Shape detection and parsing ----------------------------------------------

def _first(obj: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = obj.get(key)
        if value is not None:
            return value
    return None


def _as_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text or None


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _prompt_template(raw: Any) -> dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    template = {}
    for key in ("system", "user", "assistant", "prompt"):
        value = raw.get(key) if key in raw else raw.get(key.capitalize())
        if value is not None:
            template[key] = str(value)
    return template


def detect_catalog_shape(payload: Any) -> tuple[CatalogShape, list[Any]]:
    """Identify which catalog shape ``payload`` has and return its items.

    Raises:
        MalformedCatalogError: If the root is not a recognised shape.
    """
    if isinstance(payload, list):
        return CatalogShape.BARE_ARRAY, payload
    if isinstance(payload, dict):
        models = _first(payload, "models", "Models")
        if isinstance(models, list):
            return CatalogShape.MODELS_OBJECT, models
        data = payload.get("data")
        if isinstance(data, list):
            return CatalogShape.DATA_OBJECT, data
        raise MalformedCatalogError(
            f"Catalog object has none of 'models'/'data' arrays (keys: {sorted(payload)[:10]})"
        )
    raise MalformedCatalogError(f"Unexpected catalog root type: {type(payload).__name__}")


def _parse_native_entry(item: dict[str, Any]) -> CatalogEntry | None:
    """Parse a camelCase (or PascalCase) entry from the array/models shapes."""
    name = _as_str(_first(item, "name", "Name"))
    if not name:
        return None
    runtime = _first(item, "runtime", "Runtime")
    device = None
    if isinstance(runtime, dict):
        device = _as_str(_first(runtime, "deviceType", "DeviceType"))
    return CatalogEntry(
        name=name,
        display_name=_as_str(_first(item, "displayName", "DisplayName")),
        alias=_as_str(_first(item, "alias", "Alias")),
        publisher=_as_str(_first(item, "publisher", "Publisher")),
        file_size_mb=_as_float(_first(item, "fileSizeMb", "FileSizeMb")),
        device_type=device,
        task=_as_str(_first(item, "task", "Task")),
        uri=_as_str(_first(item, "uri", "Uri")),
        provider_type=_as_str(_first(item, "providerType", "ProviderType")),
        version=_as_str(_first(item, "version", "Version")),
        prompt_template=_prompt_template(_first(item, "promptTemplate", "PromptTemplate")),
    )


def _parse_data_entry(item: dict[str, Any]) -> CatalogEntry | None:
    """Parse a snake_case entry from the ``data`` shape."""
    name = _as_str(_first(item, "id", "name"))
    if not name:
        return None
    device = _as_str(item.get("device_type"))
    runtime = item.get("runtime")
    if device is None and isinstance(runtime, dict):
        device = _as_str(runtime.get("device_type"))
    return CatalogEntry(
        name=name,
        display_name=_as_str(item.get("display_name")),
        alias=_as_str(item.get("alias")),
        publisher=_as_str(_first(item, "publisher", "owned_by")),
        file_size_mb=_as_float(item.get("file_size_mb")),
        device_type=device,
        task=_as_str(item.get("task")),
        uri=_as_str(item.get("uri")),
        provider_type=_as_str(item.get("provider_type")),
        version=_as_str(item.get("version")),
        prompt_template=_prompt_template(item.get("prompt_template")),
    )


def parse_catalog(payload: Any) -> list[CatalogEntry]:
    """Normalise any known catalog payload into entries.

    Items without a usable name are skipped rather than failing the batch.
    """
    shape, items = detect_catalog_shape(payload)
    parse = _parse_data_entry if shape is CatalogShape.DATA_OBJECT else _parse_native_entry

    entries = []
    for item in items:
        entry = parse(item) if isinstance(item, dict) else None
        if entry is None:
            logger.debug("Skipping unusable catalog item: %r", item)
            continue
        entries.append(entry)
    logger.debug("Parsed %d catalog entries from %s shape", len(entries), shape.value)
    return entries


# -- Lookup and merge ---------------------------------------------------------

def find_entry(entries: Sequence[CatalogEntry], model_id: str) -> CatalogEntry | None:
    """Find an entry by alias, then name, then display name (case-insensitive).

    Within each key the first entry in catalog order wins.
    """
    wanted = model_id.lower()
    for key in ("alias", "name", "display_name", "versioned_name"):
        for entry in entries:
            value = getattr(entry, key)
            if value and value.lower() == wanted:
                return entry
    return None


def strip_version(model_id: str) -> str:
    """``"Phi-3-mini-4k-instruct-generic-cpu:2"`` -> ``"Phi-3-mini-4k-instruct-generic-cpu"``."""
    return model_id.rsplit(":", 1)[0] if ":" in model_id else model_id


def _match_local(local_id: str, entries: Sequence[CatalogEntry]) -> int | None:
    wanted = local_id.lower()
    for i, entry in enumerate(entries):
        if entry.record_id.lower() == wanted:
            return i

    unversioned = strip_version(local_id).lower()
    for i, entry in enumerate(entries):
        if entry.name.lower() == unversioned:
            return i

    for i, entry in enumerate(entries):
        if entry.name.lower() == wanted:
            return i
    return None


def enrich(local: ModelRecord, catalog_record: ModelRecord) -> ModelRecord:
    """Fill gaps in a local record from its catalog record, never overwriting.

    Size, RAM estimate, description, family and parameter size are filled
    only when missing. The display name is also taken from the catalog when
    the local name is empty or just repeats the id, since the local listing
    routes report ids only; any other local name is kept.
    """
    name = local.name
    if not name or name == local.id:
        name = catalog_record.name
    return replace(
        local,
        name=name,
        size=local.size if local.size is not None else catalog_record.size,
        estimated_ram_mb=(
            local.estimated_ram_mb
            if local.estimated_ram_mb is not None
            else catalog_record.estimated_ram_mb
        ),
        description=local.description if local.description is not None else catalog_record.description,
        family=local.family if local.family is not None else catalog_record.family,
        parameter_size=(
            local.parameter_size if local.parameter_size is not None else catalog_record.parameter_size
        ),
    )


def merge_models(
    local: Sequence[ModelRecord],
    catalog: Sequence[CatalogEntry],
    provider: str,
) -> list[ModelRecord]:
    """Build the unified listing: enriched local models, then unmatched catalog entries."""
    matched: set[int] = set()
    merged: list[ModelRecord] = []

    for record in local:
        index = _match_local(record.id, catalog)
        if index is None:
            merged.append(record)
            continue
        matched.add(index)
        merged.append(enrich(record, catalog[index].to_record(provider)))

    merged.extend(
        entry.to_record(provider)
        for i, entry in enumerate(catalog)
        if i not in matched
    )
    logger.info(
        "Models: %d loaded/downloaded, %d in catalog, %d total after merge",
        len(local),
        len(catalog),
        len(merged),
    )
    return merged


# -- Fetching -----------------------------------------------------------------

class CatalogNormalizer:
    """Fetches the catalog and keeps the last good copy for lookups.

    The cached snapshot is an immutable tuple replaced in one assignment,
    so readers never observe a partially updated catalog.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        locator: EndpointLocator,
        timeout: float = 30.0,
    ):
        self._client = client
        self._locator = locator
        self._timeout = timeout
        self._entries: tuple[CatalogEntry, ...] | None = None
        locator.on_invalidate(self.invalidate)

    @property
    def cached(self) -> tuple[CatalogEntry, ...] | None:
        return self._entries

    def invalidate(self) -> None:
        self._entries = None

    async def fetch_catalog(self) -> list[CatalogEntry]:
        """Fetch and normalise the catalog. Returns [] on any failure."""
        endpoint = await self._locator.resolve()
        url = f"{endpoint}{CATALOG_PATH}"
        try:
            response = await self._client.get(url, timeout=self._timeout)
        except httpx.HTTPError as e:
            logger.warning("Catalog request to %s failed: %s", url, e)
            return []
        except Exception:
            logger.warning("Catalog request to %s failed", url, exc_info=True)
            return []

        if not response.is_success:
            logger.warning("Catalog request to %s returned HTTP %d", url, response.status_code)
            return []

        try:
            entries = parse_catalog(response.json())
        except ValueError as e:
            # Covers both JSON decode errors and MalformedCatalogError
            logger.error("Could not parse catalog from %s: %s", url, e)
            return []

        self._entries = tuple(entries)
        return entries

    async def get_entries(self) -> list[CatalogEntry]:
        """Return the cached catalog, fetching it on first use."""
        cached = self._entries
        if cached is not None:
            return list(cached)
        return await self.fetch_catalog()

    async def lookup(self, model_id: str) -> CatalogEntry | None:
        return find_entry(await self.get_entries(), model_id)
