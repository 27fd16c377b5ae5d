"""Tests for catalog normalisation and the local/catalog merge."""

import httpx
import pytest

from conftest import mock_http_client
from core.interfaces import ModelRecord
from services.catalog import (
    CatalogEntry,
    CatalogNormalizer,
    CatalogShape,
    MalformedCatalogError,
    detect_catalog_shape,
    find_entry,
    merge_models,
    parse_catalog,
)
from services.endpoint_locator import EndpointLocator

FOUNDRY_URL = "http://127.0.0.1:5273"

PHI_NATIVE = {
    "name": "Phi-3-mini-4k-instruct-generic-cpu",
    "displayName": "Phi-3-mini-4k-instruct-generic-cpu",
    "alias": "phi-3-mini-4k",
    "publisher": "Microsoft",
    "fileSizeMb": 2048.5,
    "runtime": {"deviceType": "CPU", "executionProvider": "CPUExecutionProvider"},
    "task": "chat-completion",
    "uri": "azureml://registries/azureml/models/Phi-3-mini-4k-instruct-generic-cpu/versions/2",
    "providerType": "AzureFoundry",
    "version": "2",
    "promptTemplate": {"system": "<|system|>{Content}<|end|>", "user": "<|user|>{Content}<|end|>"},
}

PHI_DATA = {
    "id": "Phi-3-mini-4k-instruct-generic-cpu",
    "display_name": "Phi-3-mini-4k-instruct-generic-cpu",
    "alias": "phi-3-mini-4k",
    "owned_by": "Microsoft",
    "file_size_mb": 2048.5,
    "device_type": "CPU",
    "task": "chat-completion",
    "uri": "azureml://registries/azureml/models/Phi-3-mini-4k-instruct-generic-cpu/versions/2",
    "provider_type": "AzureFoundry",
    "version": "2",
    "prompt_template": {"system": "<|system|>{Content}<|end|>", "user": "<|user|>{Content}<|end|>"},
}

QWEN_NATIVE = {
    "name": "qwen2.5-0.5b-instruct-generic-gpu",
    "displayName": "qwen2.5-0.5b-instruct-generic-gpu",
    "alias": "qwen2.5-0.5b",
    "publisher": "Qwen",
    "fileSizeMb": 500,
    "runtime": {"deviceType": "GPU"},
    "task": "chat-completion",
    "version": "3",
}

QWEN_DATA = {
    "id": "qwen2.5-0.5b-instruct-generic-gpu",
    "display_name": "qwen2.5-0.5b-instruct-generic-gpu",
    "alias": "qwen2.5-0.5b",
    "owned_by": "Qwen",
    "file_size_mb": 500,
    "device_type": "GPU",
    "task": "chat-completion",
    "version": "3",
}


class TestShapeDetection:
    """Tests for the three catalog shapes."""

    def test_detects_each_shape(self):
        assert detect_catalog_shape([PHI_NATIVE])[0] is CatalogShape.BARE_ARRAY
        assert detect_catalog_shape({"models": [PHI_NATIVE]})[0] is CatalogShape.MODELS_OBJECT
        assert detect_catalog_shape({"data": [PHI_DATA]})[0] is CatalogShape.DATA_OBJECT

    def test_all_shapes_normalise_identically(self):
        bare = parse_catalog([PHI_NATIVE, QWEN_NATIVE])
        wrapped = parse_catalog({"models": [PHI_NATIVE, QWEN_NATIVE]})
        data = parse_catalog({"object": "list", "data": [PHI_DATA, QWEN_DATA]})

        assert bare == wrapped == data
        assert [e.alias for e in bare] == ["phi-3-mini-4k", "qwen2.5-0.5b"]

    def test_pascal_case_fields(self):
        entry = parse_catalog([{"Name": "m", "Alias": "a", "FileSizeMb": 1, "Runtime": {"DeviceType": "NPU"}}])[0]
        assert entry.name == "m"
        assert entry.alias == "a"
        assert entry.device_type == "NPU"

    @pytest.mark.parametrize("payload", ["nope", 42, {"items": []}, None])
    def test_unknown_root_is_malformed(self, payload):
        with pytest.raises(MalformedCatalogError):
            parse_catalog(payload)

    def test_missing_optional_fields_default(self):
        entry = parse_catalog([{"name": "bare-model"}])[0]
        assert entry == CatalogEntry(name="bare-model")
        assert entry.size_bytes is None
        assert entry.estimated_ram_mb is None

    def test_unusable_items_are_skipped(self):
        entries = parse_catalog([{"displayName": "no name"}, "junk", QWEN_NATIVE])
        assert [e.name for e in entries] == ["qwen2.5-0.5b-instruct-generic-gpu"]


class TestCatalogEntry:
    """Tests for derived fields."""

    def test_size_rounds_down(self):
        entry = CatalogEntry(name="m", file_size_mb=2048.5)
        assert entry.size_bytes == 2148007936  # 2048.5 * 1048576

        entry = CatalogEntry(name="m", file_size_mb=0.0000005)
        assert entry.size_bytes == 0

    def test_estimated_ram(self):
        assert CatalogEntry(name="m", file_size_mb=500).estimated_ram_mb == 600.0
        assert CatalogEntry(name="m", file_size_mb=2048.5).estimated_ram_mb == 2458.0

    def test_to_record(self):
        record = parse_catalog([PHI_NATIVE])[0].to_record("foundry")
        assert record.id == "phi-3-mini-4k"
        assert record.name == "Phi-3-mini-4k-instruct-generic-cpu"
        assert record.description == "by Microsoft (CPU)"
        assert record.family == "chat-completion"
        assert record.parameter_size == "CPU"
        assert record.status == "available"

    def test_record_id_falls_back_to_name(self):
        assert CatalogEntry(name="only-name").to_record("foundry").id == "only-name"


class TestFindEntry:
    """Tests for lookup order."""

    def test_alias_then_name_then_display_name(self):
        by_alias = CatalogEntry(name="x-cpu", alias="shared")
        by_name = CatalogEntry(name="shared", alias="other")
        by_display = CatalogEntry(name="y", display_name="Pretty Name")
        entries = [by_name, by_alias, by_display]

        assert find_entry(entries, "SHARED") is by_alias
        assert find_entry(entries, "x-cpu") is by_alias
        assert find_entry(entries, "pretty name") is by_display
        assert find_entry(entries, "missing") is None

    def test_versioned_name(self):
        entry = CatalogEntry(name="Phi-3-mini-4k-instruct-generic-cpu", version="2")
        assert find_entry([entry], "phi-3-mini-4k-instruct-generic-cpu:2") is entry

    def test_first_match_wins_within_a_key(self):
        first = CatalogEntry(name="a-cpu", alias="phi")
        second = CatalogEntry(name="a-gpu", alias="phi")
        assert find_entry([first, second], "phi") is first


class TestMergeModels:
    """Tests for enriching local models from the catalog."""

    def test_fill_never_overwrite(self):
        catalog = parse_catalog([PHI_NATIVE])
        local = [
            ModelRecord(
                id="Phi-3-mini-4k-instruct-generic-cpu:2",
                name="Phi-3-mini-4k-instruct-generic-cpu:2",
                provider="foundry",
                size=123,
                status="loaded",
            )
        ]

        merged = merge_models(local, catalog, "foundry")

        assert len(merged) == 1
        assert merged[0].size == 123
        assert merged[0].estimated_ram_mb == 2458.0
        assert merged[0].description == "by Microsoft (CPU)"
        assert merged[0].name == "Phi-3-mini-4k-instruct-generic-cpu"
        assert merged[0].status == "loaded"

    def test_missing_size_is_filled(self):
        catalog = parse_catalog([QWEN_NATIVE])
        local = [ModelRecord(id="qwen2.5-0.5b", name="qwen2.5-0.5b", provider="foundry", status="downloaded")]

        merged = merge_models(local, catalog, "foundry")

        assert merged[0].size == 500 * 1024 * 1024
        assert merged[0].family == "chat-completion"

    def test_local_first_then_unmatched_catalog(self):
        catalog = parse_catalog([PHI_NATIVE, QWEN_NATIVE])
        local = [
            ModelRecord(id="qwen2.5-0.5b-instruct-generic-gpu:3", name="", provider="foundry", status="downloaded"),
            ModelRecord(id="custom-model", name="custom-model", provider="foundry", status="loaded"),
        ]

        merged = merge_models(local, catalog, "foundry")

        assert [m.id for m in merged] == [
            "qwen2.5-0.5b-instruct-generic-gpu:3",
            "custom-model",
            "phi-3-mini-4k",
        ]
        assert merged[0].name == "qwen2.5-0.5b-instruct-generic-gpu"
        assert merged[2].status == "available"

    def test_unversioned_full_name_matches(self):
        catalog = parse_catalog([PHI_NATIVE])
        local = [ModelRecord(id="phi-3-mini-4k-instruct-generic-cpu", name="x", provider="foundry")]

        merged = merge_models(local, catalog, "foundry")

        assert len(merged) == 1
        assert merged[0].name == "x"
        assert merged[0].size is not None


class TestCatalogNormalizer:
    """Tests for fetching and caching."""

    @pytest.mark.asyncio
    async def test_fetch_and_cache(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.path)
            return httpx.Response(200, json={"models": [PHI_NATIVE]})

        async with mock_http_client(handler) as http:
            locator = EndpointLocator(FOUNDRY_URL)
            catalog = CatalogNormalizer(http, locator)

            assert len(await catalog.get_entries()) == 1
            assert len(await catalog.get_entries()) == 1
            assert calls == ["/foundry/list"]

            entry = await catalog.lookup("phi-3-mini-4k")
            assert entry is not None and entry.version == "2"

    @pytest.mark.asyncio
    async def test_locator_invalidate_drops_catalog(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=[QWEN_NATIVE])

        async with mock_http_client(handler) as http:
            locator = EndpointLocator(FOUNDRY_URL)
            catalog = CatalogNormalizer(http, locator)
            await catalog.fetch_catalog()
            assert catalog.cached is not None

            locator.invalidate()
            assert catalog.cached is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(500, text="internal error"),
            httpx.Response(200, text="<html>not json</html>"),
            httpx.Response(200, json={"unexpected": True}),
        ],
    )
    async def test_failures_return_empty(self, response):
        async with mock_http_client(lambda request: response) as http:
            catalog = CatalogNormalizer(http, EndpointLocator(FOUNDRY_URL))
            assert await catalog.fetch_catalog() == []
            assert catalog.cached is None

    @pytest.mark.asyncio
    async def test_unreachable_returns_empty(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with mock_http_client(handler) as http:
            catalog = CatalogNormalizer(http, EndpointLocator(FOUNDRY_URL))
            assert await catalog.fetch_catalog() == []

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_previous_snapshot(self):
        responses = [httpx.Response(200, json=[QWEN_NATIVE]), httpx.Response(503)]

        async with mock_http_client(lambda request: responses.pop(0)) as http:
            catalog = CatalogNormalizer(http, EndpointLocator(FOUNDRY_URL))
            await catalog.fetch_catalog()
            await catalog.fetch_catalog()

            assert catalog.cached is not None
            assert catalog.cached[0].alias == "qwen2.5-0.5b"
