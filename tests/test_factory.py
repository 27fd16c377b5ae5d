"""Tests for provider factory and registry."""

from unittest.mock import patch

import pytest

from adapters.llm import FoundryLocalProvider, OllamaProvider
from conftest import FakeProvider
from core import factory
from core.config import Settings
from core.factory import ProviderConfig, ProviderFactory, ProviderRegistry, create_factory_from_settings


class TestProviderFactory:
    def test_settings_flow_into_config(self):
        settings = Settings(
            FOUNDRY_ENDPOINT="http://127.0.0.1:5273",
            FOUNDRY_DISCOVERY=["port_scan"],
            OLLAMA_ENABLED=False,
            DOWNLOAD_QUEUE_SIZE=8,
        )

        config = create_factory_from_settings(settings).config

        assert config.foundry_endpoint == "http://127.0.0.1:5273"
        assert config.foundry_discovery == ["port_scan"]
        assert config.ollama_enabled is False
        assert config.download_queue_size == 8

    @pytest.mark.asyncio
    async def test_creates_enabled_providers(self):
        with patch("services.endpoint_locator.shutil.which", return_value=None):
            providers = ProviderFactory(ProviderConfig()).create_providers()

        try:
            assert [type(p) for p in providers] == [FoundryLocalProvider, OllamaProvider]
        finally:
            for p in providers:
                await p.close()

    @pytest.mark.asyncio
    async def test_ollama_can_be_disabled(self):
        providers = ProviderFactory(ProviderConfig(ollama_enabled=False)).create_providers()

        try:
            assert [p.name for p in providers] == ["foundry"]
        finally:
            for p in providers:
                await p.close()

    @pytest.mark.asyncio
    async def test_configured_endpoint_is_pinned(self):
        provider = ProviderFactory(ProviderConfig(foundry_endpoint="http://10.0.0.5:5272")).create_foundry_provider()

        try:
            assert provider.locator.configured_endpoint == "http://10.0.0.5:5272"
            assert await provider.locator.resolve() == "http://10.0.0.5:5272"
        finally:
            await provider.close()


class TestProviderRegistry:
    def test_lookup_is_case_insensitive(self):
        foundry = FakeProvider("foundry")
        registry = ProviderRegistry([foundry, FakeProvider("ollama")])

        assert registry.get("FOUNDRY") is foundry
        assert registry.get("lmstudio") is None
        assert registry.names == ["foundry", "ollama"]

    def test_empty_name_selects_first(self):
        foundry = FakeProvider("foundry")
        registry = ProviderRegistry([foundry, FakeProvider("ollama")])

        assert registry.get(None) is foundry
        assert registry.get("") is foundry


@pytest.mark.asyncio
async def test_process_registry_is_shared(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(factory, "_registry", None)

    first = factory.get_provider_registry()
    second = factory.get_provider_registry()
    assert first is second

    await factory.close_providers()
    assert factory._registry is None
