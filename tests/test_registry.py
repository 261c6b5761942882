"""Tests for ProviderRegistry lookup and the built-in adapter set."""

from __future__ import annotations

import pytest

from src.assetsync.integrations.errors import UnsupportedProviderError
from src.assetsync.integrations.providers import CustomProvider
from src.assetsync.integrations.registry import ProviderRegistry, build_provider_registry


class TestProviderRegistry:
    def test_builtin_providers(self):
        registry = build_provider_registry()
        assert registry.keys() == ["connectwise", "it_glue", "kaseya", "auvik", "custom"]
        assert registry.options()["it_glue"] == "IT Glue"
        assert "auvik" in registry
        assert len(registry) == 5

    def test_resolve_unknown_provider(self):
        registry = build_provider_registry()
        with pytest.raises(UnsupportedProviderError, match="Unsupported integration provider: datto"):
            registry.resolve("datto")

    def test_unsupported_provider_is_a_value_error(self):
        with pytest.raises(ValueError):
            ProviderRegistry().resolve("anything")

    def test_duplicate_registration_rejected(self):
        registry = ProviderRegistry([CustomProvider()])
        with pytest.raises(ValueError, match="already registered"):
            registry.register(CustomProvider())

    def test_resolve_returns_registered_instance(self):
        provider = CustomProvider()
        assert ProviderRegistry([provider]).resolve("custom") is provider
