"""
Unit tests for the provider registry and its invocation gate.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest

from contentgen.core.errors import ProviderError, ProviderErrorKind, ProviderUnavailable
from contentgen.core.options import GenerationParameters
from contentgen.providers.registry import ProviderCredentials, ProviderRegistry, build_registry

from conftest import StubAdapter

PARAMS = GenerationParameters(model="gpt-4", temperature=0.7, max_tokens=100)


class TestProviderRegistry:
    """Test adapter lookup and invocation."""

    def test_get_adapter(self):
        adapter = StubAdapter()
        registry = ProviderRegistry({"openai": adapter})
        assert registry.get_adapter("openai") is adapter
        assert "openai" in registry
        assert registry.available_providers() == ["openai"]

    def test_unknown_provider(self):
        registry = ProviderRegistry({"openai": StubAdapter()})
        with pytest.raises(ProviderUnavailable, match="AI provider 'google' not available"):
            registry.get_adapter("google")
        with pytest.raises(ProviderUnavailable):
            registry.invoke("google", "x", PARAMS)

    def test_registry_is_read_only(self):
        adapters = {"openai": StubAdapter()}
        registry = ProviderRegistry(adapters)
        adapters["google"] = StubAdapter("google")
        assert "google" not in registry

    def test_invalid_concurrency(self):
        with pytest.raises(ValueError, match="max_concurrency"):
            ProviderRegistry({}, max_concurrency=0)

    def test_invoke_returns_adapter_output(self):
        adapter = StubAdapter(response="generated")
        registry = ProviderRegistry({"openai": adapter})

        assert registry.invoke("openai", "prompt", PARAMS, timeout=5) == "generated"
        assert adapter.calls == [("prompt", PARAMS)]

    def test_invoke_propagates_provider_errors(self):
        error = ProviderError("rate limited", "openai", ProviderErrorKind.RATE_LIMIT)
        registry = ProviderRegistry({"openai": StubAdapter(errors=[error])})

        with pytest.raises(ProviderError) as excinfo:
            registry.invoke("openai", "x", PARAMS)
        assert excinfo.value is error

    def test_invoke_times_out(self):
        release = threading.Event()
        adapter = StubAdapter(on_generate=lambda: release.wait(5))
        registry = ProviderRegistry({"openai": adapter})

        try:
            with pytest.raises(ProviderError) as excinfo:
                registry.invoke("openai", "x", PARAMS, timeout=0.05)
            assert excinfo.value.kind == ProviderErrorKind.TIMEOUT
            assert not excinfo.value.retryable
        finally:
            release.set()
            registry.close()

    def test_concurrency_is_bounded_per_provider(self):
        lock = threading.Lock()
        state = {"active": 0, "peak": 0}

        def track():
            with lock:
                state["active"] += 1
                state["peak"] = max(state["peak"], state["active"])
            time.sleep(0.02)
            with lock:
                state["active"] -= 1

        registry = ProviderRegistry({"openai": StubAdapter(on_generate=track)}, max_concurrency=2)

        with ThreadPoolExecutor(max_workers=6) as pool:
            results = list(pool.map(lambda _: registry.invoke("openai", "x", PARAMS), range(12)))

        assert results == ["Hello AI"] * 12
        assert state["peak"] <= 2
        registry.close()

    def test_waiting_for_a_slot_counts_against_timeout(self):
        release = threading.Event()
        registry = ProviderRegistry(
            {"openai": StubAdapter(on_generate=lambda: release.wait(5))}, max_concurrency=1
        )
        holder = threading.Thread(target=registry.invoke, args=("openai", "x", PARAMS))
        holder.start()
        time.sleep(0.05)

        try:
            with pytest.raises(ProviderError, match="free slot"):
                registry.invoke("openai", "x", PARAMS, timeout=0.05)
        finally:
            release.set()
            holder.join()
            registry.close()

    def test_context_manager_closes_executor(self):
        with ProviderRegistry({"openai": StubAdapter()}) as registry:
            assert registry.invoke("openai", "x", PARAMS) == "Hello AI"

        with pytest.raises(RuntimeError):
            registry.invoke("openai", "x", PARAMS)


class TestBuildRegistry:
    """Test registry construction from credentials."""

    def test_only_configured_providers_are_registered(self):
        with patch("contentgen.providers.registry.OpenAIAdapter") as openai_adapter, \
                patch("contentgen.providers.registry.AnthropicAdapter") as anthropic_adapter, \
                patch("contentgen.providers.registry.GoogleAdapter") as google_adapter, \
                patch("contentgen.providers.registry.DeepSeekAdapter") as deepseek_adapter:
            registry = build_registry(ProviderCredentials(openai="sk-1", anthropic="ak-1"))

        assert sorted(registry.available_providers()) == ["anthropic", "openai"]
        openai_adapter.assert_called_once_with(api_key="sk-1", timeout=None)
        anthropic_adapter.assert_called_once_with(api_key="ak-1", timeout=None)
        google_adapter.assert_not_called()
        deepseek_adapter.assert_not_called()
        assert registry.get_adapter("openai") is openai_adapter.return_value

    def test_no_credentials_means_no_providers(self):
        registry = build_registry(ProviderCredentials())
        assert registry.available_providers() == []
        with pytest.raises(ProviderUnavailable):
            registry.get_adapter("openai")

    def test_request_timeout_reaches_every_adapter(self):
        with patch("contentgen.providers.registry.OpenAIAdapter") as openai_adapter, \
                patch("contentgen.providers.registry.GoogleAdapter") as google_adapter:
            build_registry(ProviderCredentials(openai="sk-1", google="gk-1"), request_timeout=30.0)

        openai_adapter.assert_called_once_with(api_key="sk-1", timeout=30.0)
        google_adapter.assert_called_once_with(api_key="gk-1", timeout=30.0)
