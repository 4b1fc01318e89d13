"""
Provider registry and invocation gate.

The registry is built once from available credentials and is read-only
afterwards. Calls go through a per-provider semaphore so no provider sees
more than ``max_concurrency`` in-flight requests from this process.
"""

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional

import structlog

from .anthropic_adapter import AnthropicAdapter
from .base import ProviderAdapter
from .google_adapter import GoogleAdapter
from .openai_adapter import DeepSeekAdapter, OpenAIAdapter
from ..core.errors import ProviderError, ProviderErrorKind, ProviderUnavailable
from ..core.options import GenerationParameters

logger = structlog.get_logger(__name__)


DEFAULT_MAX_CONCURRENCY = 4


@dataclass(frozen=True)
class ProviderCredentials:
    """API keys supplied at process start. A missing key disables its provider."""
    openai: Optional[str] = None
    google: Optional[str] = None
    anthropic: Optional[str] = None
    deepseek: Optional[str] = None


class ProviderRegistry:
    """Immutable name to adapter map with bounded-concurrency invocation."""

    def __init__(
        self,
        adapters: Mapping[str, ProviderAdapter],
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    ):
        if max_concurrency <= 0:
            raise ValueError("max_concurrency must be > 0")
        self._adapters = MappingProxyType(dict(adapters))
        self.max_concurrency = max_concurrency
        self._gates: Mapping[str, threading.BoundedSemaphore] = MappingProxyType({
            name: threading.BoundedSemaphore(max_concurrency) for name in self._adapters
        })
        # One worker per gate slot, so an admitted call never queues
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, max_concurrency * len(self._adapters)),
            thread_name_prefix="provider",
        )

    def get_adapter(self, provider: str) -> ProviderAdapter:
        """Get the adapter registered for a provider.

        Raises:
            ProviderUnavailable: If no adapter was registered under that name
        """
        adapter = self._adapters.get(provider)
        if adapter is None:
            raise ProviderUnavailable(provider)
        return adapter

    def available_providers(self) -> List[str]:
        return list(self._adapters)

    def __contains__(self, provider: str) -> bool:
        return provider in self._adapters

    def invoke(
        self,
        provider: str,
        prompt: str,
        params: GenerationParameters,
        timeout: Optional[float] = None,
    ) -> str:
        """Run ``adapter.generate`` under the provider's concurrency gate.

        The caller waits at most ``timeout`` seconds in total. On expiry a
        TIMEOUT ProviderError is raised and any late upstream response is
        dropped; the gate slot is released only when the upstream call
        actually finishes.

        Raises:
            ProviderUnavailable: If the provider is not registered
            ProviderError: On upstream failure or timeout
        """
        adapter = self.get_adapter(provider)
        gate = self._gates[provider]

        deadline = time.monotonic() + timeout if timeout is not None else None
        acquired = gate.acquire(timeout=timeout) if timeout is not None else gate.acquire()
        if not acquired:
            raise ProviderError(
                f"{provider} generation timed out waiting for a free slot",
                provider, ProviderErrorKind.TIMEOUT,
            )

        try:
            future: Future = self._executor.submit(adapter.generate, prompt, params)
        except RuntimeError:
            gate.release()
            raise
        future.add_done_callback(lambda _: gate.release())

        remaining = max(0.0, deadline - time.monotonic()) if deadline is not None else None
        try:
            return future.result(timeout=remaining)
        except FutureTimeoutError as e:
            future.cancel()
            raise ProviderError(
                f"{provider} generation timed out after {timeout}s",
                provider, ProviderErrorKind.TIMEOUT,
            ) from e

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "ProviderRegistry":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def build_registry(
    credentials: ProviderCredentials,
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    request_timeout: Optional[float] = None,
) -> ProviderRegistry:
    """Create one adapter per provider that has credentials.

    Args:
        credentials: API keys read at startup
        max_concurrency: In-flight request cap per provider
        request_timeout: Per-request HTTP timeout handed to each SDK client

    Returns:
        A registry holding only the configured providers
    """
    factories = {
        "openai": (credentials.openai, OpenAIAdapter),
        "google": (credentials.google, GoogleAdapter),
        "anthropic": (credentials.anthropic, AnthropicAdapter),
        "deepseek": (credentials.deepseek, DeepSeekAdapter),
    }

    adapters: Dict[str, ProviderAdapter] = {}
    for name, (api_key, factory) in factories.items():
        if not api_key:
            logger.info("provider.skipped", provider=name, reason="missing credentials")
            continue
        adapters[name] = factory(api_key=api_key, timeout=request_timeout)
        logger.info("provider.registered", provider=name)

    return ProviderRegistry(adapters, max_concurrency=max_concurrency)
