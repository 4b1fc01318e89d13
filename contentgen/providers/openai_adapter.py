"""
OpenAI chat completions adapter.

Also serves DeepSeek, whose API is OpenAI-compatible.
"""

from typing import Optional

import openai
from openai import OpenAI

from .base import ProviderAdapter
from ..core.errors import ProviderError, ProviderErrorKind
from ..core.options import GenerationParameters
from ..core.pricing import DEEPSEEK_PRICING, OPENAI_PRICING, PricingTable
from ..core.token_counter import DEFAULT_ESTIMATOR, TokenEstimator


DEEPSEEK_BASE_URL = "https://api.deepseek.com/v1"


class OpenAIAdapter(ProviderAdapter):
    """Adapter over ``client.chat.completions.create``.

    SDK-level retries are disabled; the orchestrator owns the retry policy.
    """

    name = "openai"

    def __init__(
        self,
        api_key: Optional[str] = None,
        client: Optional[OpenAI] = None,
        base_url: Optional[str] = None,
        pricing: PricingTable = OPENAI_PRICING,
        token_estimator: TokenEstimator = DEFAULT_ESTIMATOR,
        timeout: Optional[float] = None,
    ):
        super().__init__(pricing, token_estimator)
        if client is None:
            client_kwargs = {"api_key": api_key, "base_url": base_url, "max_retries": 0}
            if timeout is not None:
                client_kwargs["timeout"] = timeout
            client = OpenAI(**client_kwargs)
        self.client = client

    def generate(self, prompt: str, params: GenerationParameters) -> str:
        try:
            response = self.client.chat.completions.create(
                model=params.model,
                messages=[{"role": "user", "content": prompt}],
                temperature=params.temperature,
                max_tokens=params.max_tokens,
            )
        except openai.APIError as e:
            raise self._translate(e) from e

        if not response.choices:
            return ""
        return response.choices[0].message.content or ""

    def _translate(self, error: openai.APIError) -> ProviderError:
        message = f"{self.name} generation failed: {error}"
        if isinstance(error, openai.APITimeoutError):
            return ProviderError(message, self.name, ProviderErrorKind.TIMEOUT, retryable=False)
        if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
            return ProviderError(message, self.name, ProviderErrorKind.AUTH)
        if isinstance(error, openai.RateLimitError):
            return ProviderError(message, self.name, ProviderErrorKind.RATE_LIMIT)
        if isinstance(error, openai.APIStatusError):
            return ProviderError(
                message, self.name, ProviderErrorKind.UPSTREAM,
                retryable=error.status_code >= 500,
            )
        return ProviderError(message, self.name, ProviderErrorKind.UPSTREAM)


class DeepSeekAdapter(OpenAIAdapter):
    """DeepSeek through its OpenAI-compatible endpoint."""

    name = "deepseek"

    def __init__(
        self,
        api_key: Optional[str] = None,
        client: Optional[OpenAI] = None,
        token_estimator: TokenEstimator = DEFAULT_ESTIMATOR,
        timeout: Optional[float] = None,
    ):
        super().__init__(
            api_key=api_key,
            client=client,
            base_url=DEEPSEEK_BASE_URL,
            pricing=DEEPSEEK_PRICING,
            token_estimator=token_estimator,
            timeout=timeout,
        )
