"""
Anthropic messages adapter.
"""

from typing import Optional

import anthropic
from anthropic import Anthropic

from .base import ProviderAdapter
from ..core.errors import ProviderError, ProviderErrorKind
from ..core.options import GenerationParameters
from ..core.pricing import ANTHROPIC_PRICING, PricingTable
from ..core.token_counter import DEFAULT_ESTIMATOR, TokenEstimator


class AnthropicAdapter(ProviderAdapter):
    name = "anthropic"

    def __init__(
        self,
        api_key: Optional[str] = None,
        client: Optional[Anthropic] = None,
        pricing: PricingTable = ANTHROPIC_PRICING,
        token_estimator: TokenEstimator = DEFAULT_ESTIMATOR,
        timeout: Optional[float] = None,
    ):
        super().__init__(pricing, token_estimator)
        if client is None:
            client_kwargs = {"api_key": api_key, "max_retries": 0}
            if timeout is not None:
                client_kwargs["timeout"] = timeout
            client = Anthropic(**client_kwargs)
        self.client = client

    def generate(self, prompt: str, params: GenerationParameters) -> str:
        try:
            response = self.client.messages.create(
                model=params.model,
                max_tokens=params.max_tokens,
                temperature=params.temperature,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APIError as e:
            raise self._translate(e) from e

        return "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )

    def _translate(self, error: anthropic.APIError) -> ProviderError:
        message = f"{self.name} generation failed: {error}"
        if isinstance(error, anthropic.APITimeoutError):
            return ProviderError(message, self.name, ProviderErrorKind.TIMEOUT, retryable=False)
        if isinstance(error, (anthropic.AuthenticationError, anthropic.PermissionDeniedError)):
            return ProviderError(message, self.name, ProviderErrorKind.AUTH)
        if isinstance(error, anthropic.RateLimitError):
            return ProviderError(message, self.name, ProviderErrorKind.RATE_LIMIT)
        if isinstance(error, anthropic.APIStatusError):
            return ProviderError(
                message, self.name, ProviderErrorKind.UPSTREAM,
                retryable=error.status_code >= 500,
            )
        return ProviderError(message, self.name, ProviderErrorKind.UPSTREAM)
