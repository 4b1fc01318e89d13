"""
Google Gemini adapter using the google-genai SDK.
"""

from typing import Optional

from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

from .base import ProviderAdapter
from ..core.errors import ProviderError, ProviderErrorKind
from ..core.options import GenerationParameters
from ..core.pricing import GOOGLE_PRICING, PricingTable
from ..core.token_counter import DEFAULT_ESTIMATOR, TokenEstimator


class GoogleAdapter(ProviderAdapter):
    name = "google"

    def __init__(
        self,
        api_key: Optional[str] = None,
        client: Optional[genai.Client] = None,
        pricing: PricingTable = GOOGLE_PRICING,
        token_estimator: TokenEstimator = DEFAULT_ESTIMATOR,
        timeout: Optional[float] = None,
    ):
        super().__init__(pricing, token_estimator)
        if client is None:
            client_kwargs = {"api_key": api_key}
            if timeout is not None:
                # HttpOptions takes milliseconds
                client_kwargs["http_options"] = genai_types.HttpOptions(timeout=int(timeout * 1000))
            client = genai.Client(**client_kwargs)
        self.client = client

    def generate(self, prompt: str, params: GenerationParameters) -> str:
        try:
            response = self.client.models.generate_content(
                model=params.model,
                contents=prompt,
                config=genai_types.GenerateContentConfig(
                    temperature=params.temperature,
                    max_output_tokens=params.max_tokens,
                ),
            )
        except genai_errors.APIError as e:
            raise self._translate(e) from e

        return response.text or ""

    def _translate(self, error: genai_errors.APIError) -> ProviderError:
        message = f"{self.name} generation failed: {error}"
        if error.code in (401, 403):
            return ProviderError(message, self.name, ProviderErrorKind.AUTH)
        if error.code == 429:
            return ProviderError(message, self.name, ProviderErrorKind.RATE_LIMIT)
        if error.code == 408:
            return ProviderError(message, self.name, ProviderErrorKind.TIMEOUT, retryable=False)
        return ProviderError(
            message, self.name, ProviderErrorKind.UPSTREAM,
            retryable=isinstance(error, genai_errors.ServerError),
        )
