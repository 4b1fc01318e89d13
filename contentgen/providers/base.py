"""
Provider adapter contract.

Every upstream AI service is fronted by one adapter exposing the same
capabilities: generate text, estimate tokens, estimate cost.
"""

from abc import ABC, abstractmethod
from typing import Optional

from ..core.options import GenerationParameters
from ..core.pricing import PricingTable, calculate_cost
from ..core.token_counter import DEFAULT_ESTIMATOR, TokenEstimator, TokenUsage


class ProviderAdapter(ABC):
    """Uniform interface over a single AI provider.

    Subclasses implement ``generate`` and translate their SDK's exceptions
    into ProviderError. Token estimation is a replaceable strategy so a
    provider can swap in an exact tokenizer.
    """

    name: str = ""

    def __init__(self, pricing: PricingTable, token_estimator: TokenEstimator = DEFAULT_ESTIMATOR):
        self.pricing = pricing
        self.token_estimator = token_estimator

    @abstractmethod
    def generate(self, prompt: str, params: GenerationParameters) -> str:
        """Send the effective prompt upstream and return the generated text.

        Raises:
            ProviderError: On any upstream failure
        """

    def estimate_tokens(self, text: str) -> int:
        return self.token_estimator.estimate(text)

    def estimate_cost(self, input_tokens: int, output_tokens: int, model: Optional[str] = None) -> float:
        """Estimate monetary cost from this provider's rate table."""
        usage = TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens)
        return calculate_cost(self.pricing, model, usage)
