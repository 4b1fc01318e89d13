"""
Pricing calculations and rate management.

Static per-provider rate tables. Rates are expressed per 1K tokens and
cost is ``(input_tokens * input_rate + output_tokens * output_rate) / 1000``.
"""

from dataclasses import dataclass
from typing import Dict, Optional
from decimal import Decimal, ROUND_UP

from .token_counter import TokenUsage


# Six decimal places keeps sub-cent requests visible in aggregates
COST_QUANTUM = Decimal("0.000001")


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    input_cost_per_1k: Decimal
    output_cost_per_1k: Decimal


@dataclass(frozen=True)
class PricingTable:
    """Rate table for every model a single provider serves."""
    provider: str
    prices: Dict[str, ModelPricing]
    default_model: str

    def __post_init__(self):
        if self.default_model not in self.prices:
            raise ValueError(
                f"default_model {self.default_model!r} missing from {self.provider} prices"
            )

    def get_pricing(self, model: Optional[str] = None) -> ModelPricing:
        """Get pricing for a model served by this provider.

        Exact names win, then the longest known prefix (so dated or
        preview variants price like their family), then the provider's
        default model.

        Args:
            model: Model identifier, or None for the default model

        Returns:
            ModelPricing for the model
        """
        if model in self.prices:
            return self.prices[model]
        if model:
            candidates = [name for name in self.prices if model.startswith(name)]
            if candidates:
                return self.prices[max(candidates, key=len)]
        return self.prices[self.default_model]


def _rates(input_rate: str, output_rate: str) -> ModelPricing:
    return ModelPricing(
        input_cost_per_1k=Decimal(input_rate),
        output_cost_per_1k=Decimal(output_rate),
    )


OPENAI_PRICING = PricingTable(
    provider="openai",
    prices={
        "gpt-3.5-turbo": _rates("0.0015", "0.002"),
        "gpt-4": _rates("0.03", "0.06"),
        "gpt-4-turbo": _rates("0.01", "0.03"),
    },
    default_model="gpt-3.5-turbo",
)

GOOGLE_PRICING = PricingTable(
    provider="google",
    prices={
        "gemini-pro": _rates("0.0001", "0.0002"),
        "gemini-1.5-pro": _rates("0.0001", "0.0002"),
    },
    default_model="gemini-pro",
)

ANTHROPIC_PRICING = PricingTable(
    provider="anthropic",
    prices={
        "claude-2": _rates("0.008", "0.024"),
        "claude-instant": _rates("0.0008", "0.0024"),
    },
    default_model="claude-2",
)

DEEPSEEK_PRICING = PricingTable(
    provider="deepseek",
    prices={
        "deepseek-chat": _rates("0.00014", "0.00028"),
        "deepseek-coder": _rates("0.00014", "0.00028"),
    },
    default_model="deepseek-chat",
)

PRICING_TABLES: Dict[str, PricingTable] = {
    table.provider: table
    for table in (OPENAI_PRICING, GOOGLE_PRICING, ANTHROPIC_PRICING, DEEPSEEK_PRICING)
}


def calculate_cost(table: PricingTable, model: Optional[str], usage: TokenUsage) -> float:
    """Calculate total cost for model usage with conservative rounding.

    Args:
        table: Pricing table of the provider that served the request
        model: Model identifier
        usage: Token usage data

    Returns:
        Total cost rounded UP to six decimal places, so any non-zero
        usage costs more than zero
    """
    pricing = table.get_pricing(model)

    input_cost = Decimal(usage.input_tokens) * pricing.input_cost_per_1k
    output_cost = Decimal(usage.output_tokens) * pricing.output_cost_per_1k

    total_cost = (input_cost + output_cost) / Decimal("1000")
    return float(total_cost.quantize(COST_QUANTUM, rounding=ROUND_UP))
