"""
Token counting and usage tracking.

Token counts are estimated from text length rather than produced by a
real tokenizer. The estimator is a replaceable strategy so a provider
can plug in an exact tokenizer without touching the orchestrator.
"""

import math
from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation."""
    input_tokens: int
    output_tokens: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used (input + output)."""
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> dict:
        return {
            "input": self.input_tokens,
            "output": self.output_tokens,
            "total": self.total_tokens,
        }


class TokenEstimator(Protocol):
    """Strategy that maps text to an approximate token count."""

    def estimate(self, text: str) -> int:
        ...


@dataclass(frozen=True)
class CharacterRatioEstimator:
    """Approximate tokens as ``ceil(len(text) / chars_per_token)``.

    This is a heuristic, not a tokenizer. Four characters per token is a
    reasonable average for English prose on GPT-style vocabularies.
    """
    chars_per_token: int = 4

    def __post_init__(self):
        if self.chars_per_token <= 0:
            raise ValueError("chars_per_token must be > 0")

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / self.chars_per_token)


DEFAULT_ESTIMATOR = CharacterRatioEstimator()


def estimate_tokens(text: str) -> int:
    """Estimate tokens for text using the default heuristic."""
    return DEFAULT_ESTIMATOR.estimate(text)
