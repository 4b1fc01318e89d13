"""
Model name to provider resolution.

Resolution walks an ordered prefix table; the first matching prefix wins.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from .errors import ValidationError


DEFAULT_PROVIDER = "openai"

MODEL_PREFIXES: Tuple[Tuple[str, str], ...] = (
    ("gpt", "openai"),
    ("gemini", "google"),
    ("claude", "anthropic"),
    ("deepseek", "deepseek"),
)

MODEL_CATALOGUE: Dict[str, List[str]] = {
    "openai": ["gpt-3.5-turbo", "gpt-4", "gpt-4-turbo"],
    "google": ["gemini-pro", "gemini-1.5-pro"],
    "anthropic": ["claude-2", "claude-instant"],
    "deepseek": ["deepseek-chat", "deepseek-coder"],
}


@dataclass(frozen=True)
class ModelResolver:
    """Deterministic mapping from a model identifier to a provider name.

    With ``strict`` unset, unmatched models fall back to ``default_provider``.
    With ``strict`` set they are rejected with ValidationError so a typo in a
    model name never silently reaches the wrong provider.
    """
    prefixes: Tuple[Tuple[str, str], ...] = MODEL_PREFIXES
    default_provider: str = DEFAULT_PROVIDER
    strict: bool = False
    catalogue: Dict[str, List[str]] = field(default_factory=lambda: dict(MODEL_CATALOGUE))

    def resolve(self, model: str) -> str:
        for prefix, provider in self.prefixes:
            if model.startswith(prefix):
                return provider
        if self.strict:
            raise ValidationError(f"No provider serves model: {model}")
        return self.default_provider

    def models_for(self, provider: str) -> List[str]:
        return list(self.catalogue.get(provider, []))


def resolve_provider(model: str) -> str:
    """Resolve a model with the default, non-strict prefix table."""
    return ModelResolver().resolve(model)
