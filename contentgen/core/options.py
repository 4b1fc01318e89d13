"""
Typed generation options.

Every recognized option is enumerated here. Values left as None are
filled from the attributed agent's preset, then from the global defaults.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

from .errors import ValidationError
from ..storage.models import Agent


DEFAULT_MODEL = "gpt-3.5-turbo"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 1000

MAX_PROMPT_LENGTH = 5000
MIN_TEMPERATURE = 0.0
MAX_TEMPERATURE = 2.0
MAX_MAX_TOKENS = 8192


def validate_prompt(prompt: str) -> None:
    """Reject empty or oversized prompts before any side effect."""
    if not isinstance(prompt, str) or not prompt.strip():
        raise ValidationError("prompt is required and cannot be empty")
    if len(prompt) > MAX_PROMPT_LENGTH:
        raise ValidationError(f"prompt cannot exceed {MAX_PROMPT_LENGTH} characters")


@dataclass(frozen=True)
class GenerationOptions:
    """Caller-supplied options for a single generation."""
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    system_prompt: Optional[str] = None
    context: Optional[str] = None
    agent_id: Optional[str] = None

    def __post_init__(self):
        if self.model is not None and not self.model.strip():
            raise ValidationError("model cannot be empty")
        if self.temperature is not None:
            _check_temperature(self.temperature)
        if self.max_tokens is not None:
            _check_max_tokens(self.max_tokens)


@dataclass(frozen=True)
class GenerationParameters:
    """Fully resolved parameters sent to a provider adapter."""
    model: str
    temperature: float
    max_tokens: int

    def to_dict(self) -> dict:
        return {
            "model": self.model,
            "temperature": self.temperature,
            "maxTokens": self.max_tokens,
        }


def _check_temperature(value: float) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError("temperature must be a number")
    if not MIN_TEMPERATURE <= value <= MAX_TEMPERATURE:
        raise ValidationError(
            f"temperature must be between {MIN_TEMPERATURE} and {MAX_TEMPERATURE}"
        )


def _check_max_tokens(value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("max_tokens must be an integer")
    if not 1 <= value <= MAX_MAX_TOKENS:
        raise ValidationError(f"max_tokens must be between 1 and {MAX_MAX_TOKENS}")


def resolve_parameters(
    options: GenerationOptions,
    agent: Optional[Agent] = None,
    default_model: str = DEFAULT_MODEL,
) -> Tuple[GenerationParameters, Optional[str]]:
    """Merge explicit options, agent preset and defaults.

    Precedence is explicit option, then agent config, then default.

    Returns:
        Resolved parameters and the effective system prompt (or None)
    """
    def pick(explicit, preset, default):
        if explicit is not None:
            return explicit
        if preset is not None:
            return preset
        return default

    params = GenerationParameters(
        model=pick(options.model, agent.model if agent else None, default_model),
        temperature=pick(
            options.temperature, agent.temperature if agent else None, DEFAULT_TEMPERATURE
        ),
        max_tokens=pick(
            options.max_tokens, agent.max_tokens if agent else None, DEFAULT_MAX_TOKENS
        ),
    )
    system_prompt = pick(options.system_prompt, agent.system_prompt if agent else None, None)
    return params, system_prompt or None


def build_effective_prompt(
    prompt: str,
    system_prompt: Optional[str] = None,
    context: Optional[str] = None,
) -> str:
    """Assemble the exact text sent to a provider.

    The system prompt is prepended followed by a blank line; context then
    wraps the result as ``Context: ...\\n\\nTask: ...``. Callers rely on
    this ordering for reproducibility.
    """
    full_prompt = prompt
    if system_prompt:
        full_prompt = f"{system_prompt}\n\n{full_prompt}"
    if context:
        full_prompt = f"Context: {context}\n\nTask: {full_prompt}"
    return full_prompt
