"""
Error taxonomy for generation orchestration.

Validation and authorization errors fail fast before any side effect.
Provider and persistence errors are recorded on the Generation and
surfaced to the caller.
"""

from enum import Enum
from typing import Optional


class GenerationError(Exception):
    """Base class for every error raised by the generation core."""


class ValidationError(GenerationError):
    """Raised when a prompt or its options are malformed."""


class AgentAccessDenied(GenerationError):
    """Raised when an agent does not exist or belongs to another user."""

    def __init__(self, agent_id: str):
        super().__init__(f"Agent not found or access denied: {agent_id}")
        self.agent_id = agent_id


class ProviderUnavailable(GenerationError):
    """Raised when no adapter is registered for a provider name."""

    def __init__(self, provider: str):
        super().__init__(f"AI provider '{provider}' not available")
        self.provider = provider


class ProviderErrorKind(Enum):
    """Upstream failure categories shared by every adapter."""
    TIMEOUT = "timeout"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    UPSTREAM = "upstream"


_RETRYABLE_KINDS = frozenset({ProviderErrorKind.RATE_LIMIT, ProviderErrorKind.UPSTREAM})


class ProviderError(GenerationError):
    """Uniform wrapper for upstream API failures.

    Adapters translate their SDK exceptions into this type so the
    orchestrator can apply one retry and recording policy to all providers.
    """

    def __init__(
        self,
        message: str,
        provider: str,
        kind: ProviderErrorKind = ProviderErrorKind.UPSTREAM,
        retryable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.kind = kind
        self.retryable = kind in _RETRYABLE_KINDS if retryable is None else retryable


class PersistenceError(GenerationError):
    """Raised when the datastore or cache cannot be reached."""


class InvalidStatusTransition(GenerationError):
    """Raised when a Generation lifecycle transition is not permitted."""

    def __init__(self, generation_id: str, current: str, target: str):
        super().__init__(
            f"Generation {generation_id} cannot move from {current} to {target}"
        )
        self.generation_id = generation_id
        self.current = current
        self.target = target
