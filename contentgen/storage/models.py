"""
Data models for storage layer.

Defines the persisted Generation and Agent entities and the Generation
lifecycle.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from ..core.errors import InvalidStatusTransition, ValidationError


AGENT_OUTPUT_FORMATS = frozenset({"text", "json", "markdown", "html"})


class GenerationStatus(Enum):
    """Lifecycle states of a Generation.

    ``retry_wait`` is the sub-state between two provider attempts.
    """
    PENDING = "pending"
    PROCESSING = "processing"
    RETRY_WAIT = "retry_wait"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[GenerationStatus] = frozenset(
    {GenerationStatus.COMPLETED, GenerationStatus.FAILED}
)

ALLOWED_TRANSITIONS: Dict[GenerationStatus, FrozenSet[GenerationStatus]] = {
    GenerationStatus.PENDING: frozenset(
        {GenerationStatus.PROCESSING, GenerationStatus.FAILED}
    ),
    GenerationStatus.PROCESSING: frozenset(
        {GenerationStatus.COMPLETED, GenerationStatus.FAILED, GenerationStatus.RETRY_WAIT}
    ),
    GenerationStatus.RETRY_WAIT: frozenset(
        {GenerationStatus.PROCESSING, GenerationStatus.FAILED}
    ),
    GenerationStatus.COMPLETED: frozenset(),
    GenerationStatus.FAILED: frozenset(),
}


def predecessors_of(target: GenerationStatus) -> FrozenSet[GenerationStatus]:
    """All statuses from which ``target`` may be entered."""
    return frozenset(
        status for status, targets in ALLOWED_TRANSITIONS.items() if target in targets
    )


@dataclass(frozen=True)
class Generation:
    """One prompt to output attempt with its full lifecycle and accounting.

    Token counts and cost are present only once completed; error is present
    only once failed. Instances are immutable; ``transition`` returns the
    next state of the record.
    """
    id: str
    user_id: str
    prompt: str
    model: str
    provider: str
    created_at: datetime
    updated_at: datetime
    agent_id: Optional[str] = None
    context: Optional[str] = None
    parameters: Dict[str, object] = field(default_factory=dict)
    status: GenerationStatus = GenerationStatus.PENDING
    output: Optional[str] = None
    metadata: Dict[str, object] = field(default_factory=dict)
    sources: List[str] = field(default_factory=list)
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    cost: Optional[float] = None
    duration: Optional[int] = None
    error: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    tags: List[str] = field(default_factory=list)
    completed_at: Optional[datetime] = None

    def __post_init__(self):
        completed = self.status == GenerationStatus.COMPLETED
        accounting = (self.input_tokens, self.output_tokens, self.total_tokens, self.cost)
        if completed and any(value is None for value in accounting):
            raise ValidationError("completed generation requires tokens and cost")
        if not completed and any(value is not None for value in accounting):
            raise ValidationError("tokens and cost are only recorded on completion")
        if completed and self.total_tokens != self.input_tokens + self.output_tokens:
            raise ValidationError("total_tokens must equal input_tokens + output_tokens")
        if (self.status == GenerationStatus.FAILED) != (self.error is not None):
            raise ValidationError("error is recorded if and only if the generation failed")
        if self.retry_count < 0 or self.max_retries < 0:
            raise ValidationError("retry counters cannot be negative")

    @property
    def is_successful(self) -> bool:
        return self.status == GenerationStatus.COMPLETED

    def transition(self, target: GenerationStatus, now: datetime, **changes) -> "Generation":
        """Return this record moved to ``target`` with ``changes`` applied.

        Raises:
            InvalidStatusTransition: If ``target`` is not reachable
        """
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidStatusTransition(self.id, self.status.value, target.value)
        if target == GenerationStatus.COMPLETED:
            changes.setdefault("completed_at", now)
        return replace(self, status=target, updated_at=now, **changes)


@dataclass(frozen=True)
class Agent:
    """A reusable generation preset owned by a single user."""
    id: str
    user_id: str
    name: str
    type: str
    model: str
    system_prompt: str
    created_at: datetime
    temperature: float = 0.7
    max_tokens: int = 1000
    output_format: str = "text"
    constraints: List[str] = field(default_factory=list)
    description: Optional[str] = None
    is_default: bool = False
    usage_count: int = 0

    def __post_init__(self):
        """Validate preset values."""
        if not self.name or not self.name.strip():
            raise ValidationError("agent name is required")
        if len(self.name) > 100:
            raise ValidationError("agent name cannot exceed 100 characters")
        if not self.system_prompt or len(self.system_prompt) > 2000:
            raise ValidationError("system prompt is required and cannot exceed 2000 characters")
        if not 0 <= self.temperature <= 2:
            raise ValidationError("temperature must be between 0 and 2")
        if not 1 <= self.max_tokens <= 8192:
            raise ValidationError("max_tokens must be between 1 and 8192")
        if self.output_format not in AGENT_OUTPUT_FORMATS:
            raise ValidationError(f"output_format must be one of: {sorted(AGENT_OUTPUT_FORMATS)}")
        if self.usage_count < 0:
            raise ValidationError("usage_count cannot be negative")

    def is_owned_by(self, user_id: str) -> bool:
        return self.user_id == user_id
