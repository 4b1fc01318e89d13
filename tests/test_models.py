"""
Unit tests for the Generation lifecycle and Agent validation.
"""

from datetime import datetime

import pytest

from contentgen.core.errors import GenerationError, InvalidStatusTransition, ValidationError
from contentgen.storage.models import (
    ALLOWED_TRANSITIONS,
    Generation,
    GenerationStatus,
    predecessors_of,
)

from conftest import make_agent

NOW = datetime(2024, 1, 1, 12, 0, 0)
LATER = datetime(2024, 1, 1, 12, 0, 5)


def _pending(**overrides) -> Generation:
    values = dict(
        id="g1", user_id="u1", prompt="x", model="gpt-4", provider="openai",
        created_at=NOW, updated_at=NOW,
    )
    values.update(overrides)
    return Generation(**values)


def _completion(**overrides):
    values = dict(
        output="Hello AI", input_tokens=1, output_tokens=2, total_tokens=3, cost=0.0001,
    )
    values.update(overrides)
    return values


class TestGenerationStatus:
    """Test the transition table."""

    def test_terminal_statuses_have_no_successors(self):
        assert GenerationStatus.COMPLETED.is_terminal
        assert GenerationStatus.FAILED.is_terminal
        assert not ALLOWED_TRANSITIONS[GenerationStatus.COMPLETED]
        assert not ALLOWED_TRANSITIONS[GenerationStatus.FAILED]

    def test_predecessors(self):
        assert predecessors_of(GenerationStatus.COMPLETED) == {GenerationStatus.PROCESSING}
        assert predecessors_of(GenerationStatus.FAILED) == {
            GenerationStatus.PENDING, GenerationStatus.PROCESSING, GenerationStatus.RETRY_WAIT,
        }
        assert predecessors_of(GenerationStatus.PROCESSING) == {
            GenerationStatus.PENDING, GenerationStatus.RETRY_WAIT,
        }
        assert predecessors_of(GenerationStatus.PENDING) == frozenset()


class TestGenerationTransitions:
    """Test lifecycle moves and record invariants."""

    def test_happy_path(self):
        generation = _pending()
        processing = generation.transition(GenerationStatus.PROCESSING, LATER)
        completed = processing.transition(GenerationStatus.COMPLETED, LATER, **_completion())

        assert generation.status == GenerationStatus.PENDING
        assert completed.status == GenerationStatus.COMPLETED
        assert completed.completed_at == LATER
        assert completed.updated_at == LATER
        assert completed.is_successful

    def test_retry_cycle(self):
        processing = _pending().transition(GenerationStatus.PROCESSING, NOW)
        waiting = processing.transition(GenerationStatus.RETRY_WAIT, NOW, retry_count=1)
        again = waiting.transition(GenerationStatus.PROCESSING, LATER)
        assert again.retry_count == 1

    def test_pending_cannot_complete(self):
        with pytest.raises(InvalidStatusTransition, match="pending to completed"):
            _pending().transition(GenerationStatus.COMPLETED, LATER, **_completion())

    @pytest.mark.parametrize("target", list(GenerationStatus))
    def test_terminal_records_are_frozen(self, target):
        failed = _pending().transition(GenerationStatus.FAILED, LATER, error="boom")
        with pytest.raises(InvalidStatusTransition):
            failed.transition(target, LATER)

    def test_completed_requires_accounting(self):
        processing = _pending().transition(GenerationStatus.PROCESSING, NOW)
        with pytest.raises(ValidationError, match="requires tokens and cost"):
            processing.transition(GenerationStatus.COMPLETED, LATER, output="x")

    def test_accounting_only_on_completion(self):
        with pytest.raises(ValidationError, match="only recorded on completion"):
            _pending(cost=0.1)

    def test_total_tokens_must_add_up(self):
        processing = _pending().transition(GenerationStatus.PROCESSING, NOW)
        with pytest.raises(ValidationError, match="total_tokens"):
            processing.transition(
                GenerationStatus.COMPLETED, LATER, **_completion(total_tokens=4)
            )

    def test_error_only_when_failed(self):
        with pytest.raises(ValidationError, match="error is recorded"):
            _pending(error="boom")
        with pytest.raises(ValidationError, match="error is recorded"):
            _pending().transition(GenerationStatus.FAILED, LATER)

    def test_negative_retry_count_rejected(self):
        with pytest.raises(ValidationError, match="retry counters"):
            _pending(retry_count=-1)

    def test_invariant_violations_are_generation_errors(self):
        with pytest.raises(GenerationError):
            _pending(cost=0.1)
        with pytest.raises(GenerationError):
            make_agent(temperature=3.0)


class TestAgentValidation:
    """Test agent preset limits."""

    def test_valid_agent(self):
        agent = make_agent()
        assert agent.is_owned_by("u1")
        assert not agent.is_owned_by("u2")
        assert agent.usage_count == 0

    @pytest.mark.parametrize("overrides, message", [
        ({"name": " "}, "name is required"),
        ({"name": "n" * 101}, "100 characters"),
        ({"system_prompt": ""}, "system prompt"),
        ({"system_prompt": "s" * 2001}, "2000 characters"),
        ({"temperature": 2.5}, "temperature"),
        ({"max_tokens": 0}, "max_tokens"),
        ({"max_tokens": 9000}, "max_tokens"),
        ({"output_format": "xml"}, "output_format"),
        ({"usage_count": -1}, "usage_count"),
    ])
    def test_invalid_agent(self, overrides, message):
        with pytest.raises(ValidationError, match=message):
            make_agent(**overrides)
