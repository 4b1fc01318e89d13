"""
Unit tests for storage layer.

Tests schema creation, guarded status transitions, history queries,
aggregation and atomic agent counters.
"""

import os
import tempfile
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta

import pytest

from contentgen.core.errors import InvalidStatusTransition, PersistenceError
from contentgen.storage.db import get_connection
from contentgen.storage.models import Generation, GenerationStatus
from contentgen.storage.repository import (
    AgentRepository,
    GenerationRepository,
    initialize_schema,
)

from conftest import make_agent

BASE_TIME = datetime(2024, 1, 1, 12, 0, 0)


def _generation(user_id="u1", model="gpt-4", offset_seconds=0, **overrides) -> Generation:
    created = BASE_TIME + timedelta(seconds=offset_seconds)
    values = dict(
        id=uuid.uuid4().hex, user_id=user_id, prompt="x", model=model,
        provider="openai", created_at=created, updated_at=created,
        parameters={"model": model, "temperature": 0.7, "maxTokens": 1000},
    )
    values.update(overrides)
    return Generation(**values)


def _complete(repo: GenerationRepository, generation: Generation, tokens=(10, 5), cost=0.01, duration=100):
    processing = repo.save_transition(generation.transition(GenerationStatus.PROCESSING, BASE_TIME))
    return repo.save_transition(processing.transition(
        GenerationStatus.COMPLETED, BASE_TIME,
        output="done", input_tokens=tokens[0], output_tokens=tokens[1],
        total_tokens=sum(tokens), cost=cost, duration=duration,
        metadata={"provider": "openai", "duration": duration},
    ))


def _fail(repo: GenerationRepository, generation: Generation, duration=50):
    return repo.save_transition(generation.transition(
        GenerationStatus.FAILED, BASE_TIME, error="boom", duration=duration,
    ))


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """Verify tables are created correctly."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            conn = get_connection(db_path)
            try:
                tables = {
                    row[0] for row in conn.execute(
                        "SELECT name FROM sqlite_master WHERE type='table'"
                    )
                }
                assert {"generation", "agent"} <= tables

                columns = [col[1] for col in conn.execute("PRAGMA table_info(generation)")]
                assert "retry_count" in columns
                assert "completed_at" in columns
            finally:
                conn.close()

    def test_schema_creation_is_idempotent(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)
            initialize_schema(db_path)

    def test_unreachable_database_raises_persistence_error(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "missing", "test.db")
            with pytest.raises(PersistenceError):
                initialize_schema(db_path)


class TestGenerationRepository:
    """Test Generation persistence."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.repo = GenerationRepository(self.db_path)

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_create_and_get(self):
        generation = _generation(context="prior msg", tags=["a"])
        self.repo.create(generation)

        stored = self.repo.get(generation.id)
        assert stored == generation

    def test_get_missing_returns_none(self):
        assert self.repo.get("nope") is None

    def test_completed_record_round_trips_accounting(self):
        generation = _generation()
        self.repo.create(generation)
        completed = _complete(self.repo, generation)

        stored = self.repo.get(generation.id)
        assert stored == completed
        assert stored.total_tokens == 15
        assert stored.completed_at == BASE_TIME

    def test_terminal_record_cannot_be_overwritten(self):
        """A stale writer cannot move a completed record."""
        generation = _generation()
        self.repo.create(generation)
        processing = self.repo.save_transition(
            generation.transition(GenerationStatus.PROCESSING, BASE_TIME)
        )
        _complete_from = processing.transition(
            GenerationStatus.COMPLETED, BASE_TIME, output="done",
            input_tokens=1, output_tokens=1, total_tokens=2, cost=0.001,
        )
        self.repo.save_transition(_complete_from)

        stale = processing.transition(GenerationStatus.FAILED, BASE_TIME, error="late")
        with pytest.raises(InvalidStatusTransition, match="completed to failed"):
            self.repo.save_transition(stale)
        assert self.repo.get(generation.id).status == GenerationStatus.COMPLETED

    def test_skipping_processing_is_rejected_in_sql(self):
        generation = _generation()
        self.repo.create(generation)
        waiting = generation.transition(GenerationStatus.PROCESSING, BASE_TIME).transition(
            GenerationStatus.RETRY_WAIT, BASE_TIME, retry_count=1
        )
        with pytest.raises(InvalidStatusTransition):
            self.repo.save_transition(waiting)

    def test_save_transition_for_unknown_record(self):
        generation = _generation().transition(GenerationStatus.PROCESSING, BASE_TIME)
        with pytest.raises(PersistenceError, match="not found"):
            self.repo.save_transition(generation)

    def test_list_newest_first_with_paging(self):
        ids = []
        for i in range(5):
            generation = _generation(offset_seconds=i)
            self.repo.create(generation)
            ids.append(generation.id)
        self.repo.create(_generation(user_id="u2"))

        first_page = self.repo.list_for_user("u1", limit=2)
        second_page = self.repo.list_for_user("u1", limit=2, offset=2)

        assert [g.id for g in first_page] == [ids[4], ids[3]]
        assert [g.id for g in second_page] == [ids[2], ids[1]]
        assert self.repo.count_for_user("u1") == 5

    def test_list_filters(self):
        done = _generation(model="gpt-4")
        self.repo.create(done)
        _complete(self.repo, done)
        self.repo.create(_generation(model="claude-2", offset_seconds=1))

        completed = self.repo.list_for_user("u1", status=GenerationStatus.COMPLETED)
        claude = self.repo.list_for_user("u1", model="claude-2")

        assert [g.id for g in completed] == [done.id]
        assert [g.model for g in claude] == ["claude-2"]
        assert self.repo.count_for_user("u1", status=GenerationStatus.PENDING) == 1

    def test_aggregate_for_user(self):
        first = _generation(model="gpt-4")
        second = _generation(model="claude-2", offset_seconds=1)
        third = _generation(model="gemini-pro", offset_seconds=2)
        for generation in (first, second, third):
            self.repo.create(generation)
        _complete(self.repo, first, tokens=(10, 5), cost=0.01, duration=100)
        _complete(self.repo, second, tokens=(20, 10), cost=0.02, duration=300)
        _fail(self.repo, third, duration=200)

        aggregate = self.repo.aggregate_for_user("u1")

        assert aggregate["total_generations"] == 3
        assert aggregate["successful_generations"] == 2
        assert aggregate["failed_generations"] == 1
        assert aggregate["total_tokens"] == 45
        assert aggregate["total_cost"] == pytest.approx(0.03)
        assert aggregate["average_duration"] == pytest.approx(200.0)
        assert aggregate["latest_model"] == "gemini-pro"

    def test_aggregate_for_user_without_history(self):
        aggregate = self.repo.aggregate_for_user("nobody")
        assert aggregate == {
            "total_generations": 0,
            "successful_generations": 0,
            "failed_generations": 0,
            "total_tokens": 0,
            "total_cost": 0.0,
            "average_duration": 0.0,
            "latest_model": None,
        }


class TestAgentRepository:
    """Test Agent persistence and atomic counters."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.repo = AgentRepository(self.db_path)

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_create_and_get(self):
        agent = make_agent(constraints=["no emoji"], description="tweets")
        self.repo.create(agent)
        assert self.repo.get(agent.id) == agent

    def test_list_for_user_by_type(self):
        social = make_agent(type="social")
        blog = make_agent(type="blog")
        self.repo.create(social)
        self.repo.create(blog)
        self.repo.create(make_agent(user_id="u2"))

        assert {a.id for a in self.repo.list_for_user("u1")} == {social.id, blog.id}
        assert [a.id for a in self.repo.list_for_user("u1", agent_type="blog")] == [blog.id]

    def test_single_default_per_user_and_type(self):
        first = self.repo.create(make_agent(is_default=True))
        second = self.repo.create(make_agent(is_default=True))
        other_type = self.repo.create(make_agent(type="blog", is_default=True))

        assert not self.repo.get(first.id).is_default
        assert self.repo.get(second.id).is_default
        assert self.repo.get(other_type.id).is_default

    def test_set_default(self):
        first = self.repo.create(make_agent(is_default=True))
        second = self.repo.create(make_agent())

        updated = self.repo.set_default(second.id, "u1")

        assert updated.is_default
        assert not self.repo.get(first.id).is_default

    def test_set_default_for_foreign_agent(self):
        agent = self.repo.create(make_agent(user_id="u2"))
        with pytest.raises(PersistenceError, match="Agent not found"):
            self.repo.set_default(agent.id, "u1")

    def test_increment_usage(self):
        agent = self.repo.create(make_agent())
        self.repo.increment_usage(agent.id)
        self.repo.increment_usage(agent.id, amount=2)
        assert self.repo.get(agent.id).usage_count == 3

    def test_increment_usage_unknown_agent(self):
        with pytest.raises(PersistenceError, match="Agent not found"):
            self.repo.increment_usage("nope")

    def test_concurrent_increments_are_not_lost(self):
        agent = self.repo.create(make_agent())

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda _: self.repo.increment_usage(agent.id), range(40)))

        assert self.repo.get(agent.id).usage_count == 40
