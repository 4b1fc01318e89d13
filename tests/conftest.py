"""
Shared fixtures: temporary database, in-memory cache and stub adapters.
"""

import os
import threading
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from contentgen.core.errors import PersistenceError
from contentgen.core.options import GenerationParameters
from contentgen.core.pricing import OPENAI_PRICING, PricingTable
from contentgen.providers.base import ProviderAdapter
from contentgen.storage.models import Agent
from contentgen.storage.repository import initialize_schema


class FakeCache:
    """Dict-backed JsonCache that records every call."""

    def __init__(self):
        self.store: Dict[str, Any] = {}
        self.ttls: Dict[str, int] = {}
        self.deleted: List[str] = []
        self.fail = False
        self._lock = threading.Lock()

    def get_json(self, key: str) -> Optional[Any]:
        if self.fail:
            raise PersistenceError("cache down")
        with self._lock:
            return self.store.get(key)

    def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        if self.fail:
            raise PersistenceError("cache down")
        with self._lock:
            self.store[key] = value
            self.ttls[key] = ttl_seconds

    def delete(self, key: str) -> None:
        if self.fail:
            raise PersistenceError("cache down")
        with self._lock:
            self.store.pop(key, None)
            self.deleted.append(key)

    def incr(self, key: str, ttl_seconds: int) -> int:
        if self.fail:
            raise PersistenceError("cache down")
        with self._lock:
            self.store[key] = int(self.store.get(key) or 0) + 1
            self.ttls[key] = ttl_seconds
            return self.store[key]


class StubAdapter(ProviderAdapter):
    """Adapter returning canned text, or raising queued errors first."""

    def __init__(
        self,
        name: str = "openai",
        response: str = "Hello AI",
        pricing: PricingTable = OPENAI_PRICING,
        errors: Optional[List[Exception]] = None,
        on_generate: Optional[Callable[[], None]] = None,
    ):
        super().__init__(pricing)
        self.name = name
        self.response = response
        self.errors = list(errors or [])
        self.on_generate = on_generate
        self.calls: List[Tuple[str, GenerationParameters]] = []
        self._lock = threading.Lock()

    def generate(self, prompt: str, params: GenerationParameters) -> str:
        with self._lock:
            self.calls.append((prompt, params))
            error = self.errors.pop(0) if self.errors else None
        if self.on_generate is not None:
            self.on_generate()
        if error is not None:
            raise error
        return self.response


@pytest.fixture
def db_path(tmp_path):
    path = os.path.join(str(tmp_path), "test.db")
    initialize_schema(path)
    return path


@pytest.fixture
def fake_cache():
    return FakeCache()


def make_agent(user_id: str = "u1", **overrides) -> Agent:
    values = dict(
        id=uuid.uuid4().hex,
        user_id=user_id,
        name="Tweet writer",
        type="social",
        model="gpt-4",
        system_prompt="Write punchy tweets",
        created_at=datetime(2024, 1, 1, 12, 0, 0),
    )
    values.update(overrides)
    return Agent(**values)
