"""
Generation orchestration.

Validates a request, resolves its provider, assembles the effective
prompt, invokes the adapter with bounded retries, and drives the
Generation record through its lifecycle:

    pending -> processing -> (retry_wait -> processing)* -> completed | failed

Agent usage counters and the per-user stats cache are kept in step with
every terminal transition.
"""

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional

import structlog
from tenacity import RetryCallState

from .errors import AgentAccessDenied, PersistenceError, ValidationError
from .options import (
    DEFAULT_MODEL,
    GenerationOptions,
    GenerationParameters,
    build_effective_prompt,
    resolve_parameters,
    validate_prompt,
)
from .resolver import ModelResolver
from .retry import RetryPolicy
from .stats import StatsCache, StatsSnapshot
from .token_counter import TokenUsage
from ..providers.registry import ProviderRegistry
from ..storage.models import Agent, Generation, GenerationStatus
from ..storage.repository import AgentRepository, GenerationRepository

logger = structlog.get_logger(__name__)


MAX_PAGE_SIZE = 100


class PersistenceFailurePolicy(Enum):
    """What to do when bookkeeping fails after the provider succeeded."""
    RETURN_CONTENT = "return_content"  # return the content, report the failure on the result
    RAISE = "raise"


@dataclass(frozen=True)
class GenerationResult:
    """Outcome of a successful generation."""
    content: str
    metadata: Dict[str, object]
    cost: float
    tokens: Dict[str, int]
    generation_id: str
    persistence_error: Optional[str] = None


@dataclass(frozen=True)
class GenerationPage:
    generations: List[Generation] = field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 20


class GenerationOrchestrator:
    """Owns every lifecycle transition of a Generation.

    Collaborators are injected so tests and concurrently configured
    instances can each bring their own registry, stores and cache.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        generations: GenerationRepository,
        agents: AgentRepository,
        stats: StatsCache,
        resolver: Optional[ModelResolver] = None,
        retry_policy: Optional[RetryPolicy] = None,
        request_timeout: Optional[float] = None,
        persistence_policy: PersistenceFailurePolicy = PersistenceFailurePolicy.RETURN_CONTENT,
        default_model: str = DEFAULT_MODEL,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = datetime.now,
    ):
        self.registry = registry
        self.generations = generations
        self.agents = agents
        self.stats = stats
        self.resolver = resolver or ModelResolver()
        self.retry_policy = retry_policy or RetryPolicy()
        self.request_timeout = request_timeout
        self.persistence_policy = persistence_policy
        self.default_model = default_model
        self._clock = clock
        self._sleep = sleep
        self._now = now

    def generate(
        self,
        prompt: str,
        user_id: str,
        options: Optional[GenerationOptions] = None,
    ) -> GenerationResult:
        """Generate content for an authenticated user.

        Args:
            prompt: Task text
            user_id: Authenticated caller
            options: Model, sampling, prompt fragments and agent attribution

        Returns:
            GenerationResult with content, metadata, cost and tokens

        Raises:
            ValidationError: Malformed input, before any side effect
            AgentAccessDenied: Unknown or foreign agent, before any provider call
            ProviderUnavailable: No adapter for the resolved provider
            ProviderError: Upstream failure after retries are exhausted
            PersistenceError: Datastore unreachable (see PersistenceFailurePolicy)
        """
        validate_prompt(prompt)
        if not user_id:
            raise ValidationError("user_id is required")
        options = options or GenerationOptions()

        agent = self._load_agent(options.agent_id, user_id)
        params, system_prompt = resolve_parameters(options, agent, self.default_model)
        provider = self.resolver.resolve(params.model)
        effective_prompt = build_effective_prompt(prompt, system_prompt, options.context)

        generation = self._create_pending(prompt, user_id, options, params, provider)
        try:
            generation = self._advance(generation, GenerationStatus.PROCESSING)
        except PersistenceError as e:
            self._record_failure(generation, e, 0)
            raise

        def wait_for_retry(retry_state: RetryCallState) -> None:
            nonlocal generation
            generation = self._advance(
                generation, GenerationStatus.RETRY_WAIT, retry_count=generation.retry_count + 1
            )
            logger.warning(
                "generation.retrying",
                generation_id=generation.id,
                provider=provider,
                retry_count=generation.retry_count,
                delay=retry_state.next_action.sleep,
                error=str(retry_state.outcome.exception()),
            )

        started = self._clock()
        try:
            adapter = self.registry.get_adapter(provider)
            retrying = self.retry_policy.retrying(
                generation.max_retries, before_sleep=wait_for_retry, sleep=self._sleep
            )
            for attempt in retrying:
                with attempt:
                    if generation.status == GenerationStatus.RETRY_WAIT:
                        generation = self._advance(generation, GenerationStatus.PROCESSING)
                    content = self.registry.invoke(
                        provider, effective_prompt, params, timeout=self.request_timeout
                    )
        except Exception as e:
            self._record_failure(generation, e, self._elapsed_ms(started))
            raise

        return self._record_success(
            generation, agent, adapter, params, effective_prompt, content, started
        )

    def get_stats(self, user_id: str) -> StatsSnapshot:
        """Aggregated statistics for a user, served cache-aside."""
        return self.stats.get(user_id)

    def get_generation(self, generation_id: str, user_id: str) -> Optional[Generation]:
        """Fetch one generation; records of other users read as missing."""
        generation = self.generations.get(generation_id)
        if generation is None or generation.user_id != user_id:
            return None
        return generation

    def list_generations(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 20,
        status: Optional[GenerationStatus] = None,
        model: Optional[str] = None,
    ) -> GenerationPage:
        if page < 1:
            raise ValidationError("page must be >= 1")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")

        generations = self.generations.list_for_user(
            user_id, status=status, model=model, limit=limit, offset=(page - 1) * limit
        )
        total = self.generations.count_for_user(user_id, status=status, model=model)
        return GenerationPage(generations=generations, total=total, page=page, limit=limit)

    def available_providers(self) -> List[str]:
        return self.registry.available_providers()

    def models_for_provider(self, provider: str) -> List[str]:
        return self.resolver.models_for(provider)

    def _load_agent(self, agent_id: Optional[str], user_id: str) -> Optional[Agent]:
        if not agent_id:
            return None
        agent = self.agents.get(agent_id)
        if agent is None or not agent.is_owned_by(user_id):
            raise AgentAccessDenied(agent_id)
        return agent

    def _create_pending(
        self,
        prompt: str,
        user_id: str,
        options: GenerationOptions,
        params: GenerationParameters,
        provider: str,
    ) -> Generation:
        now = self._now()
        generation = Generation(
            id=uuid.uuid4().hex,
            user_id=user_id,
            agent_id=options.agent_id,
            prompt=prompt,
            context=options.context,
            parameters=params.to_dict(),
            model=params.model,
            provider=provider,
            max_retries=self.retry_policy.max_retries,
            created_at=now,
            updated_at=now,
        )
        self.generations.create(generation)
        logger.info(
            "generation.created",
            generation_id=generation.id,
            user_id=user_id,
            agent_id=options.agent_id,
            model=params.model,
            provider=provider,
        )
        return generation

    def _advance(self, generation: Generation, target: GenerationStatus, **changes) -> Generation:
        updated = generation.transition(target, self._now(), **changes)
        return self.generations.save_transition(updated)

    def _record_success(
        self,
        generation: Generation,
        agent: Optional[Agent],
        adapter,
        params: GenerationParameters,
        effective_prompt: str,
        content: str,
        started: float,
    ) -> GenerationResult:
        usage = TokenUsage(
            input_tokens=adapter.estimate_tokens(effective_prompt),
            output_tokens=adapter.estimate_tokens(content),
        )
        cost = adapter.estimate_cost(usage.input_tokens, usage.output_tokens, params.model)
        duration = self._elapsed_ms(started)
        metadata = {
            "provider": generation.provider,
            "model": params.model,
            "temperature": params.temperature,
            "maxTokens": params.max_tokens,
            "duration": duration,
        }
        completed = generation.transition(
            GenerationStatus.COMPLETED,
            self._now(),
            output=content,
            metadata=metadata,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            total_tokens=usage.total_tokens,
            cost=cost,
            duration=duration,
        )

        failures: List[str] = []
        try:
            self.generations.save_transition(completed)
        except PersistenceError as e:
            self._persistence_failed(completed, "save_completed", e, failures)
        else:
            # Usage counts only generations recorded as completed
            if agent is not None:
                try:
                    self.agents.increment_usage(agent.id)
                except PersistenceError as e:
                    self._persistence_failed(
                        completed, "increment_agent_usage", e, failures,
                        event="agent.usage_increment_failed", agent_id=agent.id,
                    )
        self._invalidate_stats(completed, failures)

        logger.info(
            "generation.completed",
            generation_id=completed.id,
            provider=completed.provider,
            model=params.model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cost=cost,
            duration=duration,
        )
        return GenerationResult(
            content=content,
            metadata=metadata,
            cost=cost,
            tokens=usage.to_dict(),
            generation_id=completed.id,
            persistence_error="; ".join(failures) or None,
        )

    def _record_failure(self, generation: Generation, error: Exception, duration: int) -> None:
        failed = generation.transition(
            GenerationStatus.FAILED, self._now(), error=str(error) or type(error).__name__,
            duration=duration,
        )
        logger.error(
            "generation.failed",
            generation_id=failed.id,
            provider=failed.provider,
            model=failed.model,
            retry_count=failed.retry_count,
            error=failed.error,
        )
        # The original error is what the caller sees; bookkeeping failures are logged
        try:
            self.generations.save_transition(failed)
        except PersistenceError as e:
            logger.error(
                "generation.persistence_failed",
                generation_id=failed.id,
                step="save_failed",
                error=str(e),
            )
        try:
            self.stats.invalidate(failed.user_id)
        except PersistenceError as e:
            logger.error(
                "generation.persistence_failed",
                generation_id=failed.id,
                step="invalidate_stats",
                error=str(e),
            )

    def _invalidate_stats(self, generation: Generation, failures: List[str]) -> None:
        try:
            self.stats.invalidate(generation.user_id)
        except PersistenceError as e:
            self._persistence_failed(generation, "invalidate_stats", e, failures)

    def _persistence_failed(
        self,
        generation: Generation,
        step: str,
        error: PersistenceError,
        failures: List[str],
        event: str = "generation.persistence_failed",
        **fields,
    ) -> None:
        logger.error(
            event,
            generation_id=generation.id,
            step=step,
            error=str(error),
            **fields,
        )
        if self.persistence_policy == PersistenceFailurePolicy.RAISE:
            raise error
        failures.append(f"{step}: {error}")

    def _elapsed_ms(self, started: float) -> int:
        return max(0, int((self._clock() - started) * 1000))
