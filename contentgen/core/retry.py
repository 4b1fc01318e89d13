"""
Bounded retry policy for provider calls.
"""

import time
from dataclasses import dataclass
from typing import Callable, Optional

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .errors import ProviderError


def is_retryable(error: BaseException) -> bool:
    return isinstance(error, ProviderError) and error.retryable


@dataclass(frozen=True)
class RetryPolicy:
    """Capped exponential backoff.

    Retry ``n`` (zero based) waits ``min(max_delay, base_delay * multiplier**n)``
    seconds. At most ``max_retries`` retries follow the first attempt, and
    only retryable ProviderErrors are retried.
    """
    max_retries: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    multiplier: float = 2.0

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")

    def retrying(
        self,
        max_retries: Optional[int] = None,
        before_sleep: Optional[Callable[[RetryCallState], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> Retrying:
        """Build a tenacity controller for one generation.

        Args:
            max_retries: Per-record limit; can only lower the policy limit
            before_sleep: Called with the retry state before each backoff
            sleep: Sleep function (replaceable in tests)

        Returns:
            Retrying that re-raises the last error once retries are exhausted
        """
        limit = self.max_retries if max_retries is None else min(max_retries, self.max_retries)
        return Retrying(
            stop=stop_after_attempt(limit + 1),
            wait=wait_exponential(
                multiplier=self.base_delay, exp_base=self.multiplier, max=self.max_delay
            ),
            retry=retry_if_exception(is_retryable),
            before_sleep=before_sleep,
            sleep=sleep,
            reraise=True,
        )


NO_RETRY = RetryPolicy(max_retries=0, base_delay=0.0, max_delay=0.0)
