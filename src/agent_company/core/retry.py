"""Retry with exponential backoff for calls into external systems."""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt

from agent_company.core.errors import (
    GitHostError,
    MergeConflictError,
    TransportError,
)
from agent_company.integrations.git import GitError, GitTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Substrings of git stderr that indicate a transient failure.
TRANSIENT_GIT_MARKERS = (
    "index.lock",
    "unable to create",
    "could not lock",
    "timed out",
    "could not read from remote",
    "connection reset",
    "connection refused",
    "temporary failure",
    "the remote end hung up",
)


def default_retryable(error: BaseException) -> bool:
    """Decide whether an error from git, the PR host or the bus is worth retrying."""
    if isinstance(error, MergeConflictError):
        return False
    if isinstance(error, (TransportError, GitHostError, GitTimeoutError)):
        return True
    if isinstance(error, GitError):
        message = str(error).lower()
        return any(marker in message for marker in TRANSIENT_GIT_MARKERS)
    return False


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 4.0
    retryable: Callable[[BaseException], bool] = field(default=default_retryable, compare=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        delay = self.initial_delay * (self.multiplier ** (attempt - 1))
        return min(delay, self.max_delay)

    def delays(self) -> list[float]:
        """The full backoff sequence between attempts."""
        return [self.delay_for(n) for n in range(1, self.max_attempts)]


NO_RETRY = RetryPolicy(max_attempts=1, initial_delay=0, max_delay=0)


def with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    description: str = "",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run operation, retrying retryable failures with exponential backoff.

    Every failed attempt is logged before the next one. On exhaustion, or
    when the error is not retryable, the last error is re-raised unchanged.
    """
    label = description or getattr(operation, "__name__", "operation")

    def log_retry(state: RetryCallState):
        logger.warning(
            "%s failed (attempt %d/%d), retrying in %.2fs: %s",
            label, state.attempt_number, policy.max_attempts,
            state.next_action.sleep, state.outcome.exception(),
        )

    retryer = Retrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=lambda state: policy.delay_for(state.attempt_number),
        retry=retry_if_exception(policy.retryable),
        before_sleep=log_retry,
        sleep=sleep,
        reraise=True,
    )
    try:
        return retryer(operation)
    except Exception as e:
        if policy.retryable(e):
            logger.error("%s failed after %d attempt(s): %s", label, policy.max_attempts, e)
        raise
