"""
Backoff for transient database failures.

Only connection establishment goes through here: a database that is still
starting up is worth waiting for. Source, lock and execution errors are
permanent and are never retried.

Usage:
    from portunus.core.retry import RetryConfig, retry_transient

    @retry_transient(RetryConfig(max_attempts=5))
    async def connect():
        ...
"""

import inspect
from dataclasses import dataclass
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random_exponential,
)
from tenacity.wait import wait_base

from portunus.core.errors import is_retryable

log = structlog.get_logger()

T = TypeVar("T")


@dataclass
class RetryConfig:
    """How hard to try before giving up on the database.

    Attributes:
        max_attempts: Attempts including the first (``database.connect_attempts``).
        min_wait_seconds: Shortest pause between attempts.
        max_wait_seconds: Longest pause between attempts.
        multiplier: Exponential backoff multiplier.
        jitter: Randomize pauses so replicas starting together spread out.
    """

    max_attempts: int = 3
    min_wait_seconds: float = 0.5
    max_wait_seconds: float = 10.0
    multiplier: float = 2.0
    jitter: bool = True

    def wait(self) -> wait_base:
        strategy = wait_random_exponential if self.jitter else wait_exponential
        return strategy(
            multiplier=self.multiplier,
            min=self.min_wait_seconds,
            max=self.max_wait_seconds,
        )

    def retrying(self, log_context: Optional[dict[str, Any]] = None) -> AsyncRetrying:
        """A tenacity controller that re-raises the last error when attempts run out."""
        context = log_context or {}

        def before_sleep(state: RetryCallState) -> None:
            error = state.outcome.exception() if state.outcome else None
            log.warning(
                "retry_attempt",
                attempt=state.attempt_number,
                max_attempts=self.max_attempts,
                error=str(error) if error else None,
                wait_seconds=round(state.next_action.sleep, 3) if state.next_action else 0,
                **context,
            )

        return AsyncRetrying(
            stop=stop_after_attempt(max(1, self.max_attempts)),
            wait=self.wait(),
            retry=retry_if_exception(is_retryable),
            before_sleep=before_sleep,
            reraise=True,
        )


def retry_transient(
    config: Optional[RetryConfig] = None,
    log_context: Optional[dict[str, Any]] = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorate a coroutine function so transient errors are retried with backoff."""
    config = config or RetryConfig()

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        if not inspect.iscoroutinefunction(func):
            raise TypeError("retry_transient only decorates coroutine functions")

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:  # type: ignore[return]
            async for attempt in config.retrying(log_context):
                with attempt:
                    return await func(*args, **kwargs)

        return wrapper

    return decorator
