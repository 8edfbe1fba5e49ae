"""Capped exponential backoff with jitter for model and store calls."""

import asyncio
import random
from dataclasses import dataclass, field
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from salesbot.logging_config import get_logger
from salesbot.services.errors import FatalError, TransientInfraError

logger = get_logger("retry")


@dataclass
class RetryPolicy:
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff_factor: float = 2.0
    retryable_exceptions: Tuple[Type[Exception], ...] = (TransientInfraError,)
    sleep_func: Callable[[float], Awaitable[Any]] = asyncio.sleep
    rng: random.Random = field(default_factory=random.Random)

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def next_delay(self, current: float) -> float:
        """Grow the delay by the backoff factor with +/-20% jitter, capped at max_delay."""
        jitter = 0.8 + 0.4 * self.rng.random()
        return min(current * self.backoff_factor * jitter, self.max_delay)


async def retry_async(
    operation: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    operation_name: str = "operation",
) -> Any:
    """Run ``operation`` until it succeeds or the policy is exhausted.

    Retryable errors are retried; anything else propagates untouched. Exhaustion raises
    FatalError chained to the last retryable error.
    """
    delay = min(policy.initial_delay, policy.max_delay)
    last_exception: Optional[Exception] = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await operation()
        except policy.retryable_exceptions as e:
            last_exception = e
            if attempt >= policy.max_attempts:
                break
            logger.warning(
                f"[{operation_name}] Attempt {attempt}/{policy.max_attempts} failed: {type(e).__name__}: {e}. "
                f"Retrying in {delay:.2f}s"
            )
            await policy.sleep_func(delay)
            delay = policy.next_delay(delay)

    logger.error(
        f"[{operation_name}] Failed after {policy.max_attempts} attempts",
        extra={"context": {"last_error": repr(last_exception)}},
    )
    raise FatalError(
        f"{operation_name} failed after {policy.max_attempts} attempts: {last_exception}",
        attempts=policy.max_attempts,
    ) from last_exception


def with_retry(policy_attr: str = "retry_policy", operation_name: Optional[str] = None) -> Callable:
    """Decorate an async method so it runs under ``getattr(self, policy_attr)``."""

    def decorator(func: Callable) -> Callable:
        op_name = operation_name or func.__name__

        @wraps(func)
        async def wrapper(self, *args, **kwargs):
            policy = getattr(self, policy_attr)
            return await retry_async(lambda: func(self, *args, **kwargs), policy, op_name)

        return wrapper

    return decorator
