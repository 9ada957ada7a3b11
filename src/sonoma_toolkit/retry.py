"""
Retry utilities with exponential backoff for ledger calls.

Every network-facing call in the toolkit runs through ``retry_async``.
Callers must state which failure classes are transient via ``retry_on``;
anything else propagates on the first attempt, unwrapped.

Usage:
    from sonoma_toolkit.retry import RetryPolicy, retry_async

    policy = RetryPolicy(max_attempts=5, base_delay=0.5)

    account = await retry_async(
        transport.get_account_info,
        address,
        policy=policy,
        retry_on=(TransportError,),
    )

Delay before attempt ``n + 1`` (``n`` counted from 1) is
``min(max_delay, base_delay * backoff_factor ** (n - 1))``, plus optional
jitter.
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Optional,
    ParamSpec,
    Type,
    TypeVar,
)

from .constants import RetryDefaults
from .exceptions import InvalidParameters, RetryExhausted

if TYPE_CHECKING:
    from .config import RetrySettings

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry-with-backoff policy.

    Attributes:
        max_attempts: Total attempts including the first one (>= 1)
        base_delay: Delay before the second attempt, in seconds
        max_delay: Upper bound for any single delay, in seconds
        backoff_factor: Multiplier applied per additional attempt
        jitter: Maximum jitter factor (0.0-1.0) applied to delays
    """

    max_attempts: int = RetryDefaults.MAX_ATTEMPTS
    base_delay: float = RetryDefaults.BASE_DELAY
    max_delay: float = RetryDefaults.MAX_DELAY
    backoff_factor: float = RetryDefaults.BACKOFF_FACTOR
    jitter: float = 0.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise InvalidParameters("max_attempts must be at least 1", field="max_attempts")
        if self.base_delay < 0 or self.max_delay < 0:
            raise InvalidParameters("retry delays must not be negative", field="base_delay")
        if self.backoff_factor < 1:
            raise InvalidParameters("backoff_factor must be >= 1", field="backoff_factor")
        if not 0.0 <= self.jitter <= 1.0:
            raise InvalidParameters("jitter must be within [0, 1]", field="jitter")

    @classmethod
    def from_settings(cls, settings: "RetrySettings") -> "RetryPolicy":
        """Build a policy from the ``agent.retry`` configuration section."""
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay,
            max_delay=settings.max_delay,
            backoff_factor=settings.backoff_factor,
        )

    def calculate_delay(self, attempt: int) -> float:
        """Delay to wait after failed attempt number ``attempt`` (1-based)."""
        delay = min(self.max_delay, self.base_delay * (self.backoff_factor ** (attempt - 1)))

        if self.jitter > 0:
            jitter_range = delay * self.jitter
            delay = delay + random.uniform(-jitter_range, jitter_range)

        return max(0.0, delay)


@dataclass
class RetryStats:
    """Statistics about retry execution.

    Attributes:
        attempts: Total number of attempts (including initial)
        total_delay: Total delay time in seconds
        success: Whether the operation eventually succeeded
        last_exception: The last exception if operation failed
    """

    attempts: int = 0
    total_delay: float = 0.0
    success: bool = False
    last_exception: Optional[BaseException] = None


async def retry_async(
    func: Callable[P, Awaitable[T]],
    *args: P.args,
    policy: RetryPolicy,
    retry_on: tuple[Type[BaseException], ...],
    operation: Optional[str] = None,
    on_retry: Optional[Callable[[int, BaseException, float], Any]] = None,
    **kwargs: P.kwargs,
) -> T:
    """Execute an async function with retry logic.

    Args:
        func: The async function to execute
        *args: Positional arguments for the function
        policy: Retry policy (attempt budget and backoff)
        retry_on: Exception types treated as transient; required so every
            call site declares its classification explicitly
        operation: Name used in log lines and errors (defaults to func name)
        on_retry: Optional callback ``(attempt, exc, delay)`` before sleeping
        **kwargs: Keyword arguments for the function

    Returns:
        The return value of the function

    Raises:
        RetryExhausted: If every attempt failed with a transient error
        Exception: Any non-transient failure, immediately and unwrapped
    """
    name = operation or getattr(func, "__name__", "operation")
    stats = RetryStats()

    for attempt in range(1, policy.max_attempts + 1):
        stats.attempts = attempt

        try:
            result = await func(*args, **kwargs)
            stats.success = True
            return result

        except retry_on as e:
            stats.last_exception = e

            if attempt >= policy.max_attempts:
                break

            delay = policy.calculate_delay(attempt)
            stats.total_delay += delay

            logger.warning(
                "Retry %d/%d for %s after %s: %s. Waiting %.2fs",
                attempt,
                policy.max_attempts - 1,
                name,
                type(e).__name__,
                e,
                delay,
            )

            if on_retry:
                on_retry(attempt, e, delay)

            await asyncio.sleep(delay)

    last_exception = stats.last_exception
    raise RetryExhausted(
        f"All {stats.attempts} attempts failed for {name}",
        attempts=stats.attempts,
        stats=stats,
        last_exception=last_exception,
    ) from last_exception


__all__ = [
    "RetryPolicy",
    "RetryStats",
    "retry_async",
]
