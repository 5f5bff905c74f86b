"""
Retry Policy

Exponential backoff retry for quote fetches and transaction submissions.
Each attempt is bounded by a timeout; a timeout counts exactly like an error.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .errors import UnrecoverableError, classify_error

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[Any]]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    initial_delay_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay_seconds: float = 60.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """Delay after failed attempt number `attempt` (1-based)."""
        delay = self.initial_delay_seconds * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_delay_seconds)


class RetryExhausted(Exception):
    """All attempts failed (or an unrecoverable error stopped retrying)."""

    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"failed after {attempts} attempt(s): {describe_error(last_error)}")


def describe_error(error: BaseException) -> str:
    """Short human-readable description including the error category."""
    if isinstance(error, asyncio.TimeoutError):
        return "timed out"
    text = str(error) or type(error).__name__
    category = classify_error(error).category
    return f"{text} [{category.value}]"


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    timeout: Optional[float] = None,
    sleep: Sleep = asyncio.sleep,
    operation_name: str = "operation",
) -> T:
    """
    Run `operation` until it succeeds or the policy is exhausted.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: Attempt budget and backoff
        timeout: Per-attempt timeout in seconds
        sleep: Awaitable sleep (injectable for tests)
        operation_name: Name for logging

    Raises:
        RetryExhausted: when every attempt failed, or an UnrecoverableError
            was raised
    """
    last_error: Optional[BaseException] = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            if timeout is not None:
                return await asyncio.wait_for(operation(), timeout=timeout)
            return await operation()
        except asyncio.CancelledError:
            raise
        except UnrecoverableError as e:
            logger.warning(f"{operation_name} failed with unrecoverable error: {e}")
            raise RetryExhausted(attempt, e) from e
        except Exception as e:
            last_error = e
            if attempt < policy.max_attempts:
                delay = policy.delay_for(attempt)
                logger.warning(
                    f"{operation_name} attempt {attempt}/{policy.max_attempts} "
                    f"failed: {describe_error(e)}. Retrying in {delay:.1f}s"
                )
                await sleep(delay)
            else:
                logger.warning(
                    f"{operation_name} failed after {attempt} attempts: {describe_error(e)}"
                )

    assert last_error is not None
    raise RetryExhausted(policy.max_attempts, last_error) from last_error
