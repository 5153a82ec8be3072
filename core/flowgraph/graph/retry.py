"""
Retry / backoff policy for node dispatch.

Each node kind gets a default policy. A failed attempt is classified; if its
class is not in the policy's retryable set the retry loop stops at once,
otherwise it sleeps ``base_delay * backoff_factor ** (attempt - 1)`` seconds
and tries again until ``max_attempts`` is reached.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from flowgraph.graph.errors import ErrorClass, classify

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """How often and how patiently to retry an operation."""

    max_attempts: int = 3
    base_delay: float = 1.0  # seconds
    backoff_factor: float = 2.0
    retryable: frozenset[ErrorClass] = field(
        default_factory=lambda: frozenset(
            {ErrorClass.TIMEOUT, ErrorClass.NETWORK, ErrorClass.RATE_LIMIT, ErrorClass.UNKNOWN}
        )
    )
    timeout: float | None = None  # per attempt, seconds

    def delay_for(self, attempt: int) -> float:
        """Sleep before the attempt following ``attempt`` (1-based)."""
        return self.base_delay * (self.backoff_factor ** (attempt - 1))


_KIND_POLICIES: dict[str, RetryPolicy] = {
    "agent": RetryPolicy(
        max_attempts=3,
        base_delay=2.0,
        backoff_factor=2.0,
        retryable=frozenset(
            {ErrorClass.TIMEOUT, ErrorClass.RATE_LIMIT, ErrorClass.NETWORK, ErrorClass.UNKNOWN}
        ),
    ),
    "action": RetryPolicy(
        max_attempts=2,
        base_delay=1.0,
        backoff_factor=1.5,
        retryable=frozenset({ErrorClass.TIMEOUT, ErrorClass.NETWORK, ErrorClass.UNKNOWN}),
    ),
    "trigger": RetryPolicy(
        max_attempts=1,
        base_delay=0.5,
        backoff_factor=1.0,
        retryable=frozenset({ErrorClass.UNKNOWN}),
    ),
    "approval": RetryPolicy(max_attempts=1, base_delay=0.0, backoff_factor=1.0),
}

DEFAULT_POLICY = RetryPolicy(
    max_attempts=2,
    base_delay=1.0,
    backoff_factor=1.5,
    retryable=frozenset({ErrorClass.TIMEOUT, ErrorClass.UNKNOWN}),
)


def policy_for_kind(kind: str, timeout: float | None = None) -> RetryPolicy:
    """Default policy for a node kind, optionally with a per-attempt timeout."""
    base = _KIND_POLICIES.get(str(kind), DEFAULT_POLICY)
    return RetryPolicy(
        max_attempts=base.max_attempts,
        base_delay=base.base_delay,
        backoff_factor=base.backoff_factor,
        retryable=base.retryable,
        timeout=timeout if timeout is not None else base.timeout,
    )


@dataclass
class RetryOutcome:
    """Result of running an operation under a retry policy."""

    success: bool
    result: Any = None
    error: str | None = None
    error_class: ErrorClass | None = None
    exception: BaseException | None = None
    attempts: int = 0
    total_delay: float = 0.0


async def execute_with_retry(
    operation: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    on_retry: Callable[[int, BaseException, float], Awaitable[None]] | None = None,
    label: str = "operation",
) -> RetryOutcome:
    """
    Run ``operation`` until it succeeds, fails non-retryably, or runs out of attempts.

    Args:
        operation: zero-arg coroutine factory, called once per attempt
        policy: retry policy to apply
        on_retry: awaited before each sleep with ``(attempt, error, delay)``
        label: name used in log lines

    Returns:
        RetryOutcome; never raises for operation failures
    """
    total_delay = 0.0
    attempts = max(1, policy.max_attempts)
    last_error: BaseException | None = None
    last_class: ErrorClass | None = None

    for attempt in range(1, attempts + 1):
        try:
            if policy.timeout is not None:
                result = await asyncio.wait_for(operation(), timeout=policy.timeout)
            else:
                result = await operation()
            return RetryOutcome(
                success=True,
                result=result,
                attempts=attempt,
                total_delay=total_delay,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            last_error = e
            last_class = classify(e)

            if last_class not in policy.retryable:
                logger.info(f"   ✗ {label}: non-retryable {last_class.value} error: {e}")
                return RetryOutcome(
                    success=False,
                    error=str(e) or type(e).__name__,
                    error_class=last_class,
                    exception=e,
                    attempts=attempt,
                    total_delay=total_delay,
                )

            if attempt == attempts:
                break

            delay = policy.delay_for(attempt)
            total_delay += delay
            logger.warning(f"   ↻ Retry attempt {attempt}/{attempts} for {label}: {e}")
            if on_retry is not None:
                await on_retry(attempt, e, delay)
            await asyncio.sleep(delay)

    return RetryOutcome(
        success=False,
        error=(str(last_error) or type(last_error).__name__) if last_error else "Max retries exceeded",
        error_class=last_class,
        exception=last_error,
        attempts=attempts,
        total_delay=total_delay,
    )
