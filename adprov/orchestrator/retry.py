"""Backoff retrier for remote control-plane calls.

Wraps a single remote call and retries transient failures with capped
exponential back-off via :mod:`tenacity`.

Delay schedule
~~~~~~~~~~~~~~
For attempt ``n`` (1-based) that failed with a retryable error::

    delay(n) = min(base_delay × 2^(n-1), delay_cap)  (+ throttle_penalty if throttled)

With the defaults (2 s base, 30 s cap, 5 s penalty) a throttled call waits
7, 9, 13, 21, 35, 35, … seconds.  At most ``max_attempts`` calls are made;
:meth:`RetryPolicy.worst_case_wait` returns the total sleep budget.

Error classes
~~~~~~~~~~~~~
The classifier maps an exception to :class:`Retryability`.  The default,
:func:`classify_retryable`, retries only :class:`~adprov.core.exceptions.RemoteCallError`
instances whose kind is throttling, internal failure or network.  Fatal
errors propagate on the first occurrence; exhausted budgets raise
:class:`~adprov.core.exceptions.RetriesExhaustedError` chained to the last
error.

Typical usage::

    from adprov.orchestrator.retry import RetryPolicy, retry_call

    policy = RetryPolicy(max_attempts=5)
    response = await retry_call(
        lambda: client.call_once("describe_account_subscription", AwsAccountId=account),
        policy,
        label="quicksight.describe_account_subscription",
    )
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Final, TypeVar, cast

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
)

from adprov.core import events
from adprov.core.exceptions import RemoteCallError, RetriesExhaustedError
from adprov.core.models import ErrorKind

__all__ = [
    "SleepFn",
    "ClockFn",
    "Retryability",
    "RetryPolicy",
    "classify_retryable",
    "retry_call",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")

#: Awaitable sleep primitive; ``asyncio.sleep`` in production, a fake in tests.
SleepFn = Callable[[float], Awaitable[None]]

#: Monotonic clock; ``time.monotonic`` in production.
ClockFn = Callable[[], float]

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_DEFAULT_MAX_ATTEMPTS: Final[int] = 10
_DEFAULT_BASE_DELAY: Final[float] = 2.0
_DEFAULT_DELAY_CAP: Final[float] = 30.0

#: Extra pause added when the remote side is throttling us.
_DEFAULT_THROTTLE_PENALTY: Final[float] = 5.0

_RETRYABLE_KINDS: Final[frozenset[ErrorKind]] = frozenset(
    {ErrorKind.THROTTLING, ErrorKind.INTERNAL_FAILURE, ErrorKind.NETWORK}
)


class Retryability(StrEnum):
    """Classifier verdict for a failed attempt."""

    RETRYABLE = "retryable"
    FATAL = "fatal"


def classify_retryable(error: BaseException) -> Retryability:
    """Default classifier: retry transient remote error kinds only."""
    if isinstance(error, RemoteCallError) and error.kind in _RETRYABLE_KINDS:
        return Retryability.RETRYABLE
    return Retryability.FATAL


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration for one remote call.

    Attributes:
        max_attempts: Total attempts including the first one (≥ 1).
        base_delay: Delay after the first failure, in seconds.
        delay_cap: Upper bound on the exponential component.
        throttle_penalty: Seconds added when the error kind is throttling.
        classifier: Maps an exception to :class:`Retryability`.
    """

    max_attempts: int = _DEFAULT_MAX_ATTEMPTS
    base_delay: float = _DEFAULT_BASE_DELAY
    delay_cap: float = _DEFAULT_DELAY_CAP
    throttle_penalty: float = _DEFAULT_THROTTLE_PENALTY
    classifier: Callable[[BaseException], Retryability] = classify_retryable

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be ≥ 1, got {self.max_attempts!r}.")
        if self.base_delay < 0 or self.delay_cap < 0 or self.throttle_penalty < 0:
            raise ValueError("Delays must be non-negative.")
        if self.base_delay > self.delay_cap:
            raise ValueError(
                f"base_delay ({self.base_delay}) must not exceed delay_cap ({self.delay_cap})."
            )

    def with_attempts(self, max_attempts: int) -> RetryPolicy:
        """Return a copy of this policy with a different attempt budget."""
        return dataclasses.replace(self, max_attempts=max_attempts)

    def is_retryable(self, error: BaseException) -> bool:
        return self.classifier(error) is Retryability.RETRYABLE

    def delay_for(self, attempt: int, error: BaseException | None = None) -> float:
        """Seconds to wait after failed attempt number *attempt* (1-based)."""
        exponent = max(attempt, 1) - 1
        delay = min(self.base_delay * (2.0**exponent), self.delay_cap)
        if isinstance(error, RemoteCallError) and error.kind is ErrorKind.THROTTLING:
            delay += self.throttle_penalty
        return delay

    def worst_case_wait(self) -> float:
        """Total sleep if every attempt fails with a throttling error."""
        return sum(
            min(self.base_delay * (2.0 ** (attempt - 1)), self.delay_cap) + self.throttle_penalty
            for attempt in range(1, self.max_attempts)
        )


# ---------------------------------------------------------------------------
# Retrier
# ---------------------------------------------------------------------------


def _error_kind(exc: BaseException | None) -> str:
    if isinstance(exc, RemoteCallError):
        return exc.kind.value
    return type(exc).__name__ if exc is not None else "?"


async def retry_call(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    label: str = "remote call",
    sleep: SleepFn = asyncio.sleep,
) -> T:
    """Invoke *operation*, retrying per *policy*.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        policy: Attempt budget, delay schedule and classifier.
        label: Short description used in log lines.
        sleep: Awaitable sleep primitive.

    Returns:
        Whatever *operation* returns on its first successful attempt.

    Raises:
        RetriesExhaustedError: A retryable remote error persisted for
            ``policy.max_attempts`` attempts.
        Exception: Any error the classifier deems fatal, unchanged.
    """

    def _wait(rs: RetryCallState) -> float:
        exc = rs.outcome.exception() if rs.outcome else None
        return policy.delay_for(rs.attempt_number, exc)

    def _before_sleep(rs: RetryCallState) -> None:
        exc = rs.outcome.exception() if rs.outcome else None
        delay = rs.next_action.sleep if rs.next_action else _wait(rs)
        logger.warning(
            "%s — attempt %d/%d failed (%s). Retrying in %.1f s…",
            label,
            rs.attempt_number,
            policy.max_attempts,
            _error_kind(exc),
            delay,
            extra={
                "event": events.RETRY_ATTEMPT,
                "attempt": rs.attempt_number,
                "error_kind": _error_kind(exc),
                "delay_s": delay,
            },
        )

    result: T | None = None
    try:
        async for attempt in AsyncRetrying(
            wait=_wait,
            stop=stop_after_attempt(policy.max_attempts),
            retry=retry_if_exception(policy.is_retryable),
            sleep=sleep,
            before_sleep=_before_sleep,
            reraise=False,
        ):
            with attempt:
                result = await operation()
    except RetryError as exc:
        last = exc.last_attempt.exception()
        attempts = exc.last_attempt.attempt_number
        logger.error(
            "%s — giving up after %d attempt(s) (%s).",
            label,
            attempts,
            _error_kind(last),
            extra={"event": events.RETRY_EXHAUSTED, "attempt": attempts},
        )
        if isinstance(last, RemoteCallError):
            raise RetriesExhaustedError(last, attempts) from last
        if last is not None:
            raise last from exc
        raise

    return cast(T, result)
