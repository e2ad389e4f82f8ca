"""Remote poller: wait for an asynchronous remote operation to settle.

Instance boots and SSM command executions complete long after the call that
started them returns.  :func:`wait_for_terminal` suspends between status
checks using an injectable sleep primitive and clock, so tests can simulate
elapsed time without real delays.

Semantics
~~~~~~~~~
* A fixed ``initial_delay`` precedes the first check; remote systems lag
  before a freshly dispatched operation is queryable.
* Checks run every ``interval`` seconds.  A
  :class:`~adprov.core.exceptions.RemoteCallError` raised by a check is logged
  and treated as still pending.
* The first terminal status (succeeded / failed / cancelled) is returned
  immediately.
* When ``timeout`` elapses the poller returns
  :attr:`~adprov.core.models.PollOutcome.TIMED_OUT` instead of raising.
  The orchestrator cannot cancel the remote operation, and some operations
  complete without ever reporting a clean terminal status, so callers
  proceed.

Typical usage::

    operation = RemoteOperation(target=instance_id, operation_id=command_id, check=check)
    outcome = await wait_for_terminal(operation, interval=10, timeout=900, initial_delay=30)
    if outcome is PollOutcome.FAILED:
        ...
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from adprov.core import events
from adprov.core.exceptions import RemoteCallError
from adprov.core.models import PollOutcome, RemoteStatus
from adprov.orchestrator.retry import ClockFn, SleepFn

__all__ = ["RemoteOperation", "wait_for_terminal"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemoteOperation:
    """A dispatched asynchronous operation against one target.

    Created, polled and discarded within a single invocation; never persisted.

    Attributes:
        target: What the operation runs against (e.g. an instance id).
        operation_id: Remote handle of the operation (e.g. a command id).
        check: Coroutine factory returning the current :class:`RemoteStatus`.
    """

    target: str
    operation_id: str
    check: Callable[[], Awaitable[RemoteStatus]]

    async def poll(self) -> RemoteStatus:
        return await self.check()

    def __str__(self) -> str:
        return f"{self.operation_id}@{self.target}"


async def wait_for_terminal(
    operation: RemoteOperation,
    *,
    interval: float,
    timeout: float,
    initial_delay: float = 0.0,
    sleep: SleepFn = asyncio.sleep,
    clock: ClockFn = time.monotonic,
) -> PollOutcome:
    """Poll *operation* until it reaches a terminal state or *timeout* elapses.

    Args:
        operation: The operation to watch.
        interval: Seconds between checks.
        timeout: Polling budget in seconds, counted after *initial_delay*.
        initial_delay: Seconds to wait before the first check.
        sleep: Awaitable sleep primitive.
        clock: Monotonic clock.

    Returns:
        The terminal :class:`PollOutcome`, or ``PollOutcome.TIMED_OUT``.
    """
    if interval <= 0:
        raise ValueError(f"interval must be > 0, got {interval!r}.")

    if initial_delay > 0:
        await sleep(initial_delay)

    deadline = clock() + timeout
    checks = 0

    while True:
        checks += 1
        try:
            status = await operation.poll()
        except RemoteCallError as exc:
            logger.warning(
                "Status check %d for %s failed (%s) — treating as pending.",
                checks,
                operation,
                exc,
                extra={"event": events.POLL_ERROR, "error_kind": exc.kind.value},
            )
        else:
            logger.debug(
                "Status of %s after %d check(s): %s",
                operation,
                checks,
                status,
                extra={"event": events.POLL_STATUS, "status": status.value},
            )
            if status.is_terminal:
                return PollOutcome.from_status(status)

        if clock() + interval > deadline:
            break
        await sleep(interval)

    logger.warning(
        "Gave up waiting for %s after %d check(s) (%.0f s budget) — proceeding.",
        operation,
        checks,
        timeout,
        extra={"event": events.POLL_TIMEOUT},
    )
    return PollOutcome.TIMED_OUT
