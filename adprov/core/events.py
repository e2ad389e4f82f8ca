"""Structured log event name constants.

Every key transition in a workflow emits a log record with an ``event``
field (``extra={"event": events.X}``).  In ``LOG_FORMAT=json`` mode the value
surfaces as ``extra.event`` so CloudWatch Logs Insights queries can filter on
it directly::

    fields @timestamp, message | filter extra.event = "SUBSCRIPTION_PARTIAL_FAILURE"
"""

from __future__ import annotations

__all__ = [
    # Invocation lifecycle
    "INVOCATION_START",
    "INVOCATION_COMPLETE",
    "INVOCATION_FAILED",
    "RESPONSE_SENT",
    # Retrier / poller
    "RETRY_ATTEMPT",
    "RETRY_EXHAUSTED",
    "POLL_STATUS",
    "POLL_ERROR",
    "POLL_TIMEOUT",
    # Compute workflow
    "KEY_PAIR_REUSED",
    "KEY_PAIR_CREATED",
    "INSTANCE_REUSED",
    "INSTANCE_LAUNCHED",
    "INSTANCE_RUNNING",
    "INSTANCE_TERMINATED",
    "DOMAIN_JOINED",
    "SCRIPT_EXECUTED",
    # Subscription workflow
    "SUBSCRIPTION_STATUS",
    "SUBSCRIPTION_CREATED",
    "SUBSCRIPTION_EXISTING",
    "SUBSCRIPTION_RESET",
    "SUBSCRIPTION_DELETE_SKIPPED",
    "SUBSCRIPTION_PARTIAL_FAILURE",
    # Health
    "HEALTH_PUBLISHED",
    "HEALTH_TRIGGERED",
]

# ---------------------------------------------------------------------------
# Invocation lifecycle
# ---------------------------------------------------------------------------

INVOCATION_START: str = "INVOCATION_START"
INVOCATION_COMPLETE: str = "INVOCATION_COMPLETE"
#: The handler raised; the error message is the user-visible failure reason.
INVOCATION_FAILED: str = "INVOCATION_FAILED"
#: A SUCCESS/FAILED document was PUT to the custom-resource response URL.
RESPONSE_SENT: str = "RESPONSE_SENT"

# ---------------------------------------------------------------------------
# Retrier / poller
# ---------------------------------------------------------------------------

RETRY_ATTEMPT: str = "RETRY_ATTEMPT"
RETRY_EXHAUSTED: str = "RETRY_EXHAUSTED"
POLL_STATUS: str = "POLL_STATUS"
#: A status check raised; treated as still pending.
POLL_ERROR: str = "POLL_ERROR"
#: The poller gave up waiting; the workflow proceeds.
POLL_TIMEOUT: str = "POLL_TIMEOUT"

# ---------------------------------------------------------------------------
# Compute workflow
# ---------------------------------------------------------------------------

KEY_PAIR_REUSED: str = "KEY_PAIR_REUSED"
KEY_PAIR_CREATED: str = "KEY_PAIR_CREATED"
INSTANCE_REUSED: str = "INSTANCE_REUSED"
INSTANCE_LAUNCHED: str = "INSTANCE_LAUNCHED"
INSTANCE_RUNNING: str = "INSTANCE_RUNNING"
INSTANCE_TERMINATED: str = "INSTANCE_TERMINATED"
DOMAIN_JOINED: str = "DOMAIN_JOINED"
SCRIPT_EXECUTED: str = "SCRIPT_EXECUTED"

# ---------------------------------------------------------------------------
# Subscription workflow
# ---------------------------------------------------------------------------

SUBSCRIPTION_STATUS: str = "SUBSCRIPTION_STATUS"
SUBSCRIPTION_CREATED: str = "SUBSCRIPTION_CREATED"
SUBSCRIPTION_EXISTING: str = "SUBSCRIPTION_EXISTING"
#: Stuck subscription force-deleted before re-creation.
SUBSCRIPTION_RESET: str = "SUBSCRIPTION_RESET"
SUBSCRIPTION_DELETE_SKIPPED: str = "SUBSCRIPTION_DELETE_SKIPPED"
#: Throttling / internal failure downgraded to a successful partial result.
SUBSCRIPTION_PARTIAL_FAILURE: str = "SUBSCRIPTION_PARTIAL_FAILURE"

# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

HEALTH_PUBLISHED: str = "HEALTH_PUBLISHED"
HEALTH_TRIGGERED: str = "HEALTH_TRIGGERED"
