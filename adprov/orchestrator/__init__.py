"""Lifecycle contract, retries, polling and the provisioning workflows.

Public API
----------
* :class:`~adprov.orchestrator.lifecycle.LifecycleHandler` — Create / Update /
  Delete contract shared by every workflow.
* :func:`~adprov.orchestrator.retry.retry_call` /
  :class:`~adprov.orchestrator.retry.RetryPolicy` — capped exponential
  back-off for remote calls.
* :func:`~adprov.orchestrator.poller.wait_for_terminal` — poll an
  asynchronous remote operation until it settles or the budget runs out.

The workflows (:mod:`~adprov.orchestrator.compute`,
:mod:`~adprov.orchestrator.subscription`, :mod:`~adprov.orchestrator.health`)
and the Lambda entry points (:mod:`~adprov.orchestrator.runner`) depend on
:mod:`adprov.aws` and are imported from their own modules.
"""

from adprov.orchestrator.lifecycle import LifecycleHandler, require_properties
from adprov.orchestrator.poller import RemoteOperation, wait_for_terminal
from adprov.orchestrator.retry import (
    Retryability,
    RetryPolicy,
    classify_retryable,
    retry_call,
)

__all__ = [
    # Lifecycle contract
    "LifecycleHandler",
    "require_properties",
    # Backoff retrier
    "Retryability",
    "RetryPolicy",
    "classify_retryable",
    "retry_call",
    # Remote poller
    "RemoteOperation",
    "wait_for_terminal",
]
