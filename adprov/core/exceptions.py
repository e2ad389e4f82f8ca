"""adprov exception taxonomy.

Every custom exception inherits from :class:`AdprovError`.  Exceptions are
organised by the decision a caller has to make about them:

    Layer hierarchy
    ---------------
    AdprovError
    ├── ConfigError
    ├── FatalConfigurationError
    ├── ProvisioningError
    ├── RemoteCallError
    │   ├── NotFoundError
    │   └── TransientRemoteError
    │       └── RetriesExhaustedError
    └── ResponseDeliveryError

Remote-call errors are produced by the adapter layer in
:mod:`adprov.aws.client`; they carry a closed :class:`~adprov.core.models.ErrorKind`
so workflows branch on an enumeration rather than on AWS error-code strings.

Usage:

    from adprov.core.exceptions import FatalConfigurationError

    raise FatalConfigurationError("No base image matches 'Windows_Server-2022-*'")
"""

from __future__ import annotations

import logging

from adprov.core.models import ErrorKind

__all__ = [
    "AdprovError",
    "ConfigError",
    "FatalConfigurationError",
    "ProvisioningError",
    "RemoteCallError",
    "NotFoundError",
    "TransientRemoteError",
    "RetriesExhaustedError",
    "ResponseDeliveryError",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


class AdprovError(Exception):
    """Root exception for all adprov errors."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConfigError(AdprovError):
    """Raised when the process configuration (environment) is invalid or incomplete.

    Examples:
        - ``SCRIPTS_BUCKET`` is missing when the compute workflow is built.
        - ``LOG_FORMAT`` holds an unsupported value.
    """


class FatalConfigurationError(AdprovError):
    """Raised when a workflow prerequisite cannot be satisfied.

    Never retried.  Examples:
        - A required resource property is absent from the request.
        - No base image matches the configured name filter.
        - The existing subscription operates in a different region.
    """


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------


class ProvisioningError(AdprovError):
    """Raised when a workflow step fails after a billable resource exists.

    The error keeps the identifier of that resource so the caller can still
    record it and tear it down later.

    Args:
        step: Name of the workflow step that failed.
        message: Human-readable error description.
        physical_resource_id: Identifier of the resource created so far.
    """

    def __init__(
        self,
        step: str,
        message: str,
        *,
        physical_resource_id: str | None = None,
    ) -> None:
        self.step = step
        self.physical_resource_id = physical_resource_id
        super().__init__(f"[{step}] {message}")


# ---------------------------------------------------------------------------
# Remote calls
# ---------------------------------------------------------------------------


class RemoteCallError(AdprovError):
    """Base class for failures reported by a remote control-plane API.

    Args:
        service: Short service name (e.g. ``"ec2"``).
        operation: The boto3 method that failed (e.g. ``"run_instances"``).
        code: Remote error code as reported by the service.
        kind: Normalised :class:`~adprov.core.models.ErrorKind`.
        message: Remote error message.
    """

    def __init__(
        self,
        service: str,
        operation: str,
        *,
        code: str,
        kind: ErrorKind,
        message: str = "",
    ) -> None:
        self.service = service
        self.operation = operation
        self.code = code
        self.kind = kind
        self.remote_message = message
        detail = f": {message}" if message else ""
        super().__init__(f"{service}.{operation} failed ({code}){detail}")

    @property
    def label(self) -> str:
        """``service.operation`` label used in log lines."""
        return f"{self.service}.{self.operation}"


class NotFoundError(RemoteCallError):
    """The remote resource does not exist.

    Workflows usually treat this as a branch condition rather than a failure.
    """


class TransientRemoteError(RemoteCallError):
    """Throttling, internal-failure or network errors that are safe to retry."""


class RetriesExhaustedError(TransientRemoteError):
    """A transient error persisted through every attempt of the retry budget.

    Keeps the code and kind of the last observed error; the original exception
    is chained as ``__cause__``.

    Args:
        last_error: The last :class:`RemoteCallError` observed.
        attempts: Number of attempts made.
    """

    def __init__(self, last_error: RemoteCallError, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(
            last_error.service,
            last_error.operation,
            code=last_error.code,
            kind=last_error.kind,
            message=f"retries exhausted after {attempts} attempt(s): {last_error.remote_message}",
        )


# ---------------------------------------------------------------------------
# Response delivery
# ---------------------------------------------------------------------------


class ResponseDeliveryError(AdprovError):
    """Raised when the custom-resource response cannot be delivered.

    Args:
        message: Human-readable error description.
        status_code: HTTP status code returned by the pre-signed URL, if any.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        detail = f" (HTTP {status_code})" if status_code is not None else ""
        super().__init__(f"Response delivery failed{detail}: {message}")
