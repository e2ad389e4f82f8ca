"""Remote-call adapter shared by every workflow.

Wraps a synchronous :mod:`boto3` client with:

* **Worker-thread execution** — each SDK call runs through
  :func:`asyncio.to_thread` so the event loop stays free to drive sleeps and
  timers.
* **Typed error mapping** — :class:`botocore.exceptions.ClientError` and
  :class:`botocore.exceptions.BotoCoreError` become
  :class:`~adprov.core.exceptions.RemoteCallError` subclasses tagged with a
  closed :class:`~adprov.core.models.ErrorKind`.  Workflows branch on the
  kind, never on error-code strings.
* **Automatic retries** — :meth:`AwsApiClient.call` goes through
  :func:`~adprov.orchestrator.retry.retry_call`.

Clients are built per invocation from one :class:`boto3.session.Session`
scoped to the configured region (:meth:`AwsClients.from_session`); nothing
lives at module level.

Typical usage::

    clients = AwsClients.from_session(region="us-east-1", policy=RetryPolicy())
    reply = await clients.ec2.call("describe_images", Owners=["amazon"])
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Final

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    HTTPClientError,
)

from adprov.core.exceptions import NotFoundError, RemoteCallError, TransientRemoteError
from adprov.core.models import ErrorKind
from adprov.orchestrator.retry import RetryPolicy, SleepFn, retry_call

__all__ = ["classify_error_code", "to_remote_error", "AwsApiClient", "AwsClients"]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Error-code tables
# ---------------------------------------------------------------------------

_THROTTLING_CODES: Final[frozenset[str]] = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "ThrottledException",
        "TooManyRequestsException",
        "RequestLimitExceeded",
        "RequestThrottled",
        "RequestThrottledException",
        "ProvisionedThroughputExceededException",
        "SlowDown",
    }
)

_INTERNAL_CODES: Final[frozenset[str]] = frozenset(
    {
        "InternalFailure",
        "InternalError",
        "InternalServerError",
        "InternalServiceError",
        "InternalServiceErrorException",
        "InternalFailureException",
        "ServiceUnavailable",
        "ServiceUnavailableException",
        "Unavailable",
    }
)

_NOT_FOUND_CODES: Final[frozenset[str]] = frozenset(
    {
        "ResourceNotFoundException",
        "InvalidDocument",
        "InvocationDoesNotExist",
        "InvalidInstanceId",
        "NoSuchKey",
        "NoSuchBucket",
    }
)

_ALREADY_EXISTS_CODES: Final[frozenset[str]] = frozenset(
    {
        "DocumentAlreadyExists",
        "ResourceExistsException",
        "ResourceExists",
        "InvalidKeyPair.Duplicate",
        # The client token is taken by an earlier launch.
        "IdempotentInstanceTerminated",
        "IdempotentParameterMismatch",
    }
)

_ACCESS_DENIED_CODES: Final[frozenset[str]] = frozenset(
    {
        "AccessDenied",
        "AccessDeniedException",
        "UnauthorizedOperation",
        "UnrecognizedClientException",
        "ExpiredToken",
        "ExpiredTokenException",
    }
)

#: Default botocore client configuration: the adapter owns retries, so the
#: SDK's own retry loop is reduced to a single attempt.
_CLIENT_CONFIG: Final[Config] = Config(retries={"max_attempts": 1, "mode": "standard"})


def classify_error_code(code: str) -> ErrorKind:
    """Map an AWS error code onto :class:`ErrorKind`.

    Example::

        assert classify_error_code("ThrottlingException") is ErrorKind.THROTTLING
        assert classify_error_code("InvalidKeyPair.NotFound") is ErrorKind.NOT_FOUND
    """
    if code in _THROTTLING_CODES:
        return ErrorKind.THROTTLING
    if code in _INTERNAL_CODES:
        return ErrorKind.INTERNAL_FAILURE
    if code in _ALREADY_EXISTS_CODES or code.endswith(".Duplicate"):
        return ErrorKind.ALREADY_EXISTS
    if code in _NOT_FOUND_CODES or code.endswith(("NotFound", "NotFoundException")):
        return ErrorKind.NOT_FOUND
    if code in _ACCESS_DENIED_CODES:
        return ErrorKind.ACCESS_DENIED
    if code.startswith(("Invalid", "Validation", "MissingParameter")):
        return ErrorKind.INVALID_REQUEST
    return ErrorKind.UNKNOWN


def _error_class(kind: ErrorKind) -> type[RemoteCallError]:
    if kind is ErrorKind.NOT_FOUND:
        return NotFoundError
    if kind in (ErrorKind.THROTTLING, ErrorKind.INTERNAL_FAILURE, ErrorKind.NETWORK):
        return TransientRemoteError
    return RemoteCallError


def to_remote_error(service: str, operation: str, exc: Exception) -> RemoteCallError:
    """Translate a botocore exception into a typed :class:`RemoteCallError`."""
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = str(error.get("Code", "Unknown"))
        message = str(error.get("Message", ""))
        kind = classify_error_code(code)
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        if kind is ErrorKind.UNKNOWN and isinstance(status, int) and status >= 500:
            kind = ErrorKind.INTERNAL_FAILURE
    elif isinstance(exc, BotoConnectionError | HTTPClientError):
        code, message, kind = type(exc).__name__, str(exc), ErrorKind.NETWORK
    else:
        code, message, kind = type(exc).__name__, str(exc), ErrorKind.UNKNOWN
    return _error_class(kind)(service, operation, code=code, kind=kind, message=message)


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class AwsApiClient:
    """Async, typed-error facade over one boto3 client.

    Args:
        service: Short service name used in errors and logs.
        client: The underlying boto3 client (or any object exposing the same
            method names).
        policy: Default :class:`RetryPolicy` for :meth:`call`.
        sleep: Awaitable sleep primitive handed to the retrier.
    """

    def __init__(
        self,
        service: str,
        client: Any,
        *,
        policy: RetryPolicy | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.service = service
        self._client = client
        self._policy = policy or RetryPolicy()
        self._sleep = sleep

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def call(
        self,
        operation: str,
        /,
        *,
        attempts: int | None = None,
        **params: Any,
    ) -> dict[str, Any]:
        """Invoke *operation* with retries.

        Args:
            operation: boto3 method name, e.g. ``"run_instances"``.
            attempts: Override of the policy's attempt budget for this call.
            **params: Keyword arguments forwarded to the boto3 method.

        Returns:
            The SDK response dictionary.

        Raises:
            RetriesExhaustedError: Transient errors outlasted the budget.
            RemoteCallError: Any non-retryable remote error.
        """
        policy = self._policy if attempts is None else self._policy.with_attempts(attempts)
        return await retry_call(
            lambda: self.call_once(operation, **params),
            policy,
            label=f"{self.service}.{operation}",
            sleep=self._sleep,
        )

    async def call_once(self, operation: str, /, **params: Any) -> dict[str, Any]:
        """Invoke *operation* exactly once.

        Raises:
            RemoteCallError: On any SDK-reported failure.
        """
        method = getattr(self._client, operation)
        logger.debug("%s.%s(%s)", self.service, operation, ", ".join(sorted(params)))
        try:
            response = await asyncio.to_thread(method, **params)
        except (ClientError, BotoCoreError) as exc:
            raise to_remote_error(self.service, operation, exc) from exc
        return response or {}


@dataclass(frozen=True)
class AwsClients:
    """Per-invocation bundle of adapted service clients."""

    ec2: AwsApiClient
    ssm: AwsApiClient
    secrets: AwsApiClient
    quicksight: AwsApiClient
    cloudwatch: AwsApiClient
    lambda_: AwsApiClient

    @classmethod
    def from_session(
        cls,
        *,
        region: str,
        policy: RetryPolicy,
        session: boto3.session.Session | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> AwsClients:
        """Build every client from one session scoped to *region*.

        boto3 clients are thread-safe, so the worker threads used by
        :meth:`AwsApiClient.call_once` may share them.
        """
        session = session or boto3.session.Session(region_name=region)

        def _adapt(service: str, name: str | None = None) -> AwsApiClient:
            raw = session.client(service, region_name=region, config=_CLIENT_CONFIG)
            return AwsApiClient(name or service, raw, policy=policy, sleep=sleep)

        return cls(
            ec2=_adapt("ec2"),
            ssm=_adapt("ssm"),
            secrets=_adapt("secretsmanager", "secrets"),
            quicksight=_adapt("quicksight"),
            cloudwatch=_adapt("cloudwatch"),
            lambda_=_adapt("lambda"),
        )
