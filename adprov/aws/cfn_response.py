"""Direct custom-resource response delivery.

When a lifecycle handler is wired as a plain Lambda-backed custom resource
(rather than behind a provider framework), CloudFormation waits for a JSON
document PUT to the pre-signed ``ResponseURL`` in the event.  A handler
that never answers blocks the stack for up to an hour, so delivery gets its
own retry loop.

Wraps :class:`httpx.AsyncClient` with:

* **Automatic retries** — exponential back-off with random jitter via
  :mod:`tenacity` for transport errors and 5xx replies.
* **Structured error mapping** — persistent failures raise
  :class:`~adprov.core.exceptions.ResponseDeliveryError`; 4xx replies (an
  expired pre-signed URL) fail immediately.

Typical usage::

    async with CfnResponseClient() as client:
        await client.send(request, status=ResponseStatus.SUCCESS, physical_resource_id=result.physical_resource_id, data=result.data)
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from enum import StrEnum
from types import TracebackType
from typing import Any, Final

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
)

from adprov.core import events
from adprov.core.exceptions import ResponseDeliveryError
from adprov.core.models import ProvisioningRequest
from adprov.orchestrator.retry import SleepFn

__all__ = ["ResponseStatus", "CfnResponseClient", "build_response_body"]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_RETRYABLE_STATUS: Final[frozenset[int]] = frozenset({500, 502, 503, 504})

_DEFAULT_TIMEOUT: Final[float] = 15.0

#: Default total attempts (1 initial + 4 retries).
_DEFAULT_MAX_ATTEMPTS: Final[int] = 5

_MAX_BACKOFF_BASE: Final[float] = 20.0
_MAX_BACKOFF_JITTER: Final[float] = 2.0

#: CloudFormation truncates reasons longer than this.
_MAX_REASON_LENGTH: Final[int] = 4000


class ResponseStatus(StrEnum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class _RetryableDeliveryError(ResponseDeliveryError):
    """Internal: signals a 5xx reply for tenacity to retry."""


def _delivery_wait(retry_state: RetryCallState) -> float:
    """Exponential back-off (1 s, 2 s, 4 s, …) plus jitter."""
    attempt = max(retry_state.attempt_number, 1)
    base = min(2.0 ** (attempt - 1), _MAX_BACKOFF_BASE)
    return base + random.uniform(0.0, _MAX_BACKOFF_JITTER)


def build_response_body(
    request: ProvisioningRequest,
    *,
    status: ResponseStatus,
    physical_resource_id: str,
    reason: str = "",
    data: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Assemble the response document CloudFormation expects."""
    return {
        "Status": status.value,
        "Reason": reason[:_MAX_REASON_LENGTH] or f"See logs for request {request.request_id}",
        "PhysicalResourceId": physical_resource_id,
        "StackId": request.stack_id,
        "RequestId": request.request_id,
        "LogicalResourceId": request.logical_resource_id,
        "NoEcho": False,
        "Data": dict(data or {}),
    }


class CfnResponseClient:
    """Async client that PUTs response documents to pre-signed URLs.

    Args:
        timeout: Per-request timeout in seconds.
        max_attempts: Total attempts including the initial try (≥ 1).
        transport: Optional :mod:`httpx` transport (tests pass a
            :class:`httpx.MockTransport`).
        sleep: Awaitable sleep primitive used between retries.

    Raises:
        ValueError: If ``max_attempts`` is less than 1.
    """

    def __init__(
        self,
        *,
        timeout: float = _DEFAULT_TIMEOUT,
        max_attempts: int = _DEFAULT_MAX_ATTEMPTS,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be ≥ 1, got {max_attempts!r}.")
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._transport = transport
        self._sleep = sleep
        self._http: httpx.AsyncClient | None = None

    async def __aenter__(self) -> CfnResponseClient:
        self._ensure_client()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the underlying HTTP client.  Safe to call repeatedly."""
        if self._http is not None and not self._http.is_closed:
            await self._http.aclose()
        self._http = None

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self._http

    async def send(
        self,
        request: ProvisioningRequest,
        *,
        status: ResponseStatus,
        physical_resource_id: str,
        reason: str = "",
        data: dict[str, str] | None = None,
    ) -> None:
        """Deliver one response document for *request*.

        Raises:
            ResponseDeliveryError: If the request carries no ``ResponseURL``,
                the URL rejects the document, or retries are exhausted.
        """
        if not request.response_url:
            raise ResponseDeliveryError("request has no ResponseURL")

        body = json.dumps(
            build_response_body(
                request,
                status=status,
                physical_resource_id=physical_resource_id,
                reason=reason,
                data=data,
            )
        )

        def _before_sleep(rs: RetryCallState) -> None:
            exc = rs.outcome.exception() if rs.outcome else None
            logger.warning(
                "Response PUT attempt %d/%d failed (%s). Retrying…",
                rs.attempt_number,
                self._max_attempts,
                type(exc).__name__ if exc else "?",
            )

        try:
            async for attempt in AsyncRetrying(
                wait=_delivery_wait,
                stop=stop_after_attempt(self._max_attempts),
                retry=retry_if_exception_type((_RetryableDeliveryError, httpx.TransportError)),
                reraise=True,
                before_sleep=_before_sleep,
                sleep=self._sleep,
            ):
                with attempt:
                    await self._put_once(request.response_url, body)
        except httpx.TransportError as exc:
            raise ResponseDeliveryError(f"transport error: {exc}") from exc

        logger.info(
            "Sent %s response for %s (physical id %s).",
            status,
            request.logical_resource_id or request.request_id,
            physical_resource_id,
            extra={"event": events.RESPONSE_SENT, "status": status.value},
        )

    async def _put_once(self, url: str, body: str) -> None:
        client = self._ensure_client()
        # The pre-signed URL is signed for an empty content type.
        response = await client.put(
            url,
            content=body.encode("utf-8"),
            headers={"Content-Type": "", "Content-Length": str(len(body.encode("utf-8")))},
        )
        if response.is_success:
            return
        if response.status_code in _RETRYABLE_STATUS:
            raise _RetryableDeliveryError(
                f"transient reply {response.text[:200]!r}", status_code=response.status_code
            )
        raise ResponseDeliveryError(response.text[:200], status_code=response.status_code)
