"""Lifecycle handler contract shared by every provisioning workflow.

A lifecycle handler is invoked with a verb (Create / Update / Delete), the
input properties and the identifier it returned last time, and produces a
new identifier plus result data.  Handlers keep no state between
invocations: everything they need is either in the request or re-read from
the remote services, so a handler killed mid-flight can be invoked again
from scratch.

Subclasses implement :meth:`LifecycleHandler.create` and
:meth:`LifecycleHandler.delete`; :meth:`LifecycleHandler.update` defaults to
``create`` because both workflows converge on the desired state the same way.

Typical usage::

    class MyHandler(LifecycleHandler):
        name = "my-resource"

        async def create(self, request: ProvisioningRequest) -> ProvisioningResult:
            ...

        async def delete(self, request: ProvisioningRequest) -> ProvisioningResult:
            ...

    result = await MyHandler().handle(request)
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import ClassVar

from adprov.core import events
from adprov.core.exceptions import FatalConfigurationError
from adprov.core.logging_config import REQUEST_ID_CTX
from adprov.core.models import ProvisioningRequest, ProvisioningResult, RequestType

__all__ = ["LifecycleHandler", "require_properties"]

logger = logging.getLogger(__name__)


def require_properties(request: ProvisioningRequest, *names: str) -> dict[str, str]:
    """Return the named properties, failing fatally if any is missing.

    Raises:
        FatalConfigurationError: Listing every missing property.
    """
    values = {name: request.prop(name) for name in names}
    missing = [name for name, value in values.items() if not value]
    if missing:
        raise FatalConfigurationError(f"Missing required properties: {', '.join(missing)}")
    return values


class LifecycleHandler(ABC):
    """Abstract base for Create/Update/Delete provisioning handlers.

    Attributes:
        name: Short label used in log lines.
    """

    name: ClassVar[str] = "resource"

    async def handle(self, request: ProvisioningRequest) -> ProvisioningResult:
        """Dispatch *request* to the matching verb and log the outcome.

        The request id is bound to the logging context for the duration of
        the call.  Errors are logged and re-raised unchanged.
        """
        token = REQUEST_ID_CTX.set(request.request_id or "-")
        t0 = time.monotonic()
        try:
            logger.info(
                "%s %s starting (previous id=%s)",
                self.name,
                request.request_type,
                request.physical_resource_id or "-",
                extra={"event": events.INVOCATION_START, "request_type": request.request_type.value},
            )
            try:
                result = await self._dispatch(request)
            except Exception as exc:
                logger.error(
                    "%s %s failed after %.1f s: %s",
                    self.name,
                    request.request_type,
                    time.monotonic() - t0,
                    exc,
                    extra={"event": events.INVOCATION_FAILED},
                )
                raise
            logger.info(
                "%s %s complete in %.1f s — id=%s data=%s",
                self.name,
                request.request_type,
                time.monotonic() - t0,
                result.physical_resource_id,
                result.data,
                extra={"event": events.INVOCATION_COMPLETE},
            )
            return result
        finally:
            REQUEST_ID_CTX.reset(token)

    async def _dispatch(self, request: ProvisioningRequest) -> ProvisioningResult:
        if request.request_type is RequestType.DELETE:
            return await self.delete(request)
        if request.request_type is RequestType.UPDATE:
            return await self.update(request)
        return await self.create(request)

    @abstractmethod
    async def create(self, request: ProvisioningRequest) -> ProvisioningResult:
        """Converge the remote resource to the requested state."""

    async def update(self, request: ProvisioningRequest) -> ProvisioningResult:
        """Default: treat Update exactly like Create."""
        return await self.create(request)

    @abstractmethod
    async def delete(self, request: ProvisioningRequest) -> ProvisioningResult:
        """Tear the resource down.  Must never block stack teardown."""
