"""adprov core domain models.

Defines the request/response envelope shared by every lifecycle handler and
the closed enumerations the workflows branch on.

Typical usage::

    from adprov.core.models import ProvisioningRequest, RequestType

    request = ProvisioningRequest(
        request_type=RequestType.CREATE,
        properties={"AwsAccountId": "123456789012"},
    )
"""

from __future__ import annotations

import json
import logging
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

__all__ = [
    "RequestType",
    "ErrorKind",
    "RemoteStatus",
    "PollOutcome",
    "SubscriptionStatus",
    "ProvisioningRequest",
    "ProvisioningResult",
    "KeyPairRecord",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class RequestType(StrEnum):
    """Lifecycle verbs sent by the declarative layer."""

    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"


class ErrorKind(StrEnum):
    """Closed set of remote error categories produced by the adapter layer."""

    THROTTLING = "throttling"
    INTERNAL_FAILURE = "internal_failure"
    NETWORK = "network"
    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"
    ACCESS_DENIED = "access_denied"
    INVALID_REQUEST = "invalid_request"
    UNKNOWN = "unknown"


class RemoteStatus(StrEnum):
    """Normalised state of an asynchronous remote operation."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """``True`` once the operation will not transition any further."""
        return self is not RemoteStatus.PENDING


class PollOutcome(StrEnum):
    """What a poller observed when it stopped waiting.

    ``TIMED_OUT`` means *gave up waiting*; it is deliberately distinct from
    ``FAILED``.
    """

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"

    @classmethod
    def from_status(cls, status: RemoteStatus) -> PollOutcome:
        if status is RemoteStatus.PENDING:
            raise ValueError("A pending status is not an outcome")
        return cls(status.value)


class SubscriptionStatus(StrEnum):
    """Subscription states the subscription workflow branches on."""

    NOT_FOUND = "NotFound"
    ACCOUNT_CREATED = "AccountCreated"
    UNSUBSCRIBE_FAILED = "UnsubscribeFailed"
    OTHER_PENDING = "OtherPending"

    @classmethod
    def from_remote(cls, raw: str | None) -> SubscriptionStatus:
        """Map a remote ``AccountSubscriptionStatus`` value onto this enum."""
        if raw == "ACCOUNT_CREATED":
            return cls.ACCOUNT_CREATED
        if raw == "UNSUBSCRIBE_FAILED":
            return cls.UNSUBSCRIBE_FAILED
        return cls.OTHER_PENDING


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list | tuple):
        return ",".join(_stringify(item) for item in value)
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True)
    return str(value)


class ProvisioningRequest(BaseModel):
    """One lifecycle invocation.  Immutable for the duration of the call.

    Attributes:
        request_type: ``Create``, ``Update`` or ``Delete``.
        properties: Named string inputs supplied by the declarative layer.
        physical_resource_id: Identifier returned by the previous invocation,
            if any.
        request_id: Correlation id of the invocation (used in logs).
        stack_id: Owning stack, when invoked as a custom resource.
        logical_resource_id: Logical name of the resource in its stack.
        response_url: Pre-signed URL for direct custom-resource responses.
        resource_type: Declared custom resource type.
    """

    model_config = ConfigDict(frozen=True)

    request_type: RequestType
    properties: dict[str, str] = Field(default_factory=dict)
    physical_resource_id: str | None = None
    request_id: str = ""
    stack_id: str = ""
    logical_resource_id: str = ""
    response_url: str | None = None
    resource_type: str = ""

    @field_validator("properties", mode="before")
    @classmethod
    def _coerce_properties(cls, v: dict[str, Any] | None) -> dict[str, str]:
        """Drop ``ServiceToken`` and stringify every other value."""
        if not v:
            return {}
        return {
            str(key): _stringify(value)
            for key, value in v.items()
            if key != "ServiceToken" and value is not None
        }

    @classmethod
    def from_event(cls, event: dict[str, Any]) -> ProvisioningRequest:
        """Build a request from a CloudFormation custom-resource event."""
        return cls(
            request_type=event["RequestType"],
            properties=event.get("ResourceProperties") or {},
            physical_resource_id=event.get("PhysicalResourceId"),
            request_id=event.get("RequestId", ""),
            stack_id=event.get("StackId", ""),
            logical_resource_id=event.get("LogicalResourceId", ""),
            response_url=event.get("ResponseURL"),
            resource_type=event.get("ResourceType", ""),
        )

    def prop(self, name: str, default: str = "") -> str:
        """Return property *name* stripped of whitespace, or *default*."""
        return self.properties.get(name, default).strip() or default


class ProvisioningResult(BaseModel):
    """What a lifecycle handler hands back to the declarative layer.

    ``physical_resource_id`` is persisted by the caller and becomes the
    previous identifier of the next invocation.
    """

    model_config = ConfigDict(frozen=True)

    physical_resource_id: str
    data: dict[str, str] = Field(default_factory=dict)

    @property
    def is_partial_failure(self) -> bool:
        """``True`` when the result reports a degraded, non-fatal outcome."""
        return self.data.get("Status", "").startswith("PartialFailure")

    def to_response(self) -> dict[str, Any]:
        """Serialise to the ``{PhysicalResourceId, Data}`` response shape."""
        return {"PhysicalResourceId": self.physical_resource_id, "Data": dict(self.data)}


class KeyPairRecord(BaseModel):
    """Key-pair material persisted as an opaque secret value.

    Serialised with the ``KeyPairName`` / ``PrivateKey`` field names used by the
    secret template.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    key_name: str = Field(default="", alias="KeyPairName")
    private_key: str = Field(default="", alias="PrivateKey")

    @property
    def is_complete(self) -> bool:
        """``True`` when both the name and the private key are present."""
        return bool(self.key_name and self.private_key)

    def to_secret_string(self) -> str:
        return json.dumps(self.model_dump(by_alias=True))
