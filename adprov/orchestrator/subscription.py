"""Subscription provisioning workflow: the account-level QuickSight subscription.

The subscription is a singleton per account with its own remote lifecycle,
including a stuck ``UNSUBSCRIBE_FAILED`` state that has to be cleared before
a new subscription can be created.  The workflow reads the status fresh on
every invocation and converges:

+----------------------+-----------------------------------------------------+
| Observed status      | Action                                              |
+======================+=====================================================+
| ``NotFound``         | create                                              |
+----------------------+-----------------------------------------------------+
| ``AccountCreated``   | verify the identity region, report ``Existing``     |
+----------------------+-----------------------------------------------------+
| ``UnsubscribeFailed``| update settings → delete → create                   |
+----------------------+-----------------------------------------------------+
| anything else        | create (a not-found reply means: create again)      |
+----------------------+-----------------------------------------------------+

Throttling and internal failures that outlast the retry budget are reported
as a successful ``PartialFailure-<code>`` result rather than failing the
stack; the ERROR-level ``SUBSCRIPTION_PARTIAL_FAILURE`` log line is the
operator's signal.  Delete never removes the subscription.
"""

from __future__ import annotations

import logging
from typing import Any, Final

from adprov.aws.client import AwsApiClient
from adprov.core import events
from adprov.core.config import SubscriptionConfig
from adprov.core.exceptions import FatalConfigurationError, NotFoundError, RemoteCallError
from adprov.core.ids import subscription_physical_id
from adprov.core.models import (
    ErrorKind,
    ProvisioningRequest,
    ProvisioningResult,
    SubscriptionStatus,
)
from adprov.orchestrator.lifecycle import LifecycleHandler, require_properties

__all__ = [
    "STATUS_CREATED",
    "STATUS_EXISTING",
    "SubscriptionProvisioningWorkflow",
    "read_subscription_status",
]

logger = logging.getLogger(__name__)

STATUS_CREATED: Final[str] = "Created"
STATUS_EXISTING: Final[str] = "Existing"

#: Error kinds downgraded to a partial-failure result.
_DEGRADABLE_KINDS: Final[frozenset[ErrorKind]] = frozenset(
    {ErrorKind.THROTTLING, ErrorKind.INTERNAL_FAILURE}
)

_REQUIRED_PROPERTIES: Final[tuple[str, ...]] = (
    "AwsAccountId",
    "AccountName",
    "Edition",
    "AuthenticationMethod",
    "ActiveDirectoryName",
    "AdminGroup",
    "NotificationEmail",
)


def _groups(value: str) -> list[str]:
    return [group.strip() for group in value.split(",") if group.strip()]


async def read_subscription_status(
    quicksight: AwsApiClient,
    account_id: str,
    *,
    attempts: int | None = None,
) -> SubscriptionStatus:
    """Read the current subscription status; a not-found reply is ``NOT_FOUND``."""
    try:
        reply = await quicksight.call(
            "describe_account_subscription", attempts=attempts, AwsAccountId=account_id
        )
    except NotFoundError:
        return SubscriptionStatus.NOT_FOUND
    raw = (reply.get("AccountInfo") or {}).get("AccountSubscriptionStatus")
    status = SubscriptionStatus.from_remote(raw)
    logger.info(
        "Subscription status for %s: %s (%s)",
        account_id,
        status,
        raw,
        extra={"event": events.SUBSCRIPTION_STATUS, "status": status.value},
    )
    return status


class SubscriptionProvisioningWorkflow(LifecycleHandler):
    """Lifecycle handler for the account subscription.

    Args:
        quicksight: Adapted QuickSight client.
        config: Region and retry budgets.
    """

    name = "subscription"

    def __init__(self, *, quicksight: AwsApiClient, config: SubscriptionConfig) -> None:
        self._quicksight = quicksight
        self._config = config

    async def create(self, request: ProvisioningRequest) -> ProvisioningResult:
        props = require_properties(request, *_REQUIRED_PROPERTIES)
        account_id = props["AwsAccountId"]
        physical_id = subscription_physical_id(account_id)

        try:
            status = await self._converge(request, account_id)
        except RemoteCallError as exc:
            if exc.kind not in _DEGRADABLE_KINDS:
                raise
            logger.error(
                "Subscription for %s not confirmed (%s) — reporting partial failure.",
                account_id,
                exc,
                extra={
                    "event": events.SUBSCRIPTION_PARTIAL_FAILURE,
                    "error_kind": exc.kind.value,
                },
            )
            return ProvisioningResult(
                physical_resource_id=physical_id,
                data={"Status": f"PartialFailure-{exc.code}", "ErrorKind": exc.kind.value},
            )

        return ProvisioningResult(physical_resource_id=physical_id, data={"Status": status})

    async def delete(self, request: ProvisioningRequest) -> ProvisioningResult:
        account_id = request.prop("AwsAccountId")
        logger.info(
            "Leaving the subscription of account %s in place.",
            account_id or "?",
            extra={"event": events.SUBSCRIPTION_DELETE_SKIPPED},
        )
        return ProvisioningResult(
            physical_resource_id=request.physical_resource_id
            or subscription_physical_id(account_id)
        )

    # ------------------------------------------------------------------
    # Convergence
    # ------------------------------------------------------------------

    async def _converge(self, request: ProvisioningRequest, account_id: str) -> str:
        status = await read_subscription_status(
            self._quicksight, account_id, attempts=self._config.describe_attempts
        )

        if status is SubscriptionStatus.ACCOUNT_CREATED:
            await self._verify_region(account_id)
            logger.info(
                "Subscription for %s already active.",
                account_id,
                extra={"event": events.SUBSCRIPTION_EXISTING},
            )
            return STATUS_EXISTING

        if status is SubscriptionStatus.NOT_FOUND:
            await self._create_subscription(request)
            return STATUS_CREATED

        try:
            if status is SubscriptionStatus.UNSUBSCRIBE_FAILED:
                await self._reset(account_id, request.prop("NotificationEmail"))
            await self._create_subscription(request)
        except NotFoundError:
            logger.info("Subscription for %s vanished mid-flight — creating again.", account_id)
            await self._create_subscription(request)
        return STATUS_CREATED

    async def _verify_region(self, account_id: str) -> None:
        """Fail fatally when the subscription lives in another region."""
        reply = await self._quicksight.call(
            "list_namespaces", attempts=self._config.namespace_attempts, AwsAccountId=account_id
        )
        namespaces = reply.get("Namespaces") or []
        capacity_region = namespaces[0].get("CapacityRegion") if namespaces else None
        if capacity_region and capacity_region != self._config.region:
            raise FatalConfigurationError(
                f"Subscription identity region {capacity_region} does not match "
                f"{self._config.region}"
            )

    async def _reset(self, account_id: str, notification_email: str) -> None:
        """Clear a stuck unsubscribe: update settings, then delete."""
        attempts = self._config.mutation_attempts
        await self._quicksight.call(
            "update_account_settings",
            attempts=attempts,
            AwsAccountId=account_id,
            DefaultNamespace=self._config.default_namespace,
            NotificationEmail=notification_email,
        )
        await self._quicksight.call(
            "delete_account_subscription", attempts=attempts, AwsAccountId=account_id
        )
        logger.info(
            "Deleted stuck subscription of %s.",
            account_id,
            extra={"event": events.SUBSCRIPTION_RESET},
        )

    async def _create_subscription(self, request: ProvisioningRequest) -> None:
        admin = _groups(request.prop("AdminGroup"))
        params: dict[str, Any] = {
            "AwsAccountId": request.prop("AwsAccountId"),
            "AccountName": request.prop("AccountName"),
            "Edition": request.prop("Edition"),
            "AuthenticationMethod": request.prop("AuthenticationMethod"),
            "ActiveDirectoryName": request.prop("ActiveDirectoryName"),
            "AdminGroup": admin,
            "AuthorGroup": _groups(request.prop("AuthorGroup")) or admin,
            "ReaderGroup": _groups(request.prop("ReaderGroup")) or admin,
            "NotificationEmail": request.prop("NotificationEmail"),
        }
        for optional in ("DirectoryId", "Realm"):
            if request.prop(optional):
                params[optional] = request.prop(optional)

        await self._quicksight.call(
            "create_account_subscription", attempts=self._config.mutation_attempts, **params
        )
        logger.info(
            "Created subscription for %s.",
            params["AwsAccountId"],
            extra={"event": events.SUBSCRIPTION_CREATED},
        )
