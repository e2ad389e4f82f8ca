"""Subscription health gauge and the deploy-time trigger that refreshes it.

:func:`publish_subscription_health` reads the subscription status once and
publishes ``SubscriptionHealth`` (1 when the subscription is active, 0
otherwise) to CloudWatch.  A schedule outside this package runs it every
five minutes; an alarm on the gauge is the operator's signal.

:class:`HealthCheckTrigger` is a lifecycle handler that fires the health
check once on Create / Update so a fresh deployment reports immediately.
The invocation is fire-and-forget (``InvocationType="Event"``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Final

from adprov.aws.client import AwsApiClient
from adprov.core import events
from adprov.core.exceptions import FatalConfigurationError, RemoteCallError
from adprov.core.models import ProvisioningRequest, ProvisioningResult, SubscriptionStatus
from adprov.orchestrator.lifecycle import LifecycleHandler
from adprov.orchestrator.subscription import read_subscription_status

__all__ = [
    "METRIC_NAME",
    "TRIGGER_PHYSICAL_ID",
    "HealthSample",
    "publish_subscription_health",
    "HealthCheckTrigger",
]

logger = logging.getLogger(__name__)

METRIC_NAME: Final[str] = "SubscriptionHealth"

#: Constant physical id of the deploy-time trigger resource.
TRIGGER_PHYSICAL_ID: Final[str] = "trigger-health-check"


@dataclass(frozen=True)
class HealthSample:
    """One published gauge value and the status it was derived from."""

    status: SubscriptionStatus
    value: int


async def _put_gauge(cloudwatch: AwsApiClient, namespace: str, value: int) -> None:
    await cloudwatch.call(
        "put_metric_data",
        Namespace=namespace,
        MetricData=[{"MetricName": METRIC_NAME, "Value": value, "Unit": "Count"}],
    )


async def publish_subscription_health(
    quicksight: AwsApiClient,
    cloudwatch: AwsApiClient,
    account_id: str,
    namespace: str,
) -> HealthSample:
    """Publish the ``SubscriptionHealth`` gauge for *account_id*.

    Raises:
        RemoteCallError: The status could not be read.  A 0 is published
            before the error propagates so the alarm still sees a datapoint.
    """
    try:
        status = await read_subscription_status(quicksight, account_id)
    except RemoteCallError as exc:
        logger.error("Health check for %s failed: %s", account_id, exc)
        await _put_gauge(cloudwatch, namespace, 0)
        raise

    sample = HealthSample(
        status=status, value=1 if status is SubscriptionStatus.ACCOUNT_CREATED else 0
    )
    await _put_gauge(cloudwatch, namespace, sample.value)
    logger.info(
        "Published %s=%d for %s (%s).",
        METRIC_NAME,
        sample.value,
        account_id,
        status,
        extra={"event": events.HEALTH_PUBLISHED, "value": sample.value},
    )
    return sample


class HealthCheckTrigger(LifecycleHandler):
    """Invoke the health-check function once per deployment.

    Args:
        lambda_client: Adapted Lambda client.
        function_name: Name or ARN of the health-check function.
    """

    name = "health-trigger"

    def __init__(self, *, lambda_client: AwsApiClient, function_name: str) -> None:
        self._lambda = lambda_client
        self._function_name = function_name

    async def create(self, request: ProvisioningRequest) -> ProvisioningResult:
        function_name = request.prop("FunctionName", self._function_name)
        if not function_name:
            raise FatalConfigurationError("No health-check function name configured")
        await self._lambda.call("invoke", FunctionName=function_name, InvocationType="Event")
        logger.info(
            "Triggered %s asynchronously.",
            function_name,
            extra={"event": events.HEALTH_TRIGGERED},
        )
        return ProvisioningResult(physical_resource_id=TRIGGER_PHYSICAL_ID)

    async def delete(self, request: ProvisioningRequest) -> ProvisioningResult:
        return ProvisioningResult(
            physical_resource_id=request.physical_resource_id or TRIGGER_PHYSICAL_ID
        )
