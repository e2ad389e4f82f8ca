"""Subscription health gauge and deploy-time trigger tests."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from adprov.aws.client import AwsApiClient
from adprov.core.exceptions import FatalConfigurationError, RemoteCallError
from adprov.core.models import ProvisioningRequest, RequestType, SubscriptionStatus
from adprov.orchestrator.health import (
    METRIC_NAME,
    TRIGGER_PHYSICAL_ID,
    HealthCheckTrigger,
    publish_subscription_health,
)
from adprov.orchestrator.retry import RetryPolicy

__all__: list[str] = []

ACCOUNT = "123456789012"
NAMESPACE = "managed-ad/QuickSight"


def _adapt(service: str, raw: MagicMock, clock) -> AwsApiClient:
    return AwsApiClient(service, raw, policy=RetryPolicy(max_attempts=2), sleep=clock.sleep)


def _published_values(cloudwatch: MagicMock) -> list[int]:
    values = []
    for call in cloudwatch.put_metric_data.call_args_list:
        assert call.kwargs["Namespace"] == NAMESPACE
        (datum,) = call.kwargs["MetricData"]
        assert datum["MetricName"] == METRIC_NAME
        assert datum["Unit"] == "Count"
        values.append(datum["Value"])
    return values


class TestPublishSubscriptionHealth:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("remote", "expected"),
        [
            ("ACCOUNT_CREATED", 1),
            ("UNSUBSCRIBE_FAILED", 0),
            ("SIGNUP_IN_PROGRESS", 0),
        ],
    )
    async def test_gauge_value(self, fake_clock, remote: str, expected: int) -> None:
        quicksight, cloudwatch = MagicMock(), MagicMock()
        quicksight.describe_account_subscription.return_value = {
            "AccountInfo": {"AccountSubscriptionStatus": remote}
        }

        sample = await publish_subscription_health(
            _adapt("quicksight", quicksight, fake_clock),
            _adapt("cloudwatch", cloudwatch, fake_clock),
            ACCOUNT,
            NAMESPACE,
        )

        assert sample.value == expected
        assert _published_values(cloudwatch) == [expected]

    @pytest.mark.asyncio
    async def test_missing_subscription_publishes_zero(self, fake_clock, client_error) -> None:
        quicksight, cloudwatch = MagicMock(), MagicMock()
        quicksight.describe_account_subscription.side_effect = client_error(
            "ResourceNotFoundException"
        )

        sample = await publish_subscription_health(
            _adapt("quicksight", quicksight, fake_clock),
            _adapt("cloudwatch", cloudwatch, fake_clock),
            ACCOUNT,
            NAMESPACE,
        )

        assert sample.status is SubscriptionStatus.NOT_FOUND
        assert _published_values(cloudwatch) == [0]

    @pytest.mark.asyncio
    async def test_remote_error_publishes_zero_then_raises(self, fake_clock, client_error) -> None:
        quicksight, cloudwatch = MagicMock(), MagicMock()
        quicksight.describe_account_subscription.side_effect = client_error(
            "AccessDeniedException"
        )

        with pytest.raises(RemoteCallError):
            await publish_subscription_health(
                _adapt("quicksight", quicksight, fake_clock),
                _adapt("cloudwatch", cloudwatch, fake_clock),
                ACCOUNT,
                NAMESPACE,
            )

        assert _published_values(cloudwatch) == [0]


class TestHealthCheckTrigger:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("request_type", [RequestType.CREATE, RequestType.UPDATE])
    async def test_invokes_asynchronously(self, fake_clock, request_type: RequestType) -> None:
        raw = MagicMock()
        trigger = HealthCheckTrigger(
            lambda_client=_adapt("lambda", raw, fake_clock), function_name="health-check"
        )

        result = await trigger.handle(ProvisioningRequest(request_type=request_type))

        raw.invoke.assert_called_once_with(FunctionName="health-check", InvocationType="Event")
        assert result.physical_resource_id == TRIGGER_PHYSICAL_ID

    @pytest.mark.asyncio
    async def test_property_overrides_function_name(self, fake_clock) -> None:
        raw = MagicMock()
        trigger = HealthCheckTrigger(
            lambda_client=_adapt("lambda", raw, fake_clock), function_name="health-check"
        )

        await trigger.handle(
            ProvisioningRequest(
                request_type=RequestType.CREATE, properties={"FunctionName": "other-fn"}
            )
        )

        assert raw.invoke.call_args.kwargs["FunctionName"] == "other-fn"

    @pytest.mark.asyncio
    async def test_delete_is_a_no_op(self, fake_clock) -> None:
        raw = MagicMock()
        trigger = HealthCheckTrigger(
            lambda_client=_adapt("lambda", raw, fake_clock), function_name="health-check"
        )

        result = await trigger.handle(
            ProvisioningRequest(
                request_type=RequestType.DELETE, physical_resource_id=TRIGGER_PHYSICAL_ID
            )
        )

        raw.invoke.assert_not_called()
        assert result.physical_resource_id == TRIGGER_PHYSICAL_ID

    @pytest.mark.asyncio
    async def test_missing_function_name_is_fatal(self, fake_clock) -> None:
        trigger = HealthCheckTrigger(
            lambda_client=_adapt("lambda", MagicMock(), fake_clock), function_name=""
        )
        with pytest.raises(FatalConfigurationError):
            await trigger.handle(ProvisioningRequest(request_type=RequestType.CREATE))
