"""Lambda entry points: assemble components and run one lifecycle invocation.

Every entry point is a plain synchronous ``handler(event, context)`` that
builds its components fresh, runs the async workflow with
:func:`asyncio.run` and returns.  Nothing is cached across invocations.

Component wiring
----------------
Each invocation:

1. Configures logging (a no-op apart from the level when the Lambda runtime
   already installed a root handler).
2. Parses the event into a :class:`~adprov.core.models.ProvisioningRequest`.
   An event that does not parse but carries a ``ResponseURL`` is still
   answered FAILED (:func:`report_invalid_event`).
3. Loads :class:`~adprov.core.settings.Settings` and builds
   :class:`~adprov.aws.client.AwsClients` from one region-scoped session.
4. Runs the lifecycle handler through :func:`run_lifecycle`.

Response modes
--------------
* **Provider framework** (no ``ResponseURL`` in the event): the result is
  returned as ``{"PhysicalResourceId", "Data"}`` and errors propagate; the
  framework turns them into a FAILED response.
* **Direct custom resource** (``ResponseURL`` present): the handler answers
  CloudFormation itself via :class:`~adprov.aws.cfn_response.CfnResponseClient`.
  On failure the physical id sent is the one carried by the error (for
  example an instance launched before the failing step) so the stack can
  still delete it.

Typical usage (Lambda handler setting)::

    adprov.orchestrator.runner.compute_handler
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from adprov.aws.cfn_response import CfnResponseClient, ResponseStatus
from adprov.aws.client import AwsClients
from adprov.core.exceptions import ConfigError
from adprov.core.logging_config import configure_logging
from adprov.core.models import ProvisioningRequest
from adprov.core.settings import Settings
from adprov.orchestrator.compute import ComputeProvisioningWorkflow
from adprov.orchestrator.health import (
    HealthCheckTrigger,
    HealthSample,
    publish_subscription_health,
)
from adprov.orchestrator.lifecycle import LifecycleHandler
from adprov.orchestrator.subscription import SubscriptionProvisioningWorkflow

__all__ = [
    "HANDLER_BUILDERS",
    "load_settings",
    "build_clients",
    "run_lifecycle",
    "report_invalid_event",
    "run_health_check",
    "compute_handler",
    "subscription_handler",
    "health_trigger_handler",
    "health_check_handler",
]

logger = logging.getLogger(__name__)

#: Builds a lifecycle handler from loaded settings.
HandlerBuilder = Callable[[Settings], LifecycleHandler]


# ---------------------------------------------------------------------------
# Component builders
# ---------------------------------------------------------------------------


def load_settings() -> Settings:
    """Load settings from the environment.

    Raises:
        ConfigError: If an environment value fails validation.
    """
    try:
        return Settings()
    except ValidationError as exc:
        raise ConfigError(f"Invalid environment configuration: {exc}") from exc


def build_clients(settings: Settings) -> AwsClients:
    return AwsClients.from_session(region=settings.aws_region, policy=settings.retry_policy())


def _build_compute(settings: Settings) -> LifecycleHandler:
    return ComputeProvisioningWorkflow.from_clients(
        build_clients(settings), settings.to_compute_config()
    )


def _build_subscription(settings: Settings) -> LifecycleHandler:
    return SubscriptionProvisioningWorkflow(
        quicksight=build_clients(settings).quicksight,
        config=settings.to_subscription_config(),
    )


def _build_health_trigger(settings: Settings) -> LifecycleHandler:
    return HealthCheckTrigger(
        lambda_client=build_clients(settings).lambda_,
        function_name=settings.health_check_function_name,
    )


#: Lifecycle handlers by CLI / deployment name.
HANDLER_BUILDERS: dict[str, HandlerBuilder] = {
    "compute": _build_compute,
    "subscription": _build_subscription,
    "health-trigger": _build_health_trigger,
}


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


async def run_lifecycle(
    build_handler: HandlerBuilder,
    request: ProvisioningRequest,
    *,
    settings_loader: Callable[[], Settings] = load_settings,
    responder: CfnResponseClient | None = None,
    fallback_physical_id: str = "",
) -> dict[str, Any]:
    """Run one lifecycle invocation in the response mode the request implies.

    Args:
        build_handler: Builds the handler from settings.
        request: The parsed invocation.
        settings_loader: Loads settings; called inside the error boundary so
            configuration errors are still reported in direct mode.
        responder: Response client for direct mode (default: a fresh
            :class:`CfnResponseClient`).
        fallback_physical_id: Id reported on failure when neither the error
            nor the request carries one (typically the log stream name).

    Returns:
        ``{"PhysicalResourceId": ..., "Data": {...}}``.

    Raises:
        Exception: In provider-framework mode, whatever the handler raised.
        ResponseDeliveryError: In direct mode, if the response cannot be PUT.
    """
    if not request.response_url:
        handler = build_handler(settings_loader())
        result = await handler.handle(request)
        return result.to_response()

    async with (responder or CfnResponseClient()) as client:
        try:
            handler = build_handler(settings_loader())
            result = await handler.handle(request)
        except Exception as exc:  # noqa: BLE001
            physical_id = (
                getattr(exc, "physical_resource_id", None)
                or request.physical_resource_id
                or fallback_physical_id
                or request.request_id
            )
            logger.error(
                "Reporting FAILED for %s with physical id %s: %s",
                request.logical_resource_id or request.request_id,
                physical_id,
                exc,
            )
            await client.send(
                request,
                status=ResponseStatus.FAILED,
                physical_resource_id=physical_id,
                reason=str(exc),
            )
            return {"PhysicalResourceId": physical_id, "Data": {}}

        await client.send(
            request,
            status=ResponseStatus.SUCCESS,
            physical_resource_id=result.physical_resource_id,
            data=result.data,
        )
        return result.to_response()


async def report_invalid_event(
    event: dict[str, Any],
    error: Exception,
    *,
    responder: CfnResponseClient | None = None,
    fallback_physical_id: str = "",
) -> dict[str, Any]:
    """Answer FAILED for a direct-mode event that did not parse.

    Only the correlation fields of the raw event are read; they are all the
    response document needs.
    """
    request = ProvisioningRequest.model_construct(
        request_id=str(event.get("RequestId") or ""),
        stack_id=str(event.get("StackId") or ""),
        logical_resource_id=str(event.get("LogicalResourceId") or ""),
        response_url=str(event["ResponseURL"]),
    )
    physical_id = (
        str(event.get("PhysicalResourceId") or "") or fallback_physical_id or request.request_id
    )
    logger.error(
        "Reporting FAILED for unparseable event %s: %s",
        request.request_id or "<no RequestId>",
        error,
    )
    async with (responder or CfnResponseClient()) as client:
        await client.send(
            request,
            status=ResponseStatus.FAILED,
            physical_resource_id=physical_id,
            reason=f"Invalid request: {error}",
        )
    return {"PhysicalResourceId": physical_id, "Data": {}}


async def run_health_check(
    settings: Settings,
    account_id: str,
    clients: AwsClients | None = None,
) -> HealthSample:
    """Publish the subscription health gauge once."""
    clients = clients or build_clients(settings)
    return await publish_subscription_health(
        clients.quicksight,
        clients.cloudwatch,
        account_id,
        settings.resolved_metric_namespace,
    )


# ---------------------------------------------------------------------------
# Lambda entry points
# ---------------------------------------------------------------------------


def _configure_logging() -> None:
    try:
        configure_logging()
    except ValueError as exc:
        configure_logging(level="INFO", fmt="text")
        logger.warning("Ignoring invalid logging configuration: %s", exc)


def _log_stream(context: Any) -> str:
    return getattr(context, "log_stream_name", "") or ""


def _invoke(name: str, event: dict[str, Any], context: Any) -> dict[str, Any]:
    _configure_logging()
    try:
        request = ProvisioningRequest.from_event(event)
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        if not isinstance(event, dict) or not event.get("ResponseURL"):
            raise
        return asyncio.run(
            report_invalid_event(event, exc, fallback_physical_id=_log_stream(context))
        )
    return asyncio.run(
        run_lifecycle(
            HANDLER_BUILDERS[name],
            request,
            fallback_physical_id=_log_stream(context),
        )
    )


def compute_handler(event: dict[str, Any], context: Any = None) -> dict[str, Any]:
    return _invoke("compute", event, context)


def subscription_handler(event: dict[str, Any], context: Any = None) -> dict[str, Any]:
    return _invoke("subscription", event, context)


def health_trigger_handler(event: dict[str, Any], context: Any = None) -> dict[str, Any]:
    return _invoke("health-trigger", event, context)


def health_check_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    """Scheduled health check; the account id comes from the function ARN."""
    _configure_logging()
    account_id = context.invoked_function_arn.split(":")[4]
    sample = asyncio.run(run_health_check(load_settings(), account_id))
    return {"statusCode": 200, "body": json.dumps(f"QuickSight status: {sample.status}")}
