"""Unit tests for the core package and the lifecycle contract.

Covers:
- :class:`~adprov.core.models.ProvisioningRequest` event parsing and coercions.
- :class:`~adprov.core.models.ProvisioningResult` response shape.
- :mod:`adprov.core.ids` identifier helpers.
- :class:`~adprov.core.settings.Settings` loading, validation, and helpers.
- :mod:`adprov.core.logging_config` formatter and request-id filter.
- :class:`~adprov.orchestrator.lifecycle.LifecycleHandler` dispatch.
"""

from __future__ import annotations

import json
import logging
import sys

import pytest
from pydantic import ValidationError

from adprov.core import events
from adprov.core.exceptions import (
    ConfigError,
    FatalConfigurationError,
    NotFoundError,
    ProvisioningError,
    RemoteCallError,
    ResponseDeliveryError,
    RetriesExhaustedError,
    TransientRemoteError,
)
from adprov.core.ids import idempotency_key, is_instance_id, subscription_physical_id
from adprov.core.logging_config import (
    REQUEST_ID_CTX,
    JsonFormatter,
    RequestContextFilter,
    configure_logging,
)
from adprov.core.models import (
    ErrorKind,
    KeyPairRecord,
    PollOutcome,
    ProvisioningRequest,
    ProvisioningResult,
    RemoteStatus,
    RequestType,
    SubscriptionStatus,
)
from adprov.core.settings import Settings
from adprov.orchestrator.lifecycle import LifecycleHandler, require_properties

__all__: list[str] = []


def _event(**overrides: object) -> dict[str, object]:
    event: dict[str, object] = {
        "RequestType": "Create",
        "RequestId": "req-1",
        "StackId": "arn:aws:cloudformation:us-east-1:123456789012:stack/ad/1",
        "LogicalResourceId": "ManagementInstance",
        "ResourceType": "Custom::ManagementInstance",
        "ResourceProperties": {
            "ServiceToken": "arn:aws:lambda:us-east-1:123456789012:function:compute",
            "DirectoryId": "d-1234567890",
        },
    }
    event.update(overrides)
    return event


# ===========================================================================
# Envelope
# ===========================================================================


class TestProvisioningRequest:
    def test_from_event_drops_service_token(self) -> None:
        request = ProvisioningRequest.from_event(_event())
        assert request.request_type is RequestType.CREATE
        assert request.properties == {"DirectoryId": "d-1234567890"}
        assert request.request_id == "req-1"
        assert request.logical_resource_id == "ManagementInstance"
        assert request.physical_resource_id is None
        assert request.response_url is None

    def test_from_event_keeps_previous_id_and_url(self) -> None:
        request = ProvisioningRequest.from_event(
            _event(
                RequestType="Delete",
                PhysicalResourceId="i-0123456789abcdef0",
                ResponseURL="https://example.com/presigned",
            )
        )
        assert request.request_type is RequestType.DELETE
        assert request.physical_resource_id == "i-0123456789abcdef0"
        assert request.response_url == "https://example.com/presigned"

    def test_non_string_properties_are_stringified(self) -> None:
        request = ProvisioningRequest(
            request_type=RequestType.CREATE,
            properties={
                "Groups": ["Admins", "Authors"],
                "Count": 3,
                "Enabled": True,
                "Skipped": None,
            },
        )
        assert request.properties == {"Groups": "Admins,Authors", "Count": "3", "Enabled": "true"}

    def test_missing_properties_become_empty(self) -> None:
        request = ProvisioningRequest.from_event(_event(ResourceProperties=None))
        assert request.properties == {}

    def test_unknown_request_type_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ProvisioningRequest.from_event(_event(RequestType="Replace"))

    def test_prop_strips_and_defaults(self) -> None:
        request = ProvisioningRequest(
            request_type=RequestType.CREATE, properties={"A": "  x ", "B": "   "}
        )
        assert request.prop("A") == "x"
        assert request.prop("B", "fallback") == "fallback"
        assert request.prop("C") == ""

    def test_request_is_frozen(self) -> None:
        request = ProvisioningRequest(request_type=RequestType.CREATE)
        with pytest.raises(ValidationError):
            request.request_id = "other"  # type: ignore[misc]


class TestProvisioningResult:
    def test_to_response(self) -> None:
        result = ProvisioningResult(physical_resource_id="sub-1", data={"Status": "Created"})
        assert result.to_response() == {
            "PhysicalResourceId": "sub-1",
            "Data": {"Status": "Created"},
        }
        assert result.is_partial_failure is False

    def test_partial_failure_flag(self) -> None:
        result = ProvisioningResult(
            physical_resource_id="sub-1", data={"Status": "PartialFailure-ThrottlingException"}
        )
        assert result.is_partial_failure is True


class TestEnumerations:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("ACCOUNT_CREATED", SubscriptionStatus.ACCOUNT_CREATED),
            ("UNSUBSCRIBE_FAILED", SubscriptionStatus.UNSUBSCRIBE_FAILED),
            ("SIGNUP_IN_PROGRESS", SubscriptionStatus.OTHER_PENDING),
            (None, SubscriptionStatus.OTHER_PENDING),
        ],
    )
    def test_subscription_status_from_remote(
        self, raw: str | None, expected: SubscriptionStatus
    ) -> None:
        assert SubscriptionStatus.from_remote(raw) is expected

    def test_only_pending_is_non_terminal(self) -> None:
        assert [s for s in RemoteStatus if not s.is_terminal] == [RemoteStatus.PENDING]

    def test_poll_outcome_from_status(self) -> None:
        assert PollOutcome.from_status(RemoteStatus.CANCELLED) is PollOutcome.CANCELLED
        with pytest.raises(ValueError):
            PollOutcome.from_status(RemoteStatus.PENDING)


class TestKeyPairRecord:
    def test_secret_round_trip_uses_aliases(self) -> None:
        record = KeyPairRecord(key_name="managed-ad-keypair", private_key="-----BEGIN")
        payload = json.loads(record.to_secret_string())
        assert payload == {"KeyPairName": "managed-ad-keypair", "PrivateKey": "-----BEGIN"}
        assert KeyPairRecord.model_validate(payload) == record

    def test_placeholder_is_incomplete(self) -> None:
        assert KeyPairRecord.model_validate({"KeyPairName": "k"}).is_complete is False
        assert KeyPairRecord().is_complete is False


# ===========================================================================
# Identifiers
# ===========================================================================


class TestIds:
    def test_subscription_physical_id(self) -> None:
        assert subscription_physical_id("123456789012") == "sub-123456789012"

    def test_idempotency_key_ignores_mapping_order(self) -> None:
        a = idempotency_key("adprov", {"SubnetId": "s-1", "DirectoryId": "d-1"})
        b = idempotency_key("adprov", {"DirectoryId": "d-1", "SubnetId": "s-1"})
        assert a == b
        assert a.startswith("adprov-")
        assert len(a) <= 64

    def test_idempotency_key_depends_on_scope_and_values(self) -> None:
        props = {"DirectoryId": "d-1"}
        base = idempotency_key("adprov", props, scope="stack/A")
        assert idempotency_key("adprov", props, scope="stack/B") != base
        assert idempotency_key("adprov", {"DirectoryId": "d-2"}, scope="stack/A") != base

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("i-0123456789abcdef0", True),
            ("i-01234567", True),
            ("i-xyz", False),
            ("sub-123456789012", False),
            ("", False),
            (None, False),
        ],
    )
    def test_is_instance_id(self, value: str | None, expected: bool) -> None:
        assert is_instance_id(value) is expected


# ===========================================================================
# Exceptions
# ===========================================================================


class TestExceptions:
    def test_provisioning_error_keeps_step_and_id(self) -> None:
        err = ProvisioningError("domain_join", "boom", physical_resource_id="i-0123456789abcdef0")
        assert str(err) == "[domain_join] boom"
        assert err.physical_resource_id == "i-0123456789abcdef0"

    def test_retries_exhausted_keeps_last_code(self) -> None:
        last = TransientRemoteError(
            "quicksight", "list_namespaces", code="Throttling", kind=ErrorKind.THROTTLING
        )
        err = RetriesExhaustedError(last, attempts=3)
        assert isinstance(err, TransientRemoteError)
        assert err.code == "Throttling"
        assert err.kind is ErrorKind.THROTTLING
        assert err.attempts == 3
        assert err.label == "quicksight.list_namespaces"

    def test_hierarchy(self) -> None:
        assert issubclass(NotFoundError, RemoteCallError)
        assert not issubclass(FatalConfigurationError, RemoteCallError)

    def test_delivery_error_message(self) -> None:
        assert "HTTP 403" in str(ResponseDeliveryError("expired", status_code=403))


# ===========================================================================
# Settings loading
# ===========================================================================


def _set_compute_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DOMAIN_NAME", "corp.example.com")
    monkeypatch.setenv("INSTANCE_PROFILE_NAME", "AdAutomation-EC2InstanceProfile")
    monkeypatch.setenv("SCRIPTS_BUCKET", "adprov-scripts")
    monkeypatch.setenv("SETUP_SCRIPT_KEY", "setup-ad.ps1")
    monkeypatch.setenv(
        "ADMIN_SECRET_ARN", "arn:aws:secretsmanager:us-east-1:123456789012:secret:admin"
    )


class TestSettings:
    """Tests for :class:`~adprov.core.settings.Settings`."""

    def test_defaults_load_without_env(self, clean_env: None) -> None:
        s = Settings()
        assert s.aws_region == "us-east-1"
        assert s.project_prefix == "managed-ad"
        assert s.dns_ips == []
        assert s.log_level == "INFO"
        assert s.log_format == "text"
        assert s.compute_configured is False
        assert s.resolved_metric_namespace == "managed-ad/QuickSight"

    def test_dns_ips_json_array(self, monkeypatch: pytest.MonkeyPatch, clean_env: None) -> None:
        monkeypatch.setenv("DNS_IPS", '["10.0.0.10", "10.0.1.10"]')
        assert Settings().dns_ips == ["10.0.0.10", "10.0.1.10"]

    def test_dns_ips_comma_separated(
        self, monkeypatch: pytest.MonkeyPatch, clean_env: None
    ) -> None:
        monkeypatch.setenv("DNS_IPS", "10.0.0.10, 10.0.1.10,")
        assert Settings().dns_ips == ["10.0.0.10", "10.0.1.10"]

    def test_dns_ips_invalid_json_raises(
        self, monkeypatch: pytest.MonkeyPatch, clean_env: None
    ) -> None:
        monkeypatch.setenv("DNS_IPS", '["10.0.0.10"')
        with pytest.raises(ValidationError, match="DNS_IPS"):
            Settings()

    def test_invalid_log_level_raises(
        self, monkeypatch: pytest.MonkeyPatch, clean_env: None
    ) -> None:
        monkeypatch.setenv("LOG_LEVEL", "VERBOSE")
        with pytest.raises(ValidationError, match="log_level"):
            Settings()

    def test_invalid_log_format_raises(
        self, monkeypatch: pytest.MonkeyPatch, clean_env: None
    ) -> None:
        monkeypatch.setenv("LOG_FORMAT", "xml")
        with pytest.raises(ValidationError, match="log_format"):
            Settings()

    def test_inverted_retry_bounds_raise(
        self, monkeypatch: pytest.MonkeyPatch, clean_env: None
    ) -> None:
        monkeypatch.setenv("RETRY_BASE_DELAY", "60")
        monkeypatch.setenv("RETRY_DELAY_CAP", "30")
        with pytest.raises(ValidationError, match="retry_base_delay"):
            Settings()

    def test_compute_config_lists_missing_vars(self, clean_env: None) -> None:
        with pytest.raises(ConfigError) as exc_info:
            Settings().to_compute_config()
        message = str(exc_info.value)
        for name in ("DOMAIN_NAME", "SCRIPTS_BUCKET", "ADMIN_SECRET_ARN"):
            assert name in message

    def test_compute_config_from_env(
        self, monkeypatch: pytest.MonkeyPatch, clean_env: None
    ) -> None:
        _set_compute_env(monkeypatch)
        monkeypatch.setenv("AWS_REGION", "eu-west-1")
        monkeypatch.setenv("DNS_IPS", "10.0.0.10")
        monkeypatch.setenv("BOOT_TIMEOUT", "300")

        config = Settings().to_compute_config()

        assert config.domain_name == "corp.example.com"
        assert config.dns_ips == ["10.0.0.10"]
        assert config.region == "eu-west-1"
        assert config.script_key == "setup-ad.ps1"
        assert config.custom_join_document_name == "managed-ad-JoinDirectoryServiceDomain"
        assert config.timings.boot_timeout == 300.0

    def test_retry_policy_reflects_env(
        self, monkeypatch: pytest.MonkeyPatch, clean_env: None
    ) -> None:
        monkeypatch.setenv("RETRY_MAX_ATTEMPTS", "4")
        policy = Settings().retry_policy()
        assert policy.max_attempts == 4
        assert policy.base_delay == 2.0

    def test_subscription_config_uses_region(
        self, monkeypatch: pytest.MonkeyPatch, clean_env: None
    ) -> None:
        monkeypatch.setenv("AWS_REGION", "ap-southeast-2")
        assert Settings().to_subscription_config().region == "ap-southeast-2"


# ===========================================================================
# Logging
# ===========================================================================


def _record(message: str = "hello", **extra: object) -> logging.LogRecord:
    record = logging.LogRecord("adprov.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestLogging:
    def test_json_formatter_shape(self) -> None:
        payload = json.loads(JsonFormatter().format(_record(event=events.INSTANCE_LAUNCHED)))
        assert payload["level"] == "INFO"
        assert payload["logger"] == "adprov.test"
        assert payload["message"] == "hello"
        assert payload["ts"].endswith("Z")
        assert payload["extra"]["event"] == events.INSTANCE_LAUNCHED

    def test_json_formatter_includes_exception(self) -> None:
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = _record()
            record.exc_info = sys.exc_info()
        payload = json.loads(JsonFormatter().format(record))
        assert "RuntimeError: boom" in payload["exc_info"]

    def test_configure_logging_rejects_unknown_values(self) -> None:
        with pytest.raises(ValueError, match="LOG_FORMAT"):
            configure_logging(level="INFO", fmt="xml")
        with pytest.raises(ValueError, match="LOG_LEVEL"):
            configure_logging(level="verbose", fmt="text")

    def test_request_filter_reads_context(self) -> None:
        token = REQUEST_ID_CTX.set("req-42")
        try:
            record = _record()
            assert RequestContextFilter().filter(record) is True
            assert record.request_id == "req-42"
        finally:
            REQUEST_ID_CTX.reset(token)

    def test_request_filter_default(self) -> None:
        record = _record()
        RequestContextFilter().filter(record)
        assert record.request_id == "-"


# ===========================================================================
# Lifecycle contract
# ===========================================================================


class _RecordingHandler(LifecycleHandler):
    name = "recording"

    def __init__(self, fail: bool = False) -> None:
        self.calls: list[str] = []
        self.seen_request_ids: list[str] = []
        self.fail = fail

    async def create(self, request: ProvisioningRequest) -> ProvisioningResult:
        self.calls.append("create")
        self.seen_request_ids.append(REQUEST_ID_CTX.get())
        if self.fail:
            raise FatalConfigurationError("nope")
        return ProvisioningResult(physical_resource_id="res-1", data={"Status": "Created"})

    async def delete(self, request: ProvisioningRequest) -> ProvisioningResult:
        self.calls.append("delete")
        return ProvisioningResult(physical_resource_id=request.physical_resource_id or "res-1")


class TestLifecycleHandler:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("request_type", "expected"),
        [
            (RequestType.CREATE, ["create"]),
            (RequestType.UPDATE, ["create"]),
            (RequestType.DELETE, ["delete"]),
        ],
    )
    async def test_dispatch(self, request_type: RequestType, expected: list[str]) -> None:
        handler = _RecordingHandler()
        await handler.handle(ProvisioningRequest(request_type=request_type))
        assert handler.calls == expected

    @pytest.mark.asyncio
    async def test_request_id_bound_only_during_call(self) -> None:
        handler = _RecordingHandler()
        await handler.handle(ProvisioningRequest(request_type=RequestType.CREATE, request_id="r-9"))
        assert handler.seen_request_ids == ["r-9"]
        assert REQUEST_ID_CTX.get() == "-"

    @pytest.mark.asyncio
    async def test_failure_is_logged_and_reraised(self, caplog: pytest.LogCaptureFixture) -> None:
        handler = _RecordingHandler(fail=True)
        with caplog.at_level(logging.ERROR, logger="adprov.orchestrator.lifecycle"):
            with pytest.raises(FatalConfigurationError):
                await handler.handle(ProvisioningRequest(request_type=RequestType.CREATE))
        assert any(
            getattr(r, "event", None) == events.INVOCATION_FAILED for r in caplog.records
        )
        assert REQUEST_ID_CTX.get() == "-"

    def test_require_properties_lists_every_missing_name(self) -> None:
        request = ProvisioningRequest(request_type=RequestType.CREATE, properties={"A": "1"})
        assert require_properties(request, "A") == {"A": "1"}
        with pytest.raises(FatalConfigurationError, match="B, C"):
            require_properties(request, "A", "B", "C")
