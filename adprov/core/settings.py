"""adprov application settings loaded from environment and ``.env`` files.

Uses :mod:`pydantic_settings` to parse the Lambda environment (and optionally
an ``.env`` file during local runs) into a validated settings object.

The field name is the **lowercase** version of the env-var name (e.g.
``SCRIPTS_BUCKET`` → ``scripts_bucket``).

Typical usage::

    from adprov.core.settings import Settings

    settings = Settings()
    config = settings.to_compute_config()      # raises ConfigError if incomplete
    policy = settings.retry_policy()
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Annotated

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from adprov.core.config import ComputeConfig, PollTimings, SubscriptionConfig
from adprov.core.exceptions import ConfigError

if TYPE_CHECKING:
    from adprov.orchestrator.retry import RetryPolicy

__all__ = ["Settings"]

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _parse_ip_list(value: str) -> list[str]:
    """Accept a JSON array (``'["10.0.0.10"]'``) or a comma-separated string.

    Returns an empty list for blank input.
    """
    if not value or not value.strip():
        return []
    text = value.strip()
    if text.startswith("["):
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"DNS_IPS is not valid JSON: {exc}") from exc
        items = [str(item) for item in parsed]
    else:
        items = [text]
    return [part.strip() for item in items for part in item.split(",") if part.strip()]


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """Central process configuration.

    Values are loaded in priority order:

    1. Actual environment variables (highest priority).
    2. ``.env`` file in the working directory.
    3. Field defaults (lowest priority).

    Compute fields default to empty so the subscription and health handlers
    can run without them; :meth:`to_compute_config` enforces their presence.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Deployment
    # ------------------------------------------------------------------
    aws_region: str = Field(default="us-east-1", description="Invocation region.")
    project_prefix: str = Field(
        default="managed-ad",
        description="Prefix for key names, document names and metric namespaces.",
    )

    # ------------------------------------------------------------------
    # Compute workflow
    # ------------------------------------------------------------------
    domain_name: str = Field(default="", description="Directory FQDN.")
    dns_ips: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="Directory DNS addresses (JSON array or comma-separated in env).",
    )
    instance_profile_name: str = Field(default="", description="Instance profile name.")
    scripts_bucket: str = Field(default="", description="Bucket holding the setup script.")
    setup_script_key: str = Field(default="", description="S3 key of the setup script.")
    admin_secret_arn: str = Field(default="", description="Directory admin secret ARN.")
    image_name_filter: str = Field(
        default="Windows_Server-2022-English-Full-Base-*",
        description="Base image name filter.",
    )
    image_owner: str = Field(default="amazon", description="Base image owner alias.")

    # ------------------------------------------------------------------
    # Wait budgets (seconds)
    # ------------------------------------------------------------------
    boot_timeout: float = Field(default=600.0, ge=0)
    boot_poll_interval: float = Field(default=15.0, gt=0)
    settle_delay: float = Field(default=120.0, ge=0)
    registration_delay: float = Field(default=120.0, ge=0)
    command_initial_delay: float = Field(default=30.0, ge=0)
    command_poll_interval: float = Field(default=10.0, gt=0)
    command_timeout: float = Field(default=900.0, ge=0)

    # ------------------------------------------------------------------
    # Retry policy
    # ------------------------------------------------------------------
    retry_max_attempts: int = Field(default=10, ge=1)
    retry_base_delay: float = Field(default=2.0, ge=0)
    retry_delay_cap: float = Field(default=30.0, ge=0)
    retry_throttle_penalty: float = Field(default=5.0, ge=0)

    # ------------------------------------------------------------------
    # Health check
    # ------------------------------------------------------------------
    metric_namespace: str = Field(
        default="",
        description="CloudWatch namespace; defaults to '<project_prefix>/QuickSight'.",
    )
    health_check_function_name: str = Field(
        default="",
        description="Function invoked asynchronously by the health-check trigger.",
    )

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------
    log_level: str = Field(default="INFO", description="Logging level.")
    log_format: str = Field(default="text", description="Log format: 'text' or 'json'.")

    # ------------------------------------------------------------------
    # Field validators
    # ------------------------------------------------------------------

    @field_validator("dns_ips", mode="before")
    @classmethod
    def _parse_dns_ips(cls, v: str | list[str]) -> list[str]:
        if isinstance(v, str):
            return _parse_ip_list(v)
        return v

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"log_level must be one of {allowed}, got {v!r}")
        return v_upper

    @field_validator("log_format")
    @classmethod
    def _validate_log_format(cls, v: str) -> str:
        allowed = {"text", "json"}
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"log_format must be one of {allowed}, got {v!r}")
        return v_lower

    @model_validator(mode="after")
    def _validate_retry_bounds(self) -> Settings:
        """Ensure base delay ≤ delay cap."""
        if self.retry_base_delay > self.retry_delay_cap:
            raise ValueError(
                f"retry_base_delay ({self.retry_base_delay}) "
                f"> retry_delay_cap ({self.retry_delay_cap})"
            )
        return self

    # ------------------------------------------------------------------
    # Derived helpers
    # ------------------------------------------------------------------

    @property
    def resolved_metric_namespace(self) -> str:
        return self.metric_namespace or f"{self.project_prefix}/QuickSight"

    @property
    def compute_configured(self) -> bool:
        """``True`` if every compute-workflow prerequisite is set."""
        return not self._missing_compute_fields()

    def _missing_compute_fields(self) -> list[str]:
        required = {
            "DOMAIN_NAME": self.domain_name,
            "INSTANCE_PROFILE_NAME": self.instance_profile_name,
            "SCRIPTS_BUCKET": self.scripts_bucket,
            "SETUP_SCRIPT_KEY": self.setup_script_key,
            "ADMIN_SECRET_ARN": self.admin_secret_arn,
        }
        return [name for name, value in required.items() if not value]

    def to_compute_config(self) -> ComputeConfig:
        """Build the :class:`ComputeConfig` struct.

        Raises:
            ConfigError: If a compute prerequisite is missing or invalid.
        """
        missing = self._missing_compute_fields()
        if missing:
            raise ConfigError(f"Compute workflow requires: {', '.join(missing)}")
        try:
            return ComputeConfig(
                domain_name=self.domain_name,
                dns_ips=self.dns_ips,
                instance_profile_name=self.instance_profile_name,
                script_bucket=self.scripts_bucket,
                script_key=self.setup_script_key,
                admin_secret_ref=self.admin_secret_arn,
                region=self.aws_region,
                image_name_filter=self.image_name_filter,
                image_owner=self.image_owner,
                key_name_prefix=self.project_prefix,
                custom_join_document_name=f"{self.project_prefix}-JoinDirectoryServiceDomain",
                timings=PollTimings(
                    boot_interval=self.boot_poll_interval,
                    boot_timeout=self.boot_timeout,
                    settle_delay=self.settle_delay,
                    registration_delay=self.registration_delay,
                    command_initial_delay=self.command_initial_delay,
                    command_interval=self.command_poll_interval,
                    command_timeout=self.command_timeout,
                ),
            )
        except ValidationError as exc:
            raise ConfigError(f"Invalid compute configuration: {exc}") from exc

    def to_subscription_config(self) -> SubscriptionConfig:
        return SubscriptionConfig(region=self.aws_region)

    def retry_policy(self) -> RetryPolicy:
        """Return the default :class:`~adprov.orchestrator.retry.RetryPolicy`."""
        from adprov.orchestrator.retry import RetryPolicy  # noqa: PLC0415

        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            base_delay=self.retry_base_delay,
            delay_cap=self.retry_delay_cap,
            throttle_penalty=self.retry_throttle_penalty,
        )
