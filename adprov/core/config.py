"""Explicit configuration structs passed into workflow constructors.

Workflows never read the environment themselves.  :class:`~adprov.core.settings.Settings`
builds these structs once per invocation (see
:meth:`~adprov.core.settings.Settings.to_compute_config`) and tests build
them directly.

Typical usage::

    from adprov.core.config import ComputeConfig

    config = ComputeConfig(
        domain_name="corp.example.com",
        dns_ips=["10.0.0.10", "10.0.1.10"],
        instance_profile_name="AdAutomation-EC2InstanceProfile",
        script_bucket="adprov-scripts",
        script_key="setup-ad.ps1",
        admin_secret_ref="arn:aws:secretsmanager:us-east-1:123456789012:secret:admin",
        region="us-east-1",
    )
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field, field_validator

__all__ = ["PollTimings", "ComputeConfig", "SubscriptionConfig"]

logger = logging.getLogger(__name__)


class PollTimings(BaseModel):
    """Wait budgets for every suspension point of the compute workflow.

    All values are seconds.
    """

    model_config = {"frozen": True}

    boot_interval: float = Field(15.0, gt=0, description="Instance-state poll interval.")
    boot_timeout: float = Field(600.0, ge=0, description="Budget for reaching 'running'.")
    settle_delay: float = Field(
        120.0, ge=0, description="Fixed pause after boot for the in-guest agent."
    )
    registration_delay: float = Field(
        120.0, ge=0, description="Extra pause when the instance is not yet registered with SSM."
    )
    command_initial_delay: float = Field(
        30.0, ge=0, description="Pause before the first command-status poll."
    )
    command_interval: float = Field(10.0, gt=0, description="Command-status poll interval.")
    command_timeout: float = Field(900.0, ge=0, description="Budget for a command to finish.")


class ComputeConfig(BaseModel):
    """Everything the compute workflow needs besides the request properties.

    Attributes:
        domain_name: Directory FQDN, e.g. ``corp.example.com``.
        dns_ips: Directory DNS server addresses.
        instance_profile_name: IAM instance profile attached at launch.
        script_bucket: S3 bucket holding the configuration script.
        script_key: S3 key of the configuration script.
        admin_secret_ref: Secret id/ARN of the directory admin password.
        region: Region passed to the configuration script.
    """

    model_config = {"frozen": True}

    domain_name: str = Field(..., min_length=1)
    dns_ips: list[str] = Field(default_factory=list)
    instance_profile_name: str = Field(..., min_length=1)
    script_bucket: str = Field(..., min_length=1)
    script_key: str = Field(..., min_length=1)
    admin_secret_ref: str = Field(..., min_length=1)
    region: str = Field("us-east-1", min_length=1)

    image_name_filter: str = "Windows_Server-2022-English-Full-Base-*"
    image_owner: str = "amazon"
    default_instance_type: str = "m5.large"
    root_volume_gib: int = Field(80, ge=30)
    instance_name_tag: str = "AD-Automation-Instance"
    key_name_prefix: str = "adprov"

    join_document_name: str = "AWS-JoinDirectoryServiceDomain"
    custom_join_document_name: str = "adprov-JoinDirectoryServiceDomain"
    join_timeout_seconds: int = Field(900, ge=30)
    script_timeout_seconds: int = Field(3600, ge=30)
    script_local_path: str = "C:\\setup-ad.ps1"

    timings: PollTimings = Field(default_factory=PollTimings)

    @field_validator("dns_ips")
    @classmethod
    def _flatten_dns_ips(cls, v: list[str]) -> list[str]:
        """Split entries that hold several comma-joined addresses."""
        flat: list[str] = []
        for entry in v:
            flat.extend(part.strip() for part in entry.split(",") if part.strip())
        return flat


class SubscriptionConfig(BaseModel):
    """Settings for the subscription workflow.

    Attributes:
        region: Region the subscription must operate in.
        default_namespace: Namespace used by the recovery settings update.
        describe_attempts: Retry budget for the status read.
        namespace_attempts: Retry budget for the namespace listing.
        mutation_attempts: Retry budget for create/update/delete calls.
    """

    model_config = {"frozen": True}

    region: str = Field("us-east-1", min_length=1)
    default_namespace: str = "default"
    describe_attempts: int = Field(5, ge=1)
    namespace_attempts: int = Field(3, ge=1)
    mutation_attempts: int = Field(10, ge=1)
