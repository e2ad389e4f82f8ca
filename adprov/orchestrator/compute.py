"""Compute provisioning workflow: a directory-joined Windows instance.

Drives one EC2 instance from nothing to "joined to the managed directory and
configured by the setup script", entirely through control-plane calls.

State machine
-------------
Create / Update::

    Start → KeyMaterialReady → InstanceLaunched → InstanceReachable
          → DomainJoined → ScriptExecuted → Done

Delete::

    Start → Terminated

Failure policy
--------------
* Anything that fails **before** the instance exists propagates unchanged;
  nothing billable has been created yet.
* Anything that fails **after** launch raises
  :class:`~adprov.core.exceptions.ProvisioningError` carrying the instance id,
  so the caller records it and a later Delete terminates the instance.
* Waits that run out of budget (boot, command completion) proceed
  optimistically; only an explicit FAILED / CANCELLED status, or an instance
  that stopped, fails the step.

Typical usage::

    workflow = ComputeProvisioningWorkflow.from_clients(clients, settings.to_compute_config())
    result = await workflow.handle(ProvisioningRequest.from_event(event))
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from typing import Any, Final

from pydantic import ValidationError

from adprov.aws.client import AwsApiClient, AwsClients
from adprov.core import events
from adprov.core.config import ComputeConfig
from adprov.core.exceptions import (
    FatalConfigurationError,
    NotFoundError,
    ProvisioningError,
    RemoteCallError,
)
from adprov.core.ids import idempotency_key, is_instance_id
from adprov.core.models import (
    ErrorKind,
    KeyPairRecord,
    PollOutcome,
    ProvisioningRequest,
    ProvisioningResult,
    RemoteStatus,
)
from adprov.orchestrator.lifecycle import LifecycleHandler, require_properties
from adprov.orchestrator.poller import RemoteOperation, wait_for_terminal
from adprov.orchestrator.retry import ClockFn, SleepFn

__all__ = [
    "IDEMPOTENCY_TAG",
    "ComputeProvisioningWorkflow",
    "build_join_document",
    "build_setup_commands",
    "derive_key_name",
    "escape_powershell",
    "instance_status",
    "command_status",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Tag holding the idempotency key of the request that launched an instance.
IDEMPOTENCY_TAG: Final[str] = "adprov:idempotency-key"

_RUN_POWERSHELL_DOCUMENT: Final[str] = "AWS-RunPowerShellScript"
_ROOT_DEVICE_NAME: Final[str] = "/dev/sda1"

#: Instance states that will never reach ``running`` without intervention.
_DEAD_INSTANCE_STATES: Final[frozenset[str]] = frozenset(
    {"stopping", "stopped", "shutting-down", "terminated"}
)

#: SSM command-invocation statuses mapped onto :class:`RemoteStatus`.
_COMMAND_STATUS: Final[dict[str, RemoteStatus]] = {
    "Success": RemoteStatus.SUCCEEDED,
    "Failed": RemoteStatus.FAILED,
    "TimedOut": RemoteStatus.FAILED,
    "Cancelled": RemoteStatus.CANCELLED,
}

# Step labels carried by ProvisioningError.
_STEP_LAUNCH: Final[str] = "launch"
_STEP_REACHABLE: Final[str] = "instance_reachable"
_STEP_DOMAIN_JOIN: Final[str] = "domain_join"
_STEP_SCRIPT: Final[str] = "setup_script"


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def instance_status(state: str | None) -> RemoteStatus:
    """Map an EC2 instance state name onto :class:`RemoteStatus`."""
    if state == "running":
        return RemoteStatus.SUCCEEDED
    if state in _DEAD_INSTANCE_STATES:
        return RemoteStatus.FAILED
    return RemoteStatus.PENDING


def command_status(status: str | None) -> RemoteStatus:
    """Map an SSM command-invocation status onto :class:`RemoteStatus`.

    ``Pending``, ``InProgress``, ``Delayed`` and ``Cancelling`` are still
    moving and map to ``PENDING``.
    """
    return _COMMAND_STATUS.get(status or "", RemoteStatus.PENDING)


def escape_powershell(value: str) -> str:
    """Escape *value* for interpolation inside a double-quoted PowerShell string."""
    return value.replace("`", "``").replace('"', '`"').replace("$", "`$")


def build_join_document() -> dict[str, Any]:
    """Return the content of the custom domain-join command document."""
    return {
        "schemaVersion": "1.2",
        "description": "Join instances to an AWS Directory Service domain.",
        "parameters": {
            "directoryId": {"type": "String"},
            "directoryName": {"type": "String"},
            "directoryOU": {"type": "String", "default": ""},
            "dnsIpAddresses": {"type": "StringList", "default": []},
        },
        "runtimeConfig": {
            "aws:domainJoin": {
                "properties": {
                    "directoryId": "{{ directoryId }}",
                    "directoryName": "{{ directoryName }}",
                    "directoryOU": "{{ directoryOU }}",
                    "dnsIpAddresses": "{{ dnsIpAddresses }}",
                }
            }
        },
    }


def build_setup_commands(config: ComputeConfig, admin_password: str) -> list[str]:
    """Return the PowerShell lines that download and run the setup script."""
    local = config.script_local_path
    return [
        f'Read-S3Object -BucketName "{config.script_bucket}" -Key "{config.script_key}" '
        f'-File "{local}"',
        f'powershell.exe -ExecutionPolicy Bypass -File "{local}" '
        f'-DomainName "{escape_powershell(config.domain_name)}" '
        f'-AdminPassword "{escape_powershell(admin_password)}" '
        f'-Region "{escape_powershell(config.region)}"',
    ]


def derive_key_name(prefix: str, scope: str) -> str:
    """Return a key-pair name unique to *scope*: ``<prefix>-keypair-<12 hex>``.

    Key pairs survive stack teardown; a derived name never repeats across
    deployments or invocations.
    """
    digest = hashlib.sha256(scope.encode("utf-8")).hexdigest()[:12]
    return f"{prefix}-keypair-{digest}"


def _parse_admin_secret(secret_string: str) -> str:
    """Return the ``password`` field of a JSON secret, else the raw string."""
    try:
        parsed = json.loads(secret_string)
    except json.JSONDecodeError:
        return secret_string
    if isinstance(parsed, dict) and isinstance(parsed.get("password"), str):
        return parsed["password"]
    return secret_string


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------


class ComputeProvisioningWorkflow(LifecycleHandler):
    """Lifecycle handler for the directory-joined setup instance.

    Args:
        ec2: Adapted EC2 client.
        ssm: Adapted Systems Manager client.
        secrets: Adapted Secrets Manager client.
        config: Directory, script and timing configuration.
        sleep: Awaitable sleep primitive for fixed delays and polling.
        clock: Monotonic clock for poll deadlines.
    """

    name = "compute"

    def __init__(
        self,
        *,
        ec2: AwsApiClient,
        ssm: AwsApiClient,
        secrets: AwsApiClient,
        config: ComputeConfig,
        sleep: SleepFn = asyncio.sleep,
        clock: ClockFn = time.monotonic,
    ) -> None:
        self._ec2 = ec2
        self._ssm = ssm
        self._secrets = secrets
        self._config = config
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_clients(
        cls,
        clients: AwsClients,
        config: ComputeConfig,
        *,
        sleep: SleepFn = asyncio.sleep,
        clock: ClockFn = time.monotonic,
    ) -> ComputeProvisioningWorkflow:
        return cls(
            ec2=clients.ec2,
            ssm=clients.ssm,
            secrets=clients.secrets,
            config=config,
            sleep=sleep,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Lifecycle verbs
    # ------------------------------------------------------------------

    async def create(self, request: ProvisioningRequest) -> ProvisioningResult:
        props = require_properties(
            request, "DirectoryId", "SecurityGroupId", "SubnetId", "KeyPairSecretArn"
        )
        instance_type = request.prop("InstanceType", self._config.default_instance_type)

        scope = f"{request.stack_id}/{request.logical_resource_id}"
        key_pair = await self.ensure_key_pair(
            props["KeyPairSecretArn"], scope=f"{scope}/{request.request_id}"
        )

        instance_id = await self.launch_instance(
            subnet_id=props["SubnetId"],
            security_group_id=props["SecurityGroupId"],
            instance_type=instance_type,
            key_name=key_pair.key_name,
            token=idempotency_key("adprov", request.properties, scope=scope),
            fallback_token=idempotency_key(
                "adprov", request.properties, scope=f"{scope}/{request.request_id}"
            ),
        )

        step = _STEP_REACHABLE
        try:
            await self.wait_until_reachable(instance_id)
            step = _STEP_DOMAIN_JOIN
            await self.join_domain(instance_id, props["DirectoryId"])
            step = _STEP_SCRIPT
            await self.run_setup_script(instance_id)
        except ProvisioningError:
            raise
        except (RemoteCallError, FatalConfigurationError) as exc:
            raise ProvisioningError(step, str(exc), physical_resource_id=instance_id) from exc

        return ProvisioningResult(physical_resource_id=instance_id, data={"InstanceId": instance_id})

    async def delete(self, request: ProvisioningRequest) -> ProvisioningResult:
        """Best-effort terminate; never waits and never fails the teardown."""
        previous = request.physical_resource_id
        if is_instance_id(previous):
            try:
                await self._ec2.call("terminate_instances", InstanceIds=[previous])
            except RemoteCallError as exc:
                logger.warning("Could not terminate %s (%s) — ignoring.", previous, exc)
            else:
                logger.info(
                    "Termination requested for %s.",
                    previous,
                    extra={"event": events.INSTANCE_TERMINATED, "instance_id": previous},
                )
        else:
            logger.info("Previous id %r is not an instance — nothing to terminate.", previous)
        return ProvisioningResult(physical_resource_id=previous or "deleted")

    # ------------------------------------------------------------------
    # KeyMaterialReady
    # ------------------------------------------------------------------

    async def ensure_key_pair(self, secret_ref: str, *, scope: str = "") -> KeyPairRecord:
        """Reuse the recorded key pair or create one and record it.

        The secret is written only when its record is absent or unusable.
        A record naming a key pair that is missing from EC2 is recreated under
        that name; a ``Duplicate`` reply for it means a concurrent invocation
        won, so the secret is re-read instead of overwritten.  When no usable
        record exists, new material is created under
        :func:`derive_key_name` for *scope*.
        """
        record = await self._read_key_record(secret_ref)
        if record.is_complete and await self._key_pair_exists(record.key_name):
            logger.info(
                "Reusing key pair %s.",
                record.key_name,
                extra={"event": events.KEY_PAIR_REUSED},
            )
            return record

        if record.key_name:
            try:
                return await self._create_key_pair(secret_ref, record.key_name)
            except RemoteCallError as exc:
                if exc.kind is not ErrorKind.ALREADY_EXISTS:
                    raise
            logger.info(
                "Key pair %s was created concurrently — re-reading secret.", record.key_name
            )
            winner = await self._read_key_record(secret_ref)
            if winner.is_complete:
                return winner
            logger.warning(
                "Key pair %s exists but its private key is not recorded — creating a new one.",
                record.key_name,
            )

        key_name = derive_key_name(self._config.key_name_prefix, scope)
        return await self._create_key_pair(secret_ref, key_name)

    async def _create_key_pair(self, secret_ref: str, key_name: str) -> KeyPairRecord:
        reply = await self._ec2.call("create_key_pair", KeyName=key_name)
        created = KeyPairRecord(key_name=key_name, private_key=reply.get("KeyMaterial", ""))
        await self._secrets.call(
            "put_secret_value", SecretId=secret_ref, SecretString=created.to_secret_string()
        )
        logger.info(
            "Created key pair %s and recorded it.",
            key_name,
            extra={"event": events.KEY_PAIR_CREATED},
        )
        return created

    async def _read_key_record(self, secret_ref: str) -> KeyPairRecord:
        try:
            reply = await self._secrets.call("get_secret_value", SecretId=secret_ref)
        except NotFoundError:
            logger.info("Key-pair secret %s has no value yet.", secret_ref)
            return KeyPairRecord()
        raw = reply.get("SecretString") or ""
        try:
            return KeyPairRecord.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError, TypeError):
            logger.warning("Key-pair secret %s does not hold a usable record.", secret_ref)
            return KeyPairRecord()

    async def _key_pair_exists(self, key_name: str) -> bool:
        try:
            await self._ec2.call("describe_key_pairs", KeyNames=[key_name])
        except NotFoundError:
            return False
        return True

    # ------------------------------------------------------------------
    # InstanceLaunched
    # ------------------------------------------------------------------

    async def launch_instance(
        self,
        *,
        subnet_id: str,
        security_group_id: str,
        instance_type: str,
        key_name: str,
        token: str,
        fallback_token: str | None = None,
    ) -> str:
        """Return the instance launched for *token*, launching it if needed.

        *token* tags the instance and is the launch ``ClientToken``.  When
        EC2 reports the token as taken by an earlier launch (terminated, or
        made with different parameters) the launch is repeated once with
        *fallback_token*; the tag keeps *token* so later lookups still match.

        Raises:
            FatalConfigurationError: No base image matches the name filter.
        """
        existing = await self.find_instance(token)
        if existing:
            logger.info(
                "Reusing instance %s launched for this request.",
                existing,
                extra={"event": events.INSTANCE_REUSED, "instance_id": existing},
            )
            return existing

        image_id = await self.latest_image_id()
        cfg = self._config
        params: dict[str, Any] = {
            "ImageId": image_id,
            "InstanceType": instance_type,
            "MinCount": 1,
            "MaxCount": 1,
            "KeyName": key_name,
            "SubnetId": subnet_id,
            "SecurityGroupIds": [security_group_id],
            "IamInstanceProfile": {"Name": cfg.instance_profile_name},
            "TagSpecifications": [
                {
                    "ResourceType": "instance",
                    "Tags": [
                        {"Key": "Name", "Value": cfg.instance_name_tag},
                        {"Key": IDEMPOTENCY_TAG, "Value": token},
                    ],
                }
            ],
            "BlockDeviceMappings": [
                {
                    "DeviceName": _ROOT_DEVICE_NAME,
                    "Ebs": {"VolumeSize": cfg.root_volume_gib, "VolumeType": "gp3"},
                }
            ],
        }
        try:
            reply = await self._ec2.call("run_instances", ClientToken=token, **params)
        except RemoteCallError as exc:
            if exc.kind is not ErrorKind.ALREADY_EXISTS or not fallback_token:
                raise
            logger.info("Client token already used (%s) — launching with a fresh one.", exc.code)
            reply = await self._ec2.call("run_instances", ClientToken=fallback_token, **params)
        instances = reply.get("Instances") or []
        instance_id = instances[0].get("InstanceId", "") if instances else ""
        if not instance_id:
            raise ProvisioningError(_STEP_LAUNCH, "RunInstances returned no instance id")
        logger.info(
            "Launched %s from %s (%s).",
            instance_id,
            image_id,
            instance_type,
            extra={"event": events.INSTANCE_LAUNCHED, "instance_id": instance_id},
        )
        return instance_id

    async def find_instance(self, token: str) -> str | None:
        """Return a pending/running instance tagged with *token*, if any."""
        reply = await self._ec2.call(
            "describe_instances",
            Filters=[
                {"Name": f"tag:{IDEMPOTENCY_TAG}", "Values": [token]},
                {"Name": "instance-state-name", "Values": ["pending", "running"]},
            ],
        )
        for reservation in reply.get("Reservations") or []:
            for instance in reservation.get("Instances") or []:
                if instance.get("InstanceId"):
                    return instance["InstanceId"]
        return None

    async def latest_image_id(self) -> str:
        """Return the newest available image matching the configured filter."""
        cfg = self._config
        reply = await self._ec2.call(
            "describe_images",
            Owners=[cfg.image_owner],
            Filters=[
                {"Name": "name", "Values": [cfg.image_name_filter]},
                {"Name": "state", "Values": ["available"]},
            ],
        )
        images = [image for image in reply.get("Images") or [] if image.get("ImageId")]
        if not images:
            raise FatalConfigurationError(
                f"No base image matches {cfg.image_name_filter!r} (owner {cfg.image_owner})"
            )
        newest = max(images, key=lambda image: image.get("CreationDate", ""))
        return newest["ImageId"]

    # ------------------------------------------------------------------
    # InstanceReachable
    # ------------------------------------------------------------------

    async def wait_until_reachable(self, instance_id: str) -> None:
        """Wait for ``running`` and then the fixed settle delay."""
        timings = self._config.timings

        # Status checks make a single attempt; the poll interval paces retries.
        async def _check() -> RemoteStatus:
            reply = await self._ec2.call_once("describe_instances", InstanceIds=[instance_id])
            for reservation in reply.get("Reservations") or []:
                for instance in reservation.get("Instances") or []:
                    return instance_status(instance.get("State", {}).get("Name"))
            return RemoteStatus.PENDING

        outcome = await wait_for_terminal(
            RemoteOperation(target=instance_id, operation_id="instance-running", check=_check),
            interval=timings.boot_interval,
            timeout=timings.boot_timeout,
            sleep=self._sleep,
            clock=self._clock,
        )
        if outcome is PollOutcome.FAILED:
            raise ProvisioningError(
                _STEP_REACHABLE,
                f"{instance_id} stopped before reaching 'running'",
                physical_resource_id=instance_id,
            )
        logger.info(
            "%s is %s — settling for %.0f s.",
            instance_id,
            "running" if outcome is PollOutcome.SUCCEEDED else "not yet running",
            timings.settle_delay,
            extra={"event": events.INSTANCE_RUNNING, "instance_id": instance_id},
        )
        await self._sleep(timings.settle_delay)

    # ------------------------------------------------------------------
    # DomainJoined
    # ------------------------------------------------------------------

    async def join_domain(self, instance_id: str, directory_id: str) -> None:
        cfg = self._config
        if not await self._is_registered(instance_id):
            logger.info(
                "%s not yet registered with Systems Manager — waiting %.0f s.",
                instance_id,
                cfg.timings.registration_delay,
            )
            await self._sleep(cfg.timings.registration_delay)

        document = await self.resolve_join_document()
        parameters: dict[str, list[str]] = {
            "directoryId": [directory_id],
            "directoryName": [cfg.domain_name],
        }
        if cfg.dns_ips:
            parameters["dnsIpAddresses"] = list(cfg.dns_ips)

        command_id = await self._send_command(
            instance_id,
            DocumentName=document,
            Parameters=parameters,
            TimeoutSeconds=cfg.join_timeout_seconds,
        )
        await self._await_command(_STEP_DOMAIN_JOIN, instance_id, command_id)
        logger.info(
            "%s joined %s via %s.",
            instance_id,
            cfg.domain_name,
            document,
            extra={"event": events.DOMAIN_JOINED, "instance_id": instance_id},
        )

    async def _is_registered(self, instance_id: str) -> bool:
        reply = await self._ssm.call(
            "describe_instance_information",
            Filters=[{"Key": "InstanceIds", "Values": [instance_id]}],
        )
        return bool(reply.get("InstanceInformationList"))

    async def resolve_join_document(self) -> str:
        """Return the built-in join document, or a custom one (created if needed)."""
        cfg = self._config
        if await self._document_exists(cfg.join_document_name):
            return cfg.join_document_name
        custom = cfg.custom_join_document_name
        if await self._document_exists(custom):
            return custom
        try:
            await self._ssm.call(
                "create_document",
                Name=custom,
                DocumentType="Command",
                DocumentFormat="JSON",
                Content=json.dumps(build_join_document()),
            )
        except RemoteCallError as exc:
            if exc.kind is not ErrorKind.ALREADY_EXISTS:
                raise
            logger.info("Join document %s was created concurrently.", custom)
        else:
            logger.info("Created join document %s.", custom)
        return custom

    async def _document_exists(self, name: str) -> bool:
        try:
            await self._ssm.call("get_document", Name=name)
        except NotFoundError:
            return False
        return True

    # ------------------------------------------------------------------
    # ScriptExecuted
    # ------------------------------------------------------------------

    async def run_setup_script(self, instance_id: str) -> None:
        cfg = self._config
        password = await self._admin_password()
        command_id = await self._send_command(
            instance_id,
            DocumentName=_RUN_POWERSHELL_DOCUMENT,
            Parameters={
                "commands": build_setup_commands(cfg, password),
                "executionTimeout": [str(cfg.script_timeout_seconds)],
            },
            TimeoutSeconds=cfg.script_timeout_seconds,
        )
        await self._await_command(_STEP_SCRIPT, instance_id, command_id)
        logger.info(
            "Setup script finished on %s.",
            instance_id,
            extra={"event": events.SCRIPT_EXECUTED, "instance_id": instance_id},
        )

    async def _admin_password(self) -> str:
        reply = await self._secrets.call("get_secret_value", SecretId=self._config.admin_secret_ref)
        return _parse_admin_secret(reply.get("SecretString") or "")

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def _send_command(self, instance_id: str, **params: Any) -> str:
        reply = await self._ssm.call("send_command", InstanceIds=[instance_id], **params)
        return (reply.get("Command") or {}).get("CommandId", "")

    async def _await_command(self, step: str, instance_id: str, command_id: str) -> None:
        """Wait for *command_id*; FAILED or CANCELLED fails *step*."""
        if not command_id:
            logger.warning("%s: no command id returned for %s — not waiting.", step, instance_id)
            return
        timings = self._config.timings

        async def _check() -> RemoteStatus:
            reply = await self._ssm.call_once(
                "get_command_invocation", CommandId=command_id, InstanceId=instance_id
            )
            return command_status(reply.get("Status"))

        outcome = await wait_for_terminal(
            RemoteOperation(target=instance_id, operation_id=command_id, check=_check),
            interval=timings.command_interval,
            timeout=timings.command_timeout,
            initial_delay=timings.command_initial_delay,
            sleep=self._sleep,
            clock=self._clock,
        )
        if outcome in (PollOutcome.FAILED, PollOutcome.CANCELLED):
            raise ProvisioningError(
                step,
                f"command {command_id} on {instance_id} ended {outcome}",
                physical_resource_id=instance_id,
            )
