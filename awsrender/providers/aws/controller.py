"""Lifecycle controller for a single EC2 instance.

Brings a named instance from an unknown or stopped state to one where it
accepts SSH commands:

    UNKNOWN -> (describe) -> NOT_RUNNING | RUNNING
            -> (start + waiter, if not running) -> RUNNING
            -> (describe, public address) -> address known
            -> (open channel + probe) -> ready

Every failure along the way is fatal to the call; the only waiting is the
EC2 waiter after a start request.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import TYPE_CHECKING, Any

from botocore.exceptions import BotoCoreError, ClientError, WaiterError
from loguru import logger

from awsrender.constants import INSTANCE_NOT_FOUND_CODES, PROBE_COMMAND, RUNNING_STATE
from awsrender.exceptions import (
    AddressUnresolvedError,
    CommandTransportError,
    InstanceNotUsableError,
    LifecycleError,
    ResourceNotFoundError,
    StartFailedError,
)
from awsrender.infra.ssh import CommandResult, Credentials, SSHChannel, parse_host_key

if TYPE_CHECKING:
    from .clients import EC2ClientFactory
    from .config import AWS


class LifecycleState(Enum):
    """Where an instance is in the readiness sequence."""

    UNKNOWN = auto()
    NOT_RUNNING = auto()
    STARTING = auto()
    RUNNING = auto()


@dataclass
class InstanceHandle:
    """Identity and last known state of one EC2 instance.

    ``address`` is only valid for the current lifecycle session; it is
    cleared and re-resolved every time the controller prepares the instance.
    """

    instance_id: str
    address: str | None = None
    state: LifecycleState = LifecycleState.UNKNOWN
    verified: bool = False

    @property
    def ready(self) -> bool:
        return self.state is LifecycleState.RUNNING and self.address is not None and self.verified


def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


# =============================================================================
# Ready Instance
# =============================================================================


@dataclass
class ReadyInstance:
    """A running instance with its one verified SSH channel.

    Callers never touch the channel directly; every command and transfer
    goes through the methods below.
    """

    handle: InstanceHandle
    _channel: SSHChannel = field(repr=False)
    _closed: bool = field(default=False, repr=False)

    @property
    def instance_id(self) -> str:
        return self.handle.instance_id

    @property
    def address(self) -> str:
        return self._channel.address

    async def close(self) -> None:
        """Release the channel. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self.handle.verified = False
        await self._channel.close()

    async def __aenter__(self) -> ReadyInstance:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    async def run_command(self, command: str) -> int:
        return await self._channel.run_command(command)

    async def run_command_captured(self, command: str) -> CommandResult:
        return await self._channel.run_command_captured(command)

    async def run_detached(
        self,
        command: str,
        *,
        discard_output: bool = True,
        status_path: str | None = None,
    ) -> int:
        return await self._channel.run_detached(
            command, discard_output=discard_output, status_path=status_path,
        )

    async def read_detached_status(self, status_path: str) -> int | None:
        return await self._channel.read_detached_status(status_path)

    async def upload_bytes(self, payload: bytes, remote_path: str) -> None:
        await self._channel.upload_bytes(payload, remote_path)

    async def upload_file(self, local_path: str | Path, remote_path: str) -> None:
        await self._channel.upload_file(local_path, remote_path)


# =============================================================================
# Controller
# =============================================================================


class EC2Controller:
    """Queries and changes the power state of EC2 instances.

    Args:
        ec2: Factory for EC2 clients.
        config: Region, waiter and SSH settings.
    """

    def __init__(self, ec2: EC2ClientFactory, config: AWS) -> None:
        self.ec2 = ec2
        self.config = config

    async def ensure_ready(self, handle: InstanceHandle, credentials: Credentials) -> ReadyInstance:
        """Bring ``handle`` to a state where it accepts commands.

        Credentials and the host key are checked before any control-plane
        call, so a bad pin never starts a billed instance.

        Raises:
            ConfigurationError: The credentials are incomplete.
            InvalidHostKeyError: The pinned host key cannot be parsed.
            ResourceNotFoundError: The instance does not exist or cannot be queried.
            StartFailedError: The start request or the readiness wait failed.
            AddressUnresolvedError: The running instance has no public address.
            ConnectFailedError: The SSH connection could not be established.
            InstanceNotUsableError: The instance could not run a trivial command.
        """
        credentials.validate()
        parse_host_key(credentials.host_key)

        handle.verified = False
        handle.address = None
        instance_id = handle.instance_id
        log = logger.bind(instance_id=instance_id)

        async with self.ec2() as ec2:
            state = await self._query_state(ec2, instance_id)
            handle.state = (
                LifecycleState.RUNNING if state == RUNNING_STATE else LifecycleState.NOT_RUNNING
            )
            log.info("Instance is {state}", state=state)

            if handle.state is not LifecycleState.RUNNING:
                handle.state = LifecycleState.STARTING
                await self._start(ec2, instance_id)
                handle.state = LifecycleState.RUNNING

            handle.address = await self._resolve_address(ec2, instance_id)

        channel = await SSHChannel.open(
            handle.address,
            credentials,
            port=self.config.ssh_port,
            connect_timeout=self.config.connect_timeout,
        )
        try:
            await self._probe(channel, instance_id)
        except BaseException:
            await channel.close()
            raise

        handle.verified = True
        log.info("Instance ready at {address}", address=handle.address)
        return ReadyInstance(handle=handle, _channel=channel)

    async def stop(self, handle: InstanceHandle) -> None:
        """Request a stop; does not wait for it to complete."""
        logger.info("Stopping instance {id}", id=handle.instance_id)
        async with self.ec2() as ec2:
            try:
                await ec2.stop_instances(InstanceIds=[handle.instance_id])
            except ClientError as e:
                if _error_code(e) in INSTANCE_NOT_FOUND_CODES:
                    raise ResourceNotFoundError(handle.instance_id, f"not found: {e}") from e
                raise LifecycleError(handle.instance_id, f"error stopping instance: {e}") from e
        handle.state = LifecycleState.NOT_RUNNING
        handle.address = None
        handle.verified = False

    # -------------------------------------------------------------------------
    # Control plane steps
    # -------------------------------------------------------------------------

    async def _query_state(self, ec2: Any, instance_id: str) -> str:
        """Current state name of the instance.

        Any failure to query is reported as ResourceNotFoundError with the
        control-plane cause attached: an instance the caller cannot describe
        is not available to it, whatever the reason.
        """
        try:
            response = await ec2.describe_instance_status(
                InstanceIds=[instance_id],
                IncludeAllInstances=True,
            )
        except ClientError as e:
            if _error_code(e) in INSTANCE_NOT_FOUND_CODES:
                raise ResourceNotFoundError(instance_id, f"not found: {e}") from e
            raise ResourceNotFoundError(instance_id, f"error getting instance status: {e}") from e
        except BotoCoreError as e:
            raise ResourceNotFoundError(instance_id, f"error getting instance status: {e}") from e

        statuses = response.get("InstanceStatuses", [])
        if not statuses:
            raise ResourceNotFoundError(instance_id, "no status reported by EC2")
        return statuses[0].get("InstanceState", {}).get("Name", "")

    async def _start(self, ec2: Any, instance_id: str) -> None:
        logger.info("Starting EC2 instance {id}", id=instance_id)
        try:
            await ec2.start_instances(InstanceIds=[instance_id])
        except ClientError as e:
            if _error_code(e) in INSTANCE_NOT_FOUND_CODES:
                raise ResourceNotFoundError(instance_id, f"not found: {e}") from e
            raise StartFailedError(instance_id, f"error starting instance: {e}") from e

        logger.info(
            "Waiting for instance {id} to become ready (may take a few minutes)", id=instance_id,
        )
        waiter = ec2.get_waiter(self.config.wait_for)
        try:
            await waiter.wait(
                InstanceIds=[instance_id],
                WaiterConfig=self.config.waiter_config,
            )
        except (WaiterError, ClientError, BotoCoreError) as e:
            raise StartFailedError(
                instance_id, f"error waiting for instance to become available: {e}",
            ) from e

    async def _resolve_address(self, ec2: Any, instance_id: str) -> str:
        try:
            response = await ec2.describe_instances(InstanceIds=[instance_id])
        except (ClientError, BotoCoreError) as e:
            raise AddressUnresolvedError(instance_id, f"error getting instance details: {e}") from e

        instances = [i for r in response.get("Reservations", []) for i in r.get("Instances", [])]
        raw = instances[0].get("PublicIpAddress") if instances else None
        if not raw:
            raise AddressUnresolvedError(instance_id, "no public IP address")
        try:
            return str(ipaddress.ip_address(raw))
        except ValueError as e:
            raise AddressUnresolvedError(instance_id, f"error parsing IP address {raw!r}") from e

    async def _probe(self, channel: SSHChannel, instance_id: str) -> None:
        try:
            status = await channel.run_command(PROBE_COMMAND)
        except CommandTransportError as e:
            raise InstanceNotUsableError(
                instance_id, f"error running commands on instance: {e}", e.exit_status,
            ) from e
        if status != 0:
            raise InstanceNotUsableError(
                instance_id, f"probe command exited with status {status}", status,
            )
