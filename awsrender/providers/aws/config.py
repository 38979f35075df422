"""AWS provider configuration.

Immutable configuration dataclass for the EC2 control plane and the SSH
channel built against the instance.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, TypeAlias

from awsrender.constants import (
    DEFAULT_REGION,
    INSTANCE_WAIT_DELAY,
    INSTANCE_WAIT_MAX_ATTEMPTS,
    SSH_CONNECT_TIMEOUT,
    SSH_PORT,
)

ReadinessWaiter: TypeAlias = Literal[
    "instance_status_ok",  # Default: running and both status checks passed
    "instance_running",  # Faster, but sshd may not be up yet
]


@dataclass(frozen=True, slots=True)
class AWS:
    """AWS provider configuration.

    Example:
        >>> from awsrender.providers.aws import AWS
        >>> config = AWS(region="eu-west-1", wait_delay=10)

    Args:
        region: AWS region of the instance. Default: us-east-1
        wait_for: Name of the EC2 waiter used after a start request.
        wait_delay: Seconds between waiter polls.
        wait_max_attempts: Polls before the waiter gives up.
        ssh_port: Port of the instance's SSH server.
        connect_timeout: Seconds allowed for the SSH handshake.
    """

    region: str = DEFAULT_REGION
    wait_for: ReadinessWaiter = "instance_status_ok"
    wait_delay: int = INSTANCE_WAIT_DELAY
    wait_max_attempts: int = INSTANCE_WAIT_MAX_ATTEMPTS
    ssh_port: int = SSH_PORT
    connect_timeout: float = SSH_CONNECT_TIMEOUT

    @property
    def waiter_config(self) -> dict[str, int]:
        return {"Delay": self.wait_delay, "MaxAttempts": self.wait_max_attempts}
