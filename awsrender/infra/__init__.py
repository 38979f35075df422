"""Internal machinery - the SSH command channel."""

from .ssh import (
    CommandResult,
    Credentials,
    HostKeyPin,
    SSHChannel,
    detached_command,
    parse_host_key,
    shell_quote,
)

__all__ = [
    "CommandResult",
    "Credentials",
    "HostKeyPin",
    "SSHChannel",
    "detached_command",
    "parse_host_key",
    "shell_quote",
]
