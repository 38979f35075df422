"""Exception hierarchy for awsrender.

All awsrender-specific exceptions inherit from AwsRenderError, so the
command line can turn any failure of one submission into a single exit path.
"""

from __future__ import annotations

from pathlib import Path


class AwsRenderError(Exception):
    """Base exception for all awsrender errors."""


class ConfigurationError(AwsRenderError):
    """Raised for invalid configuration or missing required settings."""


# =============================================================================
# Resource lifecycle
# =============================================================================


class LifecycleError(AwsRenderError):
    """Raised when the instance cannot be brought into a usable state."""

    def __init__(self, instance_id: str, message: str) -> None:
        self.instance_id = instance_id
        super().__init__(f"Instance {instance_id}: {message}")


class ResourceNotFoundError(LifecycleError):
    """Raised when the control plane does not know the instance."""


class StartFailedError(LifecycleError):
    """Raised when starting the instance or waiting for it fails."""


class AddressUnresolvedError(LifecycleError):
    """Raised when a running instance has no reachable public address."""


class InstanceNotUsableError(LifecycleError):
    """Raised when the instance is reachable but cannot run a trivial command."""

    def __init__(self, instance_id: str, message: str, exit_status: int | None = None) -> None:
        self.exit_status = exit_status
        super().__init__(instance_id, message)


# =============================================================================
# Secure command channel
# =============================================================================


class InvalidHostKeyError(AwsRenderError):
    """Raised when the pinned host key text cannot be parsed."""


class ConnectFailedError(AwsRenderError):
    """Raised when the SSH connection cannot be established.

    ``reason`` is one of ``unreachable``, ``auth-rejected``,
    ``host-key-mismatch`` or ``protocol``.
    """

    def __init__(self, address: str, reason: str, detail: str) -> None:
        self.address = address
        self.reason = reason
        super().__init__(f"Unable to connect to {address} ({reason}): {detail}")


class CommandTransportError(AwsRenderError):
    """Raised when a command sub-session fails to open or communicate.

    For a broken transport ``exit_status`` is the sentinel status, the same
    value a command with no exit code reports; the raised error is what tells
    the two apart. A remote file write that exits non-zero carries its status.
    """

    def __init__(self, command: str, exit_status: int, detail: str) -> None:
        self.command = command
        self.exit_status = exit_status
        super().__init__(f"Command transport failed for {command!r}: {detail}")


class SourceInvalidError(AwsRenderError):
    """Raised when a local upload source is missing or not a regular file."""

    def __init__(self, path: str | Path, message: str) -> None:
        self.path = str(path)
        super().__init__(f"Source {self.path} {message}")


# =============================================================================
# Job orchestration
# =============================================================================


class InstanceCheckError(AwsRenderError):
    """Raised when a pre-flight check on the instance fails."""

    def __init__(self, description: str, exit_status: int) -> None:
        self.description = description
        self.exit_status = exit_status
        super().__init__(f"{description} (exit status {exit_status})")


class JobSetupError(AwsRenderError):
    """Raised when preparing the remote job fails."""
