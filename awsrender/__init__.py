"""awsrender - render OpenSCAD models on an EC2 instance.

Starts a named instance if needed, uploads the model and a job script over a
host-key-pinned SSH channel, and launches the job detached. Results land in
S3; the instance can stop itself when done.
"""

from awsrender.exceptions import (
    AddressUnresolvedError,
    AwsRenderError,
    CommandTransportError,
    ConfigurationError,
    ConnectFailedError,
    InstanceCheckError,
    InstanceNotUsableError,
    InvalidHostKeyError,
    JobSetupError,
    LifecycleError,
    ResourceNotFoundError,
    SourceInvalidError,
    StartFailedError,
)
from awsrender.infra.ssh import CommandResult, Credentials, SSHChannel
from awsrender.providers.aws import AWS, EC2Controller, InstanceHandle, ReadyInstance

__version__ = "1.1.0"

__all__ = [
    "AWS",
    "AddressUnresolvedError",
    "AwsRenderError",
    "CommandResult",
    "CommandTransportError",
    "ConfigurationError",
    "ConnectFailedError",
    "Credentials",
    "EC2Controller",
    "InstanceCheckError",
    "InstanceHandle",
    "InstanceNotUsableError",
    "InvalidHostKeyError",
    "JobSetupError",
    "LifecycleError",
    "ReadyInstance",
    "ResourceNotFoundError",
    "SSHChannel",
    "SourceInvalidError",
    "StartFailedError",
    "__version__",
]
