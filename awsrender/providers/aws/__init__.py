"""AWS EC2 provider for awsrender.

Example:
    from injector import Injector
    from awsrender.providers.aws import AWS, AWSConfigModule, AWSModule, EC2Controller, InstanceHandle

    controller = Injector([AWSConfigModule(AWS(region="eu-west-1")), AWSModule()]).get(EC2Controller)
    async with await controller.ensure_ready(InstanceHandle("i-0abc"), credentials) as instance:
        await instance.run_command("uptime")
"""

from awsrender.providers.aws.clients import AWSConfigModule, AWSModule, EC2ClientFactory
from awsrender.providers.aws.config import AWS
from awsrender.providers.aws.controller import (
    EC2Controller,
    InstanceHandle,
    LifecycleState,
    ReadyInstance,
)

__all__ = [
    "AWS",
    "AWSConfigModule",
    "AWSModule",
    "EC2ClientFactory",
    "EC2Controller",
    "InstanceHandle",
    "LifecycleState",
    "ReadyInstance",
]
