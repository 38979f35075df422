"""AWS client factories with dependency injection.

Provides the aioboto3 session, the EC2 client factory and the controller
built on top of them.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Any

import aioboto3
from injector import Binder, Module, provider, singleton

from .config import AWS
from .controller import EC2Controller

# =============================================================================
# Wrapper Classes for DI (each needs a unique type)
# =============================================================================


class EC2ClientFactory:
    """Wrapper for EC2 client factory.

    Calling the factory returns an async context manager yielding a client.
    """

    def __init__(self, factory: Callable[[], AbstractAsyncContextManager[Any]]) -> None:
        self._factory = factory

    def __call__(self) -> AbstractAsyncContextManager[Any]:
        return self._factory()


# =============================================================================
# AWS Modules
# =============================================================================


class AWSConfigModule(Module):
    """Binds one AWS configuration for the lifetime of an injector."""

    def __init__(self, config: AWS) -> None:
        self._config = config

    def configure(self, binder: Binder) -> None:
        binder.bind(AWS, to=self._config)


class AWSModule(Module):
    """DI module that provides AWS client factories and the controller.

    Usage:
        >>> from injector import Injector
        >>> from awsrender.providers.aws import AWS, AWSConfigModule, AWSModule, EC2Controller
        >>>
        >>> injector = Injector([AWSConfigModule(AWS(region="eu-west-1")), AWSModule()])
        >>> controller = injector.get(EC2Controller)
    """

    @singleton
    @provider
    def provide_session(self) -> aioboto3.Session:
        """Provide singleton aioboto3 session."""
        return aioboto3.Session()

    @singleton
    @provider
    def provide_ec2(self, session: aioboto3.Session, config: AWS) -> EC2ClientFactory:
        """Provide EC2 client factory."""
        @asynccontextmanager
        async def factory() -> AsyncIterator[Any]:
            async with session.client("ec2", region_name=config.region) as client:
                yield client
        return EC2ClientFactory(factory)

    @singleton
    @provider
    def provide_controller(self, ec2: EC2ClientFactory, config: AWS) -> EC2Controller:
        """Provide the lifecycle controller."""
        return EC2Controller(ec2, config)


__all__ = [
    "AWSConfigModule",
    "AWSModule",
    "EC2ClientFactory",
]
