"""Dependency injection modules.

Usage:
    injector = Injector([SkyrunnerModule(), StackConfigModule(context)])
    stack = injector.get(RunnerStack)
"""

from __future__ import annotations

import aioboto3
import boto3
from injector import Binder, Module, provider, singleton

from skyrunner.clients import AwsClients, EC2ClientFactory
from skyrunner.registry import FunctionRegistry
from skyrunner.runner.tokens import TaskTokenBroker
from skyrunner.stack import RunnerStack
from skyrunner.types import StackContext


class SkyrunnerModule(Module):
    """Sessions, client factories and the stack-wide shared state."""

    def __init__(self, profile: str | None = None) -> None:
        self._profile = profile

    @singleton
    @provider
    def provide_session(self) -> boto3.Session:
        return boto3.Session(profile_name=self._profile)

    @singleton
    @provider
    def provide_async_session(self) -> aioboto3.Session:
        return aioboto3.Session(profile_name=self._profile)

    @singleton
    @provider
    def provide_clients(self, session: boto3.Session, context: StackContext) -> AwsClients:
        return AwsClients(session, context.region)

    @singleton
    @provider
    def provide_ec2(self, session: aioboto3.Session, context: StackContext) -> EC2ClientFactory:
        return EC2ClientFactory.from_session(session, context.region)

    @singleton
    @provider
    def provide_registry(self) -> FunctionRegistry:
        return FunctionRegistry()

    @singleton
    @provider
    def provide_broker(self) -> TaskTokenBroker:
        return TaskTokenBroker()

    @singleton
    @provider
    def provide_stack(
        self,
        context: StackContext,
        clients: AwsClients,
        ec2: EC2ClientFactory,
        registry: FunctionRegistry,
        broker: TaskTokenBroker,
    ) -> RunnerStack:
        return RunnerStack(context, clients, ec2, registry=registry, broker=broker)


class StackConfigModule(Module):
    """Binds the identity of the stack being built."""

    def __init__(self, context: StackContext) -> None:
        self._context = context

    def configure(self, binder: Binder) -> None:
        binder.bind(StackContext, to=self._context)


__all__ = [
    "SkyrunnerModule",
    "StackConfigModule",
]
