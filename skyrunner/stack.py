"""Runner stack: the top-level context.

The stack owns the function registry and the task-token broker, and hands
them to the builders and providers it creates. Nothing is shared through
module-level state.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from loguru import logger

from skyrunner.clients import AwsClients, EC2ClientFactory
from skyrunner.exceptions import ConfigurationError
from skyrunner.images.builder import ImageBuilder, builder_for
from skyrunner.images.config import ImageBuilderConfig
from skyrunner.registry import FunctionRegistry
from skyrunner.runner.config import RunnerProviderConfig
from skyrunner.runner.provider import Ec2RunnerProvider
from skyrunner.runner.tokens import TaskTokenBroker
from skyrunner.schedules import ScheduledInvocation, put_schedules
from skyrunner.types import StackContext


@dataclass(frozen=True, slots=True)
class StackDefinition:
    """Everything a stack is made of, before any AWS call is made."""

    context: StackContext
    builders: tuple[ImageBuilderConfig, ...] = ()
    providers: tuple[RunnerProviderConfig, ...] = ()


class RunnerStack:
    def __init__(
        self,
        context: StackContext,
        clients: AwsClients,
        ec2: EC2ClientFactory,
        registry: FunctionRegistry | None = None,
        broker: TaskTokenBroker | None = None,
    ) -> None:
        self.context = context
        self.clients = clients
        self.ec2 = ec2
        self.registry = registry or FunctionRegistry()
        self.broker = broker or TaskTokenBroker()
        self._builders: dict[str, ImageBuilder] = {}
        self._providers: dict[str, Ec2RunnerProvider] = {}

    @classmethod
    def from_definition(
        cls,
        definition: StackDefinition,
        clients: AwsClients,
        ec2: EC2ClientFactory,
    ) -> RunnerStack:
        """Create the stack and all of its builders and providers.

        Providers bind their builder's AMI, so this runs the first image builds.
        """
        stack = cls(definition.context, clients, ec2)
        for builder in definition.builders:
            stack.add_builder(builder)
        for runner in definition.providers:
            stack.add_provider(runner)
        return stack

    @property
    def builders(self) -> Mapping[str, ImageBuilder]:
        return dict(self._builders)

    @property
    def providers(self) -> Mapping[str, Ec2RunnerProvider]:
        return dict(self._providers)

    def add_builder(self, config: ImageBuilderConfig) -> ImageBuilder:
        if config.name in self._builders:
            raise ConfigurationError(f"Builder '{config.name}' already exists in stack {self.context.stack_name}")
        builder = builder_for(config, self.context, self.clients, self.registry)
        self._builders[config.name] = builder
        logger.info(f"Added builder {self.context.builder_path(config.name)} ({type(builder).__name__})")
        return builder

    def builder(self, name: str) -> ImageBuilder:
        try:
            return self._builders[name]
        except KeyError:
            raise KeyError(f"Builder '{name}' not found. Available: {', '.join(self._builders) or 'none'}") from None

    def add_provider(self, config: RunnerProviderConfig) -> Ec2RunnerProvider:
        if config.name in self._providers:
            raise ConfigurationError(f"Provider '{config.name}' already exists in stack {self.context.stack_name}")
        if config.builder not in self._builders:
            raise ConfigurationError(
                f"Provider '{config.name}' uses unknown builder '{config.builder}'. "
                f"Available: {', '.join(self._builders) or 'none'}"
            )

        ami = self._builders[config.builder].bind_ami()
        runner = Ec2RunnerProvider(config, ami, self.ec2, self.broker)
        self._providers[config.name] = runner
        logger.info(f"Added provider {config.name} with {len(runner.placements)} placements")
        return runner

    def provider(self, name: str) -> Ec2RunnerProvider:
        try:
            return self._providers[name]
        except KeyError:
            raise KeyError(f"Provider '{name}' not found. Available: {', '.join(self._providers) or 'none'}") from None

    def schedules(self) -> list[ScheduledInvocation]:
        return [invocation for builder in self._builders.values() for invocation in builder.schedules()]

    def deploy_schedules(self, function_arns: Mapping[str, str]) -> None:
        """Create the EventBridge rules for every collector schedule."""
        put_schedules(self.clients.events, self.schedules(), function_arns)

    def destroy(self) -> None:
        """Tear down every builder; each one deletes the AMIs it owns."""
        for name, builder in self._builders.items():
            logger.info(f"Tearing down builder {self.context.builder_path(name)}")
            builder.teardown()
