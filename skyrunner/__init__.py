"""Skyrunner - ephemeral EC2 CI runners with managed, self-cleaning images.

Example:

    from skyrunner import ImageBuilderConfig, RunnerProviderConfig, RunnerStack

    stack = RunnerStack(context, clients, ec2)
    stack.add_builder(ImageBuilderConfig(name="windows", subnet_ids=("subnet-1",), ...))
    provider = stack.add_provider(RunnerProviderConfig(name="windows", builder="windows", ...))

    outcome = await provider.run(RunnerProvisioningRequest(...))
"""

# Logging (disabled until setup_logging is called)
from skyrunner.logging import LogConfig, setup_logging, teardown_logging

# Types
from skyrunner.types import Architecture, LaunchTemplateRef, Os, RunnerAmi, StackContext

# Exceptions
from skyrunner.exceptions import (
    ConfigurationError,
    HeartbeatTimeoutError,
    NonRetryableProvisioningError,
    ProvisioningError,
    RetryableProvisioningError,
    SkyrunnerError,
    TaskFailedError,
    UnsupportedCapabilityError,
)

# Images
from skyrunner.images import ImageBuilderConfig, ImageComponent, ImageRecipe, builder_for

# Collectors
from skyrunner.collectors import AmiCleaner, ImageReaper

# Runners
from skyrunner.runner import (
    Ec2RunnerProvider,
    Placement,
    RunnerOutcome,
    RunnerProviderConfig,
    RunnerProvisioningRequest,
    TaskTokenBroker,
)

# Stack
from skyrunner.registry import FunctionRegistry
from skyrunner.stack import RunnerStack, StackDefinition

__all__ = [
    "AmiCleaner",
    "Architecture",
    "ConfigurationError",
    "Ec2RunnerProvider",
    "FunctionRegistry",
    "HeartbeatTimeoutError",
    "ImageBuilderConfig",
    "ImageComponent",
    "ImageReaper",
    "ImageRecipe",
    "LaunchTemplateRef",
    "LogConfig",
    "NonRetryableProvisioningError",
    "Os",
    "Placement",
    "ProvisioningError",
    "RetryableProvisioningError",
    "RunnerAmi",
    "RunnerOutcome",
    "RunnerProviderConfig",
    "RunnerProvisioningRequest",
    "RunnerStack",
    "SkyrunnerError",
    "StackContext",
    "StackDefinition",
    "TaskFailedError",
    "TaskTokenBroker",
    "UnsupportedCapabilityError",
    "builder_for",
    "setup_logging",
    "teardown_logging",
]
