"""Runner launch orchestration on EC2."""

from skyrunner.runner.config import RunnerProviderConfig
from skyrunner.runner.orchestrator import LaunchOrchestrator
from skyrunner.runner.provider import Ec2RunnerProvider
from skyrunner.runner.request import (
    OutcomeStatus,
    Placement,
    PlacementError,
    RunnerOutcome,
    RunnerProvisioningRequest,
)
from skyrunner.runner.tokens import TaskTokenBroker

__all__ = [
    "Ec2RunnerProvider",
    "LaunchOrchestrator",
    "OutcomeStatus",
    "Placement",
    "PlacementError",
    "RunnerOutcome",
    "RunnerProviderConfig",
    "RunnerProvisioningRequest",
    "TaskTokenBroker",
]
