"""EC2 runner provider.

Validates its configuration against the bound AMI at construction time, so a
mismatch is reported before any job is accepted, and hands out the
orchestrator (in process) or the state machine definition (for deployment).
"""

from __future__ import annotations

from functools import cached_property
from typing import Any

from skyrunner.clients import EC2ClientFactory
from skyrunner.constants import DEFAULT_ROOT_DEVICE
from skyrunner.exceptions import ConfigurationError
from skyrunner.runner.asl import RuntimeParameterPaths, compile_state_machine
from skyrunner.runner.bootscript import BootScriptTemplate, template_for
from skyrunner.runner.config import RunnerProviderConfig
from skyrunner.runner.launcher import InstanceLauncher, LaunchSettings
from skyrunner.runner.machine import PlacementMachine
from skyrunner.runner.orchestrator import LaunchOrchestrator
from skyrunner.runner.request import Placement, RunnerOutcome, RunnerProvisioningRequest
from skyrunner.runner.tokens import TaskTokenBroker
from skyrunner.types import RunnerAmi


class Ec2RunnerProvider:
    def __init__(
        self,
        config: RunnerProviderConfig,
        ami: RunnerAmi,
        ec2: EC2ClientFactory,
        broker: TaskTokenBroker,
    ) -> None:
        ami.architecture.ensure_match(config.instance_type, "AMI")
        if not config.subnet_ids:
            raise ConfigurationError(f"Provider '{config.name}' needs at least one subnet")
        if not config.instance_profile_arn:
            raise ConfigurationError(f"Provider '{config.name}' needs an instance profile")
        if config.heartbeat_timeout.total_seconds() < 1:
            raise ConfigurationError(f"Provider '{config.name}' heartbeat timeout must be at least one second")

        self.config = config
        self.ami = ami
        self.broker = broker
        self.placements = tuple(Placement(subnet_id) for subnet_id in config.subnet_ids)
        self.machine = PlacementMachine(len(self.placements))
        self.settings = LaunchSettings(
            launch_template=ami.launch_template,
            instance_profile_arn=config.instance_profile_arn,
            security_group_ids=tuple(config.security_group_ids),
            storage_gib=config.storage_gib,
            spot=config.spot,
            spot_max_price=config.spot_max_price,
        )
        self.launcher = InstanceLauncher(ec2, self.settings)

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def labels(self) -> tuple[str, ...]:
        return self.config.labels

    @property
    def log_group(self) -> str:
        return self.config.log_group or f"/skyrunner/{self.config.name}"

    @property
    def template(self) -> BootScriptTemplate:
        return template_for(self.ami.os)

    @cached_property
    def orchestrator(self) -> LaunchOrchestrator:
        return LaunchOrchestrator(
            self.placements,
            self.launcher,
            self.broker,
            self.template,
            self.log_group,
            self.labels,
            heartbeat_timeout=self.config.heartbeat_timeout.total_seconds(),
        )

    async def run(self, request: RunnerProvisioningRequest) -> RunnerOutcome:
        return await self.orchestrator.run(request)

    def state_machine_definition(
        self,
        root_device: str = DEFAULT_ROOT_DEVICE,
        paths: RuntimeParameterPaths = RuntimeParameterPaths(),
    ) -> dict[str, Any]:
        return compile_state_machine(
            self.machine,
            self.placements,
            self.settings,
            self.template,
            self.log_group,
            self.labels,
            root_device,
            heartbeat_timeout=int(self.config.heartbeat_timeout.total_seconds()),
            paths=paths,
        )
