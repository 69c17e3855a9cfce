"""Runner provider configuration."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from skyrunner.constants import DEFAULT_RUNNER_INSTANCE_TYPE, DEFAULT_STORAGE_GIB, HEARTBEAT_TIMEOUT_SECONDS


@dataclass(frozen=True, slots=True)
class RunnerProviderConfig:
    """EC2 runner provider configuration.

    Example:
        >>> RunnerProviderConfig(
        ...     name="windows",
        ...     builder="x64-windows-builder",
        ...     subnet_ids=("subnet-1", "subnet-2"),
        ...     instance_profile_arn="arn:aws:iam::123456789012:instance-profile/runner",
        ... )

    Args:
        name: Provider name, unique within the stack.
        builder: Name of the image builder whose AMI this provider launches.
        labels: Runner labels; also used when a request carries none.
        instance_type: Runner instance type; must match the AMI architecture.
        storage_gib: Root volume size.
        spot: Launch spot instead of on-demand instances.
        spot_max_price: Maximum spot price. None uses the on-demand price.
        subnet_ids: Placements, tried in this order.
        security_group_ids: Security groups of runner instances.
        instance_profile_arn: Instance profile allowed to send task callbacks.
        heartbeat_timeout: How long a runner may go without a heartbeat.
        log_group: Runner log group. If None, derived from the provider name.
    """

    name: str
    builder: str
    labels: tuple[str, ...] = ("ec2",)
    instance_type: str = DEFAULT_RUNNER_INSTANCE_TYPE
    storage_gib: int = DEFAULT_STORAGE_GIB
    spot: bool = False
    spot_max_price: str | None = None
    subnet_ids: tuple[str, ...] = ()
    security_group_ids: tuple[str, ...] = ()
    instance_profile_arn: str | None = None
    heartbeat_timeout: timedelta = timedelta(seconds=HEARTBEAT_TIMEOUT_SECONDS)
    log_group: str | None = None
