"""Centralized constants and enums for skyrunner.

Tag keys, fixed fast-launch policy, timeouts and provider error names are
defined here so the orchestrator, the image pipeline and the collectors agree
on them.
"""

from __future__ import annotations

from datetime import timedelta
from enum import StrEnum
from typing import Final

# =============================================================================
# AWS Resource Tags
# =============================================================================


class RunnerTag(StrEnum):
    """Tag keys carried by every image artifact a builder produces.

    STACK and BUILDER together are the ownership key used by the AMI cleaner.
    The cleaner copies them onto an image's snapshots, with IMAGE naming the
    image, before deregistering it.
    """

    NAME = "Name"
    STACK = "GitHubRunners:Stack"
    BUILDER = "GitHubRunners:Builder"
    IMAGE = "GitHubRunners:Image"


# =============================================================================
# Launch Orchestration
# =============================================================================

HEARTBEAT_TIMEOUT_SECONDS: Final = 600
LAUNCH_REQUEST_TIMEOUT_SECONDS: Final = 60

DEFAULT_STORAGE_GIB: Final = 30  # minimum for Windows
DEFAULT_ROOT_DEVICE: Final = "/dev/sda1"
DEFAULT_RUNNER_INSTANCE_TYPE: Final = "m5.large"
DEFAULT_REGISTRATION_DOMAIN: Final = "github.com"

# Errors Step Functions raises for an EC2 SDK task and for a missed heartbeat.
STATES_EC2_ERROR: Final = "Ec2.Ec2Exception"
STATES_TIMEOUT: Final = "States.Timeout"
STATES_TASK_FAILED: Final = "States.TaskFailed"
STATES_ALL: Final = "States.ALL"


class ErrorKind(StrEnum):
    """Coarse classification of a retryable launch error, kept for alerting."""

    CAPACITY = "capacity"
    SPOT = "spot"
    TIMEOUT = "timeout"
    THROTTLE = "throttle"
    NETWORK = "network"
    FATAL = "fatal"


# EC2 error codes that advance the placement chain instead of failing the job.
RETRYABLE_EC2_ERRORS: Final[dict[str, ErrorKind]] = {
    "InsufficientInstanceCapacity": ErrorKind.CAPACITY,
    "InsufficientCapacity": ErrorKind.CAPACITY,
    "InsufficientHostCapacity": ErrorKind.CAPACITY,
    "Unsupported": ErrorKind.CAPACITY,
    "InsufficientFreeAddressesInSubnet": ErrorKind.NETWORK,
    "SpotMaxPriceTooLow": ErrorKind.SPOT,
    "MaxSpotInstanceCountExceeded": ErrorKind.SPOT,
    "RequestLimitExceeded": ErrorKind.THROTTLE,
}


# =============================================================================
# Image Lifecycle
# =============================================================================

FAST_LAUNCH_MAX_PARALLEL_LAUNCHES: Final = 6
FAST_LAUNCH_TARGET_SNAPSHOTS: Final = 5

DEFAULT_REBUILD_INTERVAL: Final = timedelta(days=7)
DEFAULT_BUILDER_INSTANCE_TYPE: Final = "m5.large"
DEFAULT_TEMPLATE_INSTANCE_TYPE: Final = "t3a.large"
RECIPE_VERSION: Final = "1.0.0"

# Start condition for scheduled pipeline runs; always matches, so scheduled
# rebuilds happen regardless of whether the recipe changed.
PIPELINE_START_CONDITION: Final = "EXPRESSION_MATCH_ONLY"

IMAGEBUILDER_LOG_GROUP_PREFIX: Final = "/aws/imagebuilder/"


# =============================================================================
# Garbage Collection
# =============================================================================

CLEANER_FUNCTION: Final = "delete-ami"
REAPER_FUNCTION: Final = "reaper"
CLEANER_PHYSICAL_ID: Final = "DeleteAmis"
COLLECTOR_INTERVAL: Final = timedelta(days=1)

THROTTLING_ERRORS: Final = frozenset({"RequestLimitExceeded", "Throttling", "ThrottlingException"})
