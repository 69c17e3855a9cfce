"""Per-job provisioning request and its outcome."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from uuid import uuid4

from skyrunner.constants import DEFAULT_REGISTRATION_DOMAIN, ErrorKind


@dataclass(frozen=True, slots=True)
class Placement:
    """A subnet an instance may be launched into."""

    subnet_id: str
    availability_zone: str | None = None

    def __str__(self) -> str:
        return self.subnet_id


@dataclass(frozen=True, slots=True)
class RunnerProvisioningRequest:
    """Everything needed to start one runner for one job.

    ``correlation_token`` binds the instance's heartbeat and completion
    callbacks back to this request; it is never shared between requests.
    """

    runner_name: str
    owner: str
    repo: str
    registration_token: str
    registration_url: str
    labels: tuple[str, ...] = ()
    registration_domain: str = DEFAULT_REGISTRATION_DOMAIN
    correlation_token: str = field(default_factory=lambda: uuid4().hex)


class OutcomeStatus(StrEnum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class FailureCause(StrEnum):
    JOB_FAILED = "job_failed"
    HEARTBEAT_TIMEOUT = "heartbeat_timeout"
    NON_RETRYABLE = "non_retryable"
    EXHAUSTED = "placements_exhausted"


@dataclass(frozen=True, slots=True)
class PlacementError:
    """Diagnostic record of one failed launch attempt."""

    placement: Placement
    code: str
    message: str
    kind: ErrorKind

    def __str__(self) -> str:
        return f"{self.placement}: {self.code} ({self.kind.value}): {self.message}"


@dataclass(frozen=True, slots=True)
class RunnerOutcome:
    status: OutcomeStatus
    placement: Placement | None = None
    instance_id: str | None = None
    cause: FailureCause | None = None
    errors: tuple[PlacementError, ...] = ()
    detail: str | None = None
    result: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is OutcomeStatus.SUCCEEDED

    @property
    def reason(self) -> str:
        """Human-readable failure reason, listing every placement that failed."""
        if self.succeeded:
            return "succeeded"
        parts = [self.cause.value if self.cause else "failed"]
        if self.detail:
            parts.append(self.detail)
        parts.extend(str(e) for e in self.errors)
        return "; ".join(parts)
