"""Custom exception hierarchy for skyrunner.

All skyrunner-specific exceptions inherit from SkyrunnerError, enabling
callers to catch every skyrunner error with a single except clause.
"""

from __future__ import annotations

from skyrunner.constants import ErrorKind
from skyrunner.logging import token_prefix


class SkyrunnerError(Exception):
    """Base exception for all skyrunner errors."""


class ConfigurationError(SkyrunnerError):
    """Raised at setup time for invalid or incompatible configuration."""


class UnsupportedCapabilityError(ConfigurationError):
    """Raised when an image builder variant is asked for a capability it lacks."""

    def __init__(self, builder: str, capability: str) -> None:
        self.builder = builder
        self.capability = capability
        super().__init__(f"{builder} does not support {capability}")


class TemplateError(ConfigurationError):
    """Raised when a boot script is rendered with the wrong number of values."""


class ProvisioningError(SkyrunnerError):
    """Raised when an instance launch fails."""

    def __init__(self, placement: str, code: str, message: str, kind: ErrorKind) -> None:
        self.placement = placement
        self.code = code
        self.message = message
        self.kind = kind
        super().__init__(f"{placement}: {code}: {message}")


class RetryableProvisioningError(ProvisioningError):
    """Launch failed for a capacity or timeout reason; try the next placement."""


class NonRetryableProvisioningError(ProvisioningError):
    """Launch failed structurally; remaining placements are skipped."""


class TaskFailedError(SkyrunnerError):
    """The instance explicitly reported failure for its task token."""

    def __init__(self, token: str, error: str | None = None, cause: str | None = None) -> None:
        self.token = token
        self.error = error
        self.cause = cause
        super().__init__(f"Task {token_prefix(token)} failed: {error or 'no error'} ({cause or 'no cause'})")


class HeartbeatTimeoutError(SkyrunnerError):
    """No heartbeat or completion arrived within the heartbeat window."""

    def __init__(self, token: str, timeout: float) -> None:
        self.token = token
        self.timeout = timeout
        super().__init__(f"Task {token_prefix(token)} sent no heartbeat for {timeout:.0f}s")


class UnknownTaskTokenError(SkyrunnerError):
    """A callback referenced a task token that is not parked (or already closed)."""

    def __init__(self, token: str) -> None:
        self.token = token
        super().__init__(f"Task token {token_prefix(token)} is not awaiting completion")


class TokenAlreadyClaimedError(SkyrunnerError):
    """A second launch tried to claim a correlation token that is still active."""

    def __init__(self, token: str) -> None:
        self.token = token
        super().__init__(f"Task token {token_prefix(token)} is already claimed by an active request")


class InvalidTransitionError(SkyrunnerError):
    """The state machine has no edge for a (state, signal) pair."""


class ImageBuildError(SkyrunnerError):
    """An image build ended without producing an image artifact."""

    def __init__(self, arn: str, status: str, reason: str | None = None) -> None:
        self.arn = arn
        self.status = status
        self.reason = reason
        super().__init__(f"Image build {arn} ended {status}: {reason or 'no reason given'}")
