"""Launch orchestrator.

Interprets the placement state machine for one provisioning request:
placements are tried strictly one after another, and once an instance is up
the orchestrator waits on the request's task token until the instance
reports an outcome or stops sending heartbeats.
"""

from __future__ import annotations

from collections.abc import Sequence

from loguru import logger

from skyrunner.constants import HEARTBEAT_TIMEOUT_SECONDS
from skyrunner.exceptions import (
    HeartbeatTimeoutError,
    NonRetryableProvisioningError,
    ProvisioningError,
    RetryableProvisioningError,
    TaskFailedError,
)
from skyrunner.logging import token_prefix
from skyrunner.runner.bootscript import BootScriptParams, BootScriptTemplate
from skyrunner.runner.launcher import InstanceLauncher
from skyrunner.runner.machine import PlacementMachine, Signal, StateKind
from skyrunner.runner.request import (
    FailureCause,
    OutcomeStatus,
    Placement,
    PlacementError,
    RunnerOutcome,
    RunnerProvisioningRequest,
)
from skyrunner.runner.tokens import TaskTokenBroker


class LaunchOrchestrator:
    def __init__(
        self,
        placements: Sequence[Placement],
        launcher: InstanceLauncher,
        broker: TaskTokenBroker,
        template: BootScriptTemplate,
        log_group: str,
        labels: Sequence[str] = (),
        heartbeat_timeout: float = HEARTBEAT_TIMEOUT_SECONDS,
    ) -> None:
        self.machine = PlacementMachine(len(placements))
        self.placements = tuple(placements)
        self.launcher = launcher
        self.broker = broker
        self.template = template
        self.log_group = log_group
        self.labels = tuple(labels)
        self.heartbeat_timeout = heartbeat_timeout

    async def run(self, request: RunnerProvisioningRequest) -> RunnerOutcome:
        """Provision one runner and wait for its job to finish.

        Raises:
            TokenAlreadyClaimedError: If another run holds the same correlation token.
        """
        with logger.contextualize(runner=request.runner_name, token=token_prefix(request.correlation_token)):
            return await self._provision(request)

    async def _provision(self, request: RunnerProvisioningRequest) -> RunnerOutcome:
        token = request.correlation_token
        user_data = self.template.render(BootScriptParams.from_request(request, self.log_group, self.labels))

        # Parked before the first launch: an instance may heartbeat as soon as it boots.
        self.broker.park(token)

        state = self.machine.initial
        errors: list[PlacementError] = []
        placement: Placement | None = None
        instance_id: str | None = None
        cause: FailureCause | None = None
        detail: str | None = None
        result: str | None = None

        try:
            while not state.terminal:
                assert state.index is not None
                placement = self.placements[state.index]
                attempt = logger.bind(placement=str(placement))

                match state.kind:
                    case StateKind.ATTEMPT_PLACEMENT:
                        attempt.info(f"Launching ({state.index + 1}/{len(self.placements)})")
                        try:
                            instance_id = await self.launcher.launch(
                                placement, user_data, request.runner_name, client_token=f"{token[:48]}-{state.index}"
                            )
                        except RetryableProvisioningError as e:
                            errors.append(_placement_error(placement, e))
                            attempt.warning(f"Failed with {e.code} ({e.kind}), trying next placement")
                            state = self.machine.next(state, Signal.RETRYABLE_ERROR)
                            if state.terminal:
                                cause = FailureCause.EXHAUSTED
                                logger.error(f"All {len(self.placements)} placements failed")
                            continue
                        except NonRetryableProvisioningError as e:
                            errors.append(_placement_error(placement, e))
                            cause = FailureCause.NON_RETRYABLE
                            attempt.error(f"Failed with {e.code}: {e.message}")
                            state = self.machine.next(state, Signal.FATAL_ERROR)
                            continue
                        state = self.machine.next(state, Signal.LAUNCHED)

                    case StateKind.AWAIT_COMPLETION:
                        try:
                            result = await self.broker.wait(token, self.heartbeat_timeout)
                        except HeartbeatTimeoutError as e:
                            cause, detail = FailureCause.HEARTBEAT_TIMEOUT, str(e)
                            attempt.error(f"No heartbeat from {instance_id} for {e.timeout:.0f}s")
                            state = self.machine.next(state, Signal.HEARTBEAT_TIMEOUT)
                        except TaskFailedError as e:
                            cause, detail = FailureCause.JOB_FAILED, str(e)
                            attempt.error(f"{instance_id} reported failure ({e.error})")
                            state = self.machine.next(state, Signal.TASK_FAILED)
                        else:
                            attempt.info(f"{instance_id} finished its job")
                            state = self.machine.next(state, Signal.TASK_SUCCEEDED)
        finally:
            self.broker.release(token)

        if state.kind is StateKind.SUCCESS:
            return RunnerOutcome(
                status=OutcomeStatus.SUCCEEDED,
                placement=placement,
                instance_id=instance_id,
                errors=tuple(errors),
                result=result,
            )
        return RunnerOutcome(
            status=OutcomeStatus.FAILED,
            placement=placement,
            instance_id=instance_id,
            cause=cause,
            errors=tuple(errors),
            detail=detail,
        )


def _placement_error(placement: Placement, error: ProvisioningError) -> PlacementError:
    return PlacementError(placement=placement, code=error.code, message=error.message, kind=error.kind)
