"""Compile the placement state machine to Amazon States Language.

One ``runInstances.waitForTaskToken`` task per placement covers both
AttemptPlacement(i) and AwaitCompletion(i): Step Functions parks the task
token, the boot script heartbeats and reports the outcome against it, and
``HeartbeatSeconds`` bounds the wait. Catch edges follow the transition table.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from skyrunner.constants import (
    HEARTBEAT_TIMEOUT_SECONDS,
    STATES_ALL,
    STATES_EC2_ERROR,
    STATES_TASK_FAILED,
    STATES_TIMEOUT,
)
from skyrunner.runner.bootscript import BootScriptTemplate
from skyrunner.runner.launcher import LaunchSettings, run_instances_request
from skyrunner.runner.machine import PlacementMachine, Signal, State, StateKind
from skyrunner.runner.request import Placement

RUN_INSTANCES_RESOURCE = "arn:aws:states:::aws-sdk:ec2:runInstances.waitForTaskToken"
USER_DATA_STATE = "Prepare user data"
TEMPLATE_PATH = "$.ec2.userdataTemplate"


@dataclass(frozen=True, slots=True)
class RuntimeParameterPaths:
    """JSONPaths of the per-job values in the execution input."""

    runner_name: str = "$$.Execution.Name"
    registration_domain: str = "$.githubDomain"
    owner: str = "$.owner"
    repo: str = "$.repo"
    registration_token: str = "$.runnerToken"
    registration_url: str = "$.registrationUrl"


def _literal(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace("'", "\\'").replace("{", "\\{").replace("}", "\\}")
    return f"'{escaped}'"


def user_data_expression(log_group: str, labels: Sequence[str], paths: RuntimeParameterPaths) -> str:
    """``States.Format`` call substituting the nine boot-script values in order."""
    args = [
        "$$.Task.Token",
        _literal(log_group),
        paths.runner_name,
        paths.registration_domain,
        paths.owner,
        paths.repo,
        paths.registration_token,
        _literal(",".join(labels)),
        paths.registration_url,
    ]
    return f"States.Base64Encode(States.Format({TEMPLATE_PATH}, {', '.join(args)}))"


def state_name(state: State) -> str:
    match state.kind:
        case StateKind.ATTEMPT_PLACEMENT | StateKind.AWAIT_COMPLETION:
            assert state.index is not None
            return f"Subnet {state.index + 1}"
        case StateKind.SUCCESS:
            return "Runner succeeded"
        case StateKind.FAILURE:
            return "Runner failed"


def compile_state_machine(
    machine: PlacementMachine,
    placements: Sequence[Placement],
    settings: LaunchSettings,
    template: BootScriptTemplate,
    log_group: str,
    labels: Sequence[str],
    root_device: str,
    heartbeat_timeout: int = HEARTBEAT_TIMEOUT_SECONDS,
    paths: RuntimeParameterPaths = RuntimeParameterPaths(),
) -> dict[str, Any]:
    """Build the state machine definition for one provider."""
    if len(placements) != machine.placement_count:
        raise ValueError(f"{len(placements)} placements for a machine of {machine.placement_count}")

    user_data = user_data_expression(log_group, labels, paths)
    states: dict[str, Any] = {
        USER_DATA_STATE: {
            "Type": "Pass",
            "Parameters": {"userdataTemplate": template.as_states_format()},
            "ResultPath": "$.ec2",
            "Next": state_name(machine.initial),
        }
    }

    for index, placement in enumerate(placements):
        attempt = State(StateKind.ATTEMPT_PLACEMENT, index)
        waiting = machine.next(attempt, Signal.LAUNCHED)

        parameters = run_instances_request(settings, placement, "", root_device, "")
        del parameters["UserData"]
        parameters["UserData.$"] = user_data
        parameters["TagSpecifications"] = [
            {"ResourceType": "instance", "Tags": [{"Key": "Name", "Value.$": paths.runner_name}]}
        ]

        states[state_name(attempt)] = {
            "Type": "Task",
            "Comment": placement.subnet_id,
            "Resource": RUN_INSTANCES_RESOURCE,
            "HeartbeatSeconds": int(heartbeat_timeout),
            "Parameters": parameters,
            "Next": state_name(machine.next(waiting, Signal.TASK_SUCCEEDED)),
            "Catch": [
                {
                    "ErrorEquals": [STATES_EC2_ERROR],
                    "ResultPath": "$.lastSubnetError",
                    "Next": state_name(machine.next(attempt, Signal.RETRYABLE_ERROR)),
                },
                {
                    "ErrorEquals": [STATES_TIMEOUT],
                    "ResultPath": "$.error",
                    "Next": state_name(machine.next(waiting, Signal.HEARTBEAT_TIMEOUT)),
                },
                {
                    "ErrorEquals": [STATES_TASK_FAILED],
                    "ResultPath": "$.error",
                    "Next": state_name(machine.next(waiting, Signal.TASK_FAILED)),
                },
                {
                    "ErrorEquals": [STATES_ALL],
                    "ResultPath": "$.error",
                    "Next": state_name(machine.next(attempt, Signal.FATAL_ERROR)),
                },
            ],
        }

    states["Runner succeeded"] = {"Type": "Succeed"}
    states["Runner failed"] = {
        "Type": "Fail",
        "Error": "RunnerFailed",
        "Cause": "All placements failed, the job failed, or the runner stopped sending heartbeats",
    }

    return {
        "Comment": f"Launch one runner across {len(placements)} placements",
        "StartAt": USER_DATA_STATE,
        "States": states,
    }
