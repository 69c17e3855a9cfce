"""Boot scripts injected as instance user data.

Each script takes nine positional values, always in this order:

    0  task token           correlation token for heartbeat/success/failure
    1  log group            CloudWatch log group for the runner log
    2  runner name
    3  registration domain
    4  owner
    5  repo
    6  registration token
    7  labels               comma separated
    8  registration URL

Every exit path (runner registration failure, job failure, script error)
reaches the power-off step: Windows wraps the job in try/finally, Linux in an
EXIT trap. A heartbeat loop starts before the job and is never stopped; it
dies with the machine.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Sequence
from dataclasses import dataclass

from skyrunner.exceptions import TemplateError
from skyrunner.runner.request import RunnerProvisioningRequest
from skyrunner.types import Os

PLACEHOLDER = "{}"


@dataclass(frozen=True, slots=True)
class BootScriptParams:
    """The nine boot-script values. Field order is the substitution order."""

    task_token: str
    log_group: str
    runner_name: str
    registration_domain: str
    owner: str
    repo: str
    registration_token: str
    labels: str
    registration_url: str

    def values(self) -> tuple[str, ...]:
        return tuple(getattr(self, f.name) for f in dataclasses.fields(self))

    @classmethod
    def from_request(
        cls,
        request: RunnerProvisioningRequest,
        log_group: str,
        labels: Sequence[str] = (),
    ) -> BootScriptParams:
        return cls(
            task_token=request.correlation_token,
            log_group=log_group,
            runner_name=request.runner_name,
            registration_domain=request.registration_domain,
            owner=request.owner,
            repo=request.repo,
            registration_token=request.registration_token,
            labels=",".join(request.labels or labels),
            registration_url=request.registration_url,
        )


PARAMETER_COUNT = len(dataclasses.fields(BootScriptParams))


@dataclass(frozen=True, slots=True)
class BootScriptTemplate:
    """A boot script with exactly ``PARAMETER_COUNT`` positional placeholders.

    Literal braces are fine as long as they never form ``{}``.
    """

    os: Os
    text: str

    def __post_init__(self) -> None:
        if self.placeholder_count != PARAMETER_COUNT:
            raise TemplateError(
                f"{self.os.value} boot script has {self.placeholder_count} placeholders, "
                f"expected {PARAMETER_COUNT}"
            )

    @property
    def placeholder_count(self) -> int:
        return self.text.count(PLACEHOLDER)

    def render(self, params: BootScriptParams) -> str:
        return self.render_values(params.values())

    def render_values(self, values: Sequence[str]) -> str:
        """Substitute ``values`` positionally.

        Raises:
            TemplateError: If the number of values differs from the placeholder count.
        """
        if len(values) != self.placeholder_count:
            raise TemplateError(f"Boot script takes {self.placeholder_count} values, got {len(values)}")

        parts = self.text.split(PLACEHOLDER)
        rendered = [parts[0]]
        for value, part in zip(values, parts[1:], strict=True):
            rendered.append(str(value))
            rendered.append(part)
        return "".join(rendered)

    def as_states_format(self) -> str:
        """The template escaped for ``States.Format``; placeholders stay as ``{}``."""
        parts = self.text.split(PLACEHOLDER)
        return PLACEHOLDER.join(_escape_states(p) for p in parts)


def _escape_states(text: str) -> str:
    return text.replace("\\", "\\\\").replace("{", "\\{").replace("}", "\\}")


WINDOWS_TEMPLATE = BootScriptTemplate(
    Os.WINDOWS,
    """<powershell>
$TASK_TOKEN = "{}"
$logGroupName = "{}"
$runnerNamePath = "{}"
$githubDomainPath = "{}"
$ownerPath = "{}"
$repoPath = "{}"
$runnerTokenPath = "{}"
$labels = "{}"
$registrationURL = "{}"

function setup_logs () {
  echo "{
    `"logs`": {
      `"log_stream_name`": `"unknown`",
      `"logs_collected`": {
        `"files`": {
          `"collect_list`": [
            {
              `"file_path`": `"/actions/runner.log`",
              `"log_group_name`": `"$logGroupName`",
              `"log_stream_name`": `"$runnerNamePath`",
              `"timezone`": `"UTC`"
            }
          ]
        }
      }
    }
  }" | Out-File -Encoding ASCII $Env:TEMP/log.conf
  & "C:/Program Files/Amazon/AmazonCloudWatchAgent/amazon-cloudwatch-agent-ctl.ps1" -a fetch-config -m ec2 -s -c file:$Env:TEMP/log.conf
}

function action () {
  cd /actions
  $RunnerVersion = Get-Content RUNNER_VERSION -Raw
  if ($RunnerVersion -eq "latest") { $RunnerFlags = "" } else { $RunnerFlags = "--disableupdate" }
  ./config.cmd --unattended --url "$registrationURL" --token "$runnerTokenPath" --ephemeral --work _work --labels "$labels,skyrunner:started:$(Get-Date -UFormat +%s)" $RunnerFlags --name "$runnerNamePath" 2>&1 | Out-File -Encoding ASCII -Append /actions/runner.log
  if ($LASTEXITCODE -ne 0) { return 1 }

  ./run.cmd 2>&1 | Out-File -Encoding ASCII -Append /actions/runner.log
  if ($LASTEXITCODE -ne 0) { return 2 }

  $STATUS = Select-String -Path './_diag/*.log' -Pattern 'finish job request for job [0-9a-f\\-]+ with result: (.*)' | %{ $_.Matches.Groups[1].Value } | Select-Object -Last 1
  if ($STATUS) {
    echo "SKYRUNNER JOB DONE $labels $STATUS" | Out-File -Encoding ASCII -Append /actions/runner.log
  }
  return 0
}

$RESULT = 1
try {
  Start-Job -ScriptBlock {
    while (1) {
      aws stepfunctions send-task-heartbeat --task-token "$using:TASK_TOKEN"
      sleep 60
    }
  }
  setup_logs
  $RESULT = action
} finally {
  if ($RESULT -eq 0) {
    aws stepfunctions send-task-success --task-token "$TASK_TOKEN" --task-output '{ }'
  } else {
    aws stepfunctions send-task-failure --task-token "$TASK_TOKEN" --error "exit $RESULT"
  }
  Start-Sleep -Seconds 10  # cloudwatch agent flushes every 5 seconds
  Stop-Computer -ComputerName localhost -Force
}
</powershell>
""",
)

LINUX_TEMPLATE = BootScriptTemplate(
    Os.LINUX,
    """#!/bin/bash -x
TASK_TOKEN="{}"
logGroupName="{}"
runnerNamePath="{}"
githubDomainPath="{}"
ownerPath="{}"
repoPath="{}"
runnerTokenPath="{}"
labels="{}"
registrationURL="{}"

RESULT=1

finish () {
  if [ "$RESULT" -eq 0 ]; then
    aws stepfunctions send-task-success --task-token "$TASK_TOKEN" --task-output '{ }'
  else
    aws stepfunctions send-task-failure --task-token "$TASK_TOKEN" --error "exit $RESULT"
  fi
  sleep 10  # cloudwatch agent flushes every 5 seconds
  poweroff
}
trap finish EXIT

heartbeat () {
  while true; do
    aws stepfunctions send-task-heartbeat --task-token "$TASK_TOKEN"
    sleep 60
  done
}

setup_logs () {
  cat <<EOF > /tmp/log.conf
{
  "logs": {
    "log_stream_name": "unknown",
    "logs_collected": {
      "files": {
        "collect_list": [
          {
            "file_path": "/var/log/runner.log",
            "log_group_name": "$logGroupName",
            "log_stream_name": "$runnerNamePath",
            "timezone": "UTC"
          }
        ]
      }
    }
  }
}
EOF
  /opt/aws/amazon-cloudwatch-agent/bin/amazon-cloudwatch-agent-ctl -a fetch-config -m ec2 -s -c file:/tmp/log.conf
}

action () {
  if [ "$(cat /home/runner/RUNNER_VERSION)" = "latest" ]; then RUNNER_FLAGS=""; else RUNNER_FLAGS="--disableupdate"; fi
  sudo -Hu runner /home/runner/config.sh --unattended --url "$registrationURL" --token "$runnerTokenPath" --ephemeral --work _work --labels "$labels,skyrunner:started:$(date +%s)" $RUNNER_FLAGS --name "$runnerNamePath" >> /var/log/runner.log 2>&1 || return 1
  sudo --preserve-env=AWS_REGION -Hu runner /home/runner/run.sh >> /var/log/runner.log 2>&1 || return 2

  STATUS=$(grep -Phors "finish job request for job [0-9a-f\\-]+ with result: \\K.*" /home/runner/_diag/ | tail -n1)
  [ -n "$STATUS" ] && echo "SKYRUNNER JOB DONE $labels $STATUS" >> /var/log/runner.log
  return 0
}

heartbeat &
setup_logs
action
RESULT=$?
""",
)

_TEMPLATES = {Os.WINDOWS: WINDOWS_TEMPLATE, Os.LINUX: LINUX_TEMPLATE}


def template_for(os: Os) -> BootScriptTemplate:
    return _TEMPLATES[os]
