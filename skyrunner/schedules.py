"""Timer triggers for pipelines and collectors.

Every scheduled unit of work is stateless: a rule fires, a registered
function runs once with a fixed payload, and nothing stays resident.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from loguru import logger


def rate_expression(interval: timedelta) -> str:
    """Render an EventBridge / Image Builder ``rate()`` expression.

    Uses the largest whole unit (days, hours, minutes) that divides the interval.

    Raises:
        ValueError: If the interval is not a positive whole number of minutes.
    """
    seconds = int(interval.total_seconds())
    if seconds <= 0 or seconds % 60 or interval.microseconds:
        raise ValueError(f"Schedule interval must be a positive whole number of minutes, got {interval}")

    minutes = seconds // 60
    for size, unit in ((1440, "day"), (60, "hour"), (1, "minute")):
        if minutes % size == 0:
            value = minutes // size
            return f"rate({value} {unit}{'s' if value != 1 else ''})"
    raise AssertionError("unreachable")


@dataclass(frozen=True, slots=True)
class ScheduledInvocation:
    """A rule that invokes a registered function on a fixed interval."""

    rule_name: str
    description: str
    interval: timedelta
    function: str
    payload: Mapping[str, Any] = field(default_factory=dict)

    @property
    def expression(self) -> str:
        return rate_expression(self.interval)


def put_schedules(
    events: Any,
    invocations: list[ScheduledInvocation],
    function_arns: Mapping[str, str],
) -> None:
    """Create or update EventBridge rules targeting registered functions."""
    for inv in invocations:
        arn = function_arns.get(inv.function)
        if arn is None:
            raise KeyError(f"No deployed function for '{inv.function}'. Available: {', '.join(function_arns) or 'none'}")

        events.put_rule(
            Name=inv.rule_name,
            ScheduleExpression=inv.expression,
            Description=inv.description,
            State="ENABLED",
        )
        events.put_targets(
            Rule=inv.rule_name,
            Targets=[{"Id": inv.function, "Arn": arn, "Input": json.dumps(dict(inv.payload))}],
        )
        logger.info(f"Scheduled {inv.function} as {inv.rule_name} ({inv.expression})")
