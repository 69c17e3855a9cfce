"""Custom-resource acknowledgement protocol.

A teardown-triggered invocation carries a ``ResponseURL``. Whatever happens,
exactly one structured status must be PUT there, otherwise the owning
resource's deletion hangs until the platform gives up.
"""

from __future__ import annotations

import json
from enum import StrEnum
from typing import Any

import httpx
from loguru import logger

from skyrunner.constants import CLEANER_PHYSICAL_ID


class RequestType(StrEnum):
    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"
    SCHEDULED = "Scheduled"


class ResponseStatus(StrEnum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


def response_body(
    event: dict[str, Any],
    status: ResponseStatus,
    reason: str,
    physical_resource_id: str,
    data: dict[str, Any] | None = None,
) -> dict[str, Any]:
    return {
        "Status": status.value,
        "Reason": reason,
        "PhysicalResourceId": physical_resource_id,
        "StackId": event.get("StackId"),
        "RequestId": event.get("RequestId"),
        "LogicalResourceId": event.get("LogicalResourceId"),
        "NoEcho": False,
        "Data": data or {},
    }


def respond(
    event: dict[str, Any],
    status: ResponseStatus,
    reason: str,
    physical_resource_id: str = CLEANER_PHYSICAL_ID,
    data: dict[str, Any] | None = None,
    *,
    timeout: float = 30.0,
) -> None:
    """PUT the acknowledgement to the event's ``ResponseURL``.

    The pre-signed URL rejects a content type it was not signed for, so the
    body is sent with an empty one.

    Raises:
        httpx.HTTPError: If the callback cannot be delivered.
    """
    url = event["ResponseURL"]
    body = json.dumps(response_body(event, status, reason, physical_resource_id, data))
    logger.info(f"Responding {status.value} ({reason}) for {physical_resource_id}")

    response = httpx.put(
        url,
        content=body.encode(),
        headers={"content-type": ""},
        timeout=timeout,
    )
    response.raise_for_status()


def redact(event: dict[str, Any]) -> dict[str, Any]:
    """Copy of an event that is safe to log; the callback URL is pre-signed."""
    if "ResponseURL" not in event:
        return dict(event)
    return {**event, "ResponseURL": "..."}
