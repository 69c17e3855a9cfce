"""Function entrypoints for the deployed collectors.

Each invocation is a standalone unit of work, so logging is enabled here
rather than by an application.
"""

from __future__ import annotations

from dataclasses import asdict
from functools import cache
from typing import Any

import boto3
from loguru import logger

from skyrunner.collectors.cleaner import AmiCleaner
from skyrunner.collectors.reaper import ImageReaper
from skyrunner.logging import LogConfig, setup_logging


@cache
def _session() -> boto3.Session:
    setup_logging(LogConfig(colorize=False))
    return boto3.Session()


@cache
def _cleaner() -> AmiCleaner:
    return AmiCleaner(_session().client("ec2"))


@cache
def _reaper() -> ImageReaper:
    session = _session()
    return ImageReaper(session.client("imagebuilder"), session.client("ec2"))


def _request_id(context: Any) -> str:
    return getattr(context, "aws_request_id", None) or "local"


def delete_ami_handler(event: dict[str, Any], context: Any) -> dict[str, Any] | None:
    with logger.contextualize(request_id=_request_id(context)):
        report = _cleaner()(event, context)
    return asdict(report) if report is not None else None


def reaper_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    with logger.contextualize(request_id=_request_id(context)):
        return asdict(_reaper()(event, context))
