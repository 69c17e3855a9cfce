"""Logging configuration for skyrunner.

loguru, disabled by default (library behavior) and enabled with
``setup_logging``. Collector handlers enable it themselves since every
invocation runs standalone.

Records carry the provisioning context bound by the orchestrator and the
collectors, rendered as ``key=value`` pairs before the source location:

    12:00:01.250 | INFO     | runner=runner-1 token=AAAAbbbb placement=subnet-1 | skyrunner.runner.launcher:182 - Launched i-0001

Task tokens are only ever logged through ``token_prefix``.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

from loguru import logger

if TYPE_CHECKING:
    from loguru import Record

logger.disable("skyrunner")

type LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

# Bound extra fields shown on a record, in this order.
CONTEXT_FIELDS = ("request_id", "builder", "runner", "token", "placement")
TOKEN_PREFIX_LENGTH = 8

_HEAD = "<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
_TAIL = "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>\n{exception}"


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Logging configuration.

    Attributes:
        level: Minimum log level.
        colorize: Colorize output. Disable for log collectors that store raw
            text (CloudWatch).
    """

    level: LogLevel = "INFO"
    colorize: bool = True


def format_record(record: Record) -> str:
    """Format template for one record; only the context fields it carries appear."""
    bound = [f"{key}=<magenta>{{extra[{key}]}}</magenta>" for key in CONTEXT_FIELDS if key in record["extra"]]
    context = " ".join(bound) + " | " if bound else ""
    return _HEAD + context + _TAIL


def token_prefix(token: str) -> str:
    return token[:TOKEN_PREFIX_LENGTH]


def setup_logging(config: LogConfig | None = None) -> int:
    """Enable skyrunner logging on stderr and return the handler id for cleanup."""
    config = config or LogConfig()
    logger.enable("skyrunner")
    return logger.add(
        sys.stderr,
        level=config.level,
        format=format_record,
        colorize=config.colorize,
        filter="skyrunner",
    )


def teardown_logging(handler_id: int) -> None:
    logger.remove(handler_id)
    logger.disable("skyrunner")
