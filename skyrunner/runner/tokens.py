"""Task-token broker.

In-process counterpart of the Step Functions callback API the boot script
talks to: a token is parked when a request starts, the instance sends
heartbeats and finally success or failure, and the orchestrator waits with a
heartbeat window that restarts on every beat.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from loguru import logger

from skyrunner.exceptions import (
    HeartbeatTimeoutError,
    TaskFailedError,
    TokenAlreadyClaimedError,
    UnknownTaskTokenError,
)
from skyrunner.logging import token_prefix


@dataclass(slots=True)
class _ParkedTask:
    token: str
    future: asyncio.Future[str]
    beat: asyncio.Event = field(default_factory=asyncio.Event)
    last_beat: float | None = None
    beats: int = 0


class TaskTokenBroker:
    """Tracks parked task tokens; at most one active claim per token."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._tasks: dict[str, _ParkedTask] = {}

    def park(self, token: str) -> None:
        """Claim ``token`` for one request. Must be called from a running event loop.

        Raises:
            TokenAlreadyClaimedError: If the token is still active.
        """
        if token in self._tasks:
            raise TokenAlreadyClaimedError(token)
        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._tasks[token] = _ParkedTask(token, future)
        logger.debug(f"Parked task {token_prefix(token)}")

    def active(self, token: str) -> bool:
        return token in self._tasks

    def release(self, token: str) -> None:
        task = self._tasks.pop(token, None)
        if task is not None and not task.future.done():
            task.future.cancel()

    def _open(self, token: str) -> _ParkedTask:
        task = self._tasks.get(token)
        if task is None or task.future.done():
            raise UnknownTaskTokenError(token)
        return task

    # -------------------------------------------------------------------------
    # Callbacks (sent by the instance)
    # -------------------------------------------------------------------------

    def heartbeat(self, token: str) -> None:
        task = self._open(token)
        task.last_beat = self._clock()
        task.beats += 1
        task.beat.set()
        logger.debug(f"Heartbeat {task.beats} for task {token_prefix(token)}")

    def succeed(self, token: str, output: str = "{}") -> None:
        self._open(token).future.set_result(output)
        logger.debug(f"Task {token_prefix(token)} reported success")

    def fail(self, token: str, error: str | None = None, cause: str | None = None) -> None:
        self._open(token).future.set_exception(TaskFailedError(token, error, cause))
        logger.debug(f"Task {token_prefix(token)} reported failure: {error}")

    # -------------------------------------------------------------------------
    # Waiting (orchestrator side)
    # -------------------------------------------------------------------------

    async def wait(self, token: str, heartbeat_timeout: float) -> str:
        """Wait for success or failure of a parked task.

        The window is ``heartbeat_timeout`` seconds from the later of the last
        heartbeat and the start of the wait. The token is released afterwards
        whatever the outcome.

        Returns:
            The task output sent with success.

        Raises:
            TaskFailedError: The instance reported failure.
            HeartbeatTimeoutError: No heartbeat or completion within the window.
            UnknownTaskTokenError: The token was never parked.
        """
        task = self._tasks.get(token)
        if task is None:
            raise UnknownTaskTokenError(token)

        started = self._clock()
        try:
            while True:
                if task.future.done():
                    return task.future.result()

                base = max(task.last_beat or started, started)
                remaining = base + heartbeat_timeout - self._clock()
                if remaining <= 0:
                    raise HeartbeatTimeoutError(token, heartbeat_timeout)

                task.beat.clear()
                beat = asyncio.ensure_future(task.beat.wait())
                try:
                    await asyncio.wait(
                        {task.future, beat},
                        timeout=remaining,
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                finally:
                    beat.cancel()
        finally:
            self.release(token)
