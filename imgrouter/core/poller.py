"""Bounded polling state machine for providers that generate in the background.

PENDING -> PENDING     transient check error, or non-terminal status
PENDING -> SUCCEEDED   provider reports success (output may be empty)
PENDING -> FAILED      provider reports failure
PENDING -> TIMED_OUT   max_attempts checks without a terminal status

The wait between checks is an asyncio sleep, so a pending task only suspends
its own coroutine and is cancelled along with it.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Awaitable, Callable

from imgrouter.api.schemas import TaskStatus
from imgrouter.core.errors import TaskFailed, TaskTimedOut
from imgrouter.core.models import GenerationTask, PollResult

logger = logging.getLogger("imgrouter.poller")

MAX_POLL_ATTEMPTS = 60
POLL_INTERVAL_SECONDS = 5.0


class TransientPollError(RuntimeError):
    """A single status check failed in a way that does not end the task."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TaskPoller:
    """Drives one GenerationTask to a terminal state."""

    def __init__(
        self,
        check: Callable[[str], Awaitable[PollResult]],
        provider: str,
        max_attempts: int = MAX_POLL_ATTEMPTS,
        interval: float = POLL_INTERVAL_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._check = check
        self._provider = provider
        self._max_attempts = max_attempts
        self._interval = interval
        self._sleep = sleep

    async def run(self, task: GenerationTask) -> list[str]:
        """Poll until terminal. Returns output image URLs on success.

        Raises TaskFailed or TaskTimedOut for the other terminal states.
        """
        while task.attempts_made < self._max_attempts:
            await self._sleep(self._interval)
            task.attempts_made += 1

            try:
                result = await self._check(task.task_id)
            except TransientPollError as e:
                logger.warning(
                    "%s task %s poll error (attempt %d/%d): %s",
                    self._provider, task.task_id, task.attempts_made,
                    self._max_attempts, e,
                )
                continue

            if result.status == TaskStatus.SUCCEEDED:
                task.status = TaskStatus.SUCCEEDED
                logger.info(
                    "%s task %s succeeded after %d polls (%d images)",
                    self._provider, task.task_id, task.attempts_made, len(result.images),
                )
                return list(result.images)

            if result.status == TaskStatus.FAILED:
                task.status = TaskStatus.FAILED
                logger.warning(
                    "%s task %s failed after %d polls",
                    self._provider, task.task_id, task.attempts_made,
                )
                raw = json.dumps(result.raw, ensure_ascii=False, default=str)
                raise TaskFailed(
                    self._provider,
                    f"{self._provider} task failed: {raw}",
                    body=raw,
                )

            logger.debug(
                "%s task %s still pending (attempt %d/%d)",
                self._provider, task.task_id, task.attempts_made, self._max_attempts,
            )

        task.status = TaskStatus.TIMED_OUT
        logger.error(
            "%s task %s timed out after %d polls",
            self._provider, task.task_id, task.attempts_made,
        )
        raise TaskTimedOut(
            self._provider,
            f"{self._provider} task {task.task_id} timed out after "
            f"{task.attempts_made} polls",
        )
