from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, ClassVar, Mapping, Optional, Protocol, Union
from uuid import UUID

from src.onboarding.config import TaskConfig
from src.onboarding.domain.errors import OnboardingError, error_text

logger = logging.getLogger("tasks")


@dataclass(frozen=True)
class StartConversationTask:
    kind: ClassVar[str] = "start_conversation"
    session_id: UUID


@dataclass(frozen=True)
class ProcessMessageTask:
    kind: ClassVar[str] = "process_message"
    message_id: int
    session_id: UUID


@dataclass(frozen=True)
class TranscribeTask:
    kind: ClassVar[str] = "transcribe"
    transcription_id: UUID


# Tasks carry ids only; handlers re-read current state from the store.
Task = Union[StartConversationTask, ProcessMessageTask, TranscribeTask]


@dataclass(frozen=True)
class QueuedTask:
    id: str
    task: Task


class TaskStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class TaskOutcome:
    task_id: str
    kind: str
    status: TaskStatus
    attempts: int
    error: Optional[str] = None


class TaskHandler(Protocol):
    def claim(self, task: Task) -> bool:
        """Take ownership of the task's entity before the first attempt.

        Returning False means another worker already owns it, or it is
        already terminal, and the task is dropped.
        """

    def attempt(self, task: Task, attempt: int) -> None:
        """Run one attempt. Raises on failure."""

    def on_failure(self, task: Task, error: str) -> None:
        """Terminal cleanup once retries are exhausted."""


class TaskRunner:
    """Executes queued tasks with a bounded retry loop.

    Each task gets up to ``max_tries`` attempts with a fixed
    ``backoff_seconds`` pause between them. Errors flagged non-retryable end
    the loop immediately. ``on_failure`` runs exactly once per failed task.
    """

    def __init__(
        self,
        config: TaskConfig,
        handlers: Mapping[str, TaskHandler],
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._handlers = dict(handlers)
        self._sleep = sleep

    def run(self, queued: QueuedTask) -> TaskOutcome:
        task = queued.task
        handler = self._handlers.get(task.kind)
        if handler is None:
            raise KeyError(f"No handler registered for task kind '{task.kind}'")

        try:
            claimed = handler.claim(task)
        except Exception as exc:
            error = error_text(exc)
            logger.exception("%s task %s could not be claimed", task.kind, queued.id)
            handler.on_failure(task, error)
            return TaskOutcome(task_id=queued.id, kind=task.kind, status=TaskStatus.FAILED, attempts=0, error=error)

        if not claimed:
            logger.info("Skipping %s task %s: already claimed or finished", task.kind, queued.id)
            return TaskOutcome(task_id=queued.id, kind=task.kind, status=TaskStatus.SKIPPED, attempts=0)

        error = "Unknown error"
        attempts = 0
        while attempts < self._config.max_tries:
            attempts += 1
            try:
                handler.attempt(task, attempts)
            except OnboardingError as exc:
                error = exc.message
                logger.warning(
                    "%s task %s attempt %s/%s failed: %s",
                    task.kind,
                    queued.id,
                    attempts,
                    self._config.max_tries,
                    error,
                )
                if not exc.retryable:
                    break
            except Exception as exc:
                error = error_text(exc)
                logger.exception("%s task %s attempt %s crashed", task.kind, queued.id, attempts)
            else:
                logger.info("%s task %s completed after %s attempt(s)", task.kind, queued.id, attempts)
                return TaskOutcome(task_id=queued.id, kind=task.kind, status=TaskStatus.COMPLETED, attempts=attempts)

            if attempts < self._config.max_tries:
                self._sleep(self._config.backoff_seconds)

        logger.error("%s task %s failed permanently: %s", task.kind, queued.id, error)
        handler.on_failure(task, error)
        return TaskOutcome(
            task_id=queued.id,
            kind=task.kind,
            status=TaskStatus.FAILED,
            attempts=attempts,
            error=error,
        )
