from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from uuid import uuid4

from fastapi import BackgroundTasks

from src.onboarding.services.tasks.runner import QueuedTask, Task, TaskRunner

logger = logging.getLogger("tasks")


class TaskQueue(ABC):
    """Hands tasks to the runner and returns the id they were queued under."""

    def __init__(self, runner: TaskRunner) -> None:
        self._runner = runner

    @abstractmethod
    def enqueue(self, task: Task) -> str:
        raise NotImplementedError


class InlineTaskQueue(TaskQueue):
    """Runs each task synchronously inside ``enqueue``.

    Used by tests and by callers that already run off the request path.
    """

    def enqueue(self, task: Task) -> str:
        queued = QueuedTask(id=str(uuid4()), task=task)
        logger.debug("Running %s task %s inline", task.kind, queued.id)
        self._runner.run(queued)
        return queued.id


class BackgroundTaskQueue(TaskQueue):
    """Defers tasks to FastAPI background tasks of the current request.

    They run once the response has been sent; the retry loop still lives in
    the runner.
    """

    def __init__(self, runner: TaskRunner, background_tasks: BackgroundTasks) -> None:
        super().__init__(runner)
        self._background_tasks = background_tasks

    def enqueue(self, task: Task) -> str:
        queued = QueuedTask(id=str(uuid4()), task=task)
        self._background_tasks.add_task(self._runner.run, queued)
        logger.debug("Scheduled %s task %s after the response", task.kind, queued.id)
        return queued.id
