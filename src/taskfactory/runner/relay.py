"""Status relay towards the system that owns the task."""

from __future__ import annotations

import logging
from typing import Protocol

from taskfactory.engine.models import LifecycleStatus
from taskfactory.factory.states import PageOutput
from taskfactory.runner.models import TaskView

logger = logging.getLogger(__name__)


class StatusRelay(Protocol):
    """Callbacks fired by the worker after each tick."""

    def lifecycle_changed(
        self,
        task: TaskView,
        previous: LifecycleStatus,
        current: LifecycleStatus,
        message: str | None,
    ) -> None: ...

    def feedback_requested(self, task: TaskView, prompt: str | None) -> None: ...

    def page_published(self, task: TaskView, page: PageOutput) -> None: ...


class LoggingStatusRelay:
    """Default relay: writes every callback to the log."""

    def lifecycle_changed(
        self,
        task: TaskView,
        previous: LifecycleStatus,
        current: LifecycleStatus,
        message: str | None,
    ) -> None:
        if message:
            logger.info(
                "Task %s: %s -> %s (%s)",
                task.task_id,
                previous.value,
                current.value,
                message,
            )
            return
        logger.info("Task %s: %s -> %s", task.task_id, previous.value, current.value)

    def feedback_requested(self, task: TaskView, prompt: str | None) -> None:
        logger.info("Task %s needs feedback: %s", task.task_id, prompt or "(no prompt)")

    def page_published(self, task: TaskView, page: PageOutput) -> None:
        logger.info(
            "Task %s published page %r (%d chars)",
            task.task_id,
            page.title or task.title or task.task_id,
            len(page.markdown),
        )
