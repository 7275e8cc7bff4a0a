"""Task records exchanged between the repository, worker and CLI."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from taskfactory.engine.models import LifecycleStatus
from taskfactory.factory.states import TaskMetadata


class LeaseMode(str, Enum):
    """How strictly a worker must hold a task lease before advancing it."""

    STRICT = "strict"
    BEST_EFFORT = "best_effort"


class RunStatus(str, Enum):
    RUNNING = "running"
    FEEDBACK = "feedback"
    DONE = "done"
    BLOCKED = "blocked"
    FAILED = "failed"


@dataclass(slots=True)
class TaskCreate:
    """Input payload for registering a task with a factory."""

    workflow_id: str
    task_id: str | None = None
    external_id: str | None = None
    title: str | None = None
    prompt: str | None = None
    context_text: str | None = None
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskView:
    """Readable task view for CLI and worker logic."""

    task_id: str
    workflow_id: str
    external_id: str | None
    title: str | None
    prompt: str | None
    context_text: str | None
    lifecycle: LifecycleStatus
    current_state_id: str | None
    terminal_state_id: str | None
    context: dict[str, Any]
    last_error: str | None
    waiting_since: datetime | None
    transition_count: int
    active_run_id: str | None
    lease_owner: str | None
    lease_expires_at: datetime | None
    created_at: datetime
    updated_at: datetime

    def metadata(self) -> TaskMetadata:
        return TaskMetadata(
            id=self.external_id or self.task_id,
            title=self.title,
            prompt=self.prompt,
            context=self.context_text,
        )
