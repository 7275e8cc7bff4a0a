"""Domain models for task execution and the transition ledger."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from taskfactory.factory.states import PageOutput


class LifecycleStatus(str, Enum):
    """Durable task lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    FEEDBACK = "feedback"
    DONE = "done"
    BLOCKED = "blocked"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {LifecycleStatus.DONE, LifecycleStatus.BLOCKED, LifecycleStatus.FAILED}


class ReasonCode(str, Enum):
    """Why a transition event was recorded."""

    ACTION_DONE = "action.done"
    ACTION_FEEDBACK = "action.feedback"
    ACTION_FAILED_EXHAUSTED = "action.failed.exhausted"
    ACTION_ATTEMPT_FAILED = "action.attempt.failed"
    ACTION_ATTEMPT_ERROR = "action.attempt.error"
    ORCHESTRATE_HANDLER = "orchestrate.handler"
    ORCHESTRATE_SELECT = "orchestrate.select"
    LOOP_CONTINUE = "loop.continue"
    LOOP_DONE = "loop.done"
    LOOP_EXHAUSTED = "loop.exhausted"


ATTEMPT_REASON_CODES = frozenset(
    {ReasonCode.ACTION_ATTEMPT_FAILED, ReasonCode.ACTION_ATTEMPT_ERROR},
)

REQUIRED_EVENT_BY_REASON: dict[ReasonCode, str] = {
    ReasonCode.ACTION_DONE: "done",
    ReasonCode.ACTION_FEEDBACK: "feedback",
    ReasonCode.ACTION_FAILED_EXHAUSTED: "failed",
    ReasonCode.ACTION_ATTEMPT_FAILED: "failed",
    ReasonCode.ACTION_ATTEMPT_ERROR: "failed",
    ReasonCode.LOOP_CONTINUE: "continue",
    ReasonCode.LOOP_DONE: "done",
    ReasonCode.LOOP_EXHAUSTED: "exhausted",
}


@dataclass(slots=True, frozen=True)
class TransitionEvent:
    """Immutable ledger entry for one taken transition or failed attempt."""

    event_id: str
    run_id: str
    tick_id: str
    task_id: str
    from_state_id: str
    to_state_id: str
    event: str
    reason_code: ReasonCode
    attempt: int
    loop_iteration: int
    timestamp: datetime


@dataclass(slots=True)
class TaskExecutionState:
    """Persisted execution state of one task.

    `context` holds user data only. Retry attempt counters and loop
    iteration counters are engine-owned sidecars keyed by state id.
    """

    task_id: str
    workflow_id: str
    current_state_id: str | None = None
    context: dict[str, Any] = field(default_factory=dict)
    lifecycle: LifecycleStatus = LifecycleStatus.QUEUED
    attempts: dict[str, int] = field(default_factory=dict)
    loop_iterations: dict[str, int] = field(default_factory=dict)
    last_error: str | None = None
    terminal_state_id: str | None = None
    waiting_since: datetime | None = None
    transition_count: int = 0


class AdvanceOutcome(str, Enum):
    """Why one `advance` call returned."""

    DONE = "done"
    BLOCKED = "blocked"
    FAILED = "failed"
    FEEDBACK = "feedback"
    BUDGET_EXHAUSTED = "budget_exhausted"


@dataclass(slots=True)
class AdvanceResult:
    """Result of one tick for one task."""

    outcome: AdvanceOutcome
    state: TaskExecutionState
    transitions: int = 0
    events: list[TransitionEvent] = field(default_factory=list)
    pages: list[PageOutput] = field(default_factory=list)
    message: str | None = None
