"""Persistence boundary of the execution engine."""

from __future__ import annotations

import copy
from typing import Protocol

from taskfactory.engine.ledger import validate_transition_event
from taskfactory.engine.models import TaskExecutionState, TransitionEvent


class ExecutionStore(Protocol):
    """Durable sink for execution state and ledger entries."""

    def checkpoint(self, state: TaskExecutionState) -> None:
        """Persist the execution state without a ledger entry."""

    def record_transition(self, event: TransitionEvent, state: TaskExecutionState) -> None:
        """Append `event` and persist `state` in one atomic write."""


class InMemoryExecutionStore:
    """Dictionary-backed store for embedding the engine and for tests."""

    def __init__(self) -> None:
        self.states: dict[str, TaskExecutionState] = {}
        self.events: list[TransitionEvent] = []

    def checkpoint(self, state: TaskExecutionState) -> None:
        self.states[state.task_id] = copy.deepcopy(state)

    def record_transition(self, event: TransitionEvent, state: TaskExecutionState) -> None:
        validate_transition_event(event)
        self.events.append(event)
        self.checkpoint(state)

    def load(self, task_id: str) -> TaskExecutionState | None:
        state = self.states.get(task_id)
        return copy.deepcopy(state) if state is not None else None

    def events_for(self, task_id: str) -> list[TransitionEvent]:
        return [event for event in self.events if event.task_id == task_id]
