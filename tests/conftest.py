"""Shared test fixtures."""

from __future__ import annotations

import itertools
from datetime import UTC, datetime, timedelta

import pytest

from taskfactory.engine.models import AdvanceResult, TaskExecutionState
from taskfactory.engine.runtime import FactoryEngine
from taskfactory.engine.store import InMemoryExecutionStore
from taskfactory.factory.states import FactoryGraph, TaskMetadata


class EngineHarness:
    """Engine wired to an in-memory store, a recorded sleep and a fake clock."""

    def __init__(self, *, max_transitions_per_tick: int = 25, max_transitions_per_run: int = 200):
        self.store = InMemoryExecutionStore()
        self.sleeps: list[float] = []
        self._ids = itertools.count(1)
        self._ticks = itertools.count(1)
        self._now = datetime(2026, 10, 18, 9, 0, tzinfo=UTC)
        self.engine = FactoryEngine(
            store=self.store,
            max_transitions_per_tick=max_transitions_per_tick,
            max_transitions_per_run=max_transitions_per_run,
            sleep=self.sleeps.append,
            clock=self._clock,
            id_factory=lambda: f"evt-{next(self._ids)}",
        )

    def _clock(self) -> datetime:
        self._now += timedelta(seconds=1)
        return self._now

    def new_state(self, graph: FactoryGraph, task_id: str = "task-1") -> TaskExecutionState:
        return TaskExecutionState(task_id=task_id, workflow_id=graph.id)

    def advance(
        self,
        graph: FactoryGraph,
        state: TaskExecutionState,
        *,
        feedback: str | None = None,
    ) -> AdvanceResult:
        return self.engine.advance(
            graph,
            state,
            task=TaskMetadata(id=state.task_id, title="Demo task"),
            run_id="run-1",
            tick_id=f"tick-{next(self._ticks)}",
            feedback=feedback,
        )


@pytest.fixture()
def harness() -> EngineHarness:
    return EngineHarness()


@pytest.fixture()
def make_harness():
    return EngineHarness
