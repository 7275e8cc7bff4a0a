"""Tick worker that advances stored tasks through their factories."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from taskfactory.config import EngineSettings
from taskfactory.engine.ledger import verify_task_replay
from taskfactory.engine.models import (
    AdvanceOutcome,
    AdvanceResult,
    LifecycleStatus,
    TaskExecutionState,
    TransitionEvent,
)
from taskfactory.engine.runtime import FactoryEngine
from taskfactory.errors import FatalRunError, LeaseLostError, ReplayMismatchError
from taskfactory.runner.models import LeaseMode, RunStatus, TaskView
from taskfactory.runner.registry import FactoryRegistry
from taskfactory.runner.relay import LoggingStatusRelay, StatusRelay
from taskfactory.runner.repository import TaskRepository

logger = logging.getLogger(__name__)

_RUN_STATUS_BY_OUTCOME = {
    AdvanceOutcome.DONE: RunStatus.DONE,
    AdvanceOutcome.BLOCKED: RunStatus.BLOCKED,
    AdvanceOutcome.FAILED: RunStatus.FAILED,
    AdvanceOutcome.FEEDBACK: RunStatus.FEEDBACK,
    AdvanceOutcome.BUDGET_EXHAUSTED: RunStatus.RUNNING,
}


@dataclass(slots=True)
class TickSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    done: int = 0
    blocked: int = 0
    failed: int = 0
    feedback: int = 0
    paused: int = 0
    skipped: int = 0
    idle_polls: int = 0

    def add(self, other: TickSummary) -> None:
        self.processed += other.processed
        self.done += other.done
        self.blocked += other.blocked
        self.failed += other.failed
        self.feedback += other.feedback
        self.paused += other.paused
        self.skipped += other.skipped
        self.idle_polls += other.idle_polls


@dataclass(slots=True)
class TickReport:
    """Outcome of one tick for one task."""

    task_id: str
    outcome: AdvanceOutcome | None
    transitions: int = 0
    message: str | None = None
    skipped: bool = False


class LeasedExecutionStore:
    """Engine store that heartbeats the task lease before every write.

    With `owner=None` writes are unconditional, which is how best-effort
    ticks run.
    """

    def __init__(
        self,
        repository: TaskRepository,
        *,
        task_id: str,
        owner: str | None,
        lease_seconds: float,
    ) -> None:
        self.repository = repository
        self.task_id = task_id
        self.owner = owner
        self.lease_seconds = lease_seconds

    def checkpoint(self, state: TaskExecutionState) -> None:
        self._heartbeat()
        if not self.repository.checkpoint(state, lease_owner=self.owner):
            raise LeaseLostError(f"Lease lost for task {self.task_id} ({self.owner})")

    def record_transition(self, event: TransitionEvent, state: TaskExecutionState) -> None:
        self._heartbeat()
        if not self.repository.record_transition(event, state, lease_owner=self.owner):
            raise LeaseLostError(f"Lease lost for task {self.task_id} ({self.owner})")

    def _heartbeat(self) -> None:
        if self.owner is None:
            return
        renewed = self.repository.renew_lease(
            task_id=self.task_id,
            owner=self.owner,
            ttl_seconds=self.lease_seconds,
        )
        if not renewed:
            raise LeaseLostError(f"Lease lost for task {self.task_id} ({self.owner})")


class TickRunner:
    """Advances runnable tasks, one `FactoryEngine.advance` call per task."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        registry: FactoryRegistry,
        worker_id: str,
        engine_settings: EngineSettings | None = None,
        lease_mode: LeaseMode = LeaseMode.STRICT,
        lease_seconds: float = 30.0,
        poll_interval_seconds: float = 2.0,
        relay: StatusRelay | None = None,
        verify_replay: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.worker_id = worker_id
        self.engine_settings = engine_settings or EngineSettings()
        self.lease_mode = lease_mode
        self.lease_seconds = lease_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.relay = relay or LoggingStatusRelay()
        self.verify_replay = verify_replay
        self._sleep = sleep
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    def tick(self, task_id: str, *, feedback: str | None = None) -> TickReport:
        """Run one `advance` for `task_id` under the configured lease mode."""

        task = self.repository.get_task(task_id)
        if task is None:
            raise RuntimeError(f"Task not found: {task_id}")
        if task.lifecycle.is_terminal:
            return TickReport(
                task_id=task_id,
                outcome=AdvanceOutcome(task.lifecycle.value),
                message=task.last_error,
                skipped=True,
            )
        if task.lifecycle == LifecycleStatus.FEEDBACK and feedback is None:
            return TickReport(
                task_id=task_id,
                outcome=AdvanceOutcome.FEEDBACK,
                message="Awaiting reply",
                skipped=True,
            )
        graph = self.registry.get(task.workflow_id)

        acquired = self.repository.acquire_lease(
            task_id=task_id,
            owner=self.worker_id,
            ttl_seconds=self.lease_seconds,
        )
        if not acquired and self.lease_mode == LeaseMode.STRICT:
            logger.info("Skipping task %s: lease held by another worker", task_id)
            return TickReport(task_id=task_id, outcome=None, skipped=True)
        if not acquired:
            logger.warning("Advancing task %s without a lease (best effort)", task_id)

        store = LeasedExecutionStore(
            self.repository,
            task_id=task_id,
            owner=self.worker_id if self.lease_mode == LeaseMode.STRICT else None,
            lease_seconds=self.lease_seconds,
        )
        engine = FactoryEngine(
            store=store,
            max_transitions_per_tick=self.engine_settings.max_transitions_per_tick,
            max_transitions_per_run=self.engine_settings.max_transitions_per_run,
            sleep=self._sleep,
        )
        try:
            state = self.repository.load_execution_state(task_id)
            previous = state.lifecycle
            run_id = self.repository.start_run(task_id=task_id)
            try:
                result = engine.advance(
                    graph,
                    state,
                    task=task.metadata(),
                    run_id=run_id,
                    feedback=feedback,
                )
            except FatalRunError as error:
                self.repository.finish_run(run_id=run_id, status=RunStatus.FAILED)
                self.relay.lifecycle_changed(task, previous, LifecycleStatus.FAILED, str(error))
                return TickReport(
                    task_id=task_id,
                    outcome=AdvanceOutcome.FAILED,
                    message=str(error),
                )
            self.repository.finish_run(run_id=run_id, status=_RUN_STATUS_BY_OUTCOME[result.outcome])
            self._relay(task, previous, result)
            if self.verify_replay or self.lease_mode == LeaseMode.BEST_EFFORT:
                self.verify(task_id)
            return TickReport(
                task_id=task_id,
                outcome=result.outcome,
                transitions=result.transitions,
                message=result.message,
            )
        finally:
            if acquired:
                self.repository.release_lease(task_id=task_id, owner=self.worker_id)

    def verify(self, task_id: str) -> str | None:
        """Replay the ledger of `task_id` against its persisted state."""

        task = self.repository.get_task(task_id)
        if task is None:
            raise RuntimeError(f"Task not found: {task_id}")
        graph = self.registry.get(task.workflow_id)
        events = self.repository.list_transition_events(task_id)
        state = self.repository.load_execution_state(task_id)
        try:
            return verify_task_replay(graph, events, state)
        except ReplayMismatchError:
            logger.exception("Replay verification failed for task %s", task_id)
            raise

    def run_once(self) -> TickSummary:
        """Tick every runnable task once."""

        summary = TickSummary()
        task_ids = self.repository.list_runnable_task_ids()
        if not task_ids:
            summary.idle_polls = 1
            return summary

        for task_id in task_ids:
            if self._stop_requested:
                break
            try:
                report = self.tick(task_id)
            except (LeaseLostError, ReplayMismatchError) as error:
                logger.warning("Abandoned task %s: %s", task_id, error)
                summary.skipped += 1
                continue
            _count(summary, report)
        return summary

    def run_loop(
        self,
        *,
        max_ticks: int | None = None,
        max_idle_polls: int = 1,
    ) -> TickSummary:
        """Poll for runnable tasks until idle, stopped or `max_ticks` reached.

        Args:
            max_ticks: Stop after this many task ticks (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting.
        """

        aggregate = TickSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_ticks is not None and aggregate.processed >= max_ticks:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue

                consecutive_idle = 0

    def _relay(self, task: TaskView, previous: LifecycleStatus, result: AdvanceResult) -> None:
        for page in result.pages:
            self.relay.page_published(task, page)
        current = result.state.lifecycle
        if result.outcome == AdvanceOutcome.FEEDBACK:
            self.relay.feedback_requested(task, result.message)
        if current != previous:
            self.relay.lifecycle_changed(task, previous, current, result.state.last_error)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._request_stop(signal_name=name)

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Only the main thread may install handlers.
            logger.debug("Running without signal handlers")
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)

    def _request_stop(self, *, signal_name: str) -> None:
        self._stop_requested = True
        self._stop_signal_name = signal_name
        logger.info("Stop requested by %s, finishing current tick", signal_name)


def _count(summary: TickSummary, report: TickReport) -> None:
    if report.skipped or report.outcome is None:
        summary.skipped += 1
        return
    summary.processed += 1
    if report.outcome == AdvanceOutcome.DONE:
        summary.done += 1
    elif report.outcome == AdvanceOutcome.BLOCKED:
        summary.blocked += 1
    elif report.outcome == AdvanceOutcome.FAILED:
        summary.failed += 1
    elif report.outcome == AdvanceOutcome.FEEDBACK:
        summary.feedback += 1
    else:
        summary.paused += 1
