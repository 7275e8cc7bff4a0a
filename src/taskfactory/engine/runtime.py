"""Execution engine advancing one task through a compiled state graph."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4

from taskfactory.engine.models import (
    AdvanceOutcome,
    AdvanceResult,
    LifecycleStatus,
    ReasonCode,
    TaskExecutionState,
    TransitionEvent,
)
from taskfactory.engine.store import ExecutionStore
from taskfactory.errors import FatalRunError
from taskfactory.factory.primitives import FEEDBACK_CONTEXT_KEY
from taskfactory.factory.states import (
    ActionState,
    ActionStatus,
    FactoryGraph,
    FeedbackState,
    GuardInput,
    HandlerInput,
    HandlerResult,
    LoopState,
    OrchestrateState,
    PageOutput,
    SelectorInput,
    State,
    TaskMetadata,
    TerminalState,
    TerminalStatus,
    coerce_handler_result,
)
from taskfactory.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_MAX_TRANSITIONS_PER_TICK = 25
MAX_TRANSITIONS_PER_TICK_LIMIT = 200
DEFAULT_MAX_TRANSITIONS_PER_RUN = 200

_ACTION_REASONS = {
    ActionStatus.DONE.value: ReasonCode.ACTION_DONE,
    ActionStatus.FEEDBACK.value: ReasonCode.ACTION_FEEDBACK,
}


@dataclass(slots=True)
class _Step:
    event: str
    reason: ReasonCode
    attempt: int = 1
    loop_iteration: int = 0
    data: dict[str, Any] | None = None
    message: str | None = None


@dataclass(slots=True)
class _Tick:
    graph: FactoryGraph
    state: TaskExecutionState
    task: TaskMetadata
    run_id: str
    tick_id: str
    feedback: str | None
    events: list[TransitionEvent] = field(default_factory=list)
    pages: list[PageOutput] = field(default_factory=list)
    transitions: int = 0


class FactoryEngine:
    """Interprets a validated graph for one task per `advance` call."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: ExecutionStore,
        max_transitions_per_tick: int = DEFAULT_MAX_TRANSITIONS_PER_TICK,
        max_transitions_per_run: int = DEFAULT_MAX_TRANSITIONS_PER_RUN,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = lambda: str(uuid4()),
    ) -> None:
        self.store = store
        self.max_transitions_per_tick = max(
            1,
            min(max_transitions_per_tick, MAX_TRANSITIONS_PER_TICK_LIMIT),
        )
        self.max_transitions_per_run = max(1, max_transitions_per_run)
        self._sleep = sleep
        self._clock = clock
        self._id_factory = id_factory

    def advance(  # noqa: PLR0913
        self,
        graph: FactoryGraph,
        state: TaskExecutionState,
        *,
        task: TaskMetadata,
        run_id: str,
        tick_id: str | None = None,
        feedback: str | None = None,
    ) -> AdvanceResult:
        """Advance `state` until it pauses, finishes or spends the tick budget.

        `state` is updated in place and every change is written through the
        store. An explicit `feedback` reply is only delivered when the task
        is paused awaiting feedback.

        Raises:
            FatalRunError: configuration or logic defect; the task has
                already been persisted as failed.
        """

        if state.lifecycle.is_terminal:
            return AdvanceResult(
                outcome=AdvanceOutcome(state.lifecycle.value),
                state=state,
                message=state.last_error,
            )
        if feedback is not None and state.lifecycle != LifecycleStatus.FEEDBACK:
            logger.info("Ignoring reply for task %s: not awaiting feedback", state.task_id)
            feedback = None

        state.context = {**graph.context, **state.context}
        if state.current_state_id is None:
            state.current_state_id = graph.start
        tick = _Tick(
            graph=graph,
            state=state,
            task=task,
            run_id=run_id,
            tick_id=tick_id or str(uuid4()),
            feedback=feedback,
        )
        try:
            return self._run(tick)
        except FatalRunError as error:
            self._persist_failure(state, str(error))
            if error.task_id is None:
                error.task_id = state.task_id
            raise

    def _run(self, tick: _Tick) -> AdvanceResult:
        state = tick.state
        previous_state_id: str | None = None
        while True:
            state_id = state.current_state_id or tick.graph.start
            node = tick.graph.states.get(state_id)
            if node is None:
                raise FatalRunError(f"Missing state: {state_id}")
            if isinstance(node, TerminalState):
                self._apply_terminal(state, state_id, node, message=None)
                self.store.checkpoint(state)
                return self._finished(tick, message=state.last_error)
            if isinstance(node, FeedbackState):
                self._apply_pause(tick, state_id, previous_state_id)
                self.store.checkpoint(state)
                return self._finished(tick, message=None)
            if tick.transitions >= self.max_transitions_per_tick:
                logger.info(
                    "Task %s paused at %s after %d transitions",
                    state.task_id,
                    state_id,
                    tick.transitions,
                )
                return self._finished(
                    tick,
                    message=None,
                    outcome=AdvanceOutcome.BUDGET_EXHAUSTED,
                )
            if tick.transitions >= self.max_transitions_per_run:
                raise FatalRunError(
                    f"Transition budget exceeded: {tick.transitions} transitions "
                    f"in tick {tick.tick_id}",
                )
            if state.lifecycle != LifecycleStatus.RUNNING:
                state.lifecycle = LifecycleStatus.RUNNING
                state.waiting_since = None
                self.store.checkpoint(state)

            step = self._run_state(tick, state_id, node)
            target = _route_target(node, step.event)
            if target is None:
                raise FatalRunError(
                    f"No transition for event `{step.event}` from state `{state_id}`",
                )
            target_node = tick.graph.states.get(target)
            if target_node is None:
                raise FatalRunError(f"Missing state: {target}")

            if step.data:
                state.context.update(step.data)
            state.current_state_id = target
            state.transition_count += 1
            tick.transitions += 1
            if isinstance(target_node, TerminalState):
                self._apply_terminal(state, target, target_node, message=step.message)
            elif isinstance(target_node, FeedbackState):
                self._apply_pause(tick, target, state_id)
            self._record(
                tick,
                from_state_id=state_id,
                to_state_id=target,
                event=step.event,
                reason=step.reason,
                attempt=step.attempt,
                loop_iteration=step.loop_iteration,
            )
            if isinstance(target_node, TerminalState):
                message = state.last_error
                if state.lifecycle == LifecycleStatus.DONE:
                    message = target_node.message or step.message
                return self._finished(tick, message=message)
            if isinstance(target_node, FeedbackState):
                return self._finished(tick, message=step.message)
            previous_state_id = state_id

    def _run_state(self, tick: _Tick, state_id: str, node: State) -> _Step:
        if isinstance(node, ActionState):
            return self._run_action(tick, state_id, node)
        if isinstance(node, OrchestrateState):
            return self._run_orchestrate(tick, state_id, node)
        if isinstance(node, LoopState):
            return self._run_loop(tick, state_id, node)
        raise FatalRunError(f"Unsupported state type for `{state_id}`: {type(node).__name__}")

    def _run_action(self, tick: _Tick, state_id: str, node: ActionState) -> _Step:
        state = tick.state
        handler = _resolve_callable(tick.graph, node.handler, state_id)
        limit = node.retry.limit if node.retry is not None else 0
        attempt = state.attempts.get(state_id, 0) + 1
        while True:
            payload = HandlerInput(
                context=dict(state.context),
                task=tick.task,
                state_id=state_id,
                run_id=tick.run_id,
                tick_id=tick.tick_id,
                attempt=attempt,
                feedback=tick.feedback,
            )
            result: HandlerResult | None = None
            try:
                result = coerce_handler_result(handler(payload), state_id=state_id)
            except FatalRunError:
                raise
            except Exception as error:  # noqa: BLE001
                reason = ReasonCode.ACTION_ATTEMPT_ERROR
                message = str(error) or type(error).__name__
                logger.warning(
                    "Handler for state %s raised on attempt %d: %s",
                    state_id,
                    attempt,
                    message,
                )
            else:
                self._observe_result(tick, result)
                if result.status not in {status.value for status in ActionStatus}:
                    raise FatalRunError(
                        f"Handler for state `{state_id}` returned unsupported status "
                        f"`{result.status}`",
                    )
                if result.status != ActionStatus.FAILED.value:
                    state.attempts.pop(state_id, None)
                    if result.status == ActionStatus.DONE.value:
                        state.last_error = None
                    return _Step(
                        event=result.status,
                        reason=_ACTION_REASONS[result.status],
                        attempt=attempt,
                        data=result.data,
                        message=result.message,
                    )
                if result.data:
                    state.context.update(result.data)
                reason = ReasonCode.ACTION_ATTEMPT_FAILED
                message = result.message or f"State `{state_id}` failed on attempt {attempt}"

            state.last_error = message
            if attempt > limit:
                state.attempts.pop(state_id, None)
                return _Step(
                    event=ActionStatus.FAILED.value,
                    reason=ReasonCode.ACTION_FAILED_EXHAUSTED,
                    attempt=attempt,
                    message=message,
                )

            state.attempts[state_id] = attempt
            self._record(
                tick,
                from_state_id=state_id,
                to_state_id=state_id,
                event=ActionStatus.FAILED.value,
                reason=reason,
                attempt=attempt,
                loop_iteration=0,
            )
            delay = node.retry.delay_seconds(attempt) if node.retry is not None else 0.0
            logger.info(
                "Retrying state %s of task %s (attempt %d of %d) in %.3fs",
                state_id,
                state.task_id,
                attempt + 1,
                limit + 1,
                delay,
            )
            if delay > 0:
                self._sleep(delay)
            attempt += 1

    def _run_orchestrate(self, tick: _Tick, state_id: str, node: OrchestrateState) -> _Step:
        if node.handler is not None:
            handler = _resolve_callable(tick.graph, node.handler, state_id)
            payload = HandlerInput(
                context=dict(tick.state.context),
                task=tick.task,
                state_id=state_id,
                run_id=tick.run_id,
                tick_id=tick.tick_id,
                attempt=1,
                feedback=tick.feedback,
            )
            try:
                raw = handler(payload)
            except FatalRunError:
                raise
            except Exception as error:
                raise FatalRunError(
                    f"Orchestrate handler for state `{state_id}` raised: {error}",
                ) from error
            result = coerce_handler_result(raw, state_id=state_id)
            self._observe_result(tick, result)
            data = dict(result.data or {})
            routed = data.pop("event", None)
            event = routed.strip() if isinstance(routed, str) and routed.strip() else result.status
            return _Step(
                event=event,
                reason=ReasonCode.ORCHESTRATE_HANDLER,
                data=data,
                message=result.message,
            )

        if node.selector is not None:
            selector = _resolve_callable(tick.graph, node.selector, state_id)
            try:
                selected = selector(
                    SelectorInput(
                        context=dict(tick.state.context),
                        task=tick.task,
                        state_id=state_id,
                        run_id=tick.run_id,
                        tick_id=tick.tick_id,
                    ),
                )
            except Exception as error:
                raise FatalRunError(
                    f"Selector for state `{state_id}` raised: {error}",
                ) from error
            if not isinstance(selected, str) or not selected.strip():
                raise FatalRunError(f"Selector for state `{state_id}` returned no event name")
            return _Step(event=selected.strip(), reason=ReasonCode.ORCHESTRATE_SELECT)

        raise FatalRunError(
            f"Orchestrate state `{state_id}` defines neither a handler nor a selector",
        )

    def _run_loop(self, tick: _Tick, state_id: str, node: LoopState) -> _Step:
        state = tick.state
        iteration = state.loop_iterations.get(state_id, 0)
        if node.until is not None:
            guard = _resolve_guard(tick.graph, node.until, state_id)
            try:
                passed = guard(
                    GuardInput(
                        context=dict(state.context),
                        iteration=iteration,
                        task=tick.task,
                        state_id=state_id,
                        run_id=tick.run_id,
                        tick_id=tick.tick_id,
                    ),
                )
            except Exception as error:
                raise FatalRunError(f"Guard for state `{state_id}` raised: {error}") from error
            if passed:
                state.loop_iterations.pop(state_id, None)
                return _Step(event="done", reason=ReasonCode.LOOP_DONE, loop_iteration=iteration)

        if iteration >= node.max_iterations:
            state.loop_iterations.pop(state_id, None)
            logger.info(
                "Loop %s of task %s exhausted after %d iterations",
                state_id,
                state.task_id,
                iteration,
            )
            return _Step(
                event="exhausted",
                reason=ReasonCode.LOOP_EXHAUSTED,
                loop_iteration=iteration,
            )

        iteration += 1
        state.loop_iterations[state_id] = iteration
        return _Step(event="continue", reason=ReasonCode.LOOP_CONTINUE, loop_iteration=iteration)

    def _observe_result(self, tick: _Tick, result: HandlerResult) -> None:
        if result.page is not None:
            tick.pages.append(result.page)
        if result.data is not None and FEEDBACK_CONTEXT_KEY in result.data:
            tick.feedback = None

    def _apply_terminal(
        self,
        state: TaskExecutionState,
        state_id: str,
        node: TerminalState,
        *,
        message: str | None,
    ) -> None:
        state.lifecycle = LifecycleStatus(node.status.value)
        state.current_state_id = None
        state.terminal_state_id = state_id
        state.waiting_since = None
        state.attempts.clear()
        state.loop_iterations.clear()
        if node.status == TerminalStatus.DONE:
            state.last_error = None
        else:
            state.last_error = (
                node.message
                or message
                or state.last_error
                or f"Terminal state: {node.status.value}"
            )
        logger.info("Task %s finished as %s at %s", state.task_id, node.status.value, state_id)

    def _apply_pause(self, tick: _Tick, state_id: str, previous_state_id: str | None) -> None:
        state = tick.state
        state.current_state_id = tick.graph.resume_target(
            state_id,
            previous_state_id=previous_state_id,
        )
        state.lifecycle = LifecycleStatus.FEEDBACK
        state.waiting_since = self._clock()
        logger.info(
            "Task %s awaiting feedback at %s, resumes at %s",
            state.task_id,
            state_id,
            state.current_state_id,
        )

    def _persist_failure(self, state: TaskExecutionState, message: str) -> None:
        state.lifecycle = LifecycleStatus.FAILED
        state.last_error = message
        state.waiting_since = None
        logger.error("Task %s failed: %s", state.task_id, message)
        self.store.checkpoint(state)

    def _record(  # noqa: PLR0913
        self,
        tick: _Tick,
        *,
        from_state_id: str,
        to_state_id: str,
        event: str,
        reason: ReasonCode,
        attempt: int,
        loop_iteration: int,
    ) -> None:
        entry = TransitionEvent(
            event_id=self._id_factory(),
            run_id=tick.run_id,
            tick_id=tick.tick_id,
            task_id=tick.state.task_id,
            from_state_id=from_state_id,
            to_state_id=to_state_id,
            event=event,
            reason_code=reason,
            attempt=attempt,
            loop_iteration=loop_iteration,
            timestamp=self._clock(),
        )
        self.store.record_transition(entry, tick.state)
        tick.events.append(entry)
        logger.debug(
            "Task %s: %s -[%s/%s]-> %s",
            entry.task_id,
            from_state_id,
            event,
            reason.value,
            to_state_id,
        )

    def _finished(
        self,
        tick: _Tick,
        *,
        message: str | None = None,
        outcome: AdvanceOutcome | None = None,
    ) -> AdvanceResult:
        if outcome is None:
            outcome = AdvanceOutcome(tick.state.lifecycle.value)
        return AdvanceResult(
            outcome=outcome,
            state=tick.state,
            transitions=tick.transitions,
            events=list(tick.events),
            pages=list(tick.pages),
            message=message,
        )


def _route_target(node: State, event: str) -> str | None:
    if isinstance(node, ActionState | LoopState):
        return node.routes.target_for(event)
    if isinstance(node, OrchestrateState):
        return node.routes.get(event)
    return None


def _resolve_callable(graph: FactoryGraph, ref: object, state_id: str) -> Callable[..., Any]:
    if isinstance(ref, str):
        resolved = graph.handlers.get(ref)
        if resolved is None:
            raise FatalRunError(f"Unknown handler `{ref}` for state `{state_id}`")
        return resolved
    if not callable(ref):
        raise FatalRunError(f"Handler for state `{state_id}` is not callable")
    return ref


def _resolve_guard(graph: FactoryGraph, ref: object, state_id: str) -> Callable[[GuardInput], bool]:
    if isinstance(ref, str):
        guard = graph.guards.get(ref)
        if guard is None:
            raise FatalRunError(f"Unknown guard `{ref}` for state `{state_id}`")
        return guard
    if not callable(ref):
        raise FatalRunError(f"Guard for state `{state_id}` is not callable")
    return ref
