"""Transition ledger checks and replay verification."""

from __future__ import annotations

from collections.abc import Collection, Sequence

from taskfactory.engine.models import (
    ATTEMPT_REASON_CODES,
    REQUIRED_EVENT_BY_REASON,
    LifecycleStatus,
    ReasonCode,
    TaskExecutionState,
    TransitionEvent,
)
from taskfactory.errors import ReplayMismatchError, TransitionEventError
from taskfactory.factory.states import FactoryGraph


def validate_transition_event(event: TransitionEvent) -> None:
    """Raise when the event breaks the contract of its reason code."""

    if not event.from_state_id or not event.to_state_id:
        raise TransitionEventError(f"Transition event {event.event_id} has an empty state id")
    try:
        reason = ReasonCode(event.reason_code)
    except ValueError as error:
        raise TransitionEventError(
            f"Transition event {event.event_id} has unknown reason code {event.reason_code!r}",
        ) from error
    required = REQUIRED_EVENT_BY_REASON.get(reason)
    if required is not None and event.event != required:
        raise TransitionEventError(
            f"Reason code {reason.value} requires event `{required}`, got `{event.event}`",
        )
    if reason in ATTEMPT_REASON_CODES and event.from_state_id != event.to_state_id:
        raise TransitionEventError(
            f"Attempt event {event.event_id} must stay on `{event.from_state_id}`",
        )
    if event.attempt < 0 or event.loop_iteration < 0:
        raise TransitionEventError(f"Transition event {event.event_id} has negative counters")


def replay_events(
    events: Sequence[TransitionEvent],
    *,
    feedback_state_ids: Collection[str] = (),
) -> str | None:
    """Walk events in order and return the state the ledger ends in.

    A `from_state_id` that does not continue from the previous event is
    accepted only right after a feedback pause, where the task resumes at
    its resume target instead of the pause state.
    """

    if not events:
        return None
    current = events[0].from_state_id
    previous: TransitionEvent | None = None
    for event in events:
        validate_transition_event(event)
        if event.from_state_id != current and not _resumed_from_pause(previous, feedback_state_ids):
            raise ReplayMismatchError(
                f"Replay mismatch for event {event.event_id}: "
                f"expected from_state_id={current}, got {event.from_state_id}",
            )
        current = event.to_state_id
        previous = event
    return current


def verify_task_replay(
    graph: FactoryGraph,
    events: Sequence[TransitionEvent],
    state: TaskExecutionState,
) -> str | None:
    """Check that the ledger reproduces the persisted execution state."""

    feedback_ids = graph.feedback_state_ids()
    final = replay_events(events, feedback_state_ids=feedback_ids)
    if final is None:
        return None

    if state.lifecycle == LifecycleStatus.FEEDBACK and final not in feedback_ids:
        raise ReplayMismatchError(
            f"Task {state.task_id} is awaiting feedback but replay ended at `{final}`",
        )
    if final in feedback_ids and state.terminal_state_id is None:
        # Paused, or a reply arrived and the next tick has not moved on yet.
        expected_resume = graph.resume_target(final, previous_state_id=events[-1].from_state_id)
        if expected_resume != state.current_state_id:
            raise ReplayMismatchError(
                f"Task {state.task_id} resumes at `{state.current_state_id}`, "
                f"replay resumes at `{expected_resume}`",
            )
        return final

    expected = (
        state.terminal_state_id if state.terminal_state_id is not None else state.current_state_id
    )
    if final != expected:
        raise ReplayMismatchError(
            f"Replay ended at `{final}` but task {state.task_id} persisted `{expected}`",
        )
    return final


def _resumed_from_pause(
    previous: TransitionEvent | None,
    feedback_state_ids: Collection[str],
) -> bool:
    if previous is None:
        return False
    return (
        previous.reason_code == ReasonCode.ACTION_FEEDBACK
        or previous.to_state_id in feedback_state_ids
    )
