"""Execution engine and transition ledger."""

from taskfactory.engine.ledger import replay_events, validate_transition_event, verify_task_replay
from taskfactory.engine.models import (
    AdvanceOutcome,
    AdvanceResult,
    LifecycleStatus,
    ReasonCode,
    TaskExecutionState,
    TransitionEvent,
)
from taskfactory.engine.runtime import FactoryEngine
from taskfactory.engine.store import ExecutionStore, InMemoryExecutionStore

__all__ = [
    "AdvanceOutcome",
    "AdvanceResult",
    "ExecutionStore",
    "FactoryEngine",
    "InMemoryExecutionStore",
    "LifecycleStatus",
    "ReasonCode",
    "TaskExecutionState",
    "TransitionEvent",
    "replay_events",
    "validate_transition_event",
    "verify_task_replay",
]
