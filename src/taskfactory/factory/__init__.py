"""Factory authoring: primitives, pipe front-end, graph validation."""

from taskfactory.factory.pipeline import (
    AwaitFeedback,
    compile_pipe,
    decide,
    define_pipe,
    end_blocked,
    end_done,
    end_failed,
    flow,
    pipe_ask,
    pipe_loop,
    pipe_step,
    write,
)
from taskfactory.factory.primitives import (
    FEEDBACK_CONTEXT_KEY,
    ROUTE_UNMAPPED_EVENT,
    FactoryDefinition,
    ask,
    compile_factory,
    end,
    loop,
    publish,
    retry,
    route,
    step,
)
from taskfactory.factory.states import (
    Backoff,
    BackoffStrategy,
    FactoryGraph,
    GuardInput,
    HandlerInput,
    HandlerResult,
    PageOutput,
    RetryPolicy,
    SelectorInput,
    TaskMetadata,
    TerminalStatus,
)
from taskfactory.factory.validator import InvariantViolation, ensure_valid, validate_graph

__all__ = [
    "FEEDBACK_CONTEXT_KEY",
    "ROUTE_UNMAPPED_EVENT",
    "AwaitFeedback",
    "Backoff",
    "BackoffStrategy",
    "FactoryDefinition",
    "FactoryGraph",
    "GuardInput",
    "HandlerInput",
    "HandlerResult",
    "InvariantViolation",
    "PageOutput",
    "RetryPolicy",
    "SelectorInput",
    "TaskMetadata",
    "TerminalStatus",
    "ask",
    "compile_factory",
    "compile_pipe",
    "decide",
    "define_pipe",
    "end",
    "end_blocked",
    "end_done",
    "end_failed",
    "ensure_valid",
    "flow",
    "loop",
    "pipe_ask",
    "pipe_loop",
    "pipe_step",
    "publish",
    "retry",
    "route",
    "step",
    "validate_graph",
    "write",
]
