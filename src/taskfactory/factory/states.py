"""Low-level state graph consumed by the validator and the engine."""

from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, TypeAlias

from taskfactory.errors import FatalRunError

PREVIOUS_STATE = "previous"


class ActionStatus(str, Enum):
    """Statuses an action handler may return."""

    DONE = "done"
    FEEDBACK = "feedback"
    FAILED = "failed"


class TerminalStatus(str, Enum):
    """Final task outcomes."""

    DONE = "done"
    BLOCKED = "blocked"
    FAILED = "failed"


class BackoffStrategy(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


@dataclass(slots=True)
class TaskMetadata:
    """Task fields supplied by the task source."""

    id: str
    title: str | None = None
    prompt: str | None = None
    context: str | None = None


@dataclass(slots=True)
class HandlerInput:
    """Input passed to action and orchestrate handlers."""

    context: dict[str, Any]
    task: TaskMetadata
    state_id: str
    run_id: str
    tick_id: str
    attempt: int = 1
    feedback: str | None = None


@dataclass(slots=True)
class SelectorInput:
    """Input passed to route selectors."""

    context: dict[str, Any]
    task: TaskMetadata
    state_id: str
    run_id: str
    tick_id: str


@dataclass(slots=True)
class GuardInput:
    """Input passed to loop guards."""

    context: dict[str, Any]
    iteration: int
    task: TaskMetadata
    state_id: str
    run_id: str
    tick_id: str


@dataclass(slots=True)
class PageOutput:
    """Document produced by a publish state."""

    markdown: str
    title: str | None = None


@dataclass(slots=True)
class HandlerResult:
    """Normalized handler output."""

    status: str
    data: dict[str, Any] | None = None
    message: str | None = None
    page: PageOutput | None = None


Handler: TypeAlias = Callable[[HandlerInput], "HandlerResult | Mapping[str, Any]"]
Selector: TypeAlias = Callable[[SelectorInput], str]
Guard: TypeAlias = Callable[[GuardInput], bool]


@dataclass(slots=True, frozen=True)
class Backoff:
    """Delay applied before each retry attempt."""

    base_ms: int
    strategy: BackoffStrategy = BackoffStrategy.FIXED
    cap_ms: int | None = None

    def delay_ms(self, attempt: int) -> int:
        """Delay before the attempt that follows failed attempt number `attempt`."""

        if self.strategy == BackoffStrategy.EXPONENTIAL:
            delay = self.base_ms * (2 ** max(attempt - 1, 0))
        else:
            delay = self.base_ms
        if self.cap_ms is not None:
            delay = min(delay, self.cap_ms)
        return max(0, delay)


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Retry budget of an action state.

    `max_retries` is the legacy spelling of `max`. Exactly one of the two
    must be set; the validator rejects both and neither.
    """

    max: int | None = None
    max_retries: int | None = None
    backoff: Backoff | None = None

    @property
    def limit(self) -> int:
        if self.max is not None:
            return self.max
        return self.max_retries or 0

    def delay_seconds(self, attempt: int) -> float:
        if self.backoff is None:
            return 0.0
        return self.backoff.delay_ms(attempt) / 1000.0


@dataclass(slots=True)
class ActionRoutes:
    done: str
    failed: str
    feedback: str | None = None

    def target_for(self, event: str) -> str | None:
        if event == ActionStatus.DONE.value:
            return self.done
        if event == ActionStatus.FAILED.value:
            return self.failed
        if event == ActionStatus.FEEDBACK.value:
            return self.feedback
        return None

    def items(self) -> Iterator[tuple[str, str]]:
        yield "done", self.done
        yield "failed", self.failed
        if self.feedback is not None:
            yield "feedback", self.feedback


@dataclass(slots=True)
class LoopRoutes:
    continue_: str
    done: str
    exhausted: str

    def target_for(self, event: str) -> str | None:
        return {
            "continue": self.continue_,
            "done": self.done,
            "exhausted": self.exhausted,
        }.get(event)

    def items(self) -> Iterator[tuple[str, str]]:
        yield "continue", self.continue_
        yield "done", self.done
        yield "exhausted", self.exhausted


@dataclass(slots=True)
class ActionState:
    """Runs a handler once, with an in-place retry loop, and routes by status."""

    kind: ClassVar[str] = "action"

    handler: Handler | str
    routes: ActionRoutes
    retry: RetryPolicy | None = None


@dataclass(slots=True)
class OrchestrateState:
    """Routes by a handler status or by a selector's event name."""

    kind: ClassVar[str] = "orchestrate"

    routes: dict[str, str]
    handler: Handler | str | None = None
    selector: Selector | str | None = None


@dataclass(slots=True)
class LoopState:
    """Runs `body` until the guard passes or `max_iterations` is reached."""

    kind: ClassVar[str] = "loop"

    body: str
    max_iterations: int
    routes: LoopRoutes
    until: Guard | str | None = None


@dataclass(slots=True)
class FeedbackState:
    """Pause point awaiting an external reply."""

    kind: ClassVar[str] = "feedback"

    resume: str = PREVIOUS_STATE


@dataclass(slots=True)
class TerminalState:
    kind: ClassVar[str] = "terminal"

    status: TerminalStatus
    message: str | None = None


State: TypeAlias = ActionState | OrchestrateState | LoopState | FeedbackState | TerminalState
LOW_LEVEL_STATE_TYPES = (ActionState, OrchestrateState, LoopState, FeedbackState, TerminalState)


@dataclass(slots=True)
class FactoryGraph:
    """Compiled, validated state graph of one factory."""

    id: str
    start: str
    context: dict[str, Any]
    states: dict[str, State]
    guards: dict[str, Guard] = field(default_factory=dict)
    handlers: dict[str, Callable[..., Any]] = field(default_factory=dict)

    def feedback_state_ids(self) -> frozenset[str]:
        return frozenset(
            state_id
            for state_id, state in self.states.items()
            if isinstance(state, FeedbackState)
        )

    def resume_target(self, state_id: str, *, previous_state_id: str | None) -> str:
        """Resolve where a paused task continues once a reply arrives."""

        state = self.states[state_id]
        if not isinstance(state, FeedbackState):
            raise ValueError(f"State `{state_id}` is not a feedback state")
        if state.resume != PREVIOUS_STATE:
            return state.resume
        return previous_state_id or state_id


def coerce_handler_result(value: object, *, state_id: str) -> HandlerResult:
    """Normalize handler output, rejecting anything outside the contract."""

    if isinstance(value, HandlerResult):
        result = value
    elif isinstance(value, Mapping):
        result = HandlerResult(
            status=value.get("status"),  # type: ignore[arg-type]
            data=value.get("data"),
            message=value.get("message"),
            page=coerce_page(value["page"]) if value.get("page") is not None else None,
        )
    else:
        raise FatalRunError(
            f"Handler for state `{state_id}` returned {type(value).__name__}, expected an object",
        )
    if not isinstance(result.status, str) or not result.status.strip():
        raise FatalRunError(f"Handler for state `{state_id}` returned no status")
    if result.data is not None and not isinstance(result.data, Mapping):
        raise FatalRunError(f"Handler for state `{state_id}` returned non-object data")
    if result.message is not None and not isinstance(result.message, str):
        raise FatalRunError(f"Handler for state `{state_id}` returned a non-string message")
    if result.data is not None and not isinstance(result.data, dict):
        result.data = dict(result.data)
    return result


def coerce_page(value: object) -> PageOutput:
    """Accept a rendered page as text, a mapping or a `PageOutput`."""

    if isinstance(value, PageOutput):
        return value
    if isinstance(value, str):
        return PageOutput(markdown=value)
    if isinstance(value, Mapping) and isinstance(value.get("markdown"), str):
        title = value.get("title")
        return PageOutput(
            markdown=value["markdown"],
            title=title if isinstance(title, str) else None,
        )
    raise FatalRunError(f"Unsupported page output: {type(value).__name__}")
