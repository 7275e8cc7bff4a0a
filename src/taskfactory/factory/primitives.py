"""Authoring primitives and their lowering into a validated state graph."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any, TypeAlias

from taskfactory.errors import CompileError, GraphValidationError
from taskfactory.factory.states import (
    LOW_LEVEL_STATE_TYPES,
    PREVIOUS_STATE,
    ActionRoutes,
    ActionState,
    ActionStatus,
    Backoff,
    BackoffStrategy,
    FactoryGraph,
    FeedbackState,
    Guard,
    Handler,
    HandlerInput,
    HandlerResult,
    LoopRoutes,
    LoopState,
    OrchestrateState,
    PageOutput,
    RetryPolicy,
    Selector,
    SelectorInput,
    State,
    TerminalState,
    TerminalStatus,
    coerce_handler_result,
    coerce_page,
)
from taskfactory.factory.validator import InvariantViolation, validate_graph

logger = logging.getLogger(__name__)

FEEDBACK_CONTEXT_KEY = "human_feedback"
ASK_FEEDBACK_SUFFIX = "__feedback"
ROUTE_UNMAPPED_EVENT = "__route_unmapped__"
ROUTE_FAILED_SUFFIX = "__route_failed"

Prompt: TypeAlias = str | Callable[[HandlerInput], str]
ReplyParser: TypeAlias = Callable[[HandlerInput, str], "HandlerResult | Mapping[str, Any]"]
Renderer: TypeAlias = Callable[[HandlerInput], "str | PageOutput | Mapping[str, Any]"]


@dataclass(slots=True)
class StepPrimitive:
    run: Handler | str
    on: dict[str, str]
    retry: RetryPolicy | None = None


@dataclass(slots=True)
class AskPrimitive:
    prompt: Prompt
    on: dict[str, str]
    parse: ReplyParser | None = None
    resume: str | None = None


@dataclass(slots=True)
class RoutePrimitive:
    select: Selector | str
    on: dict[str, str]


@dataclass(slots=True)
class LoopPrimitive:
    body: str
    max_iterations: int
    on: dict[str, str]
    until: Guard | str | None = None


@dataclass(slots=True)
class PublishPrimitive:
    render: Renderer
    on: dict[str, str]


@dataclass(slots=True)
class EndPrimitive:
    status: TerminalStatus
    message: str | None = None


Primitive: TypeAlias = (
    StepPrimitive | AskPrimitive | RoutePrimitive | LoopPrimitive | PublishPrimitive | EndPrimitive
)


@dataclass(slots=True)
class FactoryDefinition:
    """Authored factory before compilation."""

    id: str
    start: str
    states: Mapping[str, Primitive | State]
    context: dict[str, Any] = field(default_factory=dict)
    guards: dict[str, Guard] = field(default_factory=dict)
    handlers: dict[str, Callable[..., Any]] = field(default_factory=dict)


def step(
    run: Handler | str,
    on: Mapping[str, str],
    retry: RetryPolicy | None = None,
) -> StepPrimitive:
    """Run a handler and route by its `done`/`feedback`/`failed` status."""

    return StepPrimitive(run=run, on=dict(on), retry=retry)


def ask(
    prompt: Prompt,
    on: Mapping[str, str],
    *,
    parse: ReplyParser | None = None,
    resume: str | None = None,
) -> AskPrimitive:
    """Pause for a human reply, then parse it."""

    return AskPrimitive(prompt=prompt, on=dict(on), parse=parse, resume=resume)


def route(select: Selector | str, on: Mapping[str, str]) -> RoutePrimitive:
    return RoutePrimitive(select=select, on=dict(on))


def loop(
    body: str,
    max_iterations: int,
    on: Mapping[str, str],
    *,
    until: Guard | str | None = None,
) -> LoopPrimitive:
    return LoopPrimitive(body=body, max_iterations=max_iterations, on=dict(on), until=until)


def retry(
    max: int | None = None,  # noqa: A002
    *,
    max_retries: int | None = None,
    backoff: Backoff | None = None,
    strategy: BackoffStrategy | str | None = None,
    base_ms: int | None = None,
    cap_ms: int | None = None,
) -> RetryPolicy:
    """Build a retry policy; backoff may be given whole or by its fields."""

    if backoff is None and base_ms is not None:
        backoff = Backoff(
            base_ms=base_ms,
            strategy=BackoffStrategy(strategy or BackoffStrategy.FIXED),
            cap_ms=cap_ms,
        )
    return RetryPolicy(max=max, max_retries=max_retries, backoff=backoff)


def publish(render: Renderer, on: Mapping[str, str] | None = None) -> PublishPrimitive:
    """Render a page and finish with `done`."""

    return PublishPrimitive(
        render=render,
        on=dict(on) if on is not None else {"done": "done", "failed": "failed"},
    )


def end(status: TerminalStatus | str, message: str | None = None) -> EndPrimitive:
    return EndPrimitive(status=TerminalStatus(status), message=message)


class AskHandler:
    """Action handler behind `ask`: consumes one reply per pause."""

    __slots__ = ("parse", "prompt")

    def __init__(self, prompt: Prompt, parse: ReplyParser | None) -> None:
        self.prompt = prompt
        self.parse = parse

    def __call__(self, payload: HandlerInput) -> HandlerResult:
        prompt = self.render_prompt(payload)
        reply = read_reply(payload)
        if reply is None:
            return HandlerResult(
                status=ActionStatus.FEEDBACK.value,
                data={FEEDBACK_CONTEXT_KEY: None},
                message=prompt,
            )

        if self.parse is None:
            result = HandlerResult(status=ActionStatus.DONE.value)
        else:
            result = coerce_handler_result(self.parse(payload, reply), state_id=payload.state_id)
        data = dict(result.data or {})
        data[FEEDBACK_CONTEXT_KEY] = None
        message = result.message
        if result.status == ActionStatus.FEEDBACK.value and not message:
            message = prompt
        return HandlerResult(status=result.status, data=data, message=message, page=result.page)

    def render_prompt(self, payload: HandlerInput) -> str:
        if callable(self.prompt):
            return self.prompt(payload)
        return self.prompt


class UnmappedRouteSelector:
    """Selector wrapper folding unknown events into the unmapped event."""

    __slots__ = ("known_events", "select")

    def __init__(self, select: Selector, known_events: frozenset[str]) -> None:
        self.select = select
        self.known_events = known_events

    def __call__(self, payload: SelectorInput) -> str:
        event = self.select(payload)
        if not isinstance(event, str) or not event.strip():
            return ROUTE_UNMAPPED_EVENT
        event = event.strip()
        if event not in self.known_events:
            logger.debug("Route `%s` selected unmapped event %r", payload.state_id, event)
            return ROUTE_UNMAPPED_EVENT
        return event


class PublishHandler:
    __slots__ = ("render",)

    def __init__(self, render: Renderer) -> None:
        self.render = render

    def __call__(self, payload: HandlerInput) -> HandlerResult:
        return HandlerResult(
            status=ActionStatus.DONE.value,
            page=coerce_page(self.render(payload)),
        )


def read_reply(payload: HandlerInput) -> str | None:
    """Reply from the explicit input first, then from the reserved context key."""

    for candidate in (payload.feedback, payload.context.get(FEEDBACK_CONTEXT_KEY)):
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return None


def compile_factory(definition: FactoryDefinition) -> FactoryGraph:
    """Lower every primitive, then validate the resulting graph.

    Raises:
        CompileError: two primitives emit the same state id.
        GraphValidationError: the lowered graph breaks an invariant.
    """

    states: dict[str, State] = {}
    violations: list[InvariantViolation] = []
    for state_id, item in definition.states.items():
        for emitted_id, state in _lower(state_id, item, definition, violations):
            if emitted_id in states:
                raise CompileError(
                    f"State id collision while compiling `{state_id}`: "
                    f"`{emitted_id}` already exists",
                )
            states[emitted_id] = state

    graph = FactoryGraph(
        id=definition.id,
        start=definition.start,
        context=dict(definition.context),
        states=states,
        guards=dict(definition.guards),
        handlers=dict(definition.handlers),
    )
    reported = {item.path for item in violations}
    violations.extend(item for item in validate_graph(graph) if item.path not in reported)
    if violations:
        raise GraphValidationError(definition.id, violations)
    logger.debug("Compiled factory %s with %d states", definition.id, len(states))
    return graph


def _lower(
    state_id: str,
    item: Primitive | State,
    definition: FactoryDefinition,
    violations: list[InvariantViolation],
) -> Iterator[tuple[str, State]]:
    if isinstance(item, LOW_LEVEL_STATE_TYPES):
        yield state_id, item
    elif isinstance(item, StepPrimitive):
        yield state_id, ActionState(
            handler=item.run,
            routes=_action_routes(state_id, item.on, violations),
            retry=item.retry,
        )
    elif isinstance(item, AskPrimitive):
        feedback_id = f"{state_id}{ASK_FEEDBACK_SUFFIX}"
        resume = item.resume or item.on.get(ActionStatus.FEEDBACK.value) or PREVIOUS_STATE
        yield state_id, ActionState(
            handler=AskHandler(item.prompt, item.parse),
            routes=_action_routes(
                state_id,
                {**item.on, ActionStatus.FEEDBACK.value: feedback_id},
                violations,
            ),
        )
        yield feedback_id, FeedbackState(resume=resume)
    elif isinstance(item, RoutePrimitive):
        yield from _lower_route(state_id, item, definition, violations)
    elif isinstance(item, LoopPrimitive):
        yield state_id, LoopState(
            body=item.body,
            max_iterations=item.max_iterations,
            routes=LoopRoutes(
                continue_=item.body,
                done=_required_route(state_id, item.on, "done", violations),
                exhausted=_required_route(state_id, item.on, "exhausted", violations),
            ),
            until=item.until,
        )
    elif isinstance(item, PublishPrimitive):
        yield state_id, ActionState(
            handler=PublishHandler(item.render),
            routes=_action_routes(state_id, item.on, violations),
        )
    elif isinstance(item, EndPrimitive):
        yield state_id, TerminalState(status=item.status, message=item.message)
    else:
        violations.append(
            InvariantViolation(
                f"states.{state_id}",
                f"unsupported primitive {type(item).__name__}",
            ),
        )


def _lower_route(
    state_id: str,
    item: RoutePrimitive,
    definition: FactoryDefinition,
    violations: list[InvariantViolation],
) -> Iterator[tuple[str, State]]:
    routes = dict(item.on)
    synthesized: list[tuple[str, State]] = []
    if ROUTE_UNMAPPED_EVENT not in routes:
        failed_id = f"{state_id}{ROUTE_FAILED_SUFFIX}"
        routes[ROUTE_UNMAPPED_EVENT] = failed_id
        synthesized.append((failed_id, TerminalState(status=TerminalStatus.FAILED)))

    select = item.select
    if isinstance(select, str):
        resolved = definition.handlers.get(select)
        if resolved is None:
            violations.append(
                InvariantViolation(f"states.{state_id}.selector", f"unknown handler `{select}`"),
            )
            resolved = _unresolved_selector
        select = resolved
    yield state_id, OrchestrateState(
        routes=routes,
        selector=UnmappedRouteSelector(select, frozenset(routes)),
    )
    yield from synthesized


def _action_routes(
    state_id: str,
    on: Mapping[str, str],
    violations: list[InvariantViolation],
) -> ActionRoutes:
    allowed = {status.value for status in ActionStatus}
    for event in on:
        if event not in allowed:
            violations.append(
                InvariantViolation(
                    f"states.{state_id}.routes.{event}",
                    "actions only route `done`, `feedback` and `failed`",
                ),
            )
    return ActionRoutes(
        done=_required_route(state_id, on, "done", violations),
        failed=_required_route(state_id, on, "failed", violations),
        feedback=on.get("feedback"),
    )


def _required_route(
    state_id: str,
    on: Mapping[str, str],
    event: str,
    violations: list[InvariantViolation],
) -> str:
    target = on.get(event)
    if not target:
        violations.append(
            InvariantViolation(
                f"states.{state_id}.routes.{event}",
                f"must define `{event}` transition",
            ),
        )
        return ""
    return target


def _unresolved_selector(_: SelectorInput) -> str:
    return ROUTE_UNMAPPED_EVENT
