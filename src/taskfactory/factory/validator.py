"""Structural invariant checks for compiled state graphs."""

from __future__ import annotations

from dataclasses import dataclass

from taskfactory.errors import GraphValidationError
from taskfactory.factory.states import (
    PREVIOUS_STATE,
    ActionState,
    FactoryGraph,
    FeedbackState,
    LoopState,
    OrchestrateState,
    RetryPolicy,
    TerminalState,
)


@dataclass(slots=True, frozen=True)
class InvariantViolation:
    """One failed invariant, addressed by a dotted path into the graph."""

    path: str
    message: str


def validate_graph(graph: FactoryGraph) -> list[InvariantViolation]:
    """Return every invariant violation of `graph`; empty means valid."""

    violations: list[InvariantViolation] = []
    if not graph.states:
        violations.append(InvariantViolation("states", "factory must define at least one state"))
    if graph.start not in graph.states:
        violations.append(
            InvariantViolation("start", f"start state `{graph.start}` does not exist"),
        )

    for state_id, state in graph.states.items():
        path = f"states.{state_id}"
        if isinstance(state, ActionState):
            _check_routes(graph, path, dict(state.routes.items()), violations)
            _check_callable_ref(graph, f"{path}.handler", state.handler, violations)
            if state.retry is not None:
                _check_retry(f"{path}.retry", state.retry, violations)
        elif isinstance(state, OrchestrateState):
            _check_routes(graph, path, state.routes, violations)
            _check_orchestrate(graph, path, state, violations)
        elif isinstance(state, LoopState):
            _check_routes(graph, path, dict(state.routes.items()), violations)
            _check_loop(graph, path, state, violations)
        elif isinstance(state, FeedbackState):
            _check_feedback(graph, state_id, state, violations)
        elif not isinstance(state, TerminalState):
            violations.append(
                InvariantViolation(path, f"unsupported state type {type(state).__name__}"),
            )
    return violations


def ensure_valid(graph: FactoryGraph) -> FactoryGraph:
    """Return `graph` unchanged or raise with the full violation list."""

    violations = validate_graph(graph)
    if violations:
        raise GraphValidationError(graph.id, violations)
    return graph


def _check_routes(
    graph: FactoryGraph,
    path: str,
    routes: dict[str, str | None],
    violations: list[InvariantViolation],
) -> None:
    if not routes:
        violations.append(InvariantViolation(f"{path}.routes", "must define transitions"))
        return
    for event, target in routes.items():
        if not event:
            violations.append(InvariantViolation(f"{path}.routes", "event name must not be empty"))
        if not target:
            violations.append(
                InvariantViolation(f"{path}.routes.{event}", "transition target must not be empty"),
            )
        elif target not in graph.states:
            violations.append(
                InvariantViolation(
                    f"{path}.routes.{event}",
                    f"transition target `{target}` does not exist",
                ),
            )


def _check_retry(path: str, retry: RetryPolicy, violations: list[InvariantViolation]) -> None:
    if (retry.max is None) == (retry.max_retries is None):
        violations.append(
            InvariantViolation(path, "retry must define exactly one of `max` or `max_retries`"),
        )
    for name, value in (("max", retry.max), ("max_retries", retry.max_retries)):
        if value is not None and (
            isinstance(value, bool) or not isinstance(value, int) or value < 0
        ):
            violations.append(
                InvariantViolation(f"{path}.{name}", "must be a non-negative integer"),
            )
    backoff = retry.backoff
    if backoff is None:
        return
    if backoff.base_ms < 0:
        violations.append(InvariantViolation(f"{path}.backoff.base_ms", "must be >= 0"))
    if backoff.cap_ms is not None and backoff.cap_ms < backoff.base_ms:
        violations.append(
            InvariantViolation(f"{path}.backoff.cap_ms", "must be >= base_ms"),
        )


def _check_orchestrate(
    graph: FactoryGraph,
    path: str,
    state: OrchestrateState,
    violations: list[InvariantViolation],
) -> None:
    if (state.handler is None) == (state.selector is None):
        violations.append(
            InvariantViolation(path, "orchestrate must define exactly one of handler or selector"),
        )
    if state.handler is not None:
        _check_callable_ref(graph, f"{path}.handler", state.handler, violations)
    if state.selector is not None:
        _check_callable_ref(graph, f"{path}.selector", state.selector, violations)


def _check_loop(
    graph: FactoryGraph,
    path: str,
    state: LoopState,
    violations: list[InvariantViolation],
) -> None:
    if state.body not in graph.states:
        violations.append(
            InvariantViolation(f"{path}.body", f"loop body `{state.body}` does not exist"),
        )
    if state.routes.continue_ != state.body:
        violations.append(
            InvariantViolation(
                f"{path}.routes.continue",
                f"loop continue transition must target body `{state.body}`",
            ),
        )
    if isinstance(state.max_iterations, bool) or not isinstance(state.max_iterations, int):
        violations.append(InvariantViolation(f"{path}.max_iterations", "must be an integer"))
    elif state.max_iterations < 0:
        violations.append(InvariantViolation(f"{path}.max_iterations", "must be >= 0"))
    if isinstance(state.until, str) and state.until not in graph.guards:
        violations.append(
            InvariantViolation(f"{path}.until", f"unknown guard `{state.until}`"),
        )


def _check_feedback(
    graph: FactoryGraph,
    state_id: str,
    state: FeedbackState,
    violations: list[InvariantViolation],
) -> None:
    path = f"states.{state_id}.resume"
    if state.resume == PREVIOUS_STATE:
        if state_id == graph.start:
            violations.append(
                InvariantViolation(path, "start state cannot resume to the previous state"),
            )
        return
    target = graph.states.get(state.resume)
    if target is None:
        violations.append(
            InvariantViolation(path, f"resume target `{state.resume}` does not exist"),
        )
    elif isinstance(target, FeedbackState):
        violations.append(
            InvariantViolation(path, f"resume target `{state.resume}` is a feedback state"),
        )


def _check_callable_ref(
    graph: FactoryGraph,
    path: str,
    ref: object,
    violations: list[InvariantViolation],
) -> None:
    if isinstance(ref, str):
        if ref not in graph.handlers:
            violations.append(InvariantViolation(path, f"unknown handler `{ref}`"))
    elif not callable(ref):
        violations.append(InvariantViolation(path, "must be callable or a registered name"))
