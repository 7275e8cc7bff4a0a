from __future__ import annotations

import allure
import pytest

from taskfactory.errors import GraphValidationError
from taskfactory.factory.states import (
    ActionRoutes,
    ActionState,
    Backoff,
    FactoryGraph,
    FeedbackState,
    HandlerResult,
    LoopRoutes,
    LoopState,
    OrchestrateState,
    RetryPolicy,
    TerminalState,
    TerminalStatus,
)
from taskfactory.factory.validator import ensure_valid, validate_graph

pytestmark = [
    allure.epic("Factory Compiler"),
    allure.feature("Graph Validation"),
]


def _ok(_payload) -> HandlerResult:
    return HandlerResult(status="done")


def _graph(states, *, start: str = "work", guards=None, handlers=None) -> FactoryGraph:
    return FactoryGraph(
        id="demo",
        start=start,
        context={},
        states=states,
        guards=guards or {},
        handlers=handlers or {},
    )


def _terminals() -> dict:
    return {
        "done": TerminalState(status=TerminalStatus.DONE),
        "failed": TerminalState(status=TerminalStatus.FAILED),
    }


def _paths(graph: FactoryGraph) -> list[str]:
    return [item.path for item in validate_graph(graph)]


def test_well_formed_graph_is_accepted() -> None:
    graph = _graph(
        {
            "work": ActionState(
                handler=_ok,
                routes=ActionRoutes(done="review", failed="failed", feedback="wait"),
                retry=RetryPolicy(max=2, backoff=Backoff(base_ms=10, cap_ms=40)),
            ),
            "wait": FeedbackState(),
            "review": LoopState(
                body="work",
                max_iterations=3,
                routes=LoopRoutes(continue_="work", done="done", exhausted="failed"),
                until="is_ready",
            ),
            **_terminals(),
        },
        guards={"is_ready": lambda guard: True},
    )

    assert validate_graph(graph) == []
    assert ensure_valid(graph) is graph


def test_empty_graph_reports_states_and_start() -> None:
    assert _paths(_graph({})) == ["states", "start"]


def test_dangling_transition_target_names_its_path() -> None:
    graph = _graph(
        {
            "work": ActionState(handler=_ok, routes=ActionRoutes(done="nowhere", failed="failed")),
            **_terminals(),
        },
    )

    violations = validate_graph(graph)

    assert [item.path for item in violations] == ["states.work.routes.done"]
    assert "`nowhere` does not exist" in violations[0].message


def test_loop_missing_exhausted_route_and_wrong_continue_are_both_reported() -> None:
    graph = _graph(
        {
            "work": ActionState(handler=_ok, routes=ActionRoutes(done="loop", failed="failed")),
            "loop": LoopState(
                body="work",
                max_iterations=-1,
                routes=LoopRoutes(continue_="done", done="done", exhausted=""),
            ),
            **_terminals(),
        },
    )

    assert _paths(graph) == [
        "states.loop.routes.exhausted",
        "states.loop.routes.continue",
        "states.loop.max_iterations",
    ]


@pytest.mark.parametrize(
    ("max_iterations", "expected"),
    [(0, []), (2.5, ["states.loop.max_iterations"])],
)
def test_loop_accepts_zero_iterations_but_not_fractions(max_iterations, expected) -> None:
    graph = _graph(
        {
            "work": ActionState(handler=_ok, routes=ActionRoutes(done="loop", failed="failed")),
            "loop": LoopState(
                body="work",
                max_iterations=max_iterations,
                routes=LoopRoutes(continue_="work", done="done", exhausted="failed"),
            ),
            **_terminals(),
        },
        start="loop",
    )

    assert _paths(graph) == expected


def test_unknown_guard_is_rejected() -> None:
    graph = _graph(
        {
            "work": ActionState(handler=_ok, routes=ActionRoutes(done="loop", failed="failed")),
            "loop": LoopState(
                body="work",
                max_iterations=2,
                routes=LoopRoutes(continue_="work", done="done", exhausted="failed"),
                until="missing_guard",
            ),
            **_terminals(),
        },
    )

    assert _paths(graph) == ["states.loop.until"]


@pytest.mark.parametrize(
    ("retry", "expected"),
    [
        (RetryPolicy(), ["states.work.retry"]),
        (RetryPolicy(max=1, max_retries=1), ["states.work.retry"]),
        (RetryPolicy(max=-1), ["states.work.retry.max"]),
        (RetryPolicy(max=1.5), ["states.work.retry.max"]),
        (RetryPolicy(max_retries=True), ["states.work.retry.max_retries"]),
        (
            RetryPolicy(max_retries=1, backoff=Backoff(base_ms=50, cap_ms=10)),
            ["states.work.retry.backoff.cap_ms"],
        ),
    ],
)
def test_retry_policy_shape_is_enforced(retry: RetryPolicy, expected: list[str]) -> None:
    graph = _graph(
        {
            "work": ActionState(
                handler=_ok,
                routes=ActionRoutes(done="done", failed="failed"),
                retry=retry,
            ),
            **_terminals(),
        },
    )

    assert _paths(graph) == expected


def test_feedback_resume_must_exist_and_not_be_a_pause() -> None:
    graph = _graph(
        {
            "work": ActionState(
                handler=_ok,
                routes=ActionRoutes(done="done", failed="failed", feedback="first_pause"),
            ),
            "first_pause": FeedbackState(resume="second_pause"),
            "second_pause": FeedbackState(resume="ghost"),
            **_terminals(),
        },
    )

    violations = validate_graph(graph)

    assert [item.path for item in violations] == [
        "states.first_pause.resume",
        "states.second_pause.resume",
    ]
    assert "is a feedback state" in violations[0].message
    assert "`ghost` does not exist" in violations[1].message


def test_orchestrate_needs_exactly_one_of_handler_or_selector() -> None:
    graph = _graph(
        {
            "work": OrchestrateState(routes={"go": "done"}),
            "both": OrchestrateState(routes={"go": "done"}, handler=_ok, selector=lambda _: "go"),
            **_terminals(),
        },
    )

    assert _paths(graph) == ["states.work", "states.both"]


def test_named_handlers_must_be_registered() -> None:
    graph = _graph(
        {
            "work": ActionState(handler="draft", routes=ActionRoutes(done="pick", failed="failed")),
            "pick": OrchestrateState(routes={"go": "done"}, selector="choose"),
            **_terminals(),
        },
        handlers={"draft": _ok},
    )

    assert _paths(graph) == ["states.pick.selector"]


def test_ensure_valid_raises_with_every_violation() -> None:
    graph = _graph(
        {
            "work": ActionState(handler=_ok, routes=ActionRoutes(done="a", failed="b")),
        },
        start="missing",
    )

    with pytest.raises(GraphValidationError) as error:
        ensure_valid(graph)

    assert [item.path for item in error.value.violations] == [
        "start",
        "states.work.routes.done",
        "states.work.routes.failed",
    ]
    assert "Invalid factory `demo`" in str(error.value)
