from __future__ import annotations

import allure
import pytest

from taskfactory.engine.ledger import replay_events
from taskfactory.engine.models import AdvanceOutcome, LifecycleStatus, ReasonCode
from taskfactory.errors import FatalRunError
from taskfactory.factory import (
    FEEDBACK_CONTEXT_KEY,
    FactoryDefinition,
    HandlerInput,
    HandlerResult,
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
    ActionRoutes,
    ActionState,
    FactoryGraph,
    OrchestrateState,
    TerminalState,
    TerminalStatus,
)

pytestmark = [
    allure.epic("Execution Engine"),
    allure.feature("Advance Semantics"),
]


class FlakyHandler:
    """Fails `failures` times, then succeeds."""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.attempts: list[int] = []

    def __call__(self, payload: HandlerInput) -> HandlerResult:
        self.attempts.append(payload.attempt)
        if len(self.attempts) <= self.failures:
            return HandlerResult(status="failed", message=f"boom {payload.attempt}")
        return HandlerResult(status="done", data={"finished_on": payload.attempt})


def _single_step(handler, *, policy=None) -> FactoryGraph:
    return compile_factory(
        FactoryDefinition(
            id="single",
            start="work",
            states={
                "work": step(handler, on={"done": "done", "failed": "failed"}, retry=policy),
                "done": end("done"),
                "failed": end("failed"),
            },
        ),
    )


def _chain() -> FactoryGraph:
    def mark(name: str):
        return lambda payload: HandlerResult(status="done", data={name: True})

    return compile_factory(
        FactoryDefinition(
            id="chain",
            start="step_one",
            states={
                "step_one": step(mark("one"), on={"done": "step_two", "failed": "failed"}),
                "step_two": step(mark("two"), on={"done": "step_three", "failed": "failed"}),
                "step_three": step(mark("three"), on={"done": "done", "failed": "failed"}),
                "done": end("done"),
                "failed": end("failed"),
            },
        ),
    )


def test_retry_records_each_failed_attempt_then_done(harness) -> None:
    handler = FlakyHandler(failures=2)
    graph = _single_step(handler, policy=retry(max=2, base_ms=0))
    state = harness.new_state(graph)

    result = harness.advance(graph, state)

    assert result.outcome == AdvanceOutcome.DONE
    assert handler.attempts == [1, 2, 3]
    attempts = [
        (event.from_state_id, event.to_state_id, event.reason_code, event.attempt)
        for event in result.events
    ]
    assert attempts == [
        ("work", "work", ReasonCode.ACTION_ATTEMPT_FAILED, 1),
        ("work", "work", ReasonCode.ACTION_ATTEMPT_FAILED, 2),
        ("work", "done", ReasonCode.ACTION_DONE, 3),
    ]
    assert state.attempts == {}
    assert state.last_error is None
    assert state.context["finished_on"] == 3


def test_exhausted_retries_record_max_plus_one_attempts(harness) -> None:
    handler = FlakyHandler(failures=10)
    graph = _single_step(handler, policy=retry(max_retries=2, base_ms=0))
    state = harness.new_state(graph)

    result = harness.advance(graph, state)

    assert result.outcome == AdvanceOutcome.FAILED
    assert len(handler.attempts) == 3
    assert result.events[-1].reason_code == ReasonCode.ACTION_FAILED_EXHAUSTED
    assert result.events[-1].attempt == 3
    assert state.last_error == "boom 3"
    assert state.terminal_state_id == "failed"


def test_fixed_backoff_is_constant_per_attempt(harness) -> None:
    graph = _single_step(FlakyHandler(failures=3), policy=retry(max=3, base_ms=200))

    harness.advance(graph, harness.new_state(graph))

    assert harness.sleeps == [0.2, 0.2, 0.2]


def test_exponential_backoff_doubles_up_to_cap(harness) -> None:
    policy = retry(max=4, strategy="exponential", base_ms=100, cap_ms=500)
    graph = _single_step(FlakyHandler(failures=4), policy=policy)

    harness.advance(graph, harness.new_state(graph))

    assert harness.sleeps == [0.1, 0.2, 0.4, 0.5]


def test_handler_exception_is_a_retryable_attempt_error(harness) -> None:
    calls: list[int] = []

    def explode(payload: HandlerInput) -> HandlerResult:
        calls.append(payload.attempt)
        if payload.attempt == 1:
            raise ConnectionError("socket closed")
        return HandlerResult(status="done")

    graph = _single_step(explode, policy=retry(max=1, base_ms=0))
    state = harness.new_state(graph)

    result = harness.advance(graph, state)

    assert result.outcome == AdvanceOutcome.DONE
    assert result.events[0].reason_code == ReasonCode.ACTION_ATTEMPT_ERROR
    assert calls == [1, 2]


def test_loop_that_never_passes_exhausts_after_max_iterations(harness) -> None:
    def body(payload: HandlerInput) -> HandlerResult:
        return HandlerResult(status="done", data={"runs": payload.context["runs"] + 1})

    graph = compile_factory(
        FactoryDefinition(
            id="bounded",
            start="repeat",
            context={"runs": 0},
            states={
                "repeat": loop(
                    "body",
                    max_iterations=2,
                    until=lambda guard: False,
                    on={"done": "done", "exhausted": "failed"},
                ),
                "body": step(body, on={"done": "repeat", "failed": "failed"}),
                "done": end("done"),
                "failed": end("failed"),
            },
        ),
    )
    state = harness.new_state(graph)

    result = harness.advance(graph, state)

    loop_events = [
        (event.event, event.loop_iteration) for event in result.events
        if event.from_state_id == "repeat"
    ]
    assert loop_events == [("continue", 1), ("continue", 2), ("exhausted", 2)]
    assert state.context["runs"] == 2
    assert state.lifecycle == LifecycleStatus.FAILED
    assert state.loop_iterations == {}


def test_loop_iterations_survive_across_ticks(make_harness) -> None:
    harness = make_harness(max_transitions_per_tick=2)
    graph = compile_factory(
        FactoryDefinition(
            id="bounded",
            start="repeat",
            states={
                "repeat": loop(
                    "body",
                    max_iterations=3,
                    on={"done": "done", "exhausted": "failed"},
                ),
                "body": step(
                    lambda payload: {"status": "done"},
                    on={"done": "repeat", "failed": "failed"},
                ),
                "done": end("done"),
                "failed": end("failed"),
            },
        ),
    )
    state = harness.new_state(graph)
    bodies = 0

    while True:
        result = harness.advance(graph, state)
        bodies += sum(1 for event in result.events if event.from_state_id == "body")
        if result.outcome != AdvanceOutcome.BUDGET_EXHAUSTED:
            break

    assert result.outcome == AdvanceOutcome.FAILED
    assert bodies == 3


def _bump_runs(payload: HandlerInput) -> HandlerResult:
    return HandlerResult(status="done", data={"runs": payload.context["runs"] + 1})


def _counting_loop(max_iterations: int, *, until=None) -> FactoryGraph:
    return compile_factory(
        FactoryDefinition(
            id="counting",
            start="repeat",
            context={"runs": 0},
            states={
                "repeat": loop(
                    "body",
                    max_iterations=max_iterations,
                    until=until,
                    on={"done": "done", "exhausted": "failed"},
                ),
                "body": step(
                    _bump_runs,
                    on={"done": "repeat", "failed": "failed"},
                ),
                "done": end("done"),
                "failed": end("failed", message="Loop exhausted"),
            },
        ),
    )


def test_long_loop_paced_over_many_ticks_exits_via_exhausted(harness) -> None:
    graph = _counting_loop(150, until=lambda guard: False)
    state = harness.new_state(graph)
    outcomes = []

    while True:
        result = harness.advance(graph, state)
        outcomes.append(result.outcome)
        if result.outcome != AdvanceOutcome.BUDGET_EXHAUSTED:
            break

    assert result.outcome == AdvanceOutcome.FAILED
    assert state.last_error == "Loop exhausted"
    assert state.context["runs"] == 150
    assert state.transition_count == 301
    assert len(outcomes) > 1
    events = harness.store.events_for("task-1")
    assert events[-1].reason_code == ReasonCode.LOOP_EXHAUSTED
    assert events[-1].loop_iteration == 150


@pytest.mark.parametrize(
    ("until", "outcome"),
    [(lambda guard: False, AdvanceOutcome.FAILED), (lambda guard: True, AdvanceOutcome.DONE)],
)
def test_zero_iteration_loop_checks_guard_then_exhausts(harness, until, outcome) -> None:
    graph = _counting_loop(0, until=until)
    state = harness.new_state(graph)

    result = harness.advance(graph, state)

    assert result.outcome == outcome
    assert state.context["runs"] == 0
    assert result.transitions == 1


def test_budget_of_one_needs_one_tick_per_transition(make_harness) -> None:
    harness = make_harness(max_transitions_per_tick=1)
    graph = _chain()
    state = harness.new_state(graph)

    outcomes = [harness.advance(graph, state).outcome for _ in range(3)]

    assert outcomes == [
        AdvanceOutcome.BUDGET_EXHAUSTED,
        AdvanceOutcome.BUDGET_EXHAUSTED,
        AdvanceOutcome.DONE,
    ]
    events = harness.store.events_for(state.task_id)
    assert replay_events(events) == "done"
    assert state.terminal_state_id == "done"
    assert state.context == {"one": True, "two": True, "three": True}


def test_paused_task_is_checkpointed_running_between_ticks(make_harness) -> None:
    harness = make_harness(max_transitions_per_tick=1)
    graph = _chain()
    state = harness.new_state(graph)

    harness.advance(graph, state)

    stored = harness.store.load(state.task_id)
    assert stored.lifecycle == LifecycleStatus.RUNNING
    assert stored.current_state_id == "step_two"


def test_run_transition_cap_is_fatal(make_harness) -> None:
    harness = make_harness(max_transitions_per_tick=10, max_transitions_per_run=2)
    graph = _chain()
    state = harness.new_state(graph)

    with pytest.raises(FatalRunError, match="Transition budget exceeded") as error:
        harness.advance(graph, state)

    assert error.value.task_id == "task-1"
    stored = harness.store.load("task-1")
    assert stored.lifecycle == LifecycleStatus.FAILED
    assert "Transition budget exceeded" in stored.last_error


def _ask_graph(parse) -> FactoryGraph:
    return compile_factory(
        FactoryDefinition(
            id="approval",
            start="collect",
            states={
                "collect": ask("Approve?", parse=parse, on={"done": "done", "failed": "failed"}),
                "done": end("done"),
                "failed": end("failed"),
            },
        ),
    )


def test_feedback_pause_then_resume_with_stored_reply(harness) -> None:
    graph = _ask_graph(None)
    state = harness.new_state(graph)

    paused = harness.advance(graph, state)

    assert paused.outcome == AdvanceOutcome.FEEDBACK
    assert paused.message == "Approve?"
    assert state.lifecycle == LifecycleStatus.FEEDBACK
    assert state.current_state_id == "collect"
    assert state.waiting_since is not None

    state.context[FEEDBACK_CONTEXT_KEY] = "yes"
    state.lifecycle = LifecycleStatus.RUNNING
    resumed = harness.advance(graph, state)

    assert resumed.outcome == AdvanceOutcome.DONE
    assert state.context[FEEDBACK_CONTEXT_KEY] is None
    events = harness.store.events_for(state.task_id)
    assert [event.to_state_id for event in events] == ["collect__feedback", "done"]
    assert replay_events(events, feedback_state_ids=graph.feedback_state_ids()) == "done"


def test_stale_reply_is_consumed_at_most_once(harness) -> None:
    parsed: list[str] = []

    def parse(_payload: HandlerInput, reply: str) -> HandlerResult:
        parsed.append(reply)
        return HandlerResult(status="feedback", message="Say it again")

    graph = _ask_graph(parse)
    state = harness.new_state(graph)
    harness.advance(graph, state)

    harness.advance(graph, state, feedback="approve")
    assert parsed == ["approve"]
    assert state.lifecycle == LifecycleStatus.FEEDBACK

    state.lifecycle = LifecycleStatus.RUNNING
    replayed = harness.advance(graph, state, feedback="approve")

    assert parsed == ["approve"]
    assert replayed.outcome == AdvanceOutcome.FEEDBACK
    assert replayed.message == "Approve?"


def test_explicit_reply_ignored_unless_awaiting_feedback(harness) -> None:
    seen: list[str | None] = []

    def handler(payload: HandlerInput) -> HandlerResult:
        seen.append(payload.feedback)
        return HandlerResult(status="done")

    graph = _single_step(handler)
    harness.advance(graph, harness.new_state(graph), feedback="unexpected")

    assert seen == [None]


def test_unmapped_route_reaches_same_fallback_every_time(harness) -> None:
    graph = compile_factory(
        FactoryDefinition(
            id="router",
            start="pick",
            states={
                "pick": route(lambda selector: "unheard-of", on={"left": "done"}),
                "done": end("done"),
            },
        ),
    )

    targets = set()
    for index in range(3):
        state = harness.new_state(graph, task_id=f"task-{index}")
        result = harness.advance(graph, state)
        targets.add(result.events[-1].to_state_id)
        assert state.lifecycle == LifecycleStatus.FAILED

    assert targets == {"pick__route_failed"}


def test_publish_pages_are_returned_not_stored(harness) -> None:
    graph = compile_factory(
        FactoryDefinition(
            id="report",
            start="render",
            context={"name": "Ada"},
            states={
                "render": publish(
                    lambda payload: {
                        "markdown": f"# Hi {payload.context['name']}",
                        "title": "Hi",
                    },
                ),
                "done": end("done"),
                "failed": end("failed"),
            },
        ),
    )
    state = harness.new_state(graph)

    result = harness.advance(graph, state)

    assert [(page.title, page.markdown) for page in result.pages] == [("Hi", "# Hi Ada")]
    assert state.context == {"name": "Ada"}


@pytest.mark.parametrize(
    ("handler_output", "message"),
    [
        ("done", "returned str, expected an object"),
        ({"data": {}}, "returned no status"),
        ({"status": "done", "data": ["x"]}, "returned non-object data"),
        ({"status": "skipped"}, "unsupported status `skipped`"),
    ],
)
def test_malformed_handler_output_is_fatal(harness, handler_output, message: str) -> None:
    graph = _single_step(lambda payload: handler_output, policy=retry(max=3, base_ms=0))
    state = harness.new_state(graph)

    with pytest.raises(FatalRunError, match=message):
        harness.advance(graph, state)

    assert state.lifecycle == LifecycleStatus.FAILED
    assert harness.store.load("task-1").lifecycle == LifecycleStatus.FAILED
    assert harness.store.events == []


def test_missing_transition_target_is_fatal(harness) -> None:
    graph = FactoryGraph(
        id="broken",
        start="work",
        context={},
        states={
            "work": ActionState(
                handler=lambda payload: HandlerResult(status="feedback"),
                routes=ActionRoutes(done="done", failed="done"),
            ),
            "done": TerminalState(status=TerminalStatus.DONE),
        },
    )
    state = harness.new_state(graph)

    with pytest.raises(FatalRunError, match="No transition for event `feedback`"):
        harness.advance(graph, state)


def test_orchestrate_without_handler_or_selector_is_fatal(harness) -> None:
    graph = FactoryGraph(
        id="broken",
        start="pick",
        context={},
        states={
            "pick": OrchestrateState(routes={"go": "done"}),
            "done": TerminalState(status=TerminalStatus.DONE),
        },
    )

    with pytest.raises(FatalRunError, match="neither a handler nor a selector"):
        harness.advance(graph, harness.new_state(graph))


def test_orchestrate_handler_event_overrides_status(harness) -> None:
    graph = FactoryGraph(
        id="dispatch",
        start="pick",
        context={},
        states={
            "pick": OrchestrateState(
                routes={"done": "failed", "fast": "done"},
                handler=lambda payload: {"status": "done", "data": {"event": "fast", "speed": 9}},
            ),
            "done": TerminalState(status=TerminalStatus.DONE),
            "failed": TerminalState(status=TerminalStatus.FAILED),
        },
    )
    state = harness.new_state(graph)

    result = harness.advance(graph, state)

    assert result.outcome == AdvanceOutcome.DONE
    assert result.events[0].reason_code == ReasonCode.ORCHESTRATE_HANDLER
    assert state.context == {"speed": 9}


def test_terminal_task_is_not_advanced_again(harness) -> None:
    graph = _chain()
    state = harness.new_state(graph)
    harness.advance(graph, state)
    recorded = len(harness.store.events)

    again = harness.advance(graph, state)

    assert again.outcome == AdvanceOutcome.DONE
    assert again.transitions == 0
    assert len(harness.store.events) == recorded
