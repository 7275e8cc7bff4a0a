"""Direct-style pipe authoring surface compiled into the regular state graph.

A pipe is a tree of nodes (`pipe_step`, `pipe_ask`, `decide`, `pipe_loop`,
`write`, the `end_*` helpers) joined with `flow`. Node functions work on the
plain context mapping. `define_pipe` turns the tree into a
`FactoryDefinition` made of ordinary primitives, so a pipe runs on the same
engine, with the same ledger and persistence, as a hand-written factory.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, TypeAlias

from taskfactory.factory.primitives import (
    AskPrimitive,
    EndPrimitive,
    FactoryDefinition,
    LoopPrimitive,
    Primitive,
    PublishPrimitive,
    StepPrimitive,
    compile_factory,
)
from taskfactory.factory.states import (
    ActionStatus,
    FactoryGraph,
    HandlerInput,
    HandlerResult,
    OrchestrateState,
    PageOutput,
    State,
    TerminalStatus,
)

OTHERWISE_EVENT = "__otherwise__"
UNKNOWN_BRANCH_EVENT = "__unknown_branch__"
LOOP_EXHAUSTED_MESSAGE = "Loop exhausted before completion"

Context: TypeAlias = dict[str, Any]


class AwaitFeedback:
    """Returned by a pipe `parse` function to ask the same question again."""

    __slots__ = ("context", "message")

    def __init__(
        self,
        message: str | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.context = dict(context or {})


@dataclass(slots=True)
class PipeStep:
    run: Callable[[Context], Mapping[str, Any]]
    name: str | None = None


@dataclass(slots=True)
class PipeAsk:
    prompt: str | Callable[[Context], str]
    parse: Callable[[Context, str], Mapping[str, Any] | AwaitFeedback] | None = None
    name: str | None = None


@dataclass(slots=True)
class Decide:
    select: Callable[[Context], str]
    branches: dict[str, PipeNode]
    otherwise: PipeNode | None = None
    name: str | None = None


@dataclass(slots=True)
class PipeLoop:
    body: PipeNode
    until: Callable[[Context], bool]
    max_iterations: int = 100
    on_exhausted: PipeNode | None = None
    name: str | None = None


@dataclass(slots=True)
class Write:
    render: Callable[[Context], str | PageOutput | Mapping[str, Any]]
    name: str | None = None


@dataclass(slots=True)
class PipeEnd:
    status: TerminalStatus
    message: str | None = None


@dataclass(slots=True)
class Flow:
    nodes: tuple[PipeNode, ...] = field(default_factory=tuple)


PipeNode: TypeAlias = PipeStep | PipeAsk | Decide | PipeLoop | Write | PipeEnd | Flow


def pipe_step(run: Callable[[Context], Mapping[str, Any]], *, name: str | None = None) -> PipeStep:
    return PipeStep(run=run, name=name)


def pipe_ask(
    prompt: str | Callable[[Context], str],
    parse: Callable[[Context, str], Mapping[str, Any] | AwaitFeedback] | None = None,
    *,
    name: str | None = None,
) -> PipeAsk:
    return PipeAsk(prompt=prompt, parse=parse, name=name)


def decide(
    select: Callable[[Context], str],
    branches: Mapping[str, PipeNode],
    *,
    otherwise: PipeNode | None = None,
    name: str | None = None,
) -> Decide:
    return Decide(select=select, branches=dict(branches), otherwise=otherwise, name=name)


def pipe_loop(
    body: PipeNode,
    until: Callable[[Context], bool],
    *,
    max_iterations: int = 100,
    on_exhausted: PipeNode | None = None,
    name: str | None = None,
) -> PipeLoop:
    return PipeLoop(
        body=body,
        until=until,
        max_iterations=max_iterations,
        on_exhausted=on_exhausted,
        name=name,
    )


def write(
    render: Callable[[Context], str | PageOutput | Mapping[str, Any]],
    *,
    name: str | None = None,
) -> Write:
    return Write(render=render, name=name)


def end_done(message: str | None = None) -> PipeEnd:
    return PipeEnd(status=TerminalStatus.DONE, message=message)


def end_blocked(message: str | None = None) -> PipeEnd:
    return PipeEnd(status=TerminalStatus.BLOCKED, message=message)


def end_failed(message: str | None = None) -> PipeEnd:
    return PipeEnd(status=TerminalStatus.FAILED, message=message)


def flow(*nodes: PipeNode) -> Flow:
    return Flow(nodes=tuple(nodes))


def define_pipe(
    id: str,  # noqa: A002
    run: PipeNode,
    *,
    initial: Mapping[str, Any] | None = None,
) -> FactoryDefinition:
    """Lower a pipe tree into a definition of regular primitives."""

    compiler = _PipeCompiler()
    done_id = compiler.add("done", EndPrimitive(status=TerminalStatus.DONE))
    compiler.failed_id = compiler.add("failed", EndPrimitive(status=TerminalStatus.FAILED))
    start = compiler.compile(run, done_id)
    return FactoryDefinition(
        id=id,
        start=start,
        states=compiler.states,
        context=dict(initial or {}),
    )


class _PipeCompiler:
    def __init__(self) -> None:
        self.states: dict[str, Primitive | State] = {}
        self.failed_id = ""
        self._counter = 0

    def allocate(self, label: str) -> str:
        self._counter += 1
        return f"{label}_{self._counter}"

    def add(self, state_id: str, state: Primitive | State) -> str:
        self.states[state_id] = state
        return state_id

    def compile(  # noqa: PLR0911
        self,
        node: PipeNode,
        next_id: str,
        entry_id: str | None = None,
    ) -> str:
        if isinstance(node, Flow):
            return self._compile_flow(node, next_id, entry_id)
        if isinstance(node, PipeStep):
            return self.add(
                entry_id or self.allocate(node.name or "step"),
                StepPrimitive(
                    run=_StepHandler(node.run),
                    on={"done": next_id, "failed": self.failed_id},
                ),
            )
        if isinstance(node, PipeAsk):
            return self.add(
                entry_id or self.allocate(node.name or "ask"),
                AskPrimitive(
                    prompt=_render_prompt(node.prompt),
                    parse=_ReplyHandler(node.parse) if node.parse is not None else None,
                    on={"done": next_id, "failed": self.failed_id},
                ),
            )
        if isinstance(node, Decide):
            return self._compile_decide(node, next_id, entry_id)
        if isinstance(node, PipeLoop):
            return self._compile_loop(node, next_id, entry_id)
        if isinstance(node, Write):
            return self.add(
                entry_id or self.allocate(node.name or "write"),
                PublishPrimitive(
                    render=_page_renderer(node.render),
                    on={"done": next_id, "failed": self.failed_id},
                ),
            )
        if isinstance(node, PipeEnd):
            return self.add(
                entry_id or self.allocate(f"end_{node.status.value}"),
                EndPrimitive(status=node.status, message=node.message),
            )
        raise TypeError(f"Unsupported pipe node: {type(node).__name__}")

    def _compile_flow(self, node: Flow, next_id: str, entry_id: str | None) -> str:
        if not node.nodes:
            return next_id
        entry_ids = [entry_id] + [None] * (len(node.nodes) - 1)
        for index, child in enumerate(node.nodes):
            if entry_ids[index] is None and not isinstance(child, Flow):
                entry_ids[index] = self.allocate(_label(child))
        target = next_id
        for child, child_id in reversed(list(zip(node.nodes, entry_ids, strict=True))):
            target = self.compile(child, target, child_id)
        return target

    def _compile_decide(self, node: Decide, next_id: str, entry_id: str | None) -> str:
        state_id = entry_id or self.allocate(node.name or "decide")
        routes = {
            key: self.compile(branch, next_id) for key, branch in node.branches.items()
        }
        if node.otherwise is not None:
            routes[OTHERWISE_EVENT] = self.compile(node.otherwise, next_id)
        routes[UNKNOWN_BRANCH_EVENT] = self.failed_id
        self.states[state_id] = OrchestrateState(
            routes=routes,
            handler=_DecideHandler(
                node.select,
                frozenset(node.branches),
                has_otherwise=node.otherwise is not None,
            ),
        )
        return state_id

    def _compile_loop(self, node: PipeLoop, next_id: str, entry_id: str | None) -> str:
        state_id = entry_id or self.allocate(node.name or "loop")
        body_id = self.compile(node.body, state_id)
        if node.on_exhausted is not None:
            exhausted_id = self.compile(node.on_exhausted, next_id)
        else:
            exhausted_id = self.add(
                f"{state_id}__exhausted",
                EndPrimitive(status=TerminalStatus.FAILED, message=LOOP_EXHAUSTED_MESSAGE),
            )
        until = node.until
        self.states[state_id] = LoopPrimitive(
            body=body_id,
            max_iterations=node.max_iterations,
            on={"done": next_id, "exhausted": exhausted_id},
            until=lambda payload: bool(until(payload.context)),
        )
        return state_id


class _StepHandler:
    __slots__ = ("run",)

    def __init__(self, run: Callable[[Context], Mapping[str, Any]]) -> None:
        self.run = run

    def __call__(self, payload: HandlerInput) -> HandlerResult:
        return HandlerResult(status=ActionStatus.DONE.value, data=dict(self.run(payload.context)))


class _ReplyHandler:
    __slots__ = ("parse",)

    def __init__(self, parse: Callable[[Context, str], Mapping[str, Any] | AwaitFeedback]) -> None:
        self.parse = parse

    def __call__(self, payload: HandlerInput, reply: str) -> HandlerResult:
        parsed = self.parse(payload.context, reply)
        if isinstance(parsed, AwaitFeedback):
            return HandlerResult(
                status=ActionStatus.FEEDBACK.value,
                data=parsed.context,
                message=parsed.message,
            )
        return HandlerResult(status=ActionStatus.DONE.value, data=dict(parsed))


class _DecideHandler:
    __slots__ = ("branches", "has_otherwise", "select")

    def __init__(
        self,
        select: Callable[[Context], str],
        branches: frozenset[str],
        *,
        has_otherwise: bool,
    ) -> None:
        self.select = select
        self.branches = branches
        self.has_otherwise = has_otherwise

    def __call__(self, payload: HandlerInput) -> HandlerResult:
        key = self.select(payload.context)
        if key in self.branches:
            return HandlerResult(status=key)
        if self.has_otherwise:
            return HandlerResult(status=OTHERWISE_EVENT)
        return HandlerResult(
            status=UNKNOWN_BRANCH_EVENT,
            message=f"Unknown branch selected: {key}",
        )


def _render_prompt(prompt: str | Callable[[Context], str]) -> str | Callable[[HandlerInput], str]:
    if callable(prompt):
        return lambda payload: prompt(payload.context)
    return prompt


def _page_renderer(
    render: Callable[[Context], str | PageOutput | Mapping[str, Any]],
) -> Callable[[HandlerInput], str | PageOutput | Mapping[str, Any]]:
    return lambda payload: render(payload.context)


def _label(node: PipeNode) -> str:
    if isinstance(node, PipeEnd):
        return f"end_{node.status.value}"
    name = getattr(node, "name", None)
    if name:
        return name
    return {
        PipeStep: "step",
        PipeAsk: "ask",
        Decide: "decide",
        PipeLoop: "loop",
        Write: "write",
    }[type(node)]


def compile_pipe(
    id: str,  # noqa: A002
    run: PipeNode,
    *,
    initial: Mapping[str, Any] | None = None,
) -> FactoryGraph:
    """`define_pipe` followed by `compile_factory`."""

    return compile_factory(define_pipe(id, run, initial=initial))
