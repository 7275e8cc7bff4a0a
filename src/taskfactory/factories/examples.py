"""Demo factories: a primitive-built review workflow and a pipe-built Magic 8-Ball."""

from __future__ import annotations

from typing import Any

from taskfactory.factory import (
    ROUTE_UNMAPPED_EVENT,
    AwaitFeedback,
    FactoryDefinition,
    FactoryGraph,
    HandlerInput,
    HandlerResult,
    SelectorInput,
    ask,
    compile_factory,
    compile_pipe,
    decide,
    end,
    end_done,
    end_failed,
    flow,
    loop,
    pipe_ask,
    pipe_step,
    publish,
    retry,
    route,
    step,
    write,
)

REVIEW_FACTORY_ID = "review-draft"
MAGIC_EIGHT_FACTORY_ID = "magic-8"

RESPONSES = (
    "Signs point to yes.",
    "Outlook not so good.",
    "Ask again later.",
    "Without a doubt.",
    "Better not tell you now.",
)


def start_draft(payload: HandlerInput) -> HandlerResult:
    title = payload.task.title or "Untitled"
    return HandlerResult(
        status="done",
        data={
            "summary": f"Drafted initial plan for {title}",
            "draft_ready": False,
            "retry_attempts": 0,
            "revisions": 0,
        },
    )


def parse_decision(_: HandlerInput, reply: str) -> HandlerResult:
    normalized = reply.strip().lower()
    if normalized == "approve":
        return HandlerResult(status="done", data={"decision": "approve", "draft_ready": True})
    if normalized == "revise":
        return HandlerResult(status="done", data={"decision": "revise", "draft_ready": False})
    return HandlerResult(status="done", data={"decision": "clarify"})


def select_decision(payload: SelectorInput) -> str:
    decision = payload.context.get("decision")
    if decision == "approve":
        return "publish"
    if decision == "revise":
        return "revise"
    return ROUTE_UNMAPPED_EVENT


def revise_draft(payload: HandlerInput) -> HandlerResult:
    """Fails on its first attempt so the retry path is visible in the ledger."""

    attempts = int(payload.context.get("retry_attempts") or 0)
    if attempts == 0:
        return HandlerResult(
            status="failed",
            message="Transient revision failure",
            data={"retry_attempts": attempts + 1},
        )
    return HandlerResult(
        status="done",
        data={
            "retry_attempts": attempts + 1,
            "revisions": int(payload.context.get("revisions") or 0) + 1,
            "draft_ready": True,
            "summary": "Revised plan ready for publish",
        },
    )


def render_review(payload: HandlerInput) -> dict[str, Any]:
    ctx = payload.context
    return {
        "title": "Review draft",
        "markdown": "\n".join(
            [
                "# Review Draft",
                f"Decision: {ctx.get('decision') or 'unknown'}",
                f"Summary: {ctx.get('summary') or ''}",
                f"Revisions: {int(ctx.get('revisions') or 0)}",
                f"Retry Attempts: {int(ctx.get('retry_attempts') or 0)}",
            ],
        ),
    }


def build_review_draft() -> FactoryGraph:
    return compile_factory(
        FactoryDefinition(
            id=REVIEW_FACTORY_ID,
            start="start_draft",
            context={
                "decision": "",
                "draft_ready": False,
                "retry_attempts": 0,
                "revisions": 0,
                "summary": "",
            },
            states={
                "start_draft": step(
                    run=start_draft,
                    on={"done": "collect_decision", "failed": "failed"},
                ),
                "collect_decision": ask(
                    prompt="Reply with approve or revise.",
                    parse=parse_decision,
                    on={"done": "decision_route", "failed": "failed"},
                ),
                "decision_route": route(
                    select=select_decision,
                    on={
                        "publish": "publish_result",
                        "revise": "revision_loop",
                        ROUTE_UNMAPPED_EVENT: "collect_decision",
                    },
                ),
                "revision_loop": loop(
                    body="apply_revision",
                    max_iterations=2,
                    until=lambda guard: bool(guard.context.get("draft_ready")),
                    on={
                        "continue": "apply_revision",
                        "done": "publish_result",
                        "exhausted": "failed",
                    },
                ),
                "apply_revision": step(
                    run=revise_draft,
                    retry=retry(max=1, base_ms=0),
                    on={"done": "revision_loop", "failed": "failed"},
                ),
                "publish_result": publish(render=render_review),
                "done": end("done"),
                "failed": end("failed"),
            },
        ),
    )


def choose_answer(question: str, round_number: int) -> str:
    return RESPONSES[abs(len(question) + round_number) % len(RESPONSES)]


def _question_prompt(round_number: int) -> str:
    return f"Magic 8-Ball round {round_number + 1}: Ask a yes/no question."


def _conversation_prompt(ctx: dict[str, Any]) -> str:
    if ctx.get("phase") == "await_replay":
        return f"Magic 8-Ball: {ctx.get('last_answer')}\n\nAsk another? (yes/no)"
    return _question_prompt(int(ctx.get("round") or 0))


def _parse_conversation(ctx: dict[str, Any], reply: str) -> dict[str, Any] | AwaitFeedback:
    phase = ctx.get("phase")
    if phase == "await_question":
        question = reply.strip()
        round_number = int(ctx.get("round") or 0) + 1
        answer = choose_answer(question, round_number)
        history = [*ctx.get("history", []), {"question": question, "answer": answer}]
        return AwaitFeedback(
            message=f"Magic 8-Ball: {answer}\n\nAsk another? (yes/no)",
            context={
                "phase": "await_replay",
                "round": round_number,
                "question": question,
                "last_answer": answer,
                "history": history,
            },
        )
    if phase == "await_replay":
        normalized = reply.strip().lower()
        if normalized.startswith("y"):
            return AwaitFeedback(
                message=_question_prompt(int(ctx.get("round") or 0)),
                context={"phase": "await_question", "question": "", "last_answer": ""},
            )
        if normalized.startswith("n"):
            return {"phase": "complete"}
        return AwaitFeedback(message="Please reply with yes or no. Ask another question?")
    return {}


def _render_history(ctx: dict[str, Any]) -> dict[str, Any]:
    lines = ["# Magic 8-Ball"]
    for index, entry in enumerate(ctx.get("history", []), start=1):
        lines.append(f"{index}. Q: {entry['question']}\n   A: {entry['answer']}")
    return {"markdown": "\n".join(lines)}


def build_magic_eight() -> FactoryGraph:
    return compile_pipe(
        MAGIC_EIGHT_FACTORY_ID,
        flow(
            pipe_ask(_conversation_prompt, _parse_conversation, name="conversation"),
            decide(
                lambda ctx: "complete" if ctx.get("phase") == "complete" else "incomplete",
                {
                    "complete": flow(write(_render_history, name="history"), end_done()),
                    "incomplete": flow(
                        pipe_step(lambda ctx: {}, name="mark_incomplete"),
                        end_failed("Magic 8-Ball conversation is not complete yet."),
                    ),
                },
                name="ensure_completion",
            ),
        ),
        initial={
            "phase": "await_question",
            "round": 0,
            "question": "",
            "last_answer": "",
            "history": [],
        },
    )


FACTORIES = [build_review_draft, build_magic_eight]
