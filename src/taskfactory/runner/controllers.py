"""Controllers for factory, task and tick CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from taskfactory.config import Settings
from taskfactory.engine.models import LifecycleStatus
from taskfactory.errors import FactoryLoadError, ReplayMismatchError
from taskfactory.runner.models import LeaseMode, TaskCreate, TaskView
from taskfactory.runner.registry import FactoryRegistry, check_factories
from taskfactory.runner.repository import TaskRepository
from taskfactory.runner.worker import TickRunner, TickSummary

DEFAULT_FACTORY_SOURCES = ("taskfactory.factories",)


@dataclass(slots=True)
class FactoryCheckCommand:
    """CLI inputs for factory validation."""

    factories: tuple[str, ...]


@dataclass(slots=True)
class TaskCreateCommand:
    """CLI inputs for task registration."""

    db_path: Path | None
    factories: tuple[str, ...]
    workflow_id: str
    task_id: str | None
    title: str | None
    prompt: str | None
    context_json: str | None


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    lifecycle: str | None
    workflow_id: str | None
    limit: int


@dataclass(slots=True)
class TaskShowCommand:
    db_path: Path | None
    task_id: str
    show_events: bool


@dataclass(slots=True)
class TaskReplyCommand:
    """CLI inputs for delivering a reply to a paused task."""

    db_path: Path | None
    task_id: str
    reply: str


@dataclass(slots=True)
class TaskReplayCommand:
    db_path: Path | None
    factories: tuple[str, ...]
    task_id: str


@dataclass(slots=True)
class TickCommand:
    """CLI inputs for the tick worker."""

    db_path: Path | None
    factories: tuple[str, ...]
    task_id: str | None
    loop: bool
    max_ticks: int | None
    lease_mode: str | None
    worker_id: str | None


@dataclass(slots=True)
class CommandResult:
    """Report to render in CLI with an exit status."""

    lines: list[str]
    success: bool


class FactoryCliController:
    """Coordinates factory checks, task inspection and tick execution."""

    def check(self, command: FactoryCheckCommand) -> CommandResult:
        settings = Settings.from_env()
        sources = _factory_sources(command.factories, settings)
        checks = check_factories(sources)
        lines = [f"Factory sources: {', '.join(sources)}"]
        for item in checks:
            name = item.factory_id or "-"
            if item.ok:
                lines.append(f"  ok {name} ({item.source})")
                continue
            lines.append(f"  invalid {name} ({item.source})")
            if item.error:
                lines.append(f"    {item.error}")
            lines.extend(f"    {item.path}: {item.message}" for item in item.violations)
        success = bool(checks) and all(item.ok for item in checks)
        lines.append(f"Factories checked: {len(checks)} valid={sum(item.ok for item in checks)}")
        return CommandResult(lines=lines, success=success)

    def create_task(self, command: TaskCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        registry = _registry(command.factories, settings)
        registry.get(command.workflow_id)
        context = _parse_context(command.context_json)
        with _repository(settings) as repository:
            task = repository.create_task(
                TaskCreate(
                    workflow_id=command.workflow_id,
                    task_id=command.task_id,
                    title=command.title,
                    prompt=command.prompt,
                    context=context,
                ),
            )
        return [f"Task created: {task.task_id} factory={task.workflow_id} lifecycle=queued"]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        lifecycle = LifecycleStatus(command.lifecycle) if command.lifecycle else None
        with _repository(settings) as repository:
            tasks = repository.list_tasks(
                lifecycle=lifecycle,
                workflow_id=command.workflow_id,
                limit=command.limit,
            )
        if not tasks:
            return ["No tasks found."]
        return [
            f"{task.task_id} factory={task.workflow_id} lifecycle={task.lifecycle.value} "
            f"state={_position(task)} transitions={task.transition_count}"
            for task in tasks
        ]

    def show_task(self, command: TaskShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.get_task(command.task_id)
            if task is None:
                raise ValueError(f"Task not found: {command.task_id}")
            events = []
            if command.show_events:
                events = repository.list_transition_events(command.task_id)

        lines = [
            f"Task: {task.task_id}",
            f"Factory: {task.workflow_id}",
            f"Lifecycle: {task.lifecycle.value}",
            f"State: {_position(task)}",
            f"Transitions: {task.transition_count}",
        ]
        if task.title:
            lines.append(f"Title: {task.title}")
        if task.waiting_since is not None:
            lines.append(f"Waiting since: {task.waiting_since.isoformat()}")
        if task.last_error:
            lines.append(f"Last error: {task.last_error}")
        lines.append(f"Context: {json.dumps(task.context, sort_keys=True, default=str)}")
        if command.show_events:
            lines.append(f"Transition events: {len(events)}")
            for event in events:
                lines.append(
                    f"  {event.timestamp.isoformat()} {event.from_state_id} -[{event.event}]-> "
                    f"{event.to_state_id} reason={event.reason_code.value} "
                    f"attempt={event.attempt} loop={event.loop_iteration}",
                )
        return lines

    def reply(self, command: TaskReplyCommand) -> CommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        if not command.reply.strip():
            return CommandResult(lines=["Reply must not be empty."], success=False)
        with _repository(settings) as repository:
            accepted = repository.submit_feedback(task_id=command.task_id, reply=command.reply)
        if not accepted:
            return CommandResult(
                lines=[f"Task {command.task_id} is not awaiting feedback; reply ignored."],
                success=False,
            )
        return CommandResult(
            lines=[f"Reply stored for task {command.task_id}; it resumes on the next tick."],
            success=True,
        )

    def replay(self, command: TaskReplayCommand) -> CommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        registry = _registry(command.factories, settings)
        with _repository(settings) as repository:
            runner = TickRunner(
                repository=repository,
                registry=registry,
                worker_id=settings.worker.worker_id,
            )
            try:
                final = runner.verify(command.task_id)
            except ReplayMismatchError as error:
                return CommandResult(lines=[f"Replay mismatch: {error}"], success=False)
            events = repository.list_transition_events(command.task_id)
        return CommandResult(
            lines=[f"Replay ok: task={command.task_id} events={len(events)} final={final or '-'}"],
            success=True,
        )

    def tick(self, command: TickCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.lease_mode:
            settings.worker.lease_mode = LeaseMode(command.lease_mode)
        if command.worker_id:
            settings.worker.worker_id = command.worker_id
        settings.validate()
        registry = _registry(command.factories, settings)
        with _repository(settings) as repository:
            runner = TickRunner(
                repository=repository,
                registry=registry,
                worker_id=settings.worker.worker_id,
                engine_settings=settings.engine,
                lease_mode=settings.worker.lease_mode,
                lease_seconds=settings.worker.lease_seconds,
                poll_interval_seconds=settings.worker.poll_interval_seconds,
                verify_replay=settings.worker.verify_replay,
            )
            if command.task_id is not None:
                report = runner.tick(command.task_id)
                if report.skipped:
                    state = report.outcome.value if report.outcome is not None else "lease held"
                    return [f"Tick skipped: task={report.task_id} ({state})"]
                line = (
                    f"Tick finished: task={report.task_id} outcome={report.outcome.value} "
                    f"transitions={report.transitions}"
                )
                if report.message:
                    line += f" message={report.message!r}"
                return [line]

            if command.loop:
                summary = runner.run_loop(max_ticks=command.max_ticks)
            else:
                summary = runner.run_once()
        return [_summary_line(summary, worker_id=settings.worker.worker_id)]


@contextmanager
def _repository(settings: Settings) -> Iterator[TaskRepository]:
    repository = TaskRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    try:
        repository.init_schema()
        yield repository
    finally:
        repository.close()


def _factory_sources(override: tuple[str, ...], settings: Settings) -> tuple[str, ...]:
    sources = tuple(dict.fromkeys(item.strip() for item in override if item.strip()))
    return sources or settings.factories or DEFAULT_FACTORY_SOURCES


def _registry(override: tuple[str, ...], settings: Settings) -> FactoryRegistry:
    sources = _factory_sources(override, settings)
    try:
        return FactoryRegistry.from_import_paths(sources)
    except ValueError as error:
        raise FactoryLoadError(
            f"Cannot load factories from {', '.join(sources)}: {error}",
        ) from error


def _parse_context(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValueError(f"Context must be a JSON object: {error}") from error
    if not isinstance(value, dict):
        raise ValueError("Context must be a JSON object.")
    return value


def _position(task: TaskView) -> str:
    return task.terminal_state_id or task.current_state_id or "-"


def _summary_line(summary: TickSummary, *, worker_id: str) -> str:
    return (
        f"Worker {worker_id}: processed={summary.processed} done={summary.done} "
        f"blocked={summary.blocked} failed={summary.failed} feedback={summary.feedback} "
        f"paused={summary.paused} skipped={summary.skipped} idle_polls={summary.idle_polls}"
    )
