"""CLI entrypoint for taskfactory."""

import logging
import os
from pathlib import Path

import rich_click as click

from taskfactory import __version__
from taskfactory.engine.models import LifecycleStatus
from taskfactory.runner.controllers import (
    FactoryCheckCommand,
    FactoryCliController,
    TaskCreateCommand,
    TaskListCommand,
    TaskReplayCommand,
    TaskReplyCommand,
    TaskShowCommand,
    TickCommand,
)
from taskfactory.runner.models import LeaseMode

click.rich_click.USE_MARKDOWN = True
CONTROLLER = FactoryCliController()

_DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)
_FACTORY_OPTION = click.option(
    "--factory",
    "factories",
    multiple=True,
    help="Factory source as `module` or `module:attribute`. Can be repeated.",
)


@click.group()
@click.version_option(version=__version__, prog_name="taskfactory")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def taskfactory(verbose: bool) -> None:
    """Declarative task factories advanced tick by tick."""

    level = logging.DEBUG if verbose else os.getenv("TASKFACTORY_LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@taskfactory.group()
def factory() -> None:
    """Factory definition commands."""


@factory.command("check")
@_FACTORY_OPTION
def factory_check(factories: tuple[str, ...]) -> None:
    """Compile and validate factories, listing every invariant violation."""

    result = CONTROLLER.check(FactoryCheckCommand(factories=factories))
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Factory validation failed.")


@taskfactory.group()
def task() -> None:
    """Task registration and inspection commands."""


@task.command("create")
@_DB_PATH_OPTION
@_FACTORY_OPTION
@click.option("--workflow", "workflow_id", required=True, help="Factory id to run the task with.")
@click.option("--task-id", default=None, help="Explicit task id (generated when omitted).")
@click.option("--title", default=None, help="Task title passed to handlers.")
@click.option("--prompt", default=None, help="Task prompt passed to handlers.")
@click.option("--context", "context_json", default=None, help="Initial context as JSON object.")
def task_create(  # noqa: PLR0913
    db_path: Path | None,
    factories: tuple[str, ...],
    workflow_id: str,
    task_id: str | None,
    title: str | None,
    prompt: str | None,
    context_json: str | None,
) -> None:
    """Register a queued task with a factory."""

    _emit_lines(
        CONTROLLER.create_task(
            TaskCreateCommand(
                db_path=db_path,
                factories=factories,
                workflow_id=workflow_id,
                task_id=task_id,
                title=title,
                prompt=prompt,
                context_json=context_json,
            ),
        ),
    )


@task.command("list")
@_DB_PATH_OPTION
@click.option(
    "--lifecycle",
    type=click.Choice([item.value for item in LifecycleStatus]),
    default=None,
    help="Only tasks in this lifecycle.",
)
@click.option("--workflow", "workflow_id", default=None, help="Only tasks of this factory.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of tasks to print.",
)
def task_list(
    db_path: Path | None,
    lifecycle: str | None,
    workflow_id: str | None,
    limit: int,
) -> None:
    """List tasks, oldest first."""

    _emit_lines(
        CONTROLLER.list_tasks(
            TaskListCommand(
                db_path=db_path,
                lifecycle=lifecycle,
                workflow_id=workflow_id,
                limit=limit,
            ),
        ),
    )


@task.command("show")
@_DB_PATH_OPTION
@click.argument("task_id")
@click.option("--events/--no-events", "show_events", default=True, show_default=True)
def task_show(db_path: Path | None, task_id: str, show_events: bool) -> None:
    """Show task state and its transition ledger."""

    _emit_lines(
        CONTROLLER.show_task(
            TaskShowCommand(db_path=db_path, task_id=task_id, show_events=show_events),
        ),
    )


@task.command("reply")
@_DB_PATH_OPTION
@click.argument("task_id")
@click.argument("reply")
def task_reply(db_path: Path | None, task_id: str, reply: str) -> None:
    """Deliver a reply to a task awaiting feedback."""

    result = CONTROLLER.reply(TaskReplyCommand(db_path=db_path, task_id=task_id, reply=reply))
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Reply was not accepted.")


@task.command("replay")
@_DB_PATH_OPTION
@_FACTORY_OPTION
@click.argument("task_id")
def task_replay(db_path: Path | None, factories: tuple[str, ...], task_id: str) -> None:
    """Replay the transition ledger and compare it with the stored state."""

    result = CONTROLLER.replay(
        TaskReplayCommand(db_path=db_path, factories=factories, task_id=task_id),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Replay verification failed.")


@taskfactory.command("tick")
@_DB_PATH_OPTION
@_FACTORY_OPTION
@click.option("--task-id", default=None, help="Advance only this task.")
@click.option("--loop", is_flag=True, default=False, help="Keep polling until idle.")
@click.option(
    "--max-ticks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop the loop after this many task ticks.",
)
@click.option(
    "--lease-mode",
    type=click.Choice([item.value for item in LeaseMode]),
    default=None,
    help="Override TASKFACTORY_LEASE_MODE.",
)
@click.option("--worker-id", default=None, help="Override TASKFACTORY_WORKER_ID.")
def tick(  # noqa: PLR0913
    db_path: Path | None,
    factories: tuple[str, ...],
    task_id: str | None,
    loop: bool,
    max_ticks: int | None,
    lease_mode: str | None,
    worker_id: str | None,
) -> None:
    """Advance runnable tasks by one tick each, or keep polling with `--loop`."""

    _emit_lines(
        CONTROLLER.tick(
            TickCommand(
                db_path=db_path,
                factories=factories,
                task_id=task_id,
                loop=loop,
                max_ticks=max_ticks,
                lease_mode=lease_mode,
                worker_id=worker_id,
            ),
        ),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskfactory()
