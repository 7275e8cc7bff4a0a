from __future__ import annotations

from pathlib import Path

import allure
from click.testing import CliRunner

from taskfactory.main import taskfactory

pytestmark = [
    allure.epic("Tick Worker"),
    allure.feature("CLI Ops"),
]


def _invoke(runner: CliRunner, *args: str):
    return runner.invoke(taskfactory, list(args), catch_exceptions=True)


def test_factory_check_lists_bundled_factories() -> None:
    result = _invoke(CliRunner(), "factory", "check")

    assert result.exit_code == 0, result.output
    assert "ok review-draft (taskfactory.factories)" in result.output
    assert "ok magic-8 (taskfactory.factories)" in result.output
    assert "Factories checked: 2 valid=2" in result.output


def test_factory_check_reports_violations_with_paths() -> None:
    result = _invoke(CliRunner(), "factory", "check", "--factory", "broken_factories")

    assert result.exit_code == 1
    assert "invalid broken (broken_factories)" in result.output
    assert "states.work.routes.done: transition target `ghost` does not exist" in result.output
    assert "states.repeat.routes.exhausted: must define `exhausted` transition" in result.output
    assert "Factory validation failed." in result.output


def test_factory_check_reports_import_errors() -> None:
    result = _invoke(CliRunner(), "factory", "check", "--factory", "no_such_module_here")

    assert result.exit_code == 1
    assert "Cannot import factory module 'no_such_module_here'" in result.output


def test_task_lifecycle_through_cli(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = str(tmp_path / "cli.db")

    created = _invoke(
        runner,
        "task",
        "create",
        "--db-path",
        db_path,
        "--workflow",
        "review-draft",
        "--task-id",
        "cli-1",
        "--title",
        "Launch plan",
    )
    assert created.exit_code == 0, created.output
    assert "Task created: cli-1 factory=review-draft lifecycle=queued" in created.output

    paused = _invoke(runner, "tick", "--db-path", db_path, "--task-id", "cli-1")
    assert paused.exit_code == 0, paused.output
    assert "Tick finished: task=cli-1 outcome=feedback transitions=2" in paused.output

    waiting = _invoke(runner, "task", "list", "--db-path", db_path, "--lifecycle", "feedback")
    assert "cli-1 factory=review-draft lifecycle=feedback state=collect_decision" in waiting.output

    replied = _invoke(runner, "task", "reply", "--db-path", db_path, "cli-1", "approve")
    assert replied.exit_code == 0, replied.output
    assert "Reply stored for task cli-1" in replied.output

    duplicate = _invoke(runner, "task", "reply", "--db-path", db_path, "cli-1", "approve")
    assert duplicate.exit_code == 1
    assert "not awaiting feedback" in duplicate.output

    worker = _invoke(runner, "tick", "--db-path", db_path, "--worker-id", "cli-worker")
    assert worker.exit_code == 0, worker.output
    assert "Worker cli-worker: processed=1 done=1" in worker.output

    shown = _invoke(runner, "task", "show", "--db-path", db_path, "cli-1")
    assert shown.exit_code == 0, shown.output
    assert "Lifecycle: done" in shown.output
    assert "State: done" in shown.output
    assert "collect_decision -[feedback]-> collect_decision__feedback" in shown.output
    assert "publish_result -[done]-> done reason=action.done" in shown.output

    replay = _invoke(runner, "task", "replay", "--db-path", db_path, "cli-1")
    assert replay.exit_code == 0, replay.output
    assert "Replay ok: task=cli-1 events=5 final=done" in replay.output


def test_task_create_rejects_unknown_factory(tmp_path: Path) -> None:
    result = _invoke(
        CliRunner(),
        "task",
        "create",
        "--db-path",
        str(tmp_path / "cli.db"),
        "--workflow",
        "does-not-exist",
    )

    assert result.exit_code != 0
    assert "Unknown factory: does-not-exist" in str(result.exception)


def test_tick_loop_on_empty_store_is_idle(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("TASKFACTORY_POLL_INTERVAL_SECONDS", "0")
    result = _invoke(CliRunner(), "tick", "--db-path", str(tmp_path / "cli.db"), "--loop")

    assert result.exit_code == 0, result.output
    assert "processed=0" in result.output
    assert "idle_polls=1" in result.output
