from __future__ import annotations

from pathlib import Path

import allure
import pytest

from taskfactory.config import EngineSettings, Settings, WorkerSettings
from taskfactory.runner.models import LeaseMode

pytestmark = [
    allure.epic("Tick Worker"),
    allure.feature("Configuration"),
]

_ENV_NAMES = (
    "TASKFACTORY_DB_PATH",
    "TASKFACTORY_SQLITE_BUSY_TIMEOUT_MS",
    "TASKFACTORY_MAX_TRANSITIONS_PER_TICK",
    "TASKFACTORY_MAX_TRANSITIONS_PER_RUN",
    "TASKFACTORY_WORKER_ID",
    "TASKFACTORY_LEASE_MODE",
    "TASKFACTORY_LEASE_SECONDS",
    "TASKFACTORY_POLL_INTERVAL_SECONDS",
    "TASKFACTORY_VERIFY_REPLAY",
    "TASKFACTORY_FACTORIES",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_from_env_defaults() -> None:
    settings = Settings.from_env()

    assert settings.db_path == Path(".taskfactory.db")
    assert settings.engine.max_transitions_per_tick == 25
    assert settings.engine.max_transitions_per_run == 200
    assert settings.worker.lease_mode == LeaseMode.STRICT
    assert settings.worker.verify_replay is False
    assert settings.factories == ()
    assert settings.worker.worker_id


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TASKFACTORY_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("TASKFACTORY_MAX_TRANSITIONS_PER_TICK", "5")
    monkeypatch.setenv("TASKFACTORY_WORKER_ID", "worker-7")
    monkeypatch.setenv("TASKFACTORY_LEASE_MODE", "best-effort")
    monkeypatch.setenv("TASKFACTORY_VERIFY_REPLAY", "yes")
    monkeypatch.setenv("TASKFACTORY_FACTORIES", "pkg.a, pkg.b:FLOWS, pkg.a")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.engine.max_transitions_per_tick == 5
    assert settings.worker.worker_id == "worker-7"
    assert settings.worker.lease_mode == LeaseMode.BEST_EFFORT
    assert settings.worker.verify_replay is True
    assert settings.factories == ("pkg.a", "pkg.b:FLOWS")


def test_explicit_db_path_wins_over_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TASKFACTORY_DB_PATH", str(tmp_path / "env.db"))

    settings = Settings.from_env(db_path=tmp_path / "cli.db")

    assert settings.db_path == tmp_path / "cli.db"


@pytest.mark.parametrize(
    ("name", "value", "match"),
    [
        ("TASKFACTORY_LEASE_MODE", "sometimes", "Invalid lease mode"),
        ("TASKFACTORY_VERIFY_REPLAY", "maybe", "Invalid boolean value"),
    ],
)
def test_from_env_rejects_invalid_values(
    monkeypatch: pytest.MonkeyPatch,
    name: str,
    value: str,
    match: str,
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=match):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "match"),
    [
        (Settings(engine=EngineSettings(max_transitions_per_tick=0)), "PER_TICK"),
        (Settings(engine=EngineSettings(max_transitions_per_tick=201)), "PER_TICK"),
        (Settings(engine=EngineSettings(max_transitions_per_run=0)), "PER_RUN"),
        (Settings(worker=WorkerSettings(lease_seconds=0)), "LEASE_SECONDS"),
        (Settings(worker=WorkerSettings(poll_interval_seconds=-1)), "POLL_INTERVAL"),
        (Settings(sqlite_busy_timeout_ms=0), "BUSY_TIMEOUT"),
    ],
)
def test_validate_rejects_out_of_range_values(settings: Settings, match: str) -> None:
    with pytest.raises(ValueError, match=match):
        settings.validate()


def test_validate_accepts_defaults() -> None:
    Settings().validate()
