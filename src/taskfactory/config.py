"""Runtime configuration for the engine, worker and task store."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

from taskfactory.engine.runtime import (
    DEFAULT_MAX_TRANSITIONS_PER_RUN,
    DEFAULT_MAX_TRANSITIONS_PER_TICK,
    MAX_TRANSITIONS_PER_TICK_LIMIT,
)
from taskfactory.runner.models import LeaseMode


@dataclass(slots=True)
class EngineSettings:
    """Transition budgets."""

    max_transitions_per_tick: int = DEFAULT_MAX_TRANSITIONS_PER_TICK
    max_transitions_per_run: int = DEFAULT_MAX_TRANSITIONS_PER_RUN


@dataclass(slots=True)
class WorkerSettings:
    """Tick worker and lease settings."""

    worker_id: str = "local-worker"
    lease_mode: LeaseMode = LeaseMode.STRICT
    lease_seconds: float = 30.0
    poll_interval_seconds: float = 2.0
    verify_replay: bool = False


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".taskfactory.db")
    sqlite_busy_timeout_ms: int = 5_000
    engine: EngineSettings = field(default_factory=EngineSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    factories: tuple[str, ...] = ()

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("TASKFACTORY_DB_PATH", ".taskfactory.db")),
            sqlite_busy_timeout_ms=int(os.getenv("TASKFACTORY_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            engine=EngineSettings(
                max_transitions_per_tick=int(
                    os.getenv(
                        "TASKFACTORY_MAX_TRANSITIONS_PER_TICK",
                        str(DEFAULT_MAX_TRANSITIONS_PER_TICK),
                    ),
                ),
                max_transitions_per_run=int(
                    os.getenv(
                        "TASKFACTORY_MAX_TRANSITIONS_PER_RUN",
                        str(DEFAULT_MAX_TRANSITIONS_PER_RUN),
                    ),
                ),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv("TASKFACTORY_WORKER_ID", _default_worker_id()),
                lease_mode=_env_lease_mode("TASKFACTORY_LEASE_MODE"),
                lease_seconds=float(os.getenv("TASKFACTORY_LEASE_SECONDS", "30")),
                poll_interval_seconds=float(os.getenv("TASKFACTORY_POLL_INTERVAL_SECONDS", "2.0")),
                verify_replay=_env_bool("TASKFACTORY_VERIFY_REPLAY", default=False),
            ),
            factories=_split_csv(os.getenv("TASKFACTORY_FACTORIES", "")),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if not 1 <= self.engine.max_transitions_per_tick <= MAX_TRANSITIONS_PER_TICK_LIMIT:
            raise ValueError(
                "TASKFACTORY_MAX_TRANSITIONS_PER_TICK must be between 1 and "
                f"{MAX_TRANSITIONS_PER_TICK_LIMIT}.",
            )
        if self.engine.max_transitions_per_run < 1:
            raise ValueError("TASKFACTORY_MAX_TRANSITIONS_PER_RUN must be >= 1.")
        if self.worker.lease_seconds <= 0:
            raise ValueError("TASKFACTORY_LEASE_SECONDS must be > 0.")
        if self.worker.poll_interval_seconds < 0:
            raise ValueError("TASKFACTORY_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("TASKFACTORY_SQLITE_BUSY_TIMEOUT_MS must be > 0.")


def _default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def _split_csv(raw: str) -> tuple[str, ...]:
    deduped: list[str] = []
    for value in raw.split(","):
        normalized = value.strip()
        if normalized and normalized not in deduped:
            deduped.append(normalized)
    return tuple(deduped)


def _env_lease_mode(name: str) -> LeaseMode:
    value = os.getenv(name)
    if value is None:
        return LeaseMode.STRICT
    normalized = value.strip().lower().replace("-", "_")
    try:
        return LeaseMode(normalized)
    except ValueError as error:
        raise ValueError(f"Invalid lease mode for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
