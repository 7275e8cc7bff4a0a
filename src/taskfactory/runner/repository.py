"""Persistent task store backed by SQLModel + SQLite."""

from __future__ import annotations

import logging
from datetime import timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import or_
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from taskfactory.engine.models import (
    LifecycleStatus,
    ReasonCode,
    TaskExecutionState,
    TransitionEvent,
)
from taskfactory.factory.primitives import FEEDBACK_CONTEXT_KEY
from taskfactory.runner.models import RunStatus, TaskCreate, TaskView
from taskfactory.storage.alembic_runner import upgrade_head
from taskfactory.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json_object,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from taskfactory.storage.sqlmodel_models import FactoryRun, FactoryTask, TransitionEventRow

logger = logging.getLogger(__name__)

RUNNABLE_LIFECYCLES = (LifecycleStatus.QUEUED, LifecycleStatus.RUNNING)


class TaskRepository:
    """Task, run and ledger persistence.

    State writes are conditional `UPDATE` statements. When `lease_owner` is
    given, a write only lands while that owner still holds the task lease;
    callers learn about a lost lease from the `False` return value.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_task(self, payload: TaskCreate) -> TaskView:
        """Register a queued task; the engine places it at the start state."""

        now = utc_now()
        row = FactoryTask(
            task_id=payload.task_id or str(uuid4()),
            workflow_id=payload.workflow_id,
            external_id=payload.external_id,
            title=payload.title,
            prompt=payload.prompt,
            context_text=payload.context_text,
            lifecycle=LifecycleStatus.QUEUED.value,
            context_json=dump_json(payload.context),
            created_at=to_db_datetime(now),
            updated_at=to_db_datetime(now),
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(FactoryTask, task_id)
            return _to_task_view(row) if row is not None else None

    def list_tasks(
        self,
        *,
        lifecycle: LifecycleStatus | None = None,
        workflow_id: str | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        statement = select(FactoryTask)
        if lifecycle is not None:
            statement = statement.where(FactoryTask.lifecycle == lifecycle.value)
        if workflow_id is not None:
            statement = statement.where(FactoryTask.workflow_id == workflow_id)
        statement = statement.order_by(col(FactoryTask.created_at).asc()).limit(limit)
        with Session(self.engine) as session:
            return [_to_task_view(row) for row in session.exec(statement).all()]

    def list_runnable_task_ids(self, *, limit: int | None = None) -> list[str]:
        """Queued and running tasks, oldest update first."""

        statement = (
            select(FactoryTask.task_id)
            .where(col(FactoryTask.lifecycle).in_([item.value for item in RUNNABLE_LIFECYCLES]))
            .order_by(col(FactoryTask.updated_at).asc(), col(FactoryTask.created_at).asc())
        )
        if limit is not None:
            statement = statement.limit(limit)
        with Session(self.engine) as session:
            return list(session.exec(statement).all())

    def load_execution_state(self, task_id: str) -> TaskExecutionState:
        with Session(self.engine) as session:
            row = session.get(FactoryTask, task_id)
            if row is None:
                raise RuntimeError(f"Task not found: {task_id}")
            return TaskExecutionState(
                task_id=row.task_id,
                workflow_id=row.workflow_id,
                current_state_id=row.current_state_id,
                context=load_json_object(row.context_json),
                lifecycle=LifecycleStatus(row.lifecycle),
                attempts={
                    key: int(value) for key, value in load_json_object(row.attempts_json).items()
                },
                loop_iterations={
                    key: int(value)
                    for key, value in load_json_object(row.loop_iterations_json).items()
                },
                last_error=row.last_error,
                terminal_state_id=row.terminal_state_id,
                waiting_since=(
                    to_utc_aware_datetime(row.waiting_since)
                    if row.waiting_since is not None
                    else None
                ),
                transition_count=row.transition_count,
            )

    def checkpoint(self, state: TaskExecutionState, *, lease_owner: str | None = None) -> bool:
        """Persist execution state; `False` when the lease guard rejects it."""

        with Session(self.engine) as session:
            if not self._update_state(session, state, lease_owner=lease_owner):
                session.rollback()
                return False
            session.commit()
            return True

    def record_transition(
        self,
        event: TransitionEvent,
        state: TaskExecutionState,
        *,
        lease_owner: str | None = None,
    ) -> bool:
        """Append one ledger row and persist state in the same transaction."""

        with Session(self.engine) as session:
            if not self._update_state(session, state, lease_owner=lease_owner):
                session.rollback()
                return False
            session.add(
                TransitionEventRow(
                    event_id=event.event_id,
                    run_id=event.run_id,
                    tick_id=event.tick_id,
                    task_id=event.task_id,
                    from_state_id=event.from_state_id,
                    to_state_id=event.to_state_id,
                    event=event.event,
                    reason_code=ReasonCode(event.reason_code).value,
                    attempt=event.attempt,
                    loop_iteration=event.loop_iteration,
                    created_at=to_db_datetime(event.timestamp),
                ),
            )
            session.commit()
            return True

    def list_transition_events(self, task_id: str) -> list[TransitionEvent]:
        """Ledger of one task in insertion order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TransitionEventRow)
                .where(TransitionEventRow.task_id == task_id)
                .order_by(col(TransitionEventRow.id).asc()),
            ).all()
            return [_to_transition_event(row) for row in rows]

    def submit_feedback(self, *, task_id: str, reply: str) -> bool:
        """Store a reply for a paused task and make it runnable again.

        Only a task that is awaiting feedback accepts a reply, so a reply
        arriving twice is applied once.
        """

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(FactoryTask, task_id)
            if row is None:
                raise RuntimeError(f"Task not found: {task_id}")
            context = load_json_object(row.context_json)
            context[FEEDBACK_CONTEXT_KEY] = reply
            result = session.exec(
                sa_update(FactoryTask)
                .where(
                    col(FactoryTask.task_id) == task_id,
                    col(FactoryTask.lifecycle) == LifecycleStatus.FEEDBACK.value,
                    col(FactoryTask.context_json) == row.context_json,
                )
                .values(
                    context_json=dump_json(context),
                    lifecycle=LifecycleStatus.RUNNING.value,
                    waiting_since=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            logger.info("Accepted reply for task %s", task_id)
            return True

    def acquire_lease(self, *, task_id: str, owner: str, ttl_seconds: float) -> bool:
        """Take the lease when it is free, expired or already ours."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(FactoryTask)
                .where(
                    col(FactoryTask.task_id) == task_id,
                    or_(
                        col(FactoryTask.lease_owner).is_(None),
                        col(FactoryTask.lease_owner) == owner,
                        col(FactoryTask.lease_expires_at) < to_db_datetime(now),
                    ),
                )
                .values(
                    lease_owner=owner,
                    lease_expires_at=to_db_datetime(now + timedelta(seconds=ttl_seconds)),
                    lease_heartbeat_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def renew_lease(self, *, task_id: str, owner: str, ttl_seconds: float) -> bool:
        """Heartbeat; `False` once another worker has taken the lease."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(FactoryTask)
                .where(
                    col(FactoryTask.task_id) == task_id,
                    col(FactoryTask.lease_owner) == owner,
                )
                .values(
                    lease_expires_at=to_db_datetime(now + timedelta(seconds=ttl_seconds)),
                    lease_heartbeat_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def release_lease(self, *, task_id: str, owner: str) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(FactoryTask)
                .where(
                    col(FactoryTask.task_id) == task_id,
                    col(FactoryTask.lease_owner) == owner,
                )
                .values(lease_owner=None, lease_expires_at=None, lease_heartbeat_at=None),
            )
            session.commit()

    def start_run(self, *, task_id: str) -> str:
        """Return the task's active run id, opening a new run when none is active."""

        now = utc_now()
        with Session(self.engine) as session:
            task = session.get(FactoryTask, task_id)
            if task is None:
                raise RuntimeError(f"Task not found: {task_id}")
            if task.active_run_id is not None:
                active = session.get(FactoryRun, task.active_run_id)
                if active is not None and active.ended_at is None:
                    active.status = RunStatus.RUNNING.value
                    active.updated_at = to_db_datetime(now)
                    session.add(active)
                    session.commit()
                    return active.run_id

            run_id = str(uuid4())
            session.add(
                FactoryRun(
                    run_id=run_id,
                    task_id=task_id,
                    status=RunStatus.RUNNING.value,
                    started_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            task.active_run_id = run_id
            task.updated_at = to_db_datetime(now)
            session.add(task)
            session.commit()
            return run_id

    def finish_run(self, *, run_id: str, status: RunStatus) -> None:
        """Record the run outcome; terminal outcomes close the run."""

        now = utc_now()
        ended = status in {RunStatus.DONE, RunStatus.BLOCKED, RunStatus.FAILED}
        with Session(self.engine) as session:
            run = session.get(FactoryRun, run_id)
            if run is None:
                raise RuntimeError(f"Run not found: {run_id}")
            run.status = status.value
            run.updated_at = to_db_datetime(now)
            if ended:
                run.ended_at = to_db_datetime(now)
            session.add(run)
            session.commit()

    def get_run_status(self, run_id: str) -> RunStatus | None:
        with Session(self.engine) as session:
            run = session.get(FactoryRun, run_id)
            return RunStatus(run.status) if run is not None else None

    def _update_state(
        self,
        session: Session,
        state: TaskExecutionState,
        *,
        lease_owner: str | None,
    ) -> bool:
        values: dict[str, Any] = {
            "lifecycle": state.lifecycle.value,
            "current_state_id": state.current_state_id,
            "terminal_state_id": state.terminal_state_id,
            "context_json": dump_json(state.context),
            "attempts_json": dump_json(state.attempts),
            "loop_iterations_json": dump_json(state.loop_iterations),
            "last_error": state.last_error,
            "waiting_since": (
                to_db_datetime(state.waiting_since) if state.waiting_since is not None else None
            ),
            "transition_count": state.transition_count,
            "updated_at": to_db_datetime(utc_now()),
        }
        statement = sa_update(FactoryTask).where(col(FactoryTask.task_id) == state.task_id)
        if lease_owner is not None:
            statement = statement.where(col(FactoryTask.lease_owner) == lease_owner)
        result = session.exec(statement.values(**values))
        return result.rowcount == 1


def _to_transition_event(row: TransitionEventRow) -> TransitionEvent:
    return TransitionEvent(
        event_id=row.event_id,
        run_id=row.run_id,
        tick_id=row.tick_id,
        task_id=row.task_id,
        from_state_id=row.from_state_id,
        to_state_id=row.to_state_id,
        event=row.event,
        reason_code=ReasonCode(row.reason_code),
        attempt=row.attempt,
        loop_iteration=row.loop_iteration,
        timestamp=to_utc_aware_datetime(row.created_at),
    )


def _to_task_view(row: FactoryTask) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        workflow_id=row.workflow_id,
        external_id=row.external_id,
        title=row.title,
        prompt=row.prompt,
        context_text=row.context_text,
        lifecycle=LifecycleStatus(row.lifecycle),
        current_state_id=row.current_state_id,
        terminal_state_id=row.terminal_state_id,
        context=load_json_object(row.context_json),
        last_error=row.last_error,
        waiting_since=(
            to_utc_aware_datetime(row.waiting_since) if row.waiting_since is not None else None
        ),
        transition_count=row.transition_count,
        active_run_id=row.active_run_id,
        lease_owner=row.lease_owner,
        lease_expires_at=(
            to_utc_aware_datetime(row.lease_expires_at)
            if row.lease_expires_at is not None
            else None
        ),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
