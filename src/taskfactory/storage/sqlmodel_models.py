"""SQLModel ORM tables for tasks, runs and the transition ledger."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class FactoryTask(SQLModel, table=True):
    __tablename__ = "factory_tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_factory_tasks_runnable", "lifecycle", "updated_at"),)

    task_id: str = Field(primary_key=True)
    workflow_id: str = Field(index=True)
    external_id: str | None = Field(default=None, index=True)
    title: str | None = None
    prompt: str | None = Field(default=None, sa_column=Column(Text))
    context_text: str | None = Field(default=None, sa_column=Column(Text))
    lifecycle: str = Field(index=True)
    current_state_id: str | None = None
    terminal_state_id: str | None = None
    context_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    attempts_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    loop_iterations_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    waiting_since: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    transition_count: int = Field(default=0)
    active_run_id: str | None = None
    lease_owner: str | None = Field(default=None, index=True)
    lease_expires_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    lease_heartbeat_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class FactoryRun(SQLModel, table=True):
    __tablename__ = "factory_runs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_factory_runs_task_started", "task_id", "started_at"),)

    run_id: str = Field(primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("factory_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    status: str = Field(index=True)
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    ended_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TransitionEventRow(SQLModel, table=True):
    __tablename__ = "transition_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_transition_events_task_seq", "task_id", "id"),)

    id: int | None = Field(default=None, primary_key=True)
    event_id: str = Field(unique=True)
    run_id: str = Field(
        sa_column=Column(
            ForeignKey("factory_runs.run_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    tick_id: str
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("factory_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    from_state_id: str
    to_state_id: str
    event: str
    reason_code: str
    attempt: int = Field(default=0)
    loop_iteration: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
