"""SQLModel ORM tables for the agent task store."""

from __future__ import annotations

from sqlalchemy import BigInteger, Column, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class TaskDocument(SQLModel):
    """Columns shared by the primary and dead-letter task tables."""

    task_id: str = Field(primary_key=True)
    idempotency_key: str | None = Field(default=None, index=True)
    task_type: str = Field(index=True)
    agent_kind: str = Field(index=True)
    itinerary_id: str = Field(index=True)
    user_id: str = Field(index=True)
    status: str = Field(index=True)
    priority: int = Field(default=5, index=True)
    payload_json: str = Field(default="{}", sa_type=Text)
    result_json: str = Field(default="{}", sa_type=Text)
    error_json: str | None = Field(default=None, sa_type=Text)
    retry_config_json: str = Field(default="{}", sa_type=Text)
    attempts_json: str = Field(default="[]", sa_type=Text)
    attempt_count: int = Field(default=0)
    metadata_json: str = Field(default="{}", sa_type=Text)
    timeout_ms: int = Field(default=300_000, sa_type=BigInteger)
    created_at: int = Field(sa_type=BigInteger, index=True)
    scheduled_at: int = Field(sa_type=BigInteger, index=True)
    started_at: int | None = Field(default=None, sa_type=BigInteger, index=True)
    completed_at: int | None = Field(default=None, sa_type=BigInteger, index=True)
    updated_at: int = Field(sa_type=BigInteger, index=True)
    next_retry_time: int | None = Field(default=None, sa_type=BigInteger)
    owner_id: str | None = Field(default=None, index=True)
    dead_lettered_at: int | None = Field(default=None, sa_type=BigInteger)


class AgentTaskRow(TaskDocument, table=True):
    __tablename__ = "agent_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_agent_tasks_dispatch", "status", "priority", "scheduled_at"),
        Index("idx_agent_tasks_retention", "status", "completed_at"),
    )


class DeadLetterTaskRow(TaskDocument, table=True):
    __tablename__ = "dead_letter_tasks"  # type: ignore[bad-override]


class AgentTaskEventRow(SQLModel, table=True):
    __tablename__ = "agent_task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_agent_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("agent_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_type=Text)
    created_at: int = Field(sa_type=BigInteger)


class IdempotencyKeyRow(SQLModel, table=True):
    __tablename__ = "idempotency_keys"  # type: ignore[bad-override]

    key: str = Field(primary_key=True)
    result_json: str = Field(default="null", sa_type=Text)
    operation_type: str
    created_at: int = Field(sa_type=BigInteger)
    expires_at: int = Field(sa_type=BigInteger, index=True)
