"""Durable task store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from agent_task_queue.storage.alembic_runner import upgrade_head
from agent_task_queue.storage.common import build_sqlite_engine, now_ms
from agent_task_queue.storage.sqlmodel_models import (
    AgentTaskEventRow,
    AgentTaskRow,
    DeadLetterTaskRow,
    TaskDocument,
)
from agent_task_queue.tasks.errors import QueryNotSupportedError, StorageError
from agent_task_queue.tasks.models import (
    AgentTask,
    RetryConfig,
    TaskAttempt,
    TaskError,
    TaskEventView,
    TaskStatus,
)

logger = logging.getLogger(__name__)

QUERYABLE_FIELDS = frozenset(
    {
        "status",
        "priority",
        "scheduled_at",
        "updated_at",
        "started_at",
        "completed_at",
        "created_at",
        "itinerary_id",
        "user_id",
        "idempotency_key",
        "task_type",
        "agent_kind",
        "owner_id",
    },
)
SUPPORTED_OPS = frozenset({"==", "!=", "<", "<=", ">", ">=", "in"})


@dataclass(slots=True, frozen=True)
class Predicate:
    """One `(field, op, value)` filter of a store query."""

    field: str
    op: str
    value: Any


@dataclass(slots=True, frozen=True)
class OrderBy:
    field: str
    descending: bool = False


class TaskStore(Protocol):
    """Storage contract the queue relies on."""

    def save(
        self,
        task: AgentTask,
        *,
        event_type: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None: ...

    def get(self, task_id: str) -> AgentTask | None: ...

    def query(
        self,
        predicates: Sequence[Predicate],
        order_by: Sequence[OrderBy] = (),
        limit: int | None = None,
    ) -> list[AgentTask]: ...

    def delete(self, task_id: str) -> bool: ...

    def claim(self, task: AgentTask, *, owner_id: str) -> bool: ...

    def save_if_current(
        self,
        task: AgentTask,
        *,
        expected_status: TaskStatus,
        expected_attempts: int,
        event_type: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> bool: ...

    def count_by_status(self) -> dict[str, int]: ...

    def save_dead_letter(self, task: AgentTask) -> None: ...


class TaskRepository:
    """Task persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def save(
        self,
        task: AgentTask,
        *,
        event_type: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Insert or overwrite one task document atomically."""

        values = _to_row_values(task)
        try:
            with Session(self.engine) as session:
                row = session.get(AgentTaskRow, task.task_id)
                previous = TaskStatus(row.status) if row is not None else None
                if row is None:
                    row = AgentTaskRow(**values)
                else:
                    for key, value in values.items():
                        setattr(row, key, value)
                session.add(row)
                if event_type is not None:
                    session.flush()
                    _add_event(
                        session=session,
                        task_id=task.task_id,
                        event_type=event_type,
                        status_from=previous,
                        status_to=task.status,
                        details=details,
                    )
                session.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to save task {task.task_id}: {exc}") from exc

    def get(self, task_id: str) -> AgentTask | None:
        try:
            with Session(self.engine) as session:
                row = session.get(AgentTaskRow, task_id)
                return _to_task(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to load task {task_id}: {exc}") from exc

    def query(
        self,
        predicates: Sequence[Predicate],
        order_by: Sequence[OrderBy] = (),
        limit: int | None = None,
    ) -> list[AgentTask]:
        """Select tasks matching every predicate."""

        statement = select(AgentTaskRow)
        for predicate in predicates:
            statement = statement.where(_predicate_clause(predicate))
        for order in order_by:
            column = _column(order.field)
            statement = statement.order_by(column.desc() if order.descending else column.asc())
        if limit is not None:
            statement = statement.limit(limit)
        try:
            with Session(self.engine) as session:
                rows = session.exec(statement).all()
        except SQLAlchemyError as exc:
            raise StorageError(f"Task query failed: {exc}") from exc
        return [_to_task(row) for row in rows]

    def delete(self, task_id: str) -> bool:
        try:
            with Session(self.engine) as session:
                result = session.exec(
                    sa_delete(AgentTaskRow).where(col(AgentTaskRow.task_id) == task_id),
                )
                session.commit()
                return result.rowcount == 1
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to delete task {task_id}: {exc}") from exc

    def claim(self, task: AgentTask, *, owner_id: str) -> bool:
        """Persist a started task only if the stored row is still PENDING.

        The caller has already applied `mark_started` to `task`; a zero rowcount
        means another process claimed or changed the task first.
        """

        return self._conditional_write(
            task,
            expected_status=TaskStatus.PENDING,
            expected_attempts=len(task.attempts) - 1,
            event_type="claimed",
            details={"owner_id": owner_id, "attempt": task.current_attempt_number - 1},
        )

    def save_if_current(
        self,
        task: AgentTask,
        *,
        expected_status: TaskStatus,
        expected_attempts: int,
        event_type: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> bool:
        """Write `task` only when the stored status and attempt count still match."""

        return self._conditional_write(
            task,
            expected_status=expected_status,
            expected_attempts=expected_attempts,
            event_type=event_type,
            details=details,
        )

    def _conditional_write(
        self,
        task: AgentTask,
        *,
        expected_status: TaskStatus,
        expected_attempts: int,
        event_type: str | None,
        details: dict[str, Any] | None,
    ) -> bool:
        values = _to_row_values(task)
        values.pop("task_id")
        try:
            with Session(self.engine) as session:
                result = session.exec(
                    sa_update(AgentTaskRow)
                    .where(
                        col(AgentTaskRow.task_id) == task.task_id,
                        col(AgentTaskRow.status) == expected_status.value,
                        col(AgentTaskRow.attempt_count) == expected_attempts,
                    )
                    .values(**values),
                )
                if result.rowcount != 1:
                    session.rollback()
                    return False
                if event_type is not None:
                    _add_event(
                        session=session,
                        task_id=task.task_id,
                        event_type=event_type,
                        status_from=expected_status,
                        status_to=task.status,
                        details=details,
                    )
                session.commit()
                return True
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to update task {task.task_id}: {exc}") from exc

    def count_by_status(self) -> dict[str, int]:
        try:
            with Session(self.engine) as session:
                rows = session.exec(
                    select(AgentTaskRow.status, func.count()).group_by(AgentTaskRow.status),
                ).all()
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to count tasks: {exc}") from exc
        return {str(status): int(count) for status, count in rows}

    def save_dead_letter(self, task: AgentTask) -> None:
        """Copy a terminally failed task to the dead-letter table and flag the primary row."""

        flagged_at = now_ms()
        task.dead_lettered_at = flagged_at
        values = _to_row_values(task)
        try:
            with Session(self.engine) as session:
                row = session.get(DeadLetterTaskRow, task.task_id)
                if row is None:
                    row = DeadLetterTaskRow(**values)
                else:
                    for key, value in values.items():
                        setattr(row, key, value)
                session.add(row)
                session.exec(
                    sa_update(AgentTaskRow)
                    .where(col(AgentTaskRow.task_id) == task.task_id)
                    .values(dead_lettered_at=flagged_at),
                )
                _add_event(
                    session=session,
                    task_id=task.task_id,
                    event_type="dead_lettered",
                    status_from=task.status,
                    status_to=task.status,
                    details={
                        "attempts": len(task.attempts),
                        "error_code": task.error.code if task.error is not None else None,
                    },
                )
                session.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to dead-letter task {task.task_id}: {exc}") from exc

    def list_dead_letters(self, *, limit: int = 50) -> list[AgentTask]:
        try:
            with Session(self.engine) as session:
                rows = session.exec(
                    select(DeadLetterTaskRow)
                    .order_by(col(DeadLetterTaskRow.dead_lettered_at).desc())
                    .limit(limit),
                ).all()
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to list dead letters: {exc}") from exc
        return [_to_task(row) for row in rows]

    def list_events(self, task_id: str) -> list[TaskEventView]:
        """Return the lifecycle audit trail of one task, oldest first."""

        try:
            with Session(self.engine) as session:
                rows = session.exec(
                    select(AgentTaskEventRow)
                    .where(AgentTaskEventRow.task_id == task_id)
                    .order_by(
                        col(AgentTaskEventRow.created_at).asc(),
                        col(AgentTaskEventRow.id).asc(),
                    ),
                ).all()
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to list events for {task_id}: {exc}") from exc

        events: list[TaskEventView] = []
        for row in rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                TaskEventView(
                    event_id=row.id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=TaskStatus(row.status_from) if row.status_from else None,
                    status_to=TaskStatus(row.status_to) if row.status_to else None,
                    created_at=row.created_at,
                    details=details,
                ),
            )
        return events


def _add_event(  # noqa: PLR0913
    *,
    session: Session,
    task_id: str,
    event_type: str,
    status_from: TaskStatus | None,
    status_to: TaskStatus | None,
    details: dict[str, Any] | None,
) -> None:
    session.add(
        AgentTaskEventRow(
            task_id=task_id,
            event_type=event_type,
            status_from=status_from.value if status_from is not None else None,
            status_to=status_to.value if status_to is not None else None,
            details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
            if details
            else None,
            created_at=now_ms(),
        ),
    )


def _column(field: str) -> Any:
    if field not in QUERYABLE_FIELDS:
        raise QueryNotSupportedError(f"Field is not queryable: {field}")
    return col(getattr(AgentTaskRow, field))


def _predicate_clause(predicate: Predicate) -> Any:
    if predicate.op not in SUPPORTED_OPS:
        raise QueryNotSupportedError(f"Unsupported query operator: {predicate.op}")
    column = _column(predicate.field)
    value = _db_value(predicate.value)
    if predicate.op == "in":
        return column.in_([_db_value(item) for item in predicate.value])
    if predicate.op == "==":
        return column.is_(None) if value is None else column == value
    if predicate.op == "!=":
        return column.is_not(None) if value is None else column != value
    if predicate.op == "<":
        return column < value
    if predicate.op == "<=":
        return column <= value
    if predicate.op == ">":
        return column > value
    return column >= value


def _db_value(value: Any) -> Any:
    if isinstance(value, TaskStatus):
        return value.value
    return value


def _to_row_values(task: AgentTask) -> dict[str, Any]:
    return {
        "task_id": task.task_id,
        "idempotency_key": task.idempotency_key,
        "task_type": task.task_type,
        "agent_kind": task.agent_kind,
        "itinerary_id": task.itinerary_id,
        "user_id": task.user_id,
        "status": task.status.value,
        "priority": task.priority,
        "payload_json": json.dumps(task.payload, ensure_ascii=False, sort_keys=True),
        "result_json": json.dumps(task.result, ensure_ascii=False, sort_keys=True),
        "error_json": json.dumps(task.error.to_dict(), ensure_ascii=False)
        if task.error is not None
        else None,
        "retry_config_json": json.dumps(task.retry_config.to_dict(), sort_keys=True),
        "attempts_json": json.dumps(
            [attempt.to_dict() for attempt in task.attempts],
            ensure_ascii=False,
        ),
        "attempt_count": len(task.attempts),
        "metadata_json": json.dumps(task.metadata, ensure_ascii=False, sort_keys=True),
        "timeout_ms": task.timeout_ms,
        "created_at": task.created_at,
        "scheduled_at": task.scheduled_at,
        "started_at": task.started_at,
        "completed_at": task.completed_at,
        "updated_at": task.updated_at,
        "next_retry_time": task.next_retry_time,
        "owner_id": task.owner_id,
        "dead_lettered_at": task.dead_lettered_at,
    }


def _load_dict(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else {}


def _to_task(row: TaskDocument) -> AgentTask:
    error = _load_dict(row.error_json)
    attempts = json.loads(row.attempts_json or "[]")
    return AgentTask(
        task_id=row.task_id,
        idempotency_key=row.idempotency_key,
        task_type=row.task_type,
        agent_kind=row.agent_kind,
        itinerary_id=row.itinerary_id,
        user_id=row.user_id,
        status=TaskStatus(row.status),
        priority=row.priority,
        payload=_load_dict(row.payload_json),
        result=_load_dict(row.result_json),
        error=TaskError.from_dict(error) if error else None,
        retry_config=RetryConfig.from_dict(_load_dict(row.retry_config_json)),
        attempts=[TaskAttempt.from_dict(item) for item in attempts if isinstance(item, dict)],
        created_at=row.created_at,
        scheduled_at=row.scheduled_at,
        started_at=row.started_at,
        completed_at=row.completed_at,
        updated_at=row.updated_at,
        next_retry_time=row.next_retry_time,
        timeout_ms=row.timeout_ms,
        metadata=_load_dict(row.metadata_json),
        owner_id=row.owner_id,
        dead_lettered_at=row.dead_lettered_at,
    )
