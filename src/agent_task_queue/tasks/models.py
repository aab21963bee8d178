"""Domain models for the durable agent task queue."""

from __future__ import annotations

import random
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import uuid4

from agent_task_queue.storage.common import now_ms

DEFAULT_PRIORITY = 5
DEFAULT_TIMEOUT_MS = 300_000
RETRY_JITTER_RATIO = 0.25


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class ErrorCode(str, Enum):
    """Error codes recorded on failed or cancelled tasks."""

    TIMEOUT = "TIMEOUT"
    EXECUTION_ERROR = "EXECUTION_ERROR"
    PROCESSING_ERROR = "PROCESSING_ERROR"
    NO_EXECUTOR = "NO_EXECUTOR"
    INVALID_RESULT = "INVALID_RESULT"
    CANCELLED = "CANCELLED"


@dataclass(slots=True)
class TaskError:
    """Error information captured on a task."""

    code: str
    message: str
    cause: str | None = None
    timestamp: int = field(default_factory=now_ms)

    @classmethod
    def from_exception(cls, *, code: str, message: str, exc: BaseException | None) -> TaskError:
        cause = None
        if exc is not None:
            cause = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return cls(code=code, message=message, cause=cause)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "cause": self.cause,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskError:
        return cls(
            code=str(data.get("code", "")),
            message=str(data.get("message", "")),
            cause=data.get("cause"),
            timestamp=int(data.get("timestamp") or 0),
        )


@dataclass(slots=True)
class RetryConfig:
    """Per-task retry policy with exponential backoff."""

    max_attempts: int = 3
    base_delay_ms: int = 1_000
    max_delay_ms: int = 300_000
    backoff_multiplier: float = 2.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "base_delay_ms": self.base_delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "backoff_multiplier": self.backoff_multiplier,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetryConfig:
        defaults = cls()
        return cls(
            max_attempts=int(data.get("max_attempts", defaults.max_attempts)),
            base_delay_ms=int(data.get("base_delay_ms", defaults.base_delay_ms)),
            max_delay_ms=int(data.get("max_delay_ms", defaults.max_delay_ms)),
            backoff_multiplier=float(data.get("backoff_multiplier", defaults.backoff_multiplier)),
        )


@dataclass(slots=True)
class TaskAttempt:
    """One execution attempt of a task."""

    attempt_number: int
    started_at: int = field(default_factory=now_ms)
    completed_at: int | None = None
    duration_ms: int | None = None
    status: TaskStatus | None = None
    error: TaskError | None = None

    def mark_completed(self, status: TaskStatus, error: TaskError | None, *, at: int) -> None:
        self.completed_at = at
        self.duration_ms = max(0, at - self.started_at)
        self.status = status
        self.error = error

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt_number": self.attempt_number,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_ms": self.duration_ms,
            "status": self.status.value if self.status is not None else None,
            "error": self.error.to_dict() if self.error is not None else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskAttempt:
        status = data.get("status")
        error = data.get("error")
        return cls(
            attempt_number=int(data["attempt_number"]),
            started_at=int(data["started_at"]),
            completed_at=data.get("completed_at"),
            duration_ms=data.get("duration_ms"),
            status=TaskStatus(status) if status is not None else None,
            error=TaskError.from_dict(error) if isinstance(error, dict) else None,
        )


@dataclass(slots=True)
class AgentTask:
    """A durable unit of agent work that survives restarts and is retried on failure."""

    task_id: str
    task_type: str
    agent_kind: str
    itinerary_id: str
    user_id: str
    idempotency_key: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    priority: int = DEFAULT_PRIORITY
    payload: dict[str, Any] = field(default_factory=dict)
    result: dict[str, Any] = field(default_factory=dict)
    error: TaskError | None = None
    retry_config: RetryConfig = field(default_factory=RetryConfig)
    attempts: list[TaskAttempt] = field(default_factory=list)
    created_at: int = field(default_factory=now_ms)
    scheduled_at: int = field(default_factory=now_ms)
    started_at: int | None = None
    completed_at: int | None = None
    updated_at: int = field(default_factory=now_ms)
    next_retry_time: int | None = None
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    metadata: dict[str, Any] = field(default_factory=dict)
    owner_id: str | None = None
    dead_lettered_at: int | None = None

    @classmethod
    def create(
        cls,
        *,
        task_type: str,
        agent_kind: str,
        itinerary_id: str,
        user_id: str,
        **kwargs: Any,
    ) -> AgentTask:
        """Build a new task with a generated id."""

        return cls(
            task_id=str(uuid4()),
            task_type=task_type,
            agent_kind=agent_kind,
            itinerary_id=itinerary_id,
            user_id=user_id,
            **kwargs,
        )

    @property
    def current_attempt_number(self) -> int:
        """1-based number of the attempt that would run next."""

        return len(self.attempts) + 1

    @property
    def last_attempt(self) -> TaskAttempt | None:
        return self.attempts[-1] if self.attempts else None

    def can_retry(self) -> bool:
        return (
            self.status == TaskStatus.FAILED
            and self.current_attempt_number <= self.retry_config.max_attempts
        )

    def is_terminal(self) -> bool:
        if self.status in {TaskStatus.COMPLETED, TaskStatus.CANCELLED}:
            return True
        return self.status == TaskStatus.FAILED and not self.can_retry()

    def is_due(self, now: int | None = None) -> bool:
        return self.scheduled_at <= (now if now is not None else now_ms())

    def has_timed_out(self, now: int | None = None) -> bool:
        if self.status != TaskStatus.RUNNING or self.started_at is None:
            return False
        current = now if now is not None else now_ms()
        return current - self.started_at > self.timeout_ms

    def duration_ms(self) -> int | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return self.completed_at - self.started_at

    def touch(self, now: int | None = None) -> None:
        self.updated_at = now if now is not None else now_ms()

    def mark_started(self, *, owner_id: str | None = None, now: int | None = None) -> TaskAttempt:
        """Transition to RUNNING and open a new attempt record."""

        current = now if now is not None else now_ms()
        attempt = TaskAttempt(attempt_number=self.current_attempt_number, started_at=current)
        self.attempts.append(attempt)
        self.status = TaskStatus.RUNNING
        self.started_at = current
        self.completed_at = None
        self.owner_id = owner_id
        self.touch(current)
        return attempt

    def mark_completed(self, result: dict[str, Any] | None, *, now: int | None = None) -> None:
        current = now if now is not None else now_ms()
        self.status = TaskStatus.COMPLETED
        self.result = dict(result or {})
        self.error = None
        self.completed_at = current
        self.touch(current)

    def mark_failed(
        self,
        message: str,
        code: str,
        exc: BaseException | None = None,
        *,
        now: int | None = None,
    ) -> None:
        current = now if now is not None else now_ms()
        self.status = TaskStatus.FAILED
        self.error = TaskError.from_exception(code=code, message=message, exc=exc)
        self.error.timestamp = current
        self.completed_at = current
        self.touch(current)

    def mark_cancelled(self, reason: str, *, now: int | None = None) -> None:
        current = now if now is not None else now_ms()
        self.status = TaskStatus.CANCELLED
        self.error = TaskError(
            code=ErrorCode.CANCELLED.value,
            message=f"Task cancelled: {reason}",
            timestamp=current,
        )
        self.completed_at = current
        self.touch(current)

    def close_open_attempt(self, *, now: int | None = None) -> None:
        """Finalize the latest attempt with the task's current outcome."""

        attempt = self.last_attempt
        if attempt is None or attempt.completed_at is not None:
            return
        current = now if now is not None else now_ms()
        attempt.mark_completed(self.status, self.error, at=current)

    def next_retry_delay_ms(self, rng: random.Random | None = None) -> int:
        """Exponential backoff with +/-25% jitter, never below the base delay."""

        if not self.can_retry():
            return 0
        config = self.retry_config
        exponent = self.current_attempt_number - 1
        delay = min(config.base_delay_ms * config.backoff_multiplier**exponent, config.max_delay_ms)
        jitter = RETRY_JITTER_RATIO * delay * ((rng or random).random() * 2 - 1)
        return max(int(delay + jitter), config.base_delay_ms)

    def schedule_retry(self, *, now: int | None = None, rng: random.Random | None = None) -> bool:
        """Reset a retryable failed task to PENDING with a backoff delay."""

        if not self.can_retry():
            return False
        current = now if now is not None else now_ms()
        self.scheduled_at = current + self.next_retry_delay_ms(rng)
        self.next_retry_time = self.scheduled_at
        self.status = TaskStatus.PENDING
        self.started_at = None
        self.completed_at = None
        self.owner_id = None
        self.error = None
        self.touch(current)
        return True

    def reset_to_pending(self, *, scheduled_at: int | None = None, now: int | None = None) -> None:
        """Return a RUNNING task to the queue, used by recovery and zombie sweeps."""

        current = now if now is not None else now_ms()
        self.status = TaskStatus.PENDING
        self.started_at = None
        self.owner_id = None
        if scheduled_at is not None:
            self.scheduled_at = scheduled_at
        self.touch(current)


@dataclass(slots=True)
class ValidationResult:
    """Outcome of submission validation."""

    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class IdempotencyRecord:
    """A cached operation result keyed by idempotency key."""

    key: str
    result: Any
    operation_type: str
    created_at: int
    expires_at: int

    def is_expired(self, now: int | None = None) -> bool:
        return (now if now is not None else now_ms()) > self.expires_at


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for the audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: int
    details: dict[str, Any] = field(default_factory=dict)
