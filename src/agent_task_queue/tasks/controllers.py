"""Controllers for agent task CLI commands."""

from __future__ import annotations

import json
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from agent_task_queue.config import Settings
from agent_task_queue.storage.common import ms_to_datetime
from agent_task_queue.tasks.executors import EchoExecutor, ExecutorRegistry
from agent_task_queue.tasks.metrics import render_metrics_lines
from agent_task_queue.tasks.models import AgentTask, RetryConfig, TaskStatus
from agent_task_queue.tasks.repository import OrderBy, Predicate, TaskRepository
from agent_task_queue.tasks.system import AgentTaskSystem

DEFAULT_ECHO_KINDS = ("ECHO",)


@dataclass(slots=True)
class TaskSubmitCommand:
    """CLI input for task submission."""

    db_path: Path | None
    task_type: str
    agent_kind: str
    itinerary_id: str
    user_id: str
    payload_json: str = "{}"
    priority: int = 5
    timeout_ms: int | None = None
    max_attempts: int = 3
    idempotency_key: str | None = None
    task_id: str | None = None


@dataclass(slots=True)
class TaskRunCommand:
    """CLI input for running the queue service."""

    db_path: Path | None
    once: bool
    echo_kinds: tuple[str, ...] = DEFAULT_ECHO_KINDS
    max_seconds: float | None = None


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None
    itinerary_id: str | None
    limit: int


@dataclass(slots=True)
class TaskInspectCommand:
    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TaskCancelCommand:
    db_path: Path | None
    task_id: str
    reason: str


@dataclass(slots=True)
class TaskMaintenanceCommand:
    """CLI input for stats, cleanup and sweep commands."""

    db_path: Path | None


@dataclass(slots=True)
class DeadLettersCommand:
    db_path: Path | None
    limit: int


class TaskCliController:
    """Coordinates submission, service, inspection and maintenance CLI operations."""

    def submit(self, command: TaskSubmitCommand) -> list[str]:
        settings = _settings(command.db_path)
        try:
            payload = json.loads(command.payload_json)
        except json.JSONDecodeError as error:
            raise ValueError(f"Payload is not valid JSON: {error}") from error
        if not isinstance(payload, dict):
            raise ValueError("Payload must be a JSON object.")

        task = AgentTask.create(
            task_type=command.task_type,
            agent_kind=command.agent_kind,
            itinerary_id=command.itinerary_id,
            user_id=command.user_id,
            idempotency_key=command.idempotency_key or None,
            priority=command.priority,
            payload=payload,
            timeout_ms=command.timeout_ms or settings.lifecycle.default_timeout_ms,
            retry_config=RetryConfig(max_attempts=command.max_attempts),
        )
        if command.task_id:
            task.task_id = command.task_id

        with _system(settings) as system:
            task_id = system.submit(task)
            stored = system.get_task(task_id)

        lines = [f"Task submitted: task_id={task_id}"]
        if task_id != task.task_id:
            lines.append(
                f"Duplicate of an earlier submission (idempotency_key={task.idempotency_key})",
            )
        if stored is not None:
            lines.append(
                f"Status: {stored.status.value} priority={stored.priority} "
                f"timeout_ms={stored.timeout_ms}",
            )
        return lines

    def run(self, command: TaskRunCommand) -> list[str]:
        """Run one drain pass (`once`) or the long-lived service loop."""

        settings = _settings(command.db_path)
        with _system(settings, echo_kinds=command.echo_kinds) as system:
            if command.once:
                recovered = system.lifecycle.recover_orphaned_tasks()
                dispatched = 0
                while True:
                    batch = system.process_pending_once()
                    if batch == 0:
                        break
                    dispatched += batch
                    system.wait_for_idle()
            else:
                stop = threading.Event()
                system.start()
                with _signal_handlers(stop):
                    stop.wait(timeout=command.max_seconds)
                recovered = None
                dispatched = None
            system.shutdown()
            snapshot = system.metrics.snapshot()

        lines = []
        if recovered is not None:
            lines.append(f"Recovered orphaned tasks: {recovered}")
        if dispatched is not None:
            lines.append(f"Dispatched tasks: {dispatched}")
        lines.append(
            "Run summary: "
            f"completed={snapshot.total_completed} failed={snapshot.total_failed} "
            f"retries={snapshot.total_retries}",
        )
        return lines

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = _settings(command.db_path)
        predicates: list[Predicate] = []
        if command.status is not None:
            predicates.append(Predicate("status", "==", _parse_status(command.status)))
        if command.itinerary_id is not None:
            predicates.append(Predicate("itinerary_id", "==", command.itinerary_id))
        with _repository(settings) as repository:
            tasks = repository.query(
                predicates,
                order_by=[OrderBy("created_at", descending=True)],
                limit=command.limit,
            )

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} type={task.task_type} kind={task.agent_kind} "
                f"status={task.status.value} priority={task.priority} "
                f"attempts={len(task.attempts)}/{task.retry_config.max_attempts} "
                f"scheduled_at={_fmt_ms(task.scheduled_at)}",
            )
        return lines

    def inspect_task(self, command: TaskInspectCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            task = repository.get(command.task_id)
            events = repository.list_events(command.task_id) if task is not None else []
        if task is None:
            return [f"Task not found: {command.task_id}"]

        lines = [
            f"Task: {task.task_id}",
            f"Type: {task.task_type}",
            f"Agent kind: {task.agent_kind}",
            f"Itinerary: {task.itinerary_id}",
            f"User: {task.user_id}",
            f"Status: {task.status.value}",
            f"Priority: {task.priority}",
            f"Attempts: {len(task.attempts)}/{task.retry_config.max_attempts}",
            f"Idempotency key: {task.idempotency_key or '-'}",
            f"Scheduled at: {_fmt_ms(task.scheduled_at)}",
            f"Error: {f'{task.error.code}: {task.error.message}' if task.error else '-'}",
            f"Dead-lettered at: {_fmt_ms(task.dead_lettered_at)}",
            f"Result: {json.dumps(task.result, ensure_ascii=False, sort_keys=True)}",
            f"Events: {len(events)}",
        ]
        for event in events:
            lines.append(
                f"  {_fmt_ms(event.created_at)} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def cancel_task(self, command: TaskCancelCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _system(settings) as system:
            cancelled = system.cancel(command.task_id, command.reason)
            task = system.get_task(command.task_id)
        if cancelled:
            return [f"Task cancelled: {command.task_id}"]
        if task is None:
            raise RuntimeError(f"Task not found: {command.task_id}")
        raise RuntimeError(
            f"Task cannot be cancelled from status={task.status.value}: {command.task_id}",
        )

    def stats(self, command: TaskMaintenanceCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _system(settings) as system:
            stats = system.get_stats()
        return render_metrics_lines(
            snapshot=stats.metrics,
            status_counts=stats.task_counts_by_status,
            processed_idempotency_keys=stats.processed_idempotency_keys,
        )

    def cleanup(self, command: TaskMaintenanceCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _system(settings) as system:
            deleted = system.cleanup_old_tasks()
        return [
            f"Deleted tasks: {deleted} (retention={settings.queue.retention_hours}h)",
        ]

    def sweep(self, command: TaskMaintenanceCommand) -> list[str]:
        """Run the lifecycle monitor and idempotency sweeps once."""

        settings = _settings(command.db_path)
        with _system(settings) as system:
            report = system.lifecycle.monitor_running_tasks()
            expired_keys = system.ledger.sweep_expired()
        return [
            "Lifecycle sweep: "
            f"timed_out={report.timed_out} zombies_reset={report.zombies_reset} "
            f"stale={report.stale} expired_monitors={report.expired_monitors}",
            f"Idempotency sweep: expired_keys={expired_keys}",
        ]

    def dead_letters(self, command: DeadLettersCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            tasks = repository.list_dead_letters(limit=command.limit)
        lines = [f"Dead-lettered tasks: {len(tasks)}"]
        for task in tasks:
            error = f"{task.error.code}: {task.error.message}" if task.error else "-"
            lines.append(
                f"  {task.task_id} type={task.task_type} kind={task.agent_kind} "
                f"attempts={len(task.attempts)} at={_fmt_ms(task.dead_lettered_at)} "
                f"error={error}",
            )
        return lines


def default_executor_registry(
    echo_kinds: tuple[str, ...] = DEFAULT_ECHO_KINDS,
) -> ExecutorRegistry:
    registry = ExecutorRegistry()
    echo = EchoExecutor()
    for kind in echo_kinds:
        registry.register(kind, echo)
    return registry


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _parse_status(raw: str) -> TaskStatus:
    try:
        return TaskStatus(raw.upper())
    except ValueError as error:
        raise ValueError(f"Unsupported status filter: {raw!r}") from error


def _fmt_ms(value: int | None) -> str:
    converted = ms_to_datetime(value)
    return converted.isoformat() if converted is not None else "-"


@contextmanager
def _repository(settings: Settings) -> Iterator[TaskRepository]:
    repository = TaskRepository(
        settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _system(
    settings: Settings,
    *,
    echo_kinds: tuple[str, ...] = DEFAULT_ECHO_KINDS,
) -> Iterator[AgentTaskSystem]:
    with _repository(settings) as repository:
        system = AgentTaskSystem(
            repository,
            settings=settings,
            executors=default_executor_registry(echo_kinds),
        )
        try:
            yield system
        finally:
            system.shutdown()


@contextmanager
def _signal_handlers(stop: threading.Event) -> Iterator[None]:
    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(_signum: int, _: object | None) -> None:
        stop.set()

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)
