"""CLI entrypoint for agent-task-queue."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from agent_task_queue import __version__
from agent_task_queue.tasks.controllers import (
    DEFAULT_ECHO_KINDS,
    DeadLettersCommand,
    TaskCancelCommand,
    TaskCliController,
    TaskInspectCommand,
    TaskListCommand,
    TaskMaintenanceCommand,
    TaskRunCommand,
    TaskSubmitCommand,
)

click.rich_click.USE_MARKDOWN = True
TASK_CONTROLLER = TaskCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
STATUS_CHOICES = ["pending", "running", "completed", "failed", "cancelled"]


@click.group()
@click.version_option(version=__version__, prog_name="agent-tasks")
def agent_tasks() -> None:
    """Durable agent task queue CLI."""


@agent_tasks.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-type", required=True, help="Task type, for example enrich.")
@click.option("--agent-kind", default="ECHO", show_default=True, help="Executor agent kind.")
@click.option("--itinerary-id", required=True, help="Itinerary the task belongs to.")
@click.option("--user-id", required=True, help="Submitting user.")
@click.option("--payload", "payload_json", default="{}", show_default=True, help="JSON payload.")
@click.option(
    "--priority",
    type=int,
    default=5,
    show_default=True,
    help="1-10, higher runs first. Out-of-range values are clamped.",
)
@click.option("--timeout-ms", type=click.IntRange(min=1), default=None, help="Execution timeout.")
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1, max=10),
    default=3,
    show_default=True,
    help="Attempts before the task is dead-lettered.",
)
@click.option("--idempotency-key", default=None, help="Optional deduplication key.")
@click.option("--task-id", default=None, help="Optional explicit task id.")
def submit(  # noqa: PLR0913
    db_path: Path | None,
    task_type: str,
    agent_kind: str,
    itinerary_id: str,
    user_id: str,
    payload_json: str,
    priority: int,
    timeout_ms: int | None,
    max_attempts: int,
    idempotency_key: str | None,
    task_id: str | None,
) -> None:
    """Submit one task to the durable queue."""

    _run(
        lambda: TASK_CONTROLLER.submit(
            TaskSubmitCommand(
                db_path=db_path,
                task_type=task_type,
                agent_kind=agent_kind,
                itinerary_id=itinerary_id,
                user_id=user_id,
                payload_json=payload_json,
                priority=priority,
                timeout_ms=timeout_ms,
                max_attempts=max_attempts,
                idempotency_key=idempotency_key,
                task_id=task_id,
            ),
        ),
    )


@agent_tasks.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Drain due tasks once and exit, or run the service until interrupted.",
)
@click.option(
    "--echo-kind",
    "echo_kinds",
    multiple=True,
    default=DEFAULT_ECHO_KINDS,
    show_default=True,
    help="Agent kind served by the built-in echo executor. Can be repeated.",
)
@click.option(
    "--max-seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Stop the service loop after this many seconds.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Logging level for the service.",
)
def run(
    db_path: Path | None,
    once: bool,
    echo_kinds: tuple[str, ...],
    max_seconds: float | None,
    log_level: str,
) -> None:
    """Run the task queue service: recovery, dispatch, monitoring and cleanup."""

    logging.basicConfig(level=getattr(logging, log_level.upper()), format=LOG_FORMAT)
    _run(
        lambda: TASK_CONTROLLER.run(
            TaskRunCommand(
                db_path=db_path,
                once=once,
                echo_kinds=echo_kinds,
                max_seconds=max_seconds,
            ),
        ),
    )


@agent_tasks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(STATUS_CHOICES, case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--itinerary-id", default=None, help="Optional itinerary filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def list_tasks(
    db_path: Path | None,
    status: str | None,
    itinerary_id: str | None,
    limit: int,
) -> None:
    """List tasks, newest first."""

    _run(
        lambda: TASK_CONTROLLER.list_tasks(
            TaskListCommand(
                db_path=db_path,
                status=status,
                itinerary_id=itinerary_id,
                limit=limit,
            ),
        ),
    )


@agent_tasks.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def inspect(db_path: Path | None, task_id: str) -> None:
    """Inspect one task with its event history."""

    _run(
        lambda: TASK_CONTROLLER.inspect_task(
            TaskInspectCommand(db_path=db_path, task_id=task_id),
        ),
    )


@agent_tasks.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
@click.option("--reason", default="cancelled by operator", show_default=True, help="Reason.")
def cancel(db_path: Path | None, task_id: str, reason: str) -> None:
    """Cancel a PENDING task."""

    _run(
        lambda: TASK_CONTROLLER.cancel_task(
            TaskCancelCommand(db_path=db_path, task_id=task_id, reason=reason),
        ),
    )


@agent_tasks.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def stats(db_path: Path | None) -> None:
    """Show queue counts and process metrics."""

    _run(lambda: TASK_CONTROLLER.stats(TaskMaintenanceCommand(db_path=db_path)))


@agent_tasks.command("cleanup")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def cleanup(db_path: Path | None) -> None:
    """Delete finished tasks older than the retention window."""

    _run(lambda: TASK_CONTROLLER.cleanup(TaskMaintenanceCommand(db_path=db_path)))


@agent_tasks.command("sweep")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def sweep(db_path: Path | None) -> None:
    """Run timeout/zombie detection and the idempotency key sweep once."""

    _run(lambda: TASK_CONTROLLER.sweep(TaskMaintenanceCommand(db_path=db_path)))


@agent_tasks.command("dead-letters")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def dead_letters(db_path: Path | None, limit: int) -> None:
    """List tasks that exhausted their retries."""

    _run(lambda: TASK_CONTROLLER.dead_letters(DeadLettersCommand(db_path=db_path, limit=limit)))


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (RuntimeError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_tasks()
