"""Task lifecycle: validation, monitoring, completion bookkeeping and recovery sweeps."""

from __future__ import annotations

import logging
import random
import threading
from dataclasses import dataclass

from agent_task_queue.config import LifecycleSettings
from agent_task_queue.storage.common import now_ms
from agent_task_queue.tasks.errors import StorageError
from agent_task_queue.tasks.metrics import TaskMetrics
from agent_task_queue.tasks.models import (
    AgentTask,
    ErrorCode,
    TaskError,
    TaskStatus,
    ValidationResult,
)
from agent_task_queue.tasks.repository import Predicate, TaskStore

logger = logging.getLogger(__name__)

MIN_PRIORITY = 1
MAX_PRIORITY = 10
MAX_RETRY_ATTEMPTS = 10
MIN_RETRY_BASE_DELAY_MS = 100
MAX_RETRY_DELAY_MS = 3_600_000
_REQUIRED_FIELDS = ("task_id", "task_type", "agent_kind", "itinerary_id", "user_id")


@dataclass(slots=True)
class TaskMonitor:
    """In-memory watch entry for a task running in this process."""

    task_id: str
    timeout_ms: int
    start_time: int

    def is_expired(self, *, now: int, grace_ms: int) -> bool:
        return now - self.start_time > self.timeout_ms + grace_ms


@dataclass(slots=True)
class SweepReport:
    """Counts produced by one monitoring sweep."""

    timed_out: int = 0
    stale: int = 0
    zombies_reset: int = 0
    expired_monitors: int = 0


class TaskLifecycleManager:
    """Owns the state machine rules around execution."""

    def __init__(
        self,
        store: TaskStore,
        metrics: TaskMetrics,
        settings: LifecycleSettings | None = None,
        *,
        rng: random.Random | None = None,
    ) -> None:
        self.store = store
        self.metrics = metrics
        self.settings = settings or LifecycleSettings()
        self._rng = rng
        self._monitors: dict[str, TaskMonitor] = {}
        self._monitors_lock = threading.Lock()

    def validate_submission(self, task: AgentTask) -> ValidationResult:
        """Check required fields and clamp out-of-range settings in place."""

        errors: list[str] = []
        warnings: list[str] = []

        for name in _REQUIRED_FIELDS:
            value = getattr(task, name)
            if not isinstance(value, str) or not value.strip():
                errors.append(f"{name} is required")

        if task.priority < MIN_PRIORITY or task.priority > MAX_PRIORITY:
            clamped = min(max(task.priority, MIN_PRIORITY), MAX_PRIORITY)
            warnings.append(f"priority {task.priority} out of range, clamped to {clamped}")
            task.priority = clamped

        low, high = self.settings.min_timeout_ms, self.settings.max_timeout_ms
        if task.timeout_ms < low or task.timeout_ms > high:
            clamped = min(max(task.timeout_ms, low), high)
            warnings.append(f"timeout_ms {task.timeout_ms} out of range, clamped to {clamped}")
            task.timeout_ms = clamped

        warnings.extend(_clamp_retry_config(task))

        if task.idempotency_key:
            try:
                existing = self.store.query(
                    [Predicate("idempotency_key", "==", task.idempotency_key)],
                    limit=1,
                )
            except StorageError:
                logger.exception(
                    "Idempotency pre-check failed for key %s",
                    task.idempotency_key,
                )
            else:
                if existing:
                    warnings.append(
                        f"task {existing[0].task_id} already uses idempotency key "
                        f"{task.idempotency_key}",
                    )

        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

    def start_monitoring(self, task: AgentTask) -> None:
        if task.status != TaskStatus.RUNNING:
            logger.debug("Not monitoring task %s in status %s", task.task_id, task.status.value)
            return
        monitor = TaskMonitor(
            task_id=task.task_id,
            timeout_ms=task.timeout_ms,
            start_time=task.started_at or now_ms(),
        )
        with self._monitors_lock:
            self._monitors[task.task_id] = monitor

    def stop_monitoring(self, task_id: str) -> None:
        with self._monitors_lock:
            self._monitors.pop(task_id, None)

    def active_monitor_count(self) -> int:
        with self._monitors_lock:
            return len(self._monitors)

    def handle_completion(self, task: AgentTask) -> None:
        """Record the terminal outcome of one attempt and dead-letter exhausted tasks."""

        self.stop_monitoring(task.task_id)
        attempt = task.last_attempt
        duration = attempt.duration_ms if attempt is not None else task.duration_ms()

        if task.status == TaskStatus.COMPLETED:
            self.metrics.record_completed(task.task_type, task.agent_kind, duration)
            logger.info("Task %s completed in %s ms", task.task_id, duration)
            return
        if task.status != TaskStatus.FAILED:
            return

        code = task.error.code if task.error is not None else ErrorCode.PROCESSING_ERROR.value
        self.metrics.record_failed(task.task_type, task.agent_kind, code, duration)
        if task.can_retry():
            logger.warning(
                "Task %s failed attempt %d/%d (%s)",
                task.task_id,
                len(task.attempts),
                task.retry_config.max_attempts,
                code,
            )
            return

        logger.error(
            "Task %s failed permanently after %d attempts (%s); moving to dead-letter",
            task.task_id,
            len(task.attempts),
            code,
        )
        try:
            self.store.save_dead_letter(task)
        except StorageError:
            logger.exception("Failed to dead-letter task %s", task.task_id)

    def reschedule_for_retry(self, task: AgentTask) -> bool:
        """Reset a retryable failed task to PENDING with backoff and persist it."""

        if task.status != TaskStatus.FAILED or not task.can_retry():
            return False
        attempts = len(task.attempts)
        task.schedule_retry(rng=self._rng)
        delay_ms = task.scheduled_at - task.updated_at
        saved = self.store.save_if_current(
            task,
            expected_status=TaskStatus.FAILED,
            expected_attempts=attempts,
            event_type="retry_scheduled",
            details={"attempt": attempts + 1, "delay_ms": delay_ms},
        )
        if not saved:
            logger.info("Task %s changed before retry could be scheduled", task.task_id)
            return False
        self.metrics.record_retry(task.task_type, task.agent_kind)
        logger.info(
            "Scheduled retry %d/%d for task %s in %d ms",
            attempts + 1,
            task.retry_config.max_attempts,
            task.task_id,
            delay_ms,
        )
        return True

    def monitor_running_tasks(self) -> SweepReport:
        """Run the timeout, stale and zombie scans plus expired monitor cleanup."""

        report = SweepReport()
        handled: set[str] = set()
        try:
            report.timed_out = self._sweep_timeouts(handled)
        except Exception:
            logger.exception("Timeout sweep failed")
        try:
            report.zombies_reset = self._sweep_zombies(handled)
        except Exception:
            logger.exception("Zombie sweep failed")
        try:
            report.stale = self._scan_stale(handled)
        except Exception:
            logger.exception("Stale task scan failed")
        try:
            report.expired_monitors = self._cleanup_expired_monitors()
        except Exception:
            logger.exception("Monitor cleanup failed")
        return report

    def recover_orphaned_tasks(self) -> int:
        """Requeue every RUNNING task, or dead-letter it when no attempts remain."""

        running = self.store.query([Predicate("status", "==", TaskStatus.RUNNING)])
        recovered = 0
        for task in running:
            previous_owner = task.owner_id
            if self._requeue_abandoned(
                task,
                message="Attempt interrupted by process restart",
                event_type="recovered",
            ):
                recovered += 1
                logger.warning(
                    "Recovered orphaned task %s (previous owner %s)",
                    task.task_id,
                    previous_owner,
                )
        if recovered:
            logger.info("Recovered %d orphaned tasks", recovered)
        return recovered

    def _sweep_timeouts(self, handled: set[str]) -> int:
        now = now_ms()
        count = 0
        for task in self.store.query([Predicate("status", "==", TaskStatus.RUNNING)]):
            if not task.has_timed_out(now):
                continue
            attempts = len(task.attempts)
            task.mark_failed(f"Task timed out after {task.timeout_ms} ms", ErrorCode.TIMEOUT.value)
            task.close_open_attempt()
            saved = self.store.save_if_current(
                task,
                expected_status=TaskStatus.RUNNING,
                expected_attempts=attempts,
                event_type="timed_out",
                details={"timeout_ms": task.timeout_ms, "owner_id": task.owner_id},
            )
            if not saved:
                continue
            handled.add(task.task_id)
            count += 1
            logger.warning("Task %s timed out after %d ms", task.task_id, task.timeout_ms)
            self.handle_completion(task)
            self.reschedule_for_retry(task)
        return count

    def _sweep_zombies(self, handled: set[str]) -> int:
        cutoff = now_ms() - self.settings.zombie_after_seconds * 1000
        count = 0
        for task in self.store.query(
            [
                Predicate("status", "==", TaskStatus.RUNNING),
                Predicate("started_at", "<", cutoff),
            ],
        ):
            if task.task_id in handled:
                continue
            previous_owner = task.owner_id
            if not self._requeue_abandoned(
                task,
                message="Attempt abandoned by unresponsive worker",
                event_type="zombie_reset",
            ):
                continue
            handled.add(task.task_id)
            self.stop_monitoring(task.task_id)
            count += 1
            logger.warning("Reset zombie task %s (owner %s)", task.task_id, previous_owner)
        return count

    def _requeue_abandoned(self, task: AgentTask, *, message: str, event_type: str) -> bool:
        """Close the open attempt and put the task back in the queue with a fresh schedule.

        The abandoned attempt counts toward `max_attempts`; a task with no
        attempts left is failed and dead-lettered instead of requeued.
        """

        attempts = len(task.attempts)
        previous_owner = task.owner_id
        now = now_ms()
        _abandon_open_attempt(task, message)
        exhausted = len(task.attempts) >= task.retry_config.max_attempts
        if exhausted:
            task.mark_failed(message, ErrorCode.PROCESSING_ERROR.value, now=now)
            task.owner_id = None
        else:
            task.reset_to_pending(scheduled_at=now, now=now)
        saved = self.store.save_if_current(
            task,
            expected_status=TaskStatus.RUNNING,
            expected_attempts=attempts,
            event_type=event_type,
            details={"previous_owner": previous_owner, "exhausted": exhausted},
        )
        if saved and exhausted:
            self.handle_completion(task)
        return saved

    def _scan_stale(self, handled: set[str]) -> int:
        cutoff = now_ms() - self.settings.stale_after_seconds * 1000
        count = 0
        for task in self.store.query(
            [
                Predicate("status", "==", TaskStatus.RUNNING),
                Predicate("updated_at", "<", cutoff),
            ],
        ):
            if task.task_id in handled:
                continue
            count += 1
            logger.warning(
                "Task %s has been RUNNING without updates since %d (owner %s)",
                task.task_id,
                task.updated_at,
                task.owner_id,
            )
        return count

    def _cleanup_expired_monitors(self) -> int:
        now = now_ms()
        grace_ms = self.settings.monitor_grace_seconds * 1000
        with self._monitors_lock:
            expired = [
                task_id
                for task_id, monitor in self._monitors.items()
                if monitor.is_expired(now=now, grace_ms=grace_ms)
            ]
            for task_id in expired:
                del self._monitors[task_id]
        for task_id in expired:
            logger.warning("Dropped expired monitor for task %s", task_id)
        return len(expired)


def _clamp_retry_config(task: AgentTask) -> list[str]:
    config = task.retry_config
    warnings: list[str] = []
    if config.max_attempts < 1 or config.max_attempts > MAX_RETRY_ATTEMPTS:
        clamped = min(max(config.max_attempts, 1), MAX_RETRY_ATTEMPTS)
        warnings.append(f"retry max_attempts {config.max_attempts} clamped to {clamped}")
        config.max_attempts = clamped
    if config.base_delay_ms < MIN_RETRY_BASE_DELAY_MS:
        warnings.append(
            f"retry base_delay_ms {config.base_delay_ms} raised to {MIN_RETRY_BASE_DELAY_MS}",
        )
        config.base_delay_ms = MIN_RETRY_BASE_DELAY_MS
    if config.max_delay_ms > MAX_RETRY_DELAY_MS:
        warnings.append(f"retry max_delay_ms {config.max_delay_ms} lowered to {MAX_RETRY_DELAY_MS}")
        config.max_delay_ms = MAX_RETRY_DELAY_MS
    if config.max_delay_ms < config.base_delay_ms:
        warnings.append(f"retry max_delay_ms {config.max_delay_ms} raised to base delay")
        config.max_delay_ms = config.base_delay_ms
    if config.backoff_multiplier < 1.0:
        warnings.append(f"retry backoff_multiplier {config.backoff_multiplier} raised to 1.0")
        config.backoff_multiplier = 1.0
    return warnings


def _abandon_open_attempt(task: AgentTask, message: str) -> None:
    attempt = task.last_attempt
    if attempt is None or attempt.completed_at is not None:
        return
    attempt.mark_completed(
        TaskStatus.FAILED,
        TaskError(code=ErrorCode.PROCESSING_ERROR.value, message=message),
        at=now_ms(),
    )
