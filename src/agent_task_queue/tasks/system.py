"""Agent task system: submission, dispatch, bounded execution and housekeeping."""

from __future__ import annotations

import logging
import random
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass

from agent_task_queue.config import Settings
from agent_task_queue.storage.common import now_ms
from agent_task_queue.tasks.errors import (
    ExecutionError,
    QueryNotSupportedError,
    StorageError,
    SubmissionError,
    ValidationError,
)
from agent_task_queue.tasks.executors import ExecutorRegistry
from agent_task_queue.tasks.idempotency import IdempotencyLedger
from agent_task_queue.tasks.lifecycle import TaskLifecycleManager
from agent_task_queue.tasks.metrics import SystemMetricsSnapshot, TaskMetrics
from agent_task_queue.tasks.models import AgentTask, ErrorCode, TaskStatus
from agent_task_queue.tasks.repository import OrderBy, Predicate, TaskRepository
from agent_task_queue.tasks.scheduler import PeriodicScheduler
from agent_task_queue.tasks.subscription import (
    DISPATCH_ORDER,
    PendingTaskSubscription,
    due_pending_predicates,
)

logger = logging.getLogger(__name__)

SUBMISSION_OPERATION = "task_submission"
_SUBMIT_LOCK_STRIPES = 64
_MS_PER_HOUR = 3_600_000


@dataclass(slots=True)
class TaskSystemStats:
    """Operational snapshot returned by `AgentTaskSystem.get_stats`."""

    metrics: SystemMetricsSnapshot
    currently_running: int
    processed_idempotency_keys: int
    task_counts_by_status: dict[str, int]


class AgentTaskSystem:
    """Accepts tasks, dispatches due work to a bounded pool and runs housekeeping jobs."""

    def __init__(  # noqa: PLR0913
        self,
        store: TaskRepository,
        *,
        settings: Settings | None = None,
        executors: ExecutorRegistry | None = None,
        metrics: TaskMetrics | None = None,
        ledger: IdempotencyLedger | None = None,
        lifecycle: TaskLifecycleManager | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.store = store
        self.executors = executors or ExecutorRegistry()
        self.metrics = metrics or TaskMetrics()
        self.ledger = ledger or IdempotencyLedger(
            store.engine,
            ttl_hours=self.settings.idempotency.ttl_hours,
        )
        self.lifecycle = lifecycle or TaskLifecycleManager(
            store,
            self.metrics,
            self.settings.lifecycle,
            rng=rng,
        )
        self.owner_id = self.settings.owner_id
        self.max_concurrent_tasks = self.settings.queue.max_concurrent_tasks

        self._pool = ThreadPoolExecutor(
            max_workers=self.max_concurrent_tasks,
            thread_name_prefix="agent-task-worker",
        )
        self._in_flight: dict[str, Future[None]] = {}
        self._in_flight_lock = threading.Lock()
        self._in_flight_changed = threading.Condition(self._in_flight_lock)
        self._submit_locks = [threading.Lock() for _ in range(_SUBMIT_LOCK_STRIPES)]
        self._subscription: PendingTaskSubscription | None = None
        self._scheduler: PeriodicScheduler | None = None
        self._started = False
        self._shutting_down = False
        self._shutdown_complete = False

    def start(self) -> None:
        """Recover orphans, run the startup scan and begin background processing."""

        if self._started:
            return
        self._started = True
        try:
            self.lifecycle.recover_orphaned_tasks()
        except StorageError:
            logger.exception("Startup recovery failed")
        self.process_pending_once()

        queue = self.settings.queue
        if queue.subscription_enabled:
            self._subscription = PendingTaskSubscription(
                self.store,
                self._on_pending_batch,
                poll_interval_seconds=queue.poll_interval_seconds,
            )
            self._subscription.open()

        scheduler = PeriodicScheduler()
        scheduler.add_job(
            "lifecycle-monitor",
            self.settings.lifecycle.monitor_interval_seconds,
            self.lifecycle.monitor_running_tasks,
        )
        scheduler.add_job(
            "idempotency-sweep",
            self.settings.idempotency.sweep_interval_seconds,
            self.ledger.sweep_expired,
        )
        scheduler.add_job(
            "retention-cleanup",
            queue.cleanup_interval_seconds,
            self.cleanup_old_tasks,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "Agent task system started (owner=%s, workers=%d, executors=%s)",
            self.owner_id,
            self.max_concurrent_tasks,
            ", ".join(self.executors.kinds()) or "none",
        )

    def submit(self, task: AgentTask) -> str:
        """Validate and persist a task, returning its id or the id of an earlier duplicate."""

        if self._shutting_down:
            raise SubmissionError("Agent task system is shutting down.")

        validation = self.lifecycle.validate_submission(task)
        if not validation.valid:
            raise ValidationError(validation.errors)
        for warning in validation.warnings:
            logger.warning("Task %s: %s", task.task_id, warning)

        key = task.idempotency_key
        if key is not None and not self.ledger.is_valid_key(key):
            raise ValidationError([f"invalid idempotency key: {key!r}"])

        with self._submit_lock(key if key is not None else task.task_id):
            try:
                if key is not None:
                    record = self.ledger.lookup(key)
                    if record is not None:
                        logger.info(
                            "Duplicate submission for idempotency key %s -> task %s",
                            key,
                            record.result,
                        )
                        return str(record.result)

                if self.store.get(task.task_id) is not None:
                    raise SubmissionError(f"Task {task.task_id} already exists.")

                now = now_ms()
                task.status = TaskStatus.PENDING
                task.started_at = None
                task.completed_at = None
                task.owner_id = None
                task.touch(now)
                self.store.save(
                    task,
                    event_type="submitted",
                    details={"priority": task.priority, "idempotency_key": key},
                )
                if key is not None:
                    self.ledger.store(key, task.task_id, SUBMISSION_OPERATION)
                self.metrics.record_submitted(task.task_type, task.agent_kind)
            except SubmissionError:
                raise
            except Exception as exc:
                raise SubmissionError(f"Failed to submit task {task.task_id}: {exc}") from exc

        logger.info(
            "Submitted task %s (type=%s kind=%s priority=%d)",
            task.task_id,
            task.task_type,
            task.agent_kind,
            task.priority,
        )
        if self._subscription is not None:
            self._subscription.notify()
        return task.task_id

    def dispatch(self, task: AgentTask) -> bool:
        """Hand one due PENDING task to the worker pool when a slot is free."""

        if self._shutting_down:
            return False
        if task.status != TaskStatus.PENDING or not task.is_due():
            return False
        with self._in_flight_lock:
            if task.task_id in self._in_flight:
                return False
            if len(self._in_flight) >= self.max_concurrent_tasks:
                return False
            try:
                future = self._pool.submit(self._run_task, task)
            except RuntimeError:
                logger.debug("Worker pool closed; task %s not dispatched", task.task_id)
                return False
            self._in_flight[task.task_id] = future
        future.add_done_callback(
            lambda done, task_id=task.task_id: self._on_future_done(task_id, done),
        )
        return True

    def process_pending_once(self) -> int:
        """Dispatch one batch of due tasks; returns how many were handed to workers."""

        try:
            tasks = self._fetch_due_pending()
        except StorageError:
            logger.exception("Pending task scan failed")
            return 0
        dispatched = 0
        for task in tasks:
            if self.free_slots() <= 0:
                break
            if self.dispatch(task):
                dispatched += 1
        if dispatched:
            logger.info("Dispatched %d pending tasks", dispatched)
        return dispatched

    def free_slots(self) -> int:
        with self._in_flight_lock:
            return self.max_concurrent_tasks - len(self._in_flight)

    def in_flight_count(self) -> int:
        with self._in_flight_lock:
            return len(self._in_flight)

    def wait_for_idle(self, timeout_seconds: float | None = None) -> bool:
        """Block until no task is in flight; False when the timeout elapsed first."""

        with self._in_flight_changed:
            return self._in_flight_changed.wait_for(
                lambda: not self._in_flight,
                timeout=timeout_seconds,
            )

    def cancel(self, task_id: str, reason: str = "cancelled by user") -> bool:
        """Cancel a PENDING task; RUNNING and terminal tasks are left untouched."""

        try:
            task = self.store.get(task_id)
        except StorageError:
            logger.exception("Failed to load task %s for cancellation", task_id)
            return False
        if task is None:
            logger.info("Cannot cancel unknown task %s", task_id)
            return False
        if task.status != TaskStatus.PENDING:
            logger.info("Cannot cancel task %s in status %s", task_id, task.status.value)
            return False

        attempts = len(task.attempts)
        task.mark_cancelled(reason)
        try:
            cancelled = self.store.save_if_current(
                task,
                expected_status=TaskStatus.PENDING,
                expected_attempts=attempts,
                event_type="cancelled",
                details={"reason": reason},
            )
        except StorageError:
            logger.exception("Failed to cancel task %s", task_id)
            return False
        if cancelled:
            logger.info("Cancelled task %s: %s", task_id, reason)
        else:
            logger.info("Task %s changed before it could be cancelled", task_id)
        return cancelled

    def get_task(self, task_id: str) -> AgentTask | None:
        try:
            return self.store.get(task_id)
        except StorageError:
            logger.exception("Failed to load task %s", task_id)
            return None

    def get_tasks_for_itinerary(self, itinerary_id: str) -> list[AgentTask]:
        try:
            return self.store.query(
                [Predicate("itinerary_id", "==", itinerary_id)],
                order_by=[OrderBy("created_at", descending=True)],
            )
        except StorageError:
            logger.exception("Failed to list tasks for itinerary %s", itinerary_id)
            return []

    def get_stats(self) -> TaskSystemStats:
        try:
            counts = self.store.count_by_status()
        except StorageError:
            logger.exception("Failed to count tasks by status")
            counts = {}
        return TaskSystemStats(
            metrics=self.metrics.snapshot(),
            currently_running=self.in_flight_count(),
            processed_idempotency_keys=self.ledger.processed_key_count(),
            task_counts_by_status=counts,
        )

    def cleanup_old_tasks(self) -> int:
        """Delete COMPLETED and CANCELLED tasks finished before the retention window."""

        cutoff = now_ms() - self.settings.queue.retention_hours * _MS_PER_HOUR
        try:
            expired = self.store.query(
                [
                    Predicate("status", "in", [TaskStatus.COMPLETED, TaskStatus.CANCELLED]),
                    Predicate("completed_at", "<", cutoff),
                ],
            )
        except StorageError:
            logger.exception("Failed to list tasks for cleanup")
            return 0

        deleted = 0
        for task in expired:
            try:
                if self.store.delete(task.task_id):
                    deleted += 1
            except StorageError:
                logger.exception("Failed to delete task %s during cleanup", task.task_id)
        if deleted:
            logger.info("Cleaned up %d old tasks", deleted)
        return deleted

    def shutdown(self, grace_seconds: float | None = None) -> None:
        """Stop intake and background jobs, then wait for in-flight work up to the grace period."""

        if self._shutdown_complete:
            return
        self._shutting_down = True
        grace = (
            self.settings.queue.shutdown_grace_seconds if grace_seconds is None else grace_seconds
        )
        logger.info("Shutting down agent task system (grace=%.1fs)", grace)

        if self._subscription is not None:
            self._subscription.close()
        if self._scheduler is not None:
            self._scheduler.stop()

        with self._in_flight_lock:
            futures = list(self._in_flight.values())
        if futures:
            _, not_done = wait_futures(futures, timeout=grace)
            for future in not_done:
                future.cancel()
            if not_done:
                logger.warning(
                    "%d tasks still running after the shutdown grace period",
                    len(not_done),
                )
        self._pool.shutdown(wait=False, cancel_futures=True)

        try:
            remaining = self.store.query(
                [
                    Predicate("status", "==", TaskStatus.RUNNING),
                    Predicate("owner_id", "==", self.owner_id),
                ],
            )
        except StorageError:
            logger.exception("Failed to list running tasks during shutdown")
            remaining = []
        for task in remaining:
            logger.warning("Task %s left RUNNING at shutdown; it will be recovered", task.task_id)
        self._shutdown_complete = True
        logger.info("Agent task system stopped")

    def _fetch_due_pending(self) -> list[AgentTask]:
        now = now_ms()
        try:
            return self.store.query(
                due_pending_predicates(now),
                order_by=DISPATCH_ORDER,
                limit=self.max_concurrent_tasks,
            )
        except QueryNotSupportedError:
            logger.warning("Compound pending query not supported; using simple status scan")

        candidates = self.store.query(
            [Predicate("status", "==", TaskStatus.PENDING)],
            limit=self.max_concurrent_tasks * 2,
        )
        due = [task for task in candidates if task.is_due(now)]
        due.sort(key=lambda task: (-task.priority, task.scheduled_at))
        return due[: self.max_concurrent_tasks]

    def _on_pending_batch(self, tasks: list[AgentTask]) -> None:
        for task in tasks:
            if self.free_slots() <= 0:
                return
            self.dispatch(task)

    def _submit_lock(self, name: str) -> threading.Lock:
        return self._submit_locks[hash(name) % _SUBMIT_LOCK_STRIPES]

    def _run_task(self, task: AgentTask) -> None:
        try:
            self._execute_claimed(task)
        except Exception:
            logger.exception("Unexpected error while processing task %s", task.task_id)
            self._record_processing_error(task)
        finally:
            with self._in_flight_changed:
                self._in_flight.pop(task.task_id, None)
                self._in_flight_changed.notify_all()
            if self._subscription is not None and not self._shutting_down:
                self._subscription.notify()

    def _execute_claimed(self, task: AgentTask) -> None:
        task.mark_started(owner_id=self.owner_id)
        if not self.store.claim(task, owner_id=self.owner_id):
            logger.debug("Task %s was claimed elsewhere; skipping", task.task_id)
            return
        self.lifecycle.start_monitoring(task)
        self.metrics.record_started(task.task_type, task.agent_kind)
        logger.info(
            "Running task %s attempt %d/%d on %s",
            task.task_id,
            len(task.attempts),
            task.retry_config.max_attempts,
            task.agent_kind,
        )

        try:
            finished = self._invoke_executor(task)
            self._complete(finished)
        finally:
            self.metrics.record_finished()

    def _invoke_executor(self, task: AgentTask) -> AgentTask:
        executor = self.executors.get(task.agent_kind)
        if executor is None:
            task.mark_failed(
                f"No executor registered for agent kind {task.agent_kind}",
                ErrorCode.NO_EXECUTOR.value,
            )
            return task
        try:
            result = executor.execute(task)
        except ExecutionError as exc:
            task.mark_failed(str(exc), exc.code, exc)
            return task
        except Exception as exc:
            task.mark_failed(f"Task execution failed: {exc}", ErrorCode.EXECUTION_ERROR.value, exc)
            return task

        if (
            result is None
            or result.task_id != task.task_id
            or result.status not in {TaskStatus.COMPLETED, TaskStatus.FAILED}
        ):
            status = result.status.value if result is not None else None
            task.mark_failed(
                f"Executor returned an invalid result (status={status})",
                ErrorCode.INVALID_RESULT.value,
            )
            return task
        if result.status == TaskStatus.FAILED and result.error is None:
            result.mark_failed("Executor reported failure", ErrorCode.EXECUTION_ERROR.value)
        return result

    def _complete(self, task: AgentTask) -> None:
        task.close_open_attempt()
        saved = self.store.save_if_current(
            task,
            expected_status=TaskStatus.RUNNING,
            expected_attempts=len(task.attempts),
            event_type="completed" if task.status == TaskStatus.COMPLETED else "failed",
            details={
                "attempt": len(task.attempts),
                "error_code": task.error.code if task.error is not None else None,
            },
        )
        if not saved:
            self.lifecycle.stop_monitoring(task.task_id)
            logger.info(
                "Task %s was moved by a sweep while running; discarding attempt %d outcome",
                task.task_id,
                len(task.attempts),
            )
            return
        self.lifecycle.handle_completion(task)
        self.lifecycle.reschedule_for_retry(task)

    def _record_processing_error(self, task: AgentTask) -> None:
        if task.status != TaskStatus.RUNNING:
            self.lifecycle.stop_monitoring(task.task_id)
            return
        task.mark_failed("Task processing failed", ErrorCode.PROCESSING_ERROR.value)
        try:
            self._complete(task)
        except Exception:
            self.lifecycle.stop_monitoring(task.task_id)
            logger.exception("Failed to record processing error for task %s", task.task_id)

    def _on_future_done(self, task_id: str, future: Future[None]) -> None:
        if not future.cancelled():
            return
        with self._in_flight_changed:
            self._in_flight.pop(task_id, None)
            self._in_flight_changed.notify_all()
        logger.info("Dispatch of task %s cancelled before it started", task_id)
