from __future__ import annotations

import random
import threading
import time
from collections.abc import Callable, Sequence
from pathlib import Path

import allure
import pytest

from agent_task_queue.config import QueueSettings, Settings
from agent_task_queue.storage.common import now_ms
from agent_task_queue.tasks.errors import (
    QueryNotSupportedError,
    SubmissionError,
    ValidationError,
)
from agent_task_queue.tasks.executors import EchoExecutor, ExecutorRegistry
from agent_task_queue.tasks.models import AgentTask, RetryConfig, TaskStatus
from agent_task_queue.tasks.repository import OrderBy, Predicate, TaskRepository
from agent_task_queue.tasks.system import AgentTaskSystem

pytestmark = [
    allure.epic("Agent Task Queue"),
    allure.feature("Task System"),
]


def _wait_until(condition: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.02)
    return condition()


def _status(repository: TaskRepository, task_id: str) -> TaskStatus | None:
    task = repository.get(task_id)
    return task.status if task is not None else None


def _drain(system: AgentTaskSystem, rounds: int = 5) -> None:
    for _ in range(rounds):
        system.process_pending_once()
        assert system.wait_for_idle(timeout_seconds=5.0)


class _RecordingExecutor:
    def __init__(self) -> None:
        self.seen: list[str] = []

    def execute(self, task: AgentTask) -> AgentTask:
        self.seen.append(task.payload["name"])
        task.mark_completed({"name": task.payload["name"]})
        return task


class _BrokenExecutor:
    def execute(self, task: AgentTask) -> AgentTask | None:
        return None


class _SimpleQueryRepository(TaskRepository):
    """Store that only serves single-predicate queries without ordering."""

    def __init__(self, db_path: Path) -> None:
        super().__init__(db_path)
        self.rejected = 0

    def query(
        self,
        predicates: Sequence[Predicate],
        order_by: Sequence[OrderBy] = (),
        limit: int | None = None,
    ) -> list[AgentTask]:
        if len(predicates) > 1 or order_by:
            self.rejected += 1
            raise QueryNotSupportedError("compound query needs an index")
        return super().query(predicates, order_by, limit)


def test_submit_and_process_echo_task(
    system: AgentTaskSystem,
    repository: TaskRepository,
    task_factory,
) -> None:
    task_id = system.submit(task_factory(payload={"city": "Porto"}))

    assert _status(repository, task_id) == TaskStatus.PENDING
    assert system.process_pending_once() == 1
    assert system.wait_for_idle(timeout_seconds=5.0)

    stored = system.get_task(task_id)
    assert stored is not None
    assert stored.status == TaskStatus.COMPLETED
    assert stored.result == {"echo": {"city": "Porto"}, "attempt": 1, "agent_kind": "ECHO"}
    assert stored.attempts[0].status == TaskStatus.COMPLETED
    assert [event.event_type for event in repository.list_events(task_id)] == [
        "submitted",
        "claimed",
        "completed",
    ]
    stats = system.get_stats()
    assert stats.task_counts_by_status == {"COMPLETED": 1}
    assert stats.currently_running == 0
    assert stats.metrics.by_task_type["enrich"].completed == 1


def test_duplicate_submission_returns_original_task_id(
    system: AgentTaskSystem,
    repository: TaskRepository,
    task_factory,
) -> None:
    first = system.submit(task_factory(idempotency_key="booking-77"))
    second = system.submit(task_factory(idempotency_key="booking-77"))

    assert first == second
    assert len(repository.query([Predicate("idempotency_key", "==", "booking-77")])) == 1
    assert system.get_stats().processed_idempotency_keys == 1


def test_concurrent_duplicate_submissions_store_one_task(
    system: AgentTaskSystem,
    repository: TaskRepository,
    task_factory,
) -> None:
    barrier = threading.Barrier(6)
    results: list[str] = []
    results_lock = threading.Lock()

    def _submit() -> None:
        task = task_factory(idempotency_key="same-key")
        barrier.wait()
        task_id = system.submit(task)
        with results_lock:
            results.append(task_id)

    threads = [threading.Thread(target=_submit) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(results) == 6
    assert len(set(results)) == 1
    assert len(repository.query([Predicate("idempotency_key", "==", "same-key")])) == 1


def test_submit_rejects_invalid_tasks(system: AgentTaskSystem, repository, task_factory) -> None:
    with pytest.raises(ValidationError) as missing:
        system.submit(task_factory(user_id=""))
    assert missing.value.errors == ["user_id is required"]

    with pytest.raises(ValidationError):
        system.submit(task_factory(idempotency_key="has space"))

    assert repository.count_by_status() == {}


def test_submit_rejects_empty_idempotency_key(
    system: AgentTaskSystem,
    repository: TaskRepository,
    task_factory,
) -> None:
    with pytest.raises(ValidationError) as empty:
        system.submit(task_factory(idempotency_key=""))

    assert empty.value.errors == ["invalid idempotency key: ''"]
    assert repository.count_by_status() == {}


def test_resubmitting_existing_task_id_is_refused(
    system: AgentTaskSystem,
    repository: TaskRepository,
    task_factory,
) -> None:
    task_id = system.submit(task_factory(payload={"city": "Lisbon"}))
    _drain(system, rounds=1)
    assert _status(repository, task_id) == TaskStatus.COMPLETED

    replay = task_factory(payload={"city": "Faro"})
    replay.task_id = task_id
    with pytest.raises(SubmissionError, match="already exists"):
        system.submit(replay)

    stored = repository.get(task_id)
    assert stored is not None
    assert stored.status == TaskStatus.COMPLETED
    assert stored.payload == {"city": "Lisbon"}
    assert stored.result["echo"] == {"city": "Lisbon"}
    assert len(stored.attempts) == 1
    assert repository.count_by_status() == {"COMPLETED": 1}


def test_submit_after_shutdown_is_refused(system: AgentTaskSystem, task_factory) -> None:
    system.shutdown(grace_seconds=1.0)

    with pytest.raises(SubmissionError):
        system.submit(task_factory())


def test_higher_priority_tasks_run_first(
    repository: TaskRepository,
    settings: Settings,
    task_factory,
) -> None:
    settings.queue = QueueSettings(
        max_concurrent_tasks=1,
        poll_interval_seconds=0.05,
        subscription_enabled=False,
    )
    recorder = _RecordingExecutor()
    registry = ExecutorRegistry()
    registry.register("ECHO", recorder)
    system = AgentTaskSystem(repository, settings=settings, executors=registry)
    try:
        for name, priority in (("low", 2), ("high", 9), ("mid", 5)):
            system.submit(task_factory(priority=priority, payload={"name": name}))

        _drain(system, rounds=3)
    finally:
        system.shutdown(grace_seconds=5.0)

    assert recorder.seen == ["high", "mid", "low"]


def test_future_tasks_are_not_dispatched(system: AgentTaskSystem, task_factory) -> None:
    task_id = system.submit(task_factory(scheduled_at=now_ms() + 60_000))

    assert system.process_pending_once() == 0
    task = system.get_task(task_id)
    assert task is not None
    assert system.dispatch(task) is False


def test_failing_task_is_retried_then_dead_lettered(
    system: AgentTaskSystem,
    repository: TaskRepository,
    task_factory,
) -> None:
    task_id = system.submit(task_factory(payload={"fail": True, "fail_message": "agent down"}))

    def _dead_lettered() -> bool:
        system.process_pending_once()
        system.wait_for_idle(timeout_seconds=5.0)
        return bool(repository.list_dead_letters())

    assert _wait_until(_dead_lettered, timeout=10.0)

    stored = repository.get(task_id)
    assert stored is not None
    assert stored.status == TaskStatus.FAILED
    assert len(stored.attempts) == 3
    assert stored.dead_lettered_at is not None
    assert stored.error is not None
    assert stored.error.code == "EXECUTION_ERROR"
    assert stored.error.message == "agent down"
    assert all(attempt.status == TaskStatus.FAILED for attempt in stored.attempts)
    bucket = system.metrics.snapshot().by_task_type["enrich"]
    assert bucket.failed == 3
    assert bucket.retries == 2
    assert system.process_pending_once() == 0


def test_missing_executor_and_invalid_result_fail_task(
    system: AgentTaskSystem,
    repository: TaskRepository,
    task_factory,
) -> None:
    system.executors.register("BROKEN", _BrokenExecutor())
    single = RetryConfig(max_attempts=1, base_delay_ms=100, max_delay_ms=1_000)
    unknown_id = system.submit(task_factory(agent_kind="UNKNOWN", retry_config=single))
    broken_id = system.submit(task_factory(agent_kind="BROKEN", retry_config=single))

    _drain(system, rounds=2)

    unknown = repository.get(unknown_id)
    broken = repository.get(broken_id)
    assert unknown is not None
    assert broken is not None
    assert unknown.status == TaskStatus.FAILED
    assert unknown.error is not None
    assert unknown.error.code == "NO_EXECUTOR"
    assert broken.status == TaskStatus.FAILED
    assert broken.error is not None
    assert broken.error.code == "INVALID_RESULT"
    assert {task.task_id for task in repository.list_dead_letters()} == {unknown_id, broken_id}


def test_timed_out_attempt_is_rescheduled_and_late_result_discarded(
    system: AgentTaskSystem,
    repository: TaskRepository,
    task_factory,
) -> None:
    task_id = system.submit(task_factory(timeout_ms=1_000, payload={"sleep_seconds": 2.0}))
    assert system.process_pending_once() == 1
    assert _wait_until(lambda: _status(repository, task_id) == TaskStatus.RUNNING)

    time.sleep(1.2)
    report = system.lifecycle.monitor_running_tasks()

    assert report.timed_out == 1
    assert system.wait_for_idle(timeout_seconds=5.0)
    stored = repository.get(task_id)
    assert stored is not None
    assert stored.status == TaskStatus.PENDING
    assert stored.result == {}
    assert stored.attempts[0].status == TaskStatus.FAILED
    assert stored.attempts[0].error is not None
    assert stored.attempts[0].error.code == "TIMEOUT"
    events = [event.event_type for event in repository.list_events(task_id)]
    assert "timed_out" in events
    assert "completed" not in events
    assert system.metrics.snapshot().by_task_type["enrich"].completed == 0
    assert system.metrics.currently_running() == 0


def test_zombie_reset_during_local_run_discards_outcome_and_frees_gauge(
    system: AgentTaskSystem,
    repository: TaskRepository,
    task_factory,
) -> None:
    system.lifecycle.settings.zombie_after_seconds = 1
    task_id = system.submit(task_factory(payload={"sleep_seconds": 1.5}))
    assert system.process_pending_once() == 1
    assert _wait_until(lambda: _status(repository, task_id) == TaskStatus.RUNNING)
    assert _wait_until(lambda: system.metrics.currently_running() == 1)

    time.sleep(1.1)
    report = system.lifecycle.monitor_running_tasks()

    assert report.zombies_reset == 1
    assert system.wait_for_idle(timeout_seconds=5.0)
    assert system.metrics.currently_running() == 0
    stored = repository.get(task_id)
    assert stored is not None
    assert stored.status == TaskStatus.PENDING
    events = [event.event_type for event in repository.list_events(task_id)]
    assert "zombie_reset" in events
    assert "completed" not in events


def test_start_recovers_orphaned_running_task(
    system: AgentTaskSystem,
    repository: TaskRepository,
    task_factory,
) -> None:
    orphan = task_factory()
    repository.save(orphan, event_type="submitted")
    orphan.mark_started(owner_id="crashed-worker")
    assert repository.claim(orphan, owner_id="crashed-worker")

    system.start()
    system.start()
    assert system.wait_for_idle(timeout_seconds=5.0)

    stored = repository.get(orphan.task_id)
    assert stored is not None
    assert stored.status == TaskStatus.COMPLETED
    assert len(stored.attempts) == 2
    assert stored.attempts[0].status == TaskStatus.FAILED
    assert stored.result is not None
    assert stored.result["attempt"] == 2
    assert "recovered" in [event.event_type for event in repository.list_events(orphan.task_id)]


def test_subscription_dispatches_submitted_tasks(
    repository: TaskRepository,
    settings: Settings,
    executors: ExecutorRegistry,
    task_factory,
) -> None:
    settings.queue.subscription_enabled = True
    system = AgentTaskSystem(repository, settings=settings, executors=executors)
    try:
        system.start()
        task_id = system.submit(task_factory())

        assert _wait_until(lambda: _status(repository, task_id) == TaskStatus.COMPLETED)
    finally:
        system.shutdown(grace_seconds=5.0)


def test_compound_query_falls_back_to_status_scan(
    db_path: Path,
    settings: Settings,
    executors: ExecutorRegistry,
    task_factory,
) -> None:
    store = _SimpleQueryRepository(db_path)
    store.init_schema()
    system = AgentTaskSystem(store, settings=settings, executors=executors, rng=random.Random(1))
    try:
        low = system.submit(task_factory(priority=1))
        high = system.submit(task_factory(priority=10))
        system.submit(task_factory(priority=10, scheduled_at=now_ms() + 60_000))
        system.submit(task_factory(priority=3))

        assert system.process_pending_once() == 2
        assert system.wait_for_idle(timeout_seconds=5.0)

        assert store.rejected >= 1
        assert _status(store, high) == TaskStatus.COMPLETED
        assert _status(store, low) == TaskStatus.PENDING
    finally:
        system.shutdown(grace_seconds=5.0)
        store.close()


def test_cancel_only_affects_pending_tasks(
    system: AgentTaskSystem,
    repository: TaskRepository,
    task_factory,
) -> None:
    pending_id = system.submit(task_factory(scheduled_at=now_ms() + 60_000))
    running_id = system.submit(task_factory(payload={"sleep_seconds": 0.5}))

    assert system.cancel(pending_id, "trip cancelled") is True
    cancelled = repository.get(pending_id)
    assert cancelled is not None
    assert cancelled.status == TaskStatus.CANCELLED
    assert cancelled.error is not None
    assert cancelled.error.code == "CANCELLED"
    assert system.cancel(pending_id) is False

    assert system.process_pending_once() == 1
    assert _wait_until(lambda: _status(repository, running_id) == TaskStatus.RUNNING)
    assert system.cancel(running_id) is False
    assert system.wait_for_idle(timeout_seconds=5.0)
    assert _status(repository, running_id) == TaskStatus.COMPLETED

    assert system.cancel("missing-task") is False


def test_get_tasks_for_itinerary_newest_first(system: AgentTaskSystem, task_factory) -> None:
    older = system.submit(task_factory(itinerary_id="trip-9", created_at=1_000))
    newer = system.submit(task_factory(itinerary_id="trip-9", created_at=2_000))
    system.submit(task_factory(itinerary_id="trip-other"))

    tasks = system.get_tasks_for_itinerary("trip-9")

    assert [task.task_id for task in tasks] == [newer, older]
    assert system.get_tasks_for_itinerary("nothing") == []


def test_cleanup_old_tasks_respects_retention(
    system: AgentTaskSystem,
    repository: TaskRepository,
    task_factory,
) -> None:
    long_ago = now_ms() - 25 * 3_600_000
    old_completed = task_factory()
    old_completed.mark_completed({}, now=long_ago)
    old_cancelled = task_factory()
    old_cancelled.mark_cancelled("stale", now=long_ago)
    old_failed = task_factory()
    old_failed.mark_failed("boom", "EXECUTION_ERROR", now=long_ago)
    recent = task_factory()
    recent.mark_completed({})
    for task in (old_completed, old_cancelled, old_failed, recent):
        repository.save(task)

    assert system.cleanup_old_tasks() == 2

    assert repository.get(old_completed.task_id) is None
    assert repository.get(old_cancelled.task_id) is None
    assert repository.get(old_failed.task_id) is not None
    assert repository.get(recent.task_id) is not None


def test_shutdown_waits_for_in_flight_work(system: AgentTaskSystem, repository, task_factory):
    task_id = system.submit(task_factory(payload={"sleep_seconds": 0.3}))
    assert system.process_pending_once() == 1

    system.shutdown(grace_seconds=5.0)
    system.shutdown()

    assert _status(repository, task_id) == TaskStatus.COMPLETED
    assert system.process_pending_once() == 0


def test_executor_registry_lists_kinds() -> None:
    registry = ExecutorRegistry()
    registry.register("PLANNER", EchoExecutor())
    registry.register("ECHO", EchoExecutor())
    registry.register("ECHO", EchoExecutor())

    assert registry.kinds() == ["ECHO", "PLANNER"]
    assert registry.get("MISSING") is None
