from __future__ import annotations

import threading
import time

import allure
import pytest

from agent_task_queue.storage.common import now_ms
from agent_task_queue.tasks.models import AgentTask
from agent_task_queue.tasks.repository import TaskRepository
from agent_task_queue.tasks.scheduler import PeriodicScheduler
from agent_task_queue.tasks.subscription import PendingTaskSubscription

pytestmark = [
    allure.epic("Agent Task Queue"),
    allure.feature("Background Jobs"),
]


def test_scheduler_keeps_running_jobs_after_failures() -> None:
    calls = {"ok": 0, "boom": 0}
    both_ran_twice = threading.Event()

    def _ok() -> None:
        calls["ok"] += 1
        if calls["ok"] >= 2 and calls["boom"] >= 2:
            both_ran_twice.set()

    def _boom() -> None:
        calls["boom"] += 1
        raise RuntimeError("job failed")

    scheduler = PeriodicScheduler()
    scheduler.add_job("ok", 0.02, _ok, initial_delay_seconds=0.0)
    scheduler.add_job("boom", 0.02, _boom, initial_delay_seconds=0.0)
    scheduler.start()
    try:
        assert both_ran_twice.wait(timeout=5.0)
    finally:
        scheduler.stop()

    assert scheduler.job_names() == ["boom", "ok"]
    with pytest.raises(ValueError):
        scheduler.add_job("bad", 0, _ok)


def test_scheduler_rejects_jobs_while_running() -> None:
    scheduler = PeriodicScheduler()
    scheduler.add_job("idle", 60, lambda: None)
    scheduler.start()
    try:
        with pytest.raises(RuntimeError):
            scheduler.add_job("late", 60, lambda: None)
    finally:
        scheduler.stop()
    scheduler.stop()


def test_poll_once_delivers_due_tasks_in_dispatch_order(
    repository: TaskRepository,
    task_factory,
) -> None:
    low = task_factory(priority=1, scheduled_at=1_000)
    high_late = task_factory(priority=8, scheduled_at=2_000)
    high_early = task_factory(priority=8, scheduled_at=1_500)
    future = task_factory(priority=10, scheduled_at=now_ms() + 60_000)
    for task in (low, high_late, high_early, future):
        repository.save(task)
    batches: list[list[AgentTask]] = []

    subscription = PendingTaskSubscription(repository, batches.append, batch_size=10)

    assert subscription.poll_once() == 3
    assert [task.task_id for task in batches[0]] == [
        high_early.task_id,
        high_late.task_id,
        low.task_id,
    ]


def test_notify_wakes_polling_thread(repository: TaskRepository, task_factory) -> None:
    delivered = threading.Event()

    def _listener(tasks: list[AgentTask]) -> None:
        delivered.set()

    subscription = PendingTaskSubscription(repository, _listener, poll_interval_seconds=30.0)
    subscription.open()
    try:
        assert subscription.is_open
        time.sleep(0.1)
        repository.save(task_factory())
        subscription.notify()
        assert delivered.wait(timeout=5.0)
    finally:
        subscription.close()

    assert subscription.is_open is False
