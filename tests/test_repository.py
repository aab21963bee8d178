from __future__ import annotations

import allure
import pytest

from agent_task_queue.tasks.errors import QueryNotSupportedError
from agent_task_queue.tasks.models import ErrorCode, TaskStatus
from agent_task_queue.tasks.repository import OrderBy, Predicate, TaskRepository

pytestmark = [
    allure.epic("Agent Task Queue"),
    allure.feature("Durable Store"),
]


def test_save_and_get_round_trips_task_document(repository: TaskRepository, task_factory) -> None:
    task = task_factory(
        idempotency_key="book-42",
        priority=8,
        payload={"city": "Lisbon", "nights": 3},
        metadata={"source": "test"},
    )

    repository.save(task, event_type="submitted")
    loaded = repository.get(task.task_id)

    assert loaded is not None
    assert loaded == task
    assert repository.get("missing") is None


def test_save_overwrites_existing_document(repository: TaskRepository, task_factory) -> None:
    task = task_factory()
    repository.save(task)

    task.priority = 9
    task.payload = {"changed": True}
    repository.save(task)

    loaded = repository.get(task.task_id)
    assert loaded is not None
    assert loaded.priority == 9
    assert loaded.payload == {"changed": True}


def test_query_filters_orders_and_limits(repository: TaskRepository, task_factory) -> None:
    low = task_factory(priority=2, scheduled_at=1_000)
    high = task_factory(priority=9, scheduled_at=3_000)
    mid_early = task_factory(priority=5, scheduled_at=1_000)
    mid_late = task_factory(priority=5, scheduled_at=2_000)
    future = task_factory(priority=10, scheduled_at=10_000)
    other = task_factory(priority=10, scheduled_at=1_000, itinerary_id="itinerary-2")
    for task in (low, high, mid_early, mid_late, future, other):
        repository.save(task)

    due = repository.query(
        [
            Predicate("status", "==", TaskStatus.PENDING),
            Predicate("scheduled_at", "<=", 5_000),
            Predicate("itinerary_id", "==", "itinerary-1"),
        ],
        order_by=[OrderBy("priority", descending=True), OrderBy("scheduled_at")],
    )
    assert [task.task_id for task in due] == [
        high.task_id,
        mid_early.task_id,
        mid_late.task_id,
        low.task_id,
    ]

    limited = repository.query(
        [Predicate("priority", ">=", 9)],
        order_by=[OrderBy("scheduled_at")],
        limit=2,
    )
    assert [task.task_id for task in limited] == [other.task_id, high.task_id]

    selected = repository.query([Predicate("priority", "in", [2, 9])])
    assert {task.task_id for task in selected} == {low.task_id, high.task_id}


def test_query_rejects_unknown_fields_and_operators(repository: TaskRepository) -> None:
    with pytest.raises(QueryNotSupportedError):
        repository.query([Predicate("payload_json", "==", "{}")])
    with pytest.raises(QueryNotSupportedError):
        repository.query([Predicate("status", "like", "PEND%")])


def test_claim_is_conditional_on_pending_status(repository: TaskRepository, task_factory) -> None:
    task = task_factory()
    repository.save(task)

    first = repository.get(task.task_id)
    second = repository.get(task.task_id)
    assert first is not None
    assert second is not None

    first.mark_started(owner_id="worker-a")
    second.mark_started(owner_id="worker-b")

    assert repository.claim(first, owner_id="worker-a") is True
    assert repository.claim(second, owner_id="worker-b") is False

    stored = repository.get(task.task_id)
    assert stored is not None
    assert stored.status == TaskStatus.RUNNING
    assert stored.owner_id == "worker-a"
    assert len(stored.attempts) == 1


def test_save_if_current_rejects_stale_writer(repository: TaskRepository, task_factory) -> None:
    task = task_factory()
    repository.save(task)
    task.mark_started(owner_id="worker-a")
    assert repository.claim(task, owner_id="worker-a") is True

    sweeper_copy = repository.get(task.task_id)
    assert sweeper_copy is not None
    sweeper_copy.mark_failed("timed out", ErrorCode.TIMEOUT.value)
    assert repository.save_if_current(
        sweeper_copy,
        expected_status=TaskStatus.RUNNING,
        expected_attempts=1,
        event_type="timed_out",
    )

    task.mark_completed({"late": True})
    assert not repository.save_if_current(
        task,
        expected_status=TaskStatus.RUNNING,
        expected_attempts=1,
        event_type="completed",
    )

    stored = repository.get(task.task_id)
    assert stored is not None
    assert stored.status == TaskStatus.FAILED
    assert stored.error is not None
    assert stored.error.code == "TIMEOUT"


def test_count_delete_and_events(repository: TaskRepository, task_factory) -> None:
    pending = task_factory()
    cancelled = task_factory()
    repository.save(pending, event_type="submitted")
    repository.save(cancelled, event_type="submitted")
    cancelled.mark_cancelled("not needed")
    assert repository.save_if_current(
        cancelled,
        expected_status=TaskStatus.PENDING,
        expected_attempts=0,
        event_type="cancelled",
    )

    assert repository.count_by_status() == {"PENDING": 1, "CANCELLED": 1}

    events = repository.list_events(cancelled.task_id)
    assert [event.event_type for event in events] == ["submitted", "cancelled"]
    assert events[0].status_from is None
    assert events[0].status_to == TaskStatus.PENDING
    assert events[1].status_from == TaskStatus.PENDING
    assert events[1].status_to == TaskStatus.CANCELLED

    assert repository.delete(cancelled.task_id) is True
    assert repository.delete(cancelled.task_id) is False
    assert repository.list_events(cancelled.task_id) == []
    assert repository.count_by_status() == {"PENDING": 1}


def test_dead_letter_copies_task_and_flags_primary(
    repository: TaskRepository,
    task_factory,
) -> None:
    task = task_factory()
    repository.save(task)
    task.mark_failed("boom", ErrorCode.EXECUTION_ERROR.value)
    repository.save(task)

    repository.save_dead_letter(task)

    dead = repository.list_dead_letters()
    assert [item.task_id for item in dead] == [task.task_id]
    assert dead[0].error is not None
    assert dead[0].error.code == "EXECUTION_ERROR"

    primary = repository.get(task.task_id)
    assert primary is not None
    assert primary.dead_lettered_at is not None
    assert [event.event_type for event in repository.list_events(task.task_id)] == [
        "dead_lettered",
    ]
