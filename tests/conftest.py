"""Shared test fixtures."""

from __future__ import annotations

import random
from collections.abc import Iterator
from pathlib import Path

import pytest

from agent_task_queue.config import LifecycleSettings, QueueSettings, Settings
from agent_task_queue.tasks.executors import EchoExecutor, ExecutorRegistry
from agent_task_queue.tasks.models import AgentTask, RetryConfig
from agent_task_queue.tasks.repository import TaskRepository
from agent_task_queue.tasks.system import AgentTaskSystem


def _make_task(**overrides) -> AgentTask:
    fields = {
        "task_type": "enrich",
        "agent_kind": "ECHO",
        "itinerary_id": "itinerary-1",
        "user_id": "user-1",
        "retry_config": RetryConfig(base_delay_ms=100, max_delay_ms=1_000),
    }
    fields.update(overrides)
    return AgentTask.create(**fields)


@pytest.fixture()
def task_factory():
    """Build valid tasks with short retry delays."""

    return _make_task


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "agent_tasks.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[TaskRepository]:
    repo = TaskRepository(db_path)
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def settings(db_path: Path) -> Settings:
    return Settings(
        db_path=db_path,
        owner_id="test-owner",
        queue=QueueSettings(
            max_concurrent_tasks=2,
            poll_interval_seconds=0.05,
            shutdown_grace_seconds=5.0,
            subscription_enabled=False,
        ),
        lifecycle=LifecycleSettings(monitor_interval_seconds=60.0),
    )


@pytest.fixture()
def executors() -> ExecutorRegistry:
    registry = ExecutorRegistry()
    registry.register("ECHO", EchoExecutor())
    return registry


@pytest.fixture()
def system(
    repository: TaskRepository,
    settings: Settings,
    executors: ExecutorRegistry,
) -> Iterator[AgentTaskSystem]:
    task_system = AgentTaskSystem(
        repository,
        settings=settings,
        executors=executors,
        rng=random.Random(7),
    )
    try:
        yield task_system
    finally:
        task_system.shutdown(grace_seconds=5.0)
