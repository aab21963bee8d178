from pathlib import Path

import allure
from sqlalchemy import inspect

from agent_task_queue.storage.alembic_runner import current_revision
from agent_task_queue.tasks.repository import TaskRepository

pytestmark = [
    allure.epic("Agent Task Queue"),
    allure.feature("Durable Store"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    db_path = tmp_path / "migrations.db"
    assert current_revision(db_path) is None

    repository = TaskRepository(db_path)
    repository.init_schema()
    repository.init_schema()

    assert current_revision(db_path) == "20261017_0001"

    inspector = inspect(repository.engine)
    assert sorted(inspector.get_table_names()) == [
        "agent_task_events",
        "agent_tasks",
        "alembic_version",
        "dead_letter_tasks",
        "idempotency_keys",
    ]

    task_indexes = {index["name"] for index in inspector.get_indexes("agent_tasks")}
    assert {"idx_agent_tasks_dispatch", "idx_agent_tasks_retention"} <= task_indexes
    dispatch = next(
        index
        for index in inspector.get_indexes("agent_tasks")
        if index["name"] == "idx_agent_tasks_dispatch"
    )
    assert dispatch["column_names"] == ["status", "priority", "scheduled_at"]

    task_columns = {column["name"] for column in inspector.get_columns("agent_tasks")}
    dead_columns = {column["name"] for column in inspector.get_columns("dead_letter_tasks")}
    assert task_columns == dead_columns
    assert {"attempt_count", "owner_id", "dead_lettered_at"} <= task_columns
    repository.close()
