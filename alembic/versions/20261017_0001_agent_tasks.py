"""Create agent task, dead-letter, event and idempotency tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None

INDEXED_TASK_COLUMNS = (
    "idempotency_key",
    "task_type",
    "agent_kind",
    "itinerary_id",
    "user_id",
    "status",
    "priority",
    "created_at",
    "scheduled_at",
    "started_at",
    "completed_at",
    "updated_at",
    "owner_id",
)


def _task_columns() -> list[sa.Column]:
    return [
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=True),
        sa.Column("task_type", sa.String(), nullable=False),
        sa.Column("agent_kind", sa.String(), nullable=False),
        sa.Column("itinerary_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("result_json", sa.Text(), nullable=False),
        sa.Column("error_json", sa.Text(), nullable=True),
        sa.Column("retry_config_json", sa.Text(), nullable=False),
        sa.Column("attempts_json", sa.Text(), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("metadata_json", sa.Text(), nullable=False),
        sa.Column("timeout_ms", sa.BigInteger(), nullable=False),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
        sa.Column("scheduled_at", sa.BigInteger(), nullable=False),
        sa.Column("started_at", sa.BigInteger(), nullable=True),
        sa.Column("completed_at", sa.BigInteger(), nullable=True),
        sa.Column("updated_at", sa.BigInteger(), nullable=False),
        sa.Column("next_retry_time", sa.BigInteger(), nullable=True),
        sa.Column("owner_id", sa.String(), nullable=True),
        sa.Column("dead_lettered_at", sa.BigInteger(), nullable=True),
        sa.PrimaryKeyConstraint("task_id"),
    ]


def upgrade() -> None:
    for table in ("agent_tasks", "dead_letter_tasks"):
        op.create_table(table, *_task_columns())
        for column in INDEXED_TASK_COLUMNS:
            op.create_index(f"ix_{table}_{column}", table, [column], unique=False)

    op.create_index(
        "idx_agent_tasks_dispatch",
        "agent_tasks",
        ["status", "priority", "scheduled_at"],
        unique=False,
    )
    op.create_index(
        "idx_agent_tasks_retention",
        "agent_tasks",
        ["status", "completed_at"],
        unique=False,
    )

    op.create_table(
        "agent_task_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["agent_tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_agent_task_events_task_id",
        "agent_task_events",
        ["task_id"],
        unique=False,
    )
    op.create_index(
        "ix_agent_task_events_event_type",
        "agent_task_events",
        ["event_type"],
        unique=False,
    )
    op.create_index(
        "idx_agent_task_events_task_time",
        "agent_task_events",
        ["task_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "idempotency_keys",
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("result_json", sa.Text(), nullable=False),
        sa.Column("operation_type", sa.String(), nullable=False),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
        sa.Column("expires_at", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )
    op.create_index(
        "ix_idempotency_keys_expires_at",
        "idempotency_keys",
        ["expires_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_idempotency_keys_expires_at", table_name="idempotency_keys")
    op.drop_table("idempotency_keys")
    op.drop_index("idx_agent_task_events_task_time", table_name="agent_task_events")
    op.drop_index("ix_agent_task_events_event_type", table_name="agent_task_events")
    op.drop_index("ix_agent_task_events_task_id", table_name="agent_task_events")
    op.drop_table("agent_task_events")
    op.drop_index("idx_agent_tasks_retention", table_name="agent_tasks")
    op.drop_index("idx_agent_tasks_dispatch", table_name="agent_tasks")
    for table in ("dead_letter_tasks", "agent_tasks"):
        for column in reversed(INDEXED_TASK_COLUMNS):
            op.drop_index(f"ix_{table}_{column}", table_name=table)
        op.drop_table(table)
