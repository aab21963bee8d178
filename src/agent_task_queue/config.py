"""Runtime configuration for the agent task queue."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path


def default_owner_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


@dataclass(slots=True)
class QueueSettings:
    """Dispatch, worker pool and retention settings."""

    max_concurrent_tasks: int = 10
    poll_interval_seconds: float = 5.0
    cleanup_interval_seconds: float = 300.0
    retention_hours: int = 24
    shutdown_grace_seconds: float = 30.0
    subscription_enabled: bool = True


@dataclass(slots=True)
class LifecycleSettings:
    """Timeout, stale and zombie detection settings."""

    monitor_interval_seconds: float = 30.0
    stale_after_seconds: int = 600
    zombie_after_seconds: int = 1_800
    monitor_grace_seconds: int = 60
    min_timeout_ms: int = 1_000
    max_timeout_ms: int = 3_600_000
    default_timeout_ms: int = 300_000


@dataclass(slots=True)
class IdempotencySettings:
    """Idempotency ledger settings."""

    ttl_hours: int = 24
    sweep_interval_seconds: float = 3_600.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".agent_tasks.db")
    sqlite_busy_timeout_ms: int = 5_000
    owner_id: str = field(default_factory=default_owner_id)
    queue: QueueSettings = field(default_factory=QueueSettings)
    lifecycle: LifecycleSettings = field(default_factory=LifecycleSettings)
    idempotency: IdempotencySettings = field(default_factory=IdempotencySettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("AGENT_TASKS_DB_PATH", ".agent_tasks.db")),
            sqlite_busy_timeout_ms=int(os.getenv("AGENT_TASKS_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            owner_id=os.getenv("AGENT_TASKS_OWNER_ID", "").strip() or default_owner_id(),
            queue=QueueSettings(
                max_concurrent_tasks=int(os.getenv("AGENT_TASKS_MAX_CONCURRENT_TASKS", "10")),
                poll_interval_seconds=float(os.getenv("AGENT_TASKS_POLL_INTERVAL_SECONDS", "5")),
                cleanup_interval_seconds=float(
                    os.getenv("AGENT_TASKS_CLEANUP_INTERVAL_SECONDS", "300"),
                ),
                retention_hours=int(os.getenv("AGENT_TASKS_RETENTION_HOURS", "24")),
                shutdown_grace_seconds=float(
                    os.getenv("AGENT_TASKS_SHUTDOWN_GRACE_SECONDS", "30"),
                ),
                subscription_enabled=_env_bool("AGENT_TASKS_SUBSCRIPTION_ENABLED", default=True),
            ),
            lifecycle=LifecycleSettings(
                monitor_interval_seconds=float(
                    os.getenv("AGENT_TASKS_MONITOR_INTERVAL_SECONDS", "30"),
                ),
                stale_after_seconds=int(os.getenv("AGENT_TASKS_STALE_AFTER_SECONDS", "600")),
                zombie_after_seconds=int(os.getenv("AGENT_TASKS_ZOMBIE_AFTER_SECONDS", "1800")),
                monitor_grace_seconds=int(os.getenv("AGENT_TASKS_MONITOR_GRACE_SECONDS", "60")),
                min_timeout_ms=int(os.getenv("AGENT_TASKS_MIN_TIMEOUT_MS", "1000")),
                max_timeout_ms=int(os.getenv("AGENT_TASKS_MAX_TIMEOUT_MS", "3600000")),
                default_timeout_ms=int(os.getenv("AGENT_TASKS_DEFAULT_TIMEOUT_MS", "300000")),
            ),
            idempotency=IdempotencySettings(
                ttl_hours=int(os.getenv("AGENT_TASKS_IDEMPOTENCY_TTL_HOURS", "24")),
                sweep_interval_seconds=float(
                    os.getenv("AGENT_TASKS_IDEMPOTENCY_SWEEP_INTERVAL_SECONDS", "3600"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on values the queue cannot run with."""

        if self.queue.max_concurrent_tasks <= 0:
            raise ValueError("AGENT_TASKS_MAX_CONCURRENT_TASKS must be > 0.")
        if self.queue.poll_interval_seconds <= 0:
            raise ValueError("AGENT_TASKS_POLL_INTERVAL_SECONDS must be > 0.")
        if self.queue.cleanup_interval_seconds <= 0:
            raise ValueError("AGENT_TASKS_CLEANUP_INTERVAL_SECONDS must be > 0.")
        if self.queue.retention_hours < 0:
            raise ValueError("AGENT_TASKS_RETENTION_HOURS must be >= 0.")
        if self.queue.shutdown_grace_seconds < 0:
            raise ValueError("AGENT_TASKS_SHUTDOWN_GRACE_SECONDS must be >= 0.")
        if self.lifecycle.monitor_interval_seconds <= 0:
            raise ValueError("AGENT_TASKS_MONITOR_INTERVAL_SECONDS must be > 0.")
        if self.lifecycle.stale_after_seconds <= 0:
            raise ValueError("AGENT_TASKS_STALE_AFTER_SECONDS must be > 0.")
        if self.lifecycle.zombie_after_seconds < self.lifecycle.stale_after_seconds:
            raise ValueError(
                "AGENT_TASKS_ZOMBIE_AFTER_SECONDS must be >= AGENT_TASKS_STALE_AFTER_SECONDS.",
            )
        if not 0 < self.lifecycle.min_timeout_ms <= self.lifecycle.max_timeout_ms:
            raise ValueError(
                "AGENT_TASKS_MIN_TIMEOUT_MS must be > 0 and <= AGENT_TASKS_MAX_TIMEOUT_MS.",
            )
        if not (
            self.lifecycle.min_timeout_ms
            <= self.lifecycle.default_timeout_ms
            <= self.lifecycle.max_timeout_ms
        ):
            raise ValueError("AGENT_TASKS_DEFAULT_TIMEOUT_MS must lie within the timeout bounds.")
        if self.idempotency.ttl_hours <= 0:
            raise ValueError("AGENT_TASKS_IDEMPOTENCY_TTL_HOURS must be > 0.")
        if self.idempotency.sweep_interval_seconds <= 0:
            raise ValueError("AGENT_TASKS_IDEMPOTENCY_SWEEP_INTERVAL_SECONDS must be > 0.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
