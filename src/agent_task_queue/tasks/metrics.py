"""In-process task counters and the operator-facing stats renderer."""

from __future__ import annotations

import threading
from collections import Counter
from dataclasses import dataclass, field


@dataclass(slots=True)
class _Bucket:
    submitted: int = 0
    started: int = 0
    completed: int = 0
    failed: int = 0
    retries: int = 0
    finished: int = 0
    total_duration_ms: int = 0
    min_duration_ms: int | None = None
    max_duration_ms: int | None = None
    error_counts: Counter[str] = field(default_factory=Counter)

    def add_duration(self, duration_ms: int | None) -> None:
        if duration_ms is None:
            return
        self.finished += 1
        self.total_duration_ms += duration_ms
        if self.min_duration_ms is None or duration_ms < self.min_duration_ms:
            self.min_duration_ms = duration_ms
        if self.max_duration_ms is None or duration_ms > self.max_duration_ms:
            self.max_duration_ms = duration_ms

    def freeze(self) -> BucketSnapshot:
        return BucketSnapshot(
            submitted=self.submitted,
            started=self.started,
            completed=self.completed,
            failed=self.failed,
            retries=self.retries,
            min_duration_ms=self.min_duration_ms,
            max_duration_ms=self.max_duration_ms,
            avg_duration_ms=(
                self.total_duration_ms / self.finished if self.finished else None
            ),
            error_counts=dict(self.error_counts),
        )


@dataclass(slots=True, frozen=True)
class BucketSnapshot:
    """Counters for one task type or agent kind."""

    submitted: int
    started: int
    completed: int
    failed: int
    retries: int
    min_duration_ms: int | None
    max_duration_ms: int | None
    avg_duration_ms: float | None
    error_counts: dict[str, int]

    @property
    def success_rate(self) -> float | None:
        finished = self.completed + self.failed
        if finished == 0:
            return None
        return self.completed / finished


@dataclass(slots=True, frozen=True)
class SystemMetricsSnapshot:
    """Point-in-time copy of all task counters."""

    by_task_type: dict[str, BucketSnapshot]
    by_agent_kind: dict[str, BucketSnapshot]
    currently_running: int
    error_counts: dict[str, int]

    @property
    def total_submitted(self) -> int:
        return sum(bucket.submitted for bucket in self.by_task_type.values())

    @property
    def total_completed(self) -> int:
        return sum(bucket.completed for bucket in self.by_task_type.values())

    @property
    def total_failed(self) -> int:
        return sum(bucket.failed for bucket in self.by_task_type.values())

    @property
    def total_retries(self) -> int:
        return sum(bucket.retries for bucket in self.by_task_type.values())


class TaskMetrics:
    """Counters keyed by task type and agent kind.

    Updates hold one short lock; snapshots are consistent per call but readers
    should not rely on cross-field invariants between separate calls.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_type: dict[str, _Bucket] = {}
        self._by_kind: dict[str, _Bucket] = {}
        self._errors: Counter[str] = Counter()
        self._running = 0

    def record_submitted(self, task_type: str, agent_kind: str) -> None:
        with self._lock:
            for bucket in self._buckets(task_type, agent_kind):
                bucket.submitted += 1

    def record_started(self, task_type: str, agent_kind: str) -> None:
        with self._lock:
            for bucket in self._buckets(task_type, agent_kind):
                bucket.started += 1
            self._running += 1

    def record_completed(self, task_type: str, agent_kind: str, duration_ms: int | None) -> None:
        with self._lock:
            for bucket in self._buckets(task_type, agent_kind):
                bucket.completed += 1
                bucket.add_duration(duration_ms)

    def record_failed(
        self,
        task_type: str,
        agent_kind: str,
        error_code: str,
        duration_ms: int | None,
    ) -> None:
        with self._lock:
            for bucket in self._buckets(task_type, agent_kind):
                bucket.failed += 1
                bucket.error_counts[error_code] += 1
                bucket.add_duration(duration_ms)
            self._errors[f"{task_type}:{error_code}"] += 1

    def record_finished(self) -> None:
        """Drop one task from the running gauge once its local worker is done."""

        with self._lock:
            self._running = max(0, self._running - 1)

    def record_retry(self, task_type: str, agent_kind: str) -> None:
        with self._lock:
            for bucket in self._buckets(task_type, agent_kind):
                bucket.retries += 1

    def currently_running(self) -> int:
        with self._lock:
            return self._running

    def snapshot(self) -> SystemMetricsSnapshot:
        with self._lock:
            return SystemMetricsSnapshot(
                by_task_type={key: bucket.freeze() for key, bucket in self._by_type.items()},
                by_agent_kind={key: bucket.freeze() for key, bucket in self._by_kind.items()},
                currently_running=self._running,
                error_counts=dict(self._errors),
            )

    def error_statistics(self) -> dict[str, int]:
        """Failure counts keyed by `task_type:error_code`."""

        with self._lock:
            return dict(self._errors)

    def reset(self) -> None:
        with self._lock:
            self._by_type.clear()
            self._by_kind.clear()
            self._errors.clear()
            self._running = 0

    def _buckets(self, task_type: str, agent_kind: str) -> tuple[_Bucket, _Bucket]:
        by_type = self._by_type.get(task_type)
        if by_type is None:
            by_type = self._by_type[task_type] = _Bucket()
        by_kind = self._by_kind.get(agent_kind)
        if by_kind is None:
            by_kind = self._by_kind[agent_kind] = _Bucket()
        return by_type, by_kind


def render_metrics_lines(
    *,
    snapshot: SystemMetricsSnapshot,
    status_counts: dict[str, int],
    processed_idempotency_keys: int,
) -> list[str]:
    """Render operator-facing metrics lines for CLI output."""

    lines = [
        "Agent task queue",
        "Store status: " + (_fmt_key_value(status_counts) or "empty"),
        f"Currently running (this process): {snapshot.currently_running}",
        f"Processed idempotency keys: {processed_idempotency_keys}",
        (
            "Totals: "
            f"submitted={snapshot.total_submitted} "
            f"completed={snapshot.total_completed} "
            f"failed={snapshot.total_failed} "
            f"retries={snapshot.total_retries}"
        ),
    ]
    for title, buckets in (
        ("By task type:", snapshot.by_task_type),
        ("By agent kind:", snapshot.by_agent_kind),
    ):
        if not buckets:
            lines.append(f"{title} none")
            continue
        lines.append(title)
        for name in sorted(buckets):
            bucket = buckets[name]
            lines.append(
                "  "
                f"{name}: submitted={bucket.submitted} started={bucket.started} "
                f"completed={bucket.completed} failed={bucket.failed} "
                f"retries={bucket.retries} success_rate={_fmt_ratio(bucket.success_rate)} "
                f"duration_ms(min/avg/max)={_fmt_ms(bucket.min_duration_ms)}/"
                f"{_fmt_ms(bucket.avg_duration_ms)}/{_fmt_ms(bucket.max_duration_ms)}",
            )
    lines.append("Errors: " + (_fmt_key_value(snapshot.error_counts) or "none"))
    return lines


def _fmt_ratio(value: float | None) -> str:
    if value is None:
        return "n/a"
    return f"{value:.2%}"


def _fmt_ms(value: float | None) -> str:
    if value is None:
        return "n/a"
    return f"{value:.0f}"


def _fmt_key_value(values: dict[str, int]) -> str:
    if not values:
        return ""
    return " ".join(f"{key}={values[key]}" for key in sorted(values))
