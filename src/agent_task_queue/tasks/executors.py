"""Executor interface and registry keyed by agent kind."""

from __future__ import annotations

import logging
import threading
import time
from typing import Protocol

from agent_task_queue.tasks.errors import ExecutionError
from agent_task_queue.tasks.models import AgentTask

logger = logging.getLogger(__name__)


class TaskExecutor(Protocol):
    """Protocol implemented by agent executors."""

    def execute(self, task: AgentTask) -> AgentTask:
        """Run the task body and return it with a terminal status set."""


class ExecutorRegistry:
    """Maps agent kinds to the executors that run them."""

    def __init__(self) -> None:
        self._executors: dict[str, TaskExecutor] = {}
        self._lock = threading.Lock()

    def register(self, agent_kind: str, executor: TaskExecutor) -> None:
        with self._lock:
            if agent_kind in self._executors:
                logger.warning("Replacing executor for agent kind %s", agent_kind)
            self._executors[agent_kind] = executor

    def get(self, agent_kind: str) -> TaskExecutor | None:
        with self._lock:
            return self._executors.get(agent_kind)

    def kinds(self) -> list[str]:
        with self._lock:
            return sorted(self._executors)


class EchoExecutor:
    """Deterministic executor that echoes the payload back as the result.

    `payload["fail"]` forces an execution error and `payload["sleep_seconds"]`
    delays completion, which makes it usable for demos and lifecycle checks.
    """

    def execute(self, task: AgentTask) -> AgentTask:
        delay = float(task.payload.get("sleep_seconds", 0) or 0)
        if delay > 0:
            time.sleep(delay)
        if task.payload.get("fail"):
            message = task.payload.get("fail_message", "Echo executor asked to fail")
            raise ExecutionError(str(message))
        task.mark_completed(
            {
                "echo": dict(task.payload),
                "attempt": len(task.attempts),
                "agent_kind": task.agent_kind,
            },
        )
        return task
