"""Polling change feed over PENDING tasks."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from agent_task_queue.storage.common import now_ms
from agent_task_queue.tasks.errors import StorageError
from agent_task_queue.tasks.models import AgentTask, TaskStatus
from agent_task_queue.tasks.repository import OrderBy, Predicate, TaskStore

logger = logging.getLogger(__name__)

PendingListener = Callable[[list[AgentTask]], None]


def due_pending_predicates(now: int) -> list[Predicate]:
    return [
        Predicate("status", "==", TaskStatus.PENDING),
        Predicate("scheduled_at", "<=", now),
    ]


DISPATCH_ORDER = (OrderBy("priority", descending=True), OrderBy("scheduled_at"))


class PendingTaskSubscription:
    """Delivers due PENDING tasks to a listener, highest priority first.

    SQLite has no change stream, so the store is polled every
    `poll_interval_seconds`; `notify()` triggers an immediate poll.
    """

    def __init__(
        self,
        store: TaskStore,
        listener: PendingListener,
        *,
        poll_interval_seconds: float = 5.0,
        batch_size: int = 100,
    ) -> None:
        self.store = store
        self.listener = listener
        self.poll_interval_seconds = poll_interval_seconds
        self.batch_size = batch_size
        self._wake = threading.Event()
        self._closed = threading.Event()
        self._thread: threading.Thread | None = None

    def open(self) -> None:
        if self._thread is not None:
            return
        self._closed.clear()
        self._thread = threading.Thread(
            target=self._loop,
            daemon=True,
            name="agent-tasks-subscription",
        )
        self._thread.start()
        logger.info("Pending task subscription opened (poll=%.1fs)", self.poll_interval_seconds)

    def notify(self) -> None:
        self._wake.set()

    def close(self, *, timeout_seconds: float = 5.0) -> None:
        if self._thread is None:
            return
        self._closed.set()
        self._wake.set()
        self._thread.join(timeout=timeout_seconds)
        self._thread = None
        logger.info("Pending task subscription closed")

    @property
    def is_open(self) -> bool:
        return self._thread is not None and not self._closed.is_set()

    def poll_once(self) -> int:
        """Fetch one ordered batch of due tasks and hand it to the listener."""

        tasks = self.store.query(
            due_pending_predicates(now_ms()),
            order_by=DISPATCH_ORDER,
            limit=self.batch_size,
        )
        if tasks:
            self.listener(tasks)
        return len(tasks)

    def _loop(self) -> None:
        while not self._closed.is_set():
            try:
                self.poll_once()
            except StorageError:
                logger.exception("Pending task poll failed")
            except Exception:
                logger.exception("Pending task listener failed")
            self._wake.wait(timeout=self.poll_interval_seconds)
            self._wake.clear()
