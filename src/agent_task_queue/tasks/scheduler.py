"""Periodic background jobs, one thread per job."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PeriodicJob:
    name: str
    interval_seconds: float
    action: Callable[[], object]
    initial_delay_seconds: float | None = None
    thread: threading.Thread | None = field(default=None, repr=False)
    runs: int = 0


class PeriodicScheduler:
    """Runs independent jobs at fixed intervals.

    A job that raises is logged and keeps its schedule; one job never delays
    another.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, PeriodicJob] = {}
        self._stop = threading.Event()
        self._started = False

    def add_job(
        self,
        name: str,
        interval_seconds: float,
        action: Callable[[], object],
        *,
        initial_delay_seconds: float | None = None,
    ) -> None:
        if self._started:
            raise RuntimeError("Cannot add jobs to a running scheduler.")
        if interval_seconds <= 0:
            raise ValueError(f"Job interval must be > 0: {name}={interval_seconds}")
        self._jobs[name] = PeriodicJob(
            name=name,
            interval_seconds=interval_seconds,
            action=action,
            initial_delay_seconds=initial_delay_seconds,
        )

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._stop.clear()
        for job in self._jobs.values():
            job.thread = threading.Thread(
                target=self._run_job,
                args=(job,),
                daemon=True,
                name=f"agent-tasks-{job.name}",
            )
            job.thread.start()
        logger.info("Periodic scheduler started with jobs: %s", ", ".join(sorted(self._jobs)))

    def stop(self, *, timeout_seconds: float = 5.0) -> None:
        if not self._started:
            return
        self._stop.set()
        for job in self._jobs.values():
            if job.thread is not None:
                job.thread.join(timeout=timeout_seconds)
                job.thread = None
        self._started = False
        logger.info("Periodic scheduler stopped")

    def job_names(self) -> list[str]:
        return sorted(self._jobs)

    def _run_job(self, job: PeriodicJob) -> None:
        delay = (
            job.initial_delay_seconds
            if job.initial_delay_seconds is not None
            else job.interval_seconds
        )
        while not self._stop.wait(timeout=delay):
            try:
                job.action()
            except Exception:
                logger.exception("Periodic job %s failed", job.name)
            job.runs += 1
            delay = job.interval_seconds
