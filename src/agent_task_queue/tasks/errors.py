"""Exceptions raised by the agent task queue."""

from __future__ import annotations


class AgentTaskError(RuntimeError):
    """Base class for task queue failures."""


class ValidationError(AgentTaskError):
    """Submission rejected; nothing was persisted."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("Task validation failed: " + "; ".join(self.errors))


class SubmissionError(AgentTaskError):
    """Unexpected failure while submitting a task."""


class StorageError(AgentTaskError):
    """Durable store write failed."""


class QueryNotSupportedError(StorageError):
    """Store cannot serve the requested compound query."""


class ExecutionError(AgentTaskError):
    """Executor failure with an error code recorded on the task."""

    def __init__(self, message: str, *, code: str = "EXECUTION_ERROR") -> None:
        self.code = code
        super().__init__(message)
