"""Agent task queue: submission, dispatch, lifecycle and recovery."""
