"""SQLite persistence for the agent task queue."""
