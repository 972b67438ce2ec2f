"""Progress store backends."""

from recurring_tasks.storage.base import DEFAULT_LOG_RETENTION, ProgressStore
from recurring_tasks.storage.memory import InMemoryProgressStore
from recurring_tasks.storage.postgres import PostgresProgressStore

__all__ = [
    "DEFAULT_LOG_RETENTION",
    "InMemoryProgressStore",
    "PostgresProgressStore",
    "ProgressStore",
]
