"""Storage interface for task progress and iteration logs."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any, Protocol

from recurring_tasks.models import TaskConfig, TaskLog, TaskState

DEFAULT_LOG_RETENTION = 200


class ProgressStore(Protocol):
    def migrate(self) -> None: ...

    def create_task(
        self,
        config: TaskConfig,
        *,
        name: str = "",
        webhook_secret: str | None = None,
    ) -> TaskState: ...

    def get_task(self, task_id: str) -> TaskState | None: ...

    def get_config(self, task_id: str) -> TaskConfig | None: ...

    def get_webhook_secret(self, task_id: str) -> str | None: ...

    def list_tasks(
        self,
        *,
        owner_id: str | None = None,
        statuses: Iterable[str] | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[TaskState]: ...

    def count_tasks(
        self,
        *,
        owner_id: str | None = None,
        statuses: Iterable[str] | None = None,
    ) -> int: ...

    def record_progress(self, task_id: str, iteration: int) -> None: ...

    def schedule_next(self, task_id: str, when: datetime) -> None: ...

    def mark_complete(self, task_id: str) -> None: ...

    def mark_stopped(self, task_id: str) -> None: ...

    def mark_paused(self, task_id: str) -> None: ...

    def mark_running(self, task_id: str, next_execution_at: datetime | None = None) -> None: ...

    def mark_failed(self, task_id: str, error_message: str) -> None: ...

    def append_log(
        self,
        task_id: str,
        iteration: int,
        content: str,
        status: str,
        parts: dict[str, Any] | None = None,
    ) -> bool: ...

    def get_log(self, task_id: str, iteration: int) -> TaskLog | None: ...

    def list_logs(self, task_id: str, limit: int | None = None) -> list[TaskLog]: ...

    def delete_task(self, task_id: str) -> None: ...
