"""In-memory progress store for tests and single-process deployments."""

from __future__ import annotations

import threading
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from recurring_tasks.models import TaskConfig, TaskLog, TaskState, uses_interval
from recurring_tasks.storage.base import DEFAULT_LOG_RETENTION


class InMemoryProgressStore:
    """Dictionary-backed implementation of ``ProgressStore``."""

    def __init__(self, log_retention: int = DEFAULT_LOG_RETENTION) -> None:
        self.log_retention = log_retention
        self._lock = threading.Lock()
        self._tasks: dict[str, TaskState] = {}
        self._configs: dict[str, TaskConfig] = {}
        self._secrets: dict[str, str | None] = {}
        self._logs: dict[str, list[TaskLog]] = {}

    def migrate(self) -> None:
        return None

    def create_task(
        self,
        config: TaskConfig,
        *,
        name: str = "",
        webhook_secret: str | None = None,
    ) -> TaskState:
        now = datetime.now(UTC)
        state = TaskState(
            task_id=config.task_id,
            name=name,
            owner_id=config.owner_id,
            agent_id=config.agent_id,
            status="running",
            trigger_mode=config.trigger_mode,
            interval_ms=config.interval_ms,
            max_iterations=config.max_iterations,
            next_execution_at=now if uses_interval(config.trigger_mode) else None,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            if config.task_id in self._tasks:
                raise ValueError(f"Task {config.task_id} already exists")
            self._tasks[config.task_id] = state
            self._configs[config.task_id] = config
            self._secrets[config.task_id] = webhook_secret
            self._logs[config.task_id] = []
        return state.model_copy()

    def get_task(self, task_id: str) -> TaskState | None:
        with self._lock:
            state = self._tasks.get(task_id)
        return state.model_copy() if state else None

    def get_config(self, task_id: str) -> TaskConfig | None:
        with self._lock:
            return self._configs.get(task_id)

    def get_webhook_secret(self, task_id: str) -> str | None:
        with self._lock:
            return self._secrets.get(task_id)

    def list_tasks(
        self,
        *,
        owner_id: str | None = None,
        statuses: Iterable[str] | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[TaskState]:
        rows = self._filter(owner_id=owner_id, statuses=statuses)
        rows.sort(key=lambda state: state.created_at, reverse=True)
        return [row.model_copy() for row in rows[offset : offset + limit]]

    def count_tasks(
        self,
        *,
        owner_id: str | None = None,
        statuses: Iterable[str] | None = None,
    ) -> int:
        return len(self._filter(owner_id=owner_id, statuses=statuses))

    def record_progress(self, task_id: str, iteration: int) -> None:
        with self._lock:
            current = self._require(task_id)
            self._tasks[task_id] = current.model_copy(
                update={
                    "status": "running",
                    "current_iteration": max(current.current_iteration, iteration),
                    "last_executed_at": datetime.now(UTC),
                    "updated_at": datetime.now(UTC),
                }
            )

    def schedule_next(self, task_id: str, when: datetime) -> None:
        self._update(task_id, next_execution_at=when)

    def mark_complete(self, task_id: str) -> None:
        self._update(task_id, status="completed", next_execution_at=None)

    def mark_stopped(self, task_id: str) -> None:
        self._update(task_id, status="stopped", next_execution_at=None)

    def mark_paused(self, task_id: str) -> None:
        self._update(task_id, status="paused", next_execution_at=None)

    def mark_running(self, task_id: str, next_execution_at: datetime | None = None) -> None:
        self._update(task_id, status="running", next_execution_at=next_execution_at)

    def mark_failed(self, task_id: str, error_message: str) -> None:
        self._update(
            task_id,
            status="failed",
            error_message=error_message,
            next_execution_at=None,
        )

    def append_log(
        self,
        task_id: str,
        iteration: int,
        content: str,
        status: str,
        parts: dict[str, Any] | None = None,
    ) -> bool:
        with self._lock:
            self._require(task_id)
            logs = self._logs.setdefault(task_id, [])
            if any(log.iteration == iteration for log in logs):
                return False
            logs.append(
                TaskLog(
                    task_id=task_id,
                    iteration=iteration,
                    content=content,
                    parts=parts,
                    status=status,
                    created_at=datetime.now(UTC),
                )
            )
            overflow = len(logs) - self.log_retention
            if overflow > 0:
                del logs[:overflow]
        return True

    def get_log(self, task_id: str, iteration: int) -> TaskLog | None:
        with self._lock:
            for log in self._logs.get(task_id, []):
                if log.iteration == iteration:
                    return log.model_copy()
        return None

    def list_logs(self, task_id: str, limit: int | None = None) -> list[TaskLog]:
        with self._lock:
            logs = list(self._logs.get(task_id, []))
        if limit is not None:
            logs = logs[-limit:] if limit > 0 else []
        return [log.model_copy() for log in logs]

    def delete_task(self, task_id: str) -> None:
        with self._lock:
            self._tasks.pop(task_id, None)
            self._configs.pop(task_id, None)
            self._secrets.pop(task_id, None)
            self._logs.pop(task_id, None)

    def _filter(
        self,
        *,
        owner_id: str | None,
        statuses: Iterable[str] | None,
    ) -> list[TaskState]:
        wanted = set(statuses) if statuses else None
        with self._lock:
            rows = list(self._tasks.values())
        return [
            row
            for row in rows
            if (owner_id is None or row.owner_id == owner_id)
            and (wanted is None or row.status in wanted)
        ]

    def _require(self, task_id: str) -> TaskState:
        current = self._tasks.get(task_id)
        if current is None:
            raise KeyError(f"Task {task_id} does not exist")
        return current

    def _update(self, task_id: str, **changes: Any) -> None:
        with self._lock:
            current = self._require(task_id)
            changes["updated_at"] = datetime.now(UTC)
            self._tasks[task_id] = current.model_copy(update=changes)
