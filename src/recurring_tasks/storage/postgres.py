"""PostgreSQL-backed progress store with automatic table migration."""

from __future__ import annotations

import json
import threading
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from recurring_tasks.models import TaskConfig, TaskLog, TaskState, uses_interval
from recurring_tasks.storage.base import DEFAULT_LOG_RETENTION


class PostgresProgressStore:
    """Persist task progress rows and iteration logs in PostgreSQL."""

    def __init__(self, database_url: str, log_retention: int = DEFAULT_LOG_RETENTION) -> None:
        if not database_url:
            raise ValueError("RECURRING_TASKS_DATABASE_URL is required")
        self.database_url = database_url
        self.log_retention = log_retention
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS agent_tasks (
                    task_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL DEFAULT '',
                    owner_id TEXT NOT NULL,
                    agent_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    trigger_mode TEXT NOT NULL DEFAULT 'interval',
                    current_iteration INTEGER NOT NULL DEFAULT 0,
                    interval_ms BIGINT NOT NULL DEFAULT 0,
                    max_iterations INTEGER,
                    last_executed_at TIMESTAMPTZ,
                    next_execution_at TIMESTAMPTZ,
                    error_message TEXT,
                    webhook_secret TEXT,
                    config_json JSONB NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_agent_tasks_owner_status
                ON agent_tasks(owner_id, status)
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS task_logs (
                    log_id BIGSERIAL PRIMARY KEY,
                    task_id TEXT NOT NULL REFERENCES agent_tasks(task_id) ON DELETE CASCADE,
                    iteration INTEGER NOT NULL,
                    content TEXT NOT NULL,
                    parts JSONB,
                    status TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL,
                    UNIQUE (task_id, iteration)
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_task_logs_task_created
                ON task_logs(task_id, created_at)
                """)
            conn.commit()

    def create_task(
        self,
        config: TaskConfig,
        *,
        name: str = "",
        webhook_secret: str | None = None,
    ) -> TaskState:
        now = datetime.now(tz=UTC)
        next_execution_at = now if uses_interval(config.trigger_mode) else None
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO agent_tasks (
                    task_id,
                    name,
                    owner_id,
                    agent_id,
                    status,
                    trigger_mode,
                    current_iteration,
                    interval_ms,
                    max_iterations,
                    next_execution_at,
                    webhook_secret,
                    config_json,
                    created_at,
                    updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    config.task_id,
                    name,
                    config.owner_id,
                    config.agent_id,
                    "running",
                    config.trigger_mode,
                    0,
                    config.interval_ms,
                    config.max_iterations,
                    next_execution_at,
                    webhook_secret,
                    self._json_wrapper(config.model_dump(mode="json")),
                    now,
                    now,
                ),
            )
            conn.commit()
        created = self.get_task(config.task_id)
        if created is None:
            raise RuntimeError("Failed to load created task")
        return created

    def get_task(self, task_id: str) -> TaskState | None:
        row = self._fetch_task_row(task_id)
        if row is None:
            return None
        return self._row_to_state(row)

    def get_config(self, task_id: str) -> TaskConfig | None:
        row = self._fetch_task_row(task_id)
        if row is None:
            return None
        return TaskConfig.model_validate(self._parse_json_optional(row["config_json"]) or {})

    def get_webhook_secret(self, task_id: str) -> str | None:
        row = self._fetch_task_row(task_id)
        if row is None:
            return None
        return row.get("webhook_secret")

    def list_tasks(
        self,
        *,
        owner_id: str | None = None,
        statuses: Iterable[str] | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[TaskState]:
        where, params = self._task_filter(owner_id=owner_id, statuses=statuses)
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT *
                FROM agent_tasks
                {where}
                ORDER BY created_at DESC
                LIMIT %s OFFSET %s
                """,
                (*params, limit, offset),
            ).fetchall()
        return [self._row_to_state(row) for row in rows]

    def count_tasks(
        self,
        *,
        owner_id: str | None = None,
        statuses: Iterable[str] | None = None,
    ) -> int:
        where, params = self._task_filter(owner_id=owner_id, statuses=statuses)
        with self._lock, self._connect() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS total FROM agent_tasks {where}",
                params,
            ).fetchone()
        return int(row["total"]) if row else 0

    def record_progress(self, task_id: str, iteration: int) -> None:
        now = datetime.now(tz=UTC)
        self._execute_update(
            """
            UPDATE agent_tasks
            SET status = 'running',
                current_iteration = GREATEST(current_iteration, %s),
                last_executed_at = %s,
                updated_at = %s
            WHERE task_id = %s
            """,
            (iteration, now, now, task_id),
            task_id,
        )

    def schedule_next(self, task_id: str, when: datetime) -> None:
        self._execute_update(
            """
            UPDATE agent_tasks
            SET next_execution_at = %s,
                updated_at = %s
            WHERE task_id = %s
            """,
            (when, datetime.now(tz=UTC), task_id),
            task_id,
        )

    def mark_complete(self, task_id: str) -> None:
        self._set_status(task_id, "completed", next_execution_at=None)

    def mark_stopped(self, task_id: str) -> None:
        self._set_status(task_id, "stopped", next_execution_at=None)

    def mark_paused(self, task_id: str) -> None:
        self._set_status(task_id, "paused", next_execution_at=None)

    def mark_running(self, task_id: str, next_execution_at: datetime | None = None) -> None:
        self._set_status(task_id, "running", next_execution_at=next_execution_at)

    def mark_failed(self, task_id: str, error_message: str) -> None:
        self._execute_update(
            """
            UPDATE agent_tasks
            SET status = 'failed',
                error_message = %s,
                next_execution_at = NULL,
                updated_at = %s
            WHERE task_id = %s
            """,
            (error_message, datetime.now(tz=UTC), task_id),
            task_id,
        )

    def append_log(
        self,
        task_id: str,
        iteration: int,
        content: str,
        status: str,
        parts: dict[str, Any] | None = None,
    ) -> bool:
        now = datetime.now(tz=UTC)
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO task_logs (task_id, iteration, content, parts, status, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (task_id, iteration) DO NOTHING
                RETURNING log_id
                """,
                (
                    task_id,
                    iteration,
                    content,
                    self._json_wrapper(parts) if parts is not None else None,
                    status,
                    now,
                ),
            ).fetchone()
            # Keep only the newest rows for this task.
            conn.execute(
                """
                DELETE FROM task_logs
                WHERE log_id IN (
                    SELECT log_id
                    FROM task_logs
                    WHERE task_id = %s
                    ORDER BY created_at DESC, log_id DESC
                    OFFSET %s
                )
                """,
                (task_id, self.log_retention),
            )
            conn.commit()
        return row is not None

    def get_log(self, task_id: str, iteration: int) -> TaskLog | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM task_logs WHERE task_id = %s AND iteration = %s",
                (task_id, iteration),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_log(row)

    def list_logs(self, task_id: str, limit: int | None = None) -> list[TaskLog]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM task_logs
                WHERE task_id = %s
                ORDER BY created_at DESC, log_id DESC
                LIMIT %s
                """,
                (task_id, limit if limit is not None else self.log_retention),
            ).fetchall()
        return [self._row_to_log(row) for row in reversed(rows)]

    def delete_task(self, task_id: str) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("DELETE FROM agent_tasks WHERE task_id = %s", (task_id,))
            conn.commit()

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    def _fetch_task_row(self, task_id: str) -> Any:
        with self._lock, self._connect() as conn:
            return conn.execute(
                "SELECT * FROM agent_tasks WHERE task_id = %s",
                (task_id,),
            ).fetchone()

    def _set_status(self, task_id: str, status: str, *, next_execution_at: datetime | None) -> None:
        self._execute_update(
            """
            UPDATE agent_tasks
            SET status = %s,
                next_execution_at = %s,
                updated_at = %s
            WHERE task_id = %s
            """,
            (status, next_execution_at, datetime.now(tz=UTC), task_id),
            task_id,
        )

    def _execute_update(self, sql: str, params: tuple[Any, ...], task_id: str) -> None:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(sql, params)
            conn.commit()
        if cursor.rowcount == 0:
            raise KeyError(f"Task {task_id} does not exist")

    @staticmethod
    def _task_filter(
        *,
        owner_id: str | None,
        statuses: Iterable[str] | None,
    ) -> tuple[str, tuple[Any, ...]]:
        clauses: list[str] = []
        params: list[Any] = []
        if owner_id is not None:
            clauses.append("owner_id = %s")
            params.append(owner_id)
        wanted = list(statuses) if statuses else []
        if wanted:
            clauses.append("status = ANY(%s)")
            params.append(wanted)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, tuple(params)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _parse_json_optional(raw: Any) -> dict[str, Any] | None:
        if raw is None:
            return None
        if isinstance(raw, str):
            parsed = json.loads(raw)
        else:
            parsed = raw
        if isinstance(parsed, dict):
            return parsed
        return None

    @staticmethod
    def _parse_datetime(raw: Any) -> datetime | None:
        if raw is None:
            return None
        if isinstance(raw, datetime):
            return raw
        if isinstance(raw, str):
            return datetime.fromisoformat(raw)
        raise TypeError(f"Unsupported datetime value: {type(raw)!r}")

    @classmethod
    def _row_to_state(cls, row: Any) -> TaskState:
        return TaskState(
            task_id=str(row["task_id"]),
            name=row.get("name") or "",
            owner_id=str(row["owner_id"]),
            agent_id=str(row["agent_id"]),
            status=row["status"],
            trigger_mode=row.get("trigger_mode") or "interval",
            current_iteration=int(row["current_iteration"]),
            interval_ms=int(row["interval_ms"]),
            max_iterations=row.get("max_iterations"),
            last_executed_at=cls._parse_datetime(row.get("last_executed_at")),
            next_execution_at=cls._parse_datetime(row.get("next_execution_at")),
            error_message=row.get("error_message"),
            created_at=cls._parse_datetime(row["created_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
        )

    @classmethod
    def _row_to_log(cls, row: Any) -> TaskLog:
        return TaskLog(
            task_id=str(row["task_id"]),
            iteration=int(row["iteration"]),
            content=row["content"],
            parts=cls._parse_json_optional(row.get("parts")),
            status=row["status"],
            created_at=cls._parse_datetime(row["created_at"]),
        )
