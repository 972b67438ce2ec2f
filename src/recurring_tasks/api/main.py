"""FastAPI boundary for scheduling, inspecting, and controlling recurring tasks.

Control instructions are validated against the stored task status here,
before they reach the orchestrator. When a stop cannot be delivered because
no orchestrator is listening, the status is force-written to ``stopped``.
That write can race with an orchestrator that is in fact still alive; the
race is accepted rather than resolved with distributed locking.
"""

from __future__ import annotations

import hmac
import logging
import secrets
import uuid
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from recurring_tasks.billing import BillingClient, HttpBillingClient, InMemoryBillingLedger
from recurring_tasks.capabilities import CapabilityRegistry, build_default_registry
from recurring_tasks.channels import ChannelUnavailableError, InvalidControlError, validate_control
from recurring_tasks.config.settings import Settings, get_settings
from recurring_tasks.executor import IterationExecutor
from recurring_tasks.llm import ReasoningModel, build_reasoning_model
from recurring_tasks.models import (
    TRIGGER_MODES,
    ControlSignal,
    TaskConfig,
    TaskEvent,
    TaskLog,
    TaskState,
    uses_interval,
)
from recurring_tasks.orchestrator import SleepFn
from recurring_tasks.runtime import TaskRuntime
from recurring_tasks.storage.base import ProgressStore
from recurring_tasks.storage.postgres import PostgresProgressStore

logger = logging.getLogger(__name__)

CONTROL_ACTIONS = ("stop", "pause", "resume")


class CreateTaskRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    task_prompt: str = Field(min_length=1)
    agent_id: str = Field(min_length=1)
    owner_id: str = Field(min_length=1)
    system_prompt: str = ""
    model: str | None = None
    interval_ms: int | None = None
    max_iterations: int | None = Field(default=None, ge=1)
    enabled_tool_groups: list[str] = Field(default_factory=list)
    enabled_skills: list[str] = Field(default_factory=list)
    skill_configs: dict[str, dict[str, Any]] = Field(default_factory=dict)
    trigger_mode: str = "interval"


class CreatedTask(BaseModel):
    task: TaskState
    webhook_secret: str | None = None
    trigger_url: str | None = None


class TaskDetail(BaseModel):
    task: TaskState
    logs: list[TaskLog]


class TaskList(BaseModel):
    tasks: list[TaskState]
    total: int
    limit: int
    offset: int


class ControlRequest(BaseModel):
    action: str
    message: str | None = None


class ControlResponse(BaseModel):
    success: bool
    task_id: str
    action: str
    message: str


class TriggerRequest(BaseModel):
    source: str = "custom"
    event_type: str = "trigger"
    payload: dict[str, Any] | None = None
    summary: str | None = None
    occurred_at: datetime | None = None


class TriggerResponse(BaseModel):
    triggered: bool
    task_id: str
    source: str
    event_type: str
    occurred_at: datetime


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    store_override: ProgressStore | None,
    registry: CapabilityRegistry | None,
    model: ReasoningModel | None,
    billing: BillingClient | None,
    sleep: SleepFn | None,
) -> None:
    if not hasattr(app.state, "store"):
        database_url = settings.resolved_database_url()
        if store_override is None and not database_url:
            raise RuntimeError(
                "Missing database URL. Set RECURRING_TASKS_DATABASE_URL "
                "or DATABASE_URL before starting the app."
            )
        app.state.store = store_override or PostgresProgressStore(
            database_url, log_retention=settings.log_retention
        )
        app.state.store.migrate()

    if not hasattr(app.state, "registry"):
        app.state.registry = registry or build_default_registry()

    if not hasattr(app.state, "runtime"):
        executor = IterationExecutor(
            registry=app.state.registry,
            model=model or build_reasoning_model(settings),
            billing=billing or _build_billing(settings),
            max_tool_steps=settings.max_tool_steps,
            timeout_s=settings.iteration_timeout_s,
        )
        runtime_kwargs: dict[str, Any] = {}
        if sleep is not None:
            runtime_kwargs["sleep"] = sleep
        app.state.runtime = TaskRuntime(
            store=app.state.store,
            executor=executor,
            max_consecutive_failures=settings.max_consecutive_failures,
            **runtime_kwargs,
        )

    if not hasattr(app.state, "settings"):
        app.state.settings = settings


def create_app(
    *,
    store: ProgressStore | None = None,
    settings_override: Settings | None = None,
    registry: CapabilityRegistry | None = None,
    model: ReasoningModel | None = None,
    billing: BillingClient | None = None,
    sleep: SleepFn | None = None,
) -> FastAPI:
    settings = settings_override or get_settings()
    logging.basicConfig(level=settings.log_level.upper())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure_runtime_state(
            app,
            settings=settings,
            store_override=store,
            registry=registry,
            model=model,
            billing=billing,
            sleep=sleep,
        )
        await app.state.runtime.recover()
        yield
        await app.state.runtime.shutdown()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)

    def _store(request: Request) -> ProgressStore:
        return request.app.state.store

    def _runtime(request: Request) -> TaskRuntime:
        return request.app.state.runtime

    async def _require_task(request: Request, task_id: str) -> TaskState:
        task = await run_in_threadpool(_store(request).get_task, task_id)
        if task is None:
            raise HTTPException(status_code=404, detail="Task not found")
        return task

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.get("/capabilities")
    def capabilities(request: Request) -> dict[str, dict[str, str]]:
        registry_state: CapabilityRegistry = request.app.state.registry
        return {"groups": registry_state.groups(), "skills": registry_state.skills()}

    @app.post("/tasks", response_model=CreatedTask, status_code=201)
    async def create_task(payload: CreateTaskRequest, request: Request) -> CreatedTask:
        task_store = _store(request)
        if payload.trigger_mode not in TRIGGER_MODES:
            raise HTTPException(
                status_code=400,
                detail=f"trigger_mode must be one of: {', '.join(TRIGGER_MODES)}",
            )
        timed = uses_interval(payload.trigger_mode)
        if timed and not payload.interval_ms:
            raise HTTPException(
                status_code=400,
                detail="interval_ms is required for interval and event-or-interval trigger modes",
            )
        if payload.interval_ms and not (
            settings.min_interval_ms <= payload.interval_ms <= settings.max_interval_ms
        ):
            raise HTTPException(
                status_code=400,
                detail=(
                    f"interval_ms must be between {settings.min_interval_ms} and "
                    f"{settings.max_interval_ms}"
                ),
            )

        active = await run_in_threadpool(
            task_store.count_tasks,
            owner_id=payload.owner_id,
            statuses=("running", "paused"),
        )
        if active >= settings.max_concurrent_tasks:
            raise HTTPException(
                status_code=429,
                detail=f"Maximum {settings.max_concurrent_tasks} concurrent tasks reached",
            )

        config = TaskConfig(
            task_id=str(uuid.uuid4()),
            agent_id=payload.agent_id,
            owner_id=payload.owner_id,
            task_prompt=payload.task_prompt,
            system_prompt=payload.system_prompt,
            model=payload.model or settings.llm_model,
            interval_ms=payload.interval_ms or 0,
            max_iterations=payload.max_iterations,
            enabled_tool_groups=tuple(payload.enabled_tool_groups),
            enabled_skills=tuple(payload.enabled_skills),
            skill_configs=payload.skill_configs,
            trigger_mode=payload.trigger_mode,
        )
        webhook_secret = secrets.token_hex(32) if payload.trigger_mode != "interval" else None
        state = await run_in_threadpool(
            task_store.create_task,
            config,
            name=payload.name,
            webhook_secret=webhook_secret,
        )
        _runtime(request).start(config)
        logger.info(
            "task_api event=created task_id=%s owner_id=%s trigger_mode=%s",
            config.task_id,
            config.owner_id,
            config.trigger_mode,
        )
        return CreatedTask(
            task=state,
            webhook_secret=webhook_secret,
            trigger_url=f"/tasks/{config.task_id}/trigger" if webhook_secret else None,
        )

    @app.get("/tasks", response_model=TaskList)
    async def list_tasks(
        request: Request,
        owner_id: str | None = None,
        status: str | None = None,
        limit: int = Query(default=20, ge=1),
        offset: int = Query(default=0, ge=0),
    ) -> TaskList:
        task_store = _store(request)
        statuses = [item.strip() for item in status.split(",") if item.strip()] if status else None
        limit = min(limit, 50)
        tasks = await run_in_threadpool(
            task_store.list_tasks,
            owner_id=owner_id,
            statuses=statuses,
            limit=limit,
            offset=offset,
        )
        total = await run_in_threadpool(
            task_store.count_tasks, owner_id=owner_id, statuses=statuses
        )
        return TaskList(tasks=tasks, total=total, limit=limit, offset=offset)

    @app.get("/tasks/{task_id}", response_model=TaskDetail)
    async def get_task(task_id: str, request: Request) -> TaskDetail:
        task = await _require_task(request, task_id)
        logs = await run_in_threadpool(
            _store(request).list_logs, task_id, settings.recent_log_limit
        )
        return TaskDetail(task=task, logs=list(reversed(logs)))

    @app.post("/tasks/{task_id}/control", response_model=ControlResponse)
    async def control_task(
        task_id: str,
        payload: ControlRequest,
        request: Request,
    ) -> ControlResponse:
        if payload.action not in CONTROL_ACTIONS:
            raise HTTPException(
                status_code=400,
                detail="Invalid action. Must be: stop, pause, or resume",
            )
        task = await _require_task(request, task_id)
        try:
            validate_control(task.status, payload.action)
        except InvalidControlError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        signal = ControlSignal(action=payload.action, message=payload.message)
        try:
            _runtime(request).send_control(task_id, signal)
        except ChannelUnavailableError as exc:
            logger.warning(
                "task_api event=control_undeliverable task_id=%s action=%s reason=%s",
                task_id,
                payload.action,
                exc,
            )
            if payload.action == "stop":
                try:
                    await run_in_threadpool(_store(request).mark_stopped, task_id)
                except Exception as write_exc:  # noqa: BLE001
                    logger.exception("task_api event=force_stop_failed task_id=%s", task_id)
                    raise HTTPException(
                        status_code=500, detail="Failed to send control signal"
                    ) from write_exc
                return ControlResponse(
                    success=True,
                    task_id=task_id,
                    action="stop",
                    message="Task force-stopped (orchestrator may have already ended).",
                )
            raise HTTPException(status_code=500, detail="Failed to send control signal") from exc

        return ControlResponse(
            success=True,
            task_id=task_id,
            action=payload.action,
            message=f'Task "{task.name}" {payload.action} signal sent.',
        )

    @app.post("/tasks/{task_id}/trigger", response_model=TriggerResponse)
    async def trigger_task(
        task_id: str,
        request: Request,
        payload: TriggerRequest | None = None,
        authorization: str | None = Header(default=None),
    ) -> TriggerResponse:
        provided = ""
        if authorization and authorization.startswith("Bearer "):
            provided = authorization[7:].strip()
        if not provided:
            raise HTTPException(
                status_code=401,
                detail="Authorization header with Bearer token required",
            )

        task = await _require_task(request, task_id)
        expected = await run_in_threadpool(_store(request).get_webhook_secret, task_id)
        if not expected or not hmac.compare_digest(expected, provided):
            raise HTTPException(status_code=403, detail="Invalid webhook secret")
        if task.trigger_mode == "interval":
            raise HTTPException(
                status_code=400,
                detail="This task uses interval-based triggering, not event-based",
            )
        if task.status != "running":
            raise HTTPException(
                status_code=409,
                detail=f"Task is {task.status} and cannot be triggered",
            )

        body = payload or TriggerRequest()
        occurred_at = body.occurred_at or datetime.now(UTC)
        event = TaskEvent(
            source=body.source,
            event_type=body.event_type,
            payload=body.payload,
            summary=body.summary,
            occurred_at=occurred_at,
        )
        try:
            _runtime(request).send_event(task_id, event)
        except ChannelUnavailableError as exc:
            logger.error("task_api event=trigger_undeliverable task_id=%s", task_id)
            raise HTTPException(
                status_code=502,
                detail="Failed to trigger task: orchestrator is not waiting for events",
            ) from exc

        return TriggerResponse(
            triggered=True,
            task_id=task_id,
            source=event.source,
            event_type=event.event_type,
            occurred_at=occurred_at,
        )

    @app.delete("/tasks/{task_id}")
    async def delete_task(task_id: str, request: Request) -> dict[str, Any]:
        task = await _require_task(request, task_id)
        if task.status in {"running", "paused"}:
            try:
                _runtime(request).send_control(task_id, ControlSignal(action="stop"))
            except ChannelUnavailableError:
                logger.warning("task_api event=stop_undeliverable task_id=%s", task_id)
        await run_in_threadpool(_store(request).mark_stopped, task_id)
        return {"success": True, "task_id": task_id}

    return app


def _build_billing(settings: Settings) -> BillingClient:
    if settings.billing_url:
        return HttpBillingClient(url=settings.billing_url, api_key=settings.billing_api_key)
    return InMemoryBillingLedger()


# Served with `uvicorn recurring_tasks.api.main:app`.
app = create_app()
