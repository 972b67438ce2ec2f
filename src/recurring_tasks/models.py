"""Pydantic models shared by the orchestrator, executor, storage, and API.

Terms used in this file:
- Trigger mode: what starts the next iteration (a timer, an external event, or
  whichever of the two arrives first).
- Iteration: one invocation of the agent's reasoning-plus-tool-call step.
- Control signal: an out-of-band stop/pause/resume instruction.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

TriggerMode = Literal["interval", "event", "event-or-interval"]
TaskStatus = Literal["running", "paused", "stopped", "completed", "failed"]
ControlAction = Literal["stop", "pause", "resume"]
IterationStatus = Literal["success", "error"]

TRIGGER_MODES: tuple[str, ...] = ("interval", "event", "event-or-interval")
TERMINAL_STATUSES = frozenset({"stopped", "completed", "failed"})

# Status DAG. Terminal statuses have no outgoing edges.
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "running": frozenset({"paused", "stopped", "completed", "failed"}),
    "paused": frozenset({"running", "stopped"}),
    "stopped": frozenset(),
    "completed": frozenset(),
    "failed": frozenset(),
}


def uses_interval(mode: str) -> bool:
    return mode in {"interval", "event-or-interval"}


def uses_events(mode: str) -> bool:
    return mode in {"event", "event-or-interval"}


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


class TaskConfig(BaseModel):
    """Immutable configuration for one orchestrator run."""

    model_config = ConfigDict(frozen=True)

    task_id: str
    agent_id: str
    owner_id: str
    task_prompt: str = Field(min_length=1)
    system_prompt: str = ""
    model: str
    interval_ms: int = Field(default=0, ge=0)
    max_iterations: int | None = Field(default=None, ge=1)
    enabled_tool_groups: tuple[str, ...] = ()
    enabled_skills: tuple[str, ...] = ()
    skill_configs: dict[str, dict[str, Any]] = Field(default_factory=dict)
    trigger_mode: TriggerMode = "interval"

    @model_validator(mode="after")
    def _interval_required_for_timed_modes(self) -> TaskConfig:
        if uses_interval(self.trigger_mode) and self.interval_ms <= 0:
            raise ValueError(f"interval_ms must be positive for trigger mode {self.trigger_mode}")
        return self


class TaskState(BaseModel):
    """Mutable progress row, written only by the orchestrator loop."""

    task_id: str
    name: str = ""
    owner_id: str
    agent_id: str
    status: TaskStatus
    trigger_mode: TriggerMode = "interval"
    current_iteration: int = Field(default=0, ge=0)
    interval_ms: int = 0
    max_iterations: int | None = None
    last_executed_at: datetime | None = None
    next_execution_at: datetime | None = None
    error_message: str | None = None
    created_at: datetime
    updated_at: datetime


class ToolCallRecord(BaseModel):
    """One capability invocation made during an iteration."""

    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)
    result: Any = None


class TokenUsage(BaseModel):
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


class IterationResult(BaseModel):
    """Structured outcome of one iteration; errors are values, not exceptions."""

    content: str
    tool_calls: list[ToolCallRecord] = Field(default_factory=list)
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    status: IterationStatus = "success"
    error: str | None = None

    @classmethod
    def failure(cls, message: str) -> IterationResult:
        return cls(content=f"Error: {message}", status="error", error=message)

    def parts(self) -> dict[str, Any]:
        """JSON payload persisted alongside the log row."""
        return {
            "toolCalls": [
                {"name": call.tool_name, "args": call.args, "result": call.result}
                for call in self.tool_calls
            ],
            "tokenUsage": {
                "inputTokens": self.token_usage.input_tokens,
                "outputTokens": self.token_usage.output_tokens,
            },
            "error": self.error,
        }

    @classmethod
    def from_log(cls, log: TaskLog) -> IterationResult:
        parts = log.parts or {}
        usage = parts.get("tokenUsage") or {}
        calls = [
            ToolCallRecord(
                tool_name=str(item.get("name", "")),
                args=item.get("args") or {},
                result=item.get("result"),
            )
            for item in parts.get("toolCalls") or []
            if isinstance(item, dict)
        ]
        return cls(
            content=log.content,
            tool_calls=calls,
            token_usage=TokenUsage(
                input_tokens=int(usage.get("inputTokens", 0) or 0),
                output_tokens=int(usage.get("outputTokens", 0) or 0),
            ),
            status=log.status,
            error=parts.get("error"),
        )


class ControlSignal(BaseModel):
    action: ControlAction
    message: str | None = None


class TaskEvent(BaseModel):
    """External trigger payload; `summary` is folded into the next prompt."""

    source: str = "custom"
    event_type: str = "trigger"
    payload: dict[str, Any] | None = None
    summary: str | None = None
    occurred_at: datetime | None = None


class TaskLog(BaseModel):
    """Append-only iteration record."""

    task_id: str
    iteration: int
    content: str
    parts: dict[str, Any] | None = None
    status: IterationStatus
    created_at: datetime
