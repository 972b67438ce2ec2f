from __future__ import annotations

import asyncio
import threading
import uuid
from collections.abc import Callable, Mapping
from typing import Any

import pytest

from recurring_tasks.billing import InMemoryBillingLedger
from recurring_tasks.capabilities import Capability, build_default_registry
from recurring_tasks.executor import IterationExecutor
from recurring_tasks.llm import ReasoningOutcome
from recurring_tasks.models import TaskConfig, TokenUsage
from recurring_tasks.runtime import TaskRuntime
from recurring_tasks.storage.memory import InMemoryProgressStore


class ScriptedModel:
    """Reasoning model double; each entry in ``script`` is a reply text or an exception."""

    def __init__(self, script: list[Any] | None = None, delay_s: float = 0.0) -> None:
        self.script = list(script or [])
        self.delay_s = delay_s
        self.prompts: list[str] = []
        self.models: list[str] = []
        self._lock = threading.Lock()

    def generate(
        self,
        *,
        model: str,
        system_prompt: str,
        prompt: str,
        capabilities: Mapping[str, Capability],
        max_steps: int,
    ) -> ReasoningOutcome:
        with self._lock:
            self.prompts.append(prompt)
            self.models.append(model)
            reply = self.script.pop(0) if self.script else f"reply {len(self.prompts)}"
        if self.delay_s:
            threading.Event().wait(self.delay_s)
        if isinstance(reply, Exception):
            raise reply
        return ReasoningOutcome(
            text=reply,
            usage=TokenUsage(input_tokens=1000, output_tokens=500),
            steps=1,
        )


class FakeSleep:
    """Records requested delays. Completes at once unless ``hold`` is set."""

    def __init__(self, hold: bool = False) -> None:
        self.hold = hold
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self.hold:
            await asyncio.Event().wait()
        await asyncio.sleep(0)


def make_config(**overrides: Any) -> TaskConfig:
    values: dict[str, Any] = {
        "task_id": str(uuid.uuid4()),
        "agent_id": "agent-1",
        "owner_id": "owner-1",
        "task_prompt": "Check the release board",
        "model": "gpt-4o-mini",
        "interval_ms": 60_000,
        "trigger_mode": "interval",
    }
    values.update(overrides)
    return TaskConfig(**values)


async def wait_until(predicate: Callable[[], bool], timeout_s: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout_s
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
def store() -> InMemoryProgressStore:
    return InMemoryProgressStore()


@pytest.fixture
def ledger() -> InMemoryBillingLedger:
    return InMemoryBillingLedger()


@pytest.fixture
def model() -> ScriptedModel:
    return ScriptedModel()


@pytest.fixture
def scripted_model() -> type[ScriptedModel]:
    return ScriptedModel


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def holding_sleep() -> FakeSleep:
    return FakeSleep(hold=True)


@pytest.fixture
def config_factory() -> Callable[..., TaskConfig]:
    return make_config


@pytest.fixture
def waiter() -> Callable[..., Any]:
    return wait_until


@pytest.fixture
def runtime_factory(
    store: InMemoryProgressStore,
    ledger: InMemoryBillingLedger,
    model: ScriptedModel,
) -> Callable[..., TaskRuntime]:
    def _build(
        *,
        sleep: FakeSleep | None = None,
        max_consecutive_failures: int = 0,
        timeout_s: float | None = None,
        reasoning: ScriptedModel | None = None,
    ) -> TaskRuntime:
        executor = IterationExecutor(
            registry=build_default_registry(),
            model=reasoning or model,
            billing=ledger,
            timeout_s=timeout_s,
        )
        return TaskRuntime(
            store=store,
            executor=executor,
            max_consecutive_failures=max_consecutive_failures,
            sleep=sleep or FakeSleep(),
        )

    return _build
