"""In-process execution substrate for task orchestrators.

Owns the control and event mailboxes and guarantees at most one live
orchestrator per task id. On process start ``recover()`` re-launches
orchestrators for every stored task that is still running or paused, which
is how a task survives restarts.
"""

from __future__ import annotations

import asyncio
import logging

from recurring_tasks.channels import ControlChannel, EventChannel
from recurring_tasks.executor import IterationExecutor
from recurring_tasks.models import ControlSignal, TaskConfig, TaskEvent
from recurring_tasks.orchestrator import LoopOutcome, SleepFn, TaskOrchestrator
from recurring_tasks.storage.base import ProgressStore

logger = logging.getLogger(__name__)


class TaskRuntime:
    def __init__(
        self,
        *,
        store: ProgressStore,
        executor: IterationExecutor,
        max_consecutive_failures: int = 0,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.store = store
        self.control = ControlChannel()
        self.events = EventChannel()
        self.orchestrator = TaskOrchestrator(
            store=store,
            executor=executor,
            control=self.control,
            events=self.events,
            max_consecutive_failures=max_consecutive_failures,
            sleep=sleep,
        )
        self._tasks: dict[str, asyncio.Task[LoopOutcome]] = {}

    def start(self, config: TaskConfig) -> asyncio.Task[LoopOutcome]:
        """Launch the orchestrator for ``config`` unless one is already active."""
        task_id = config.task_id
        active = self._tasks.get(task_id)
        if active is not None and not active.done():
            return active

        self.control.register(task_id)
        self.events.register(task_id)
        runner = asyncio.create_task(self._run(config), name=f"task-loop-{task_id}")
        self._tasks[task_id] = runner
        return runner

    async def recover(self, *, batch_size: int = 100) -> list[str]:
        recovered: list[str] = []
        offset = 0
        while True:
            states = await asyncio.to_thread(
                self.store.list_tasks,
                statuses=("running", "paused"),
                limit=batch_size,
                offset=offset,
            )
            for state in states:
                config = await asyncio.to_thread(self.store.get_config, state.task_id)
                if config is None:
                    logger.warning("runtime event=missing_config task_id=%s", state.task_id)
                    continue
                self.start(config)
                recovered.append(state.task_id)
            if len(states) < batch_size:
                break
            offset += batch_size
        if recovered:
            logger.info("runtime event=recovered count=%d", len(recovered))
        return recovered

    def is_active(self, task_id: str) -> bool:
        runner = self._tasks.get(task_id)
        return runner is not None and not runner.done()

    def send_control(self, task_id: str, signal: ControlSignal) -> None:
        self.control.deliver(task_id, signal)

    def send_event(self, task_id: str, event: TaskEvent) -> None:
        self.events.deliver(task_id, event)

    async def wait(self, task_id: str) -> LoopOutcome | None:
        runner = self._tasks.get(task_id)
        if runner is None:
            return None
        return await runner

    async def shutdown(self) -> None:
        runners = [runner for runner in self._tasks.values() if not runner.done()]
        for runner in runners:
            runner.cancel()
        if runners:
            await asyncio.gather(*runners, return_exceptions=True)
        self._tasks.clear()
        logger.info("runtime event=shutdown cancelled=%d", len(runners))

    async def _run(self, config: TaskConfig) -> LoopOutcome:
        task_id = config.task_id
        try:
            outcome = await self.orchestrator.run(config)
            logger.info(
                "runtime event=loop_exit task_id=%s status=%s iterations=%s",
                task_id,
                outcome.status,
                outcome.iterations,
            )
            return outcome
        except asyncio.CancelledError:
            logger.info("runtime event=loop_cancelled task_id=%s", task_id)
            raise
        except Exception:
            logger.exception("runtime event=loop_crashed task_id=%s", task_id)
            raise
        finally:
            self.control.close(task_id)
            self.events.close(task_id)
