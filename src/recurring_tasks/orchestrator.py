"""Durable recurring-task loop.

One ``TaskOrchestrator.run`` call drives a single task until it is stopped,
completes its iteration budget, or is escalated to failed. Each pass waits for
a trigger (interval timer, external event, or the first of both) raced against
the task's control mailbox, runs one iteration, and persists the outcome
before re-arming the wait.

The loop may be re-run from the top after a crash. It resumes from the stored
progress row, and every side effect is keyed by ``(task_id, iteration)``:
an iteration whose log row already exists is replayed from that row, without
waiting for a trigger, instead of being executed again.

State machine::

    RUNNING-WAITING --trigger--> RUNNING-EXECUTING --persisted--> RUNNING-WAITING
    RUNNING-* --pause--> PAUSED --resume--> RUNNING-WAITING
    RUNNING-* / PAUSED --stop--> STOPPED
    RUNNING-EXECUTING --max iterations--> COMPLETED
    RUNNING-EXECUTING --K consecutive errors--> FAILED
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Literal

from recurring_tasks.channels import ControlChannel, EventChannel
from recurring_tasks.executor import IterationExecutor
from recurring_tasks.models import (
    TERMINAL_STATUSES,
    IterationResult,
    TaskConfig,
    TaskEvent,
    TaskState,
    uses_events,
    uses_interval,
)
from recurring_tasks.storage.base import ProgressStore

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[Any]]


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class LoopOutcome:
    task_id: str
    iterations: int
    status: str


@dataclass(frozen=True)
class _Wake:
    kind: Literal["trigger", "stop"]
    event: TaskEvent | None = None


class TaskOrchestrator:
    def __init__(
        self,
        *,
        store: ProgressStore,
        executor: IterationExecutor,
        control: ControlChannel,
        events: EventChannel,
        max_consecutive_failures: int = 0,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.executor = executor
        self.control = control
        self.events = events
        self.max_consecutive_failures = max_consecutive_failures
        self._sleep = sleep
        self._clock = clock

    async def run(self, config: TaskConfig) -> LoopOutcome:
        task_id = config.task_id
        state = await asyncio.to_thread(self.store.get_task, task_id)
        if state is None:
            raise KeyError(f"Task {task_id} does not exist")
        if state.status in TERMINAL_STATUSES:
            logger.info(
                "task_loop event=already_terminal task_id=%s status=%s", task_id, state.status
            )
            return LoopOutcome(task_id, state.current_iteration, state.status)

        iteration = state.current_iteration
        consecutive_failures = 0
        logger.info(
            "task_loop event=start task_id=%s trigger_mode=%s iteration=%s status=%s",
            task_id,
            config.trigger_mode,
            iteration,
            state.status,
        )

        if state.status == "paused":
            if not await self._hold_paused(config):
                return LoopOutcome(task_id, iteration, "stopped")
            delay: float | None = 0.0
        else:
            delay = self._initial_delay(config, state)

        while True:
            # A logged but unrecorded iteration is finished before any new
            # trigger is consumed.
            logged = await self._bookkeep("get_log", self.store.get_log, task_id, iteration + 1)
            if logged is not None:
                iteration += 1
                logger.info("task_loop event=replayed task_id=%s iteration=%s", task_id, iteration)
                result = IterationResult.from_log(logged)
            else:
                wake = await self._await_trigger(config, delay)
                if wake.kind == "stop":
                    return LoopOutcome(task_id, iteration, "stopped")
                iteration += 1
                result = await self._run_iteration(config, iteration, wake.event)
            await self._bookkeep("record_progress", self.store.record_progress, task_id, iteration)

            if config.max_iterations and iteration >= config.max_iterations:
                await self._bookkeep("mark_complete", self.store.mark_complete, task_id)
                logger.info("task_loop event=completed task_id=%s iterations=%s", task_id, iteration)
                return LoopOutcome(task_id, iteration, "completed")

            if result.status == "error":
                consecutive_failures += 1
                logger.warning(
                    "task_loop event=iteration_error task_id=%s iteration=%s "
                    "consecutive_failures=%s reason=%s",
                    task_id,
                    iteration,
                    consecutive_failures,
                    result.error,
                )
                if (
                    self.max_consecutive_failures
                    and consecutive_failures >= self.max_consecutive_failures
                ):
                    message = (
                        f"{consecutive_failures} consecutive iterations failed; "
                        f"last error: {result.error}"
                    )
                    await self._bookkeep("mark_failed", self.store.mark_failed, task_id, message)
                    logger.error("task_loop event=failed task_id=%s reason=%s", task_id, message)
                    return LoopOutcome(task_id, iteration, "failed")
            else:
                consecutive_failures = 0

            delay = config.interval_ms / 1000.0 if uses_interval(config.trigger_mode) else None

    async def _run_iteration(
        self,
        config: TaskConfig,
        iteration: int,
        event: TaskEvent | None,
    ) -> IterationResult:
        task_id = config.task_id
        logger.info("task_loop event=execute task_id=%s iteration=%s", task_id, iteration)
        result = await self.executor.execute(config, iteration, event)
        await self._bookkeep(
            "append_log",
            self.store.append_log,
            task_id,
            iteration,
            result.content,
            result.status,
            result.parts(),
        )
        return result

    async def _await_trigger(self, config: TaskConfig, delay: float | None) -> _Wake:
        """Block until the next iteration should run, applying control signals.

        ``delay`` is the interval wait in seconds for timed modes (0 runs
        immediately) and is ignored for pure event mode.
        """
        task_id = config.task_id
        want_timer = uses_interval(config.trigger_mode)
        want_event = uses_events(config.trigger_mode)
        carried: TaskEvent | None = None

        while True:
            signal = self.control.poll(task_id)
            while signal is not None:
                if signal.action == "stop":
                    await self._stop(task_id)
                    return _Wake("stop")
                if signal.action == "pause":
                    await self._bookkeep("mark_paused", self.store.mark_paused, task_id)
                    if not await self._hold_paused(config):
                        return _Wake("stop")
                    delay = 0.0
                else:
                    self._ignore(task_id, signal.action, "running")
                signal = self.control.poll(task_id)

            if carried is not None:
                return _Wake("trigger", carried)
            if want_timer and not want_event and not delay:
                return _Wake("trigger")
            if want_timer and want_event and not delay:
                return _Wake("trigger", self.events.poll(task_id))

            control_task = asyncio.create_task(self.control.receive(task_id))
            timer_task: asyncio.Task[Any] | None = None
            event_task: asyncio.Task[TaskEvent] | None = None
            if want_timer:
                seconds = max(float(delay or 0.0), 0.0)
                await self._bookkeep(
                    "schedule_next",
                    self.store.schedule_next,
                    task_id,
                    self._clock() + timedelta(seconds=seconds),
                )
                timer_task = asyncio.create_task(self._sleep(seconds))
            if want_event:
                event_task = asyncio.create_task(self.events.receive(task_id))

            try:
                resumed = False
                while not resumed:
                    waiting = {t for t in (control_task, timer_task, event_task) if t is not None}
                    done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)

                    if control_task in done:
                        signal = control_task.result()
                        if signal.action == "stop":
                            await self._stop(task_id)
                            return _Wake("stop")
                        if signal.action == "pause":
                            if event_task is not None and event_task in done:
                                carried = event_task.result()
                            await self._cancel(timer_task, event_task)
                            timer_task = event_task = None
                            await self._bookkeep("mark_paused", self.store.mark_paused, task_id)
                            if not await self._hold_paused(config):
                                return _Wake("stop")
                            delay = 0.0
                            resumed = True
                            continue
                        self._ignore(task_id, signal.action, "running")
                        control_task = asyncio.create_task(self.control.receive(task_id))

                    if event_task is not None and event_task in done:
                        return _Wake("trigger", event_task.result())
                    if timer_task is not None and timer_task in done:
                        return _Wake("trigger")
            finally:
                await self._cancel(control_task, timer_task, event_task)

    async def _hold_paused(self, config: TaskConfig) -> bool:
        """Park on the control mailbox alone. Returns False when stopped."""
        task_id = config.task_id
        logger.info("task_loop event=paused task_id=%s", task_id)
        while True:
            signal = await self.control.receive(task_id)
            if signal.action == "stop":
                await self._stop(task_id)
                return False
            if signal.action == "resume":
                next_at = self._clock() if uses_interval(config.trigger_mode) else None
                await self._bookkeep("mark_running", self.store.mark_running, task_id, next_at)
                logger.info("task_loop event=resumed task_id=%s", task_id)
                return True
            self._ignore(task_id, signal.action, "paused")

    async def _stop(self, task_id: str) -> None:
        await self._bookkeep("mark_stopped", self.store.mark_stopped, task_id)
        logger.info("task_loop event=stopped task_id=%s", task_id)

    def _initial_delay(self, config: TaskConfig, state: TaskState) -> float | None:
        if not uses_interval(config.trigger_mode):
            return None
        if state.current_iteration == 0 or state.next_execution_at is None:
            return 0.0
        remaining = (state.next_execution_at - self._clock()).total_seconds()
        return max(remaining, 0.0)

    @staticmethod
    def _ignore(task_id: str, action: str, status: str) -> None:
        logger.warning(
            "task_loop event=signal_ignored task_id=%s action=%s status=%s",
            task_id,
            action,
            status,
        )

    @staticmethod
    async def _cancel(*tasks: asyncio.Task[Any] | None) -> None:
        pending = [task for task in tasks if task is not None and not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    @staticmethod
    async def _bookkeep(action: str, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args)
        except Exception:  # noqa: BLE001
            logger.exception("task_loop event=bookkeeping_failed action=%s", action)
            return None
