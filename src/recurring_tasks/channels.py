"""Per-task addressable mailboxes for control signals and trigger events.

A mailbox is opened for a task id when its orchestrator starts. Each call to
``receive()`` is a single-resolution wait: it resolves with exactly one
delivered item, and the orchestrator must call ``receive()`` again to observe
the next one. Items delivered while no wait is open are buffered in arrival
order.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Generic, TypeVar

from recurring_tasks.models import ControlSignal, TaskEvent, can_transition

T = TypeVar("T")
logger = logging.getLogger(__name__)


class ChannelUnavailableError(RuntimeError):
    """Raised when no orchestrator is listening for the addressed task."""


class InvalidControlError(ValueError):
    """Raised at the boundary when an action does not apply to the task status."""


class Mailbox(Generic[T]):
    """Addressable single-resolution mailbox keyed by task id."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._queues: dict[str, asyncio.Queue[T]] = {}
        self._loops: dict[str, asyncio.AbstractEventLoop] = {}

    def register(self, task_id: str) -> None:
        if task_id in self._queues:
            return
        self._queues[task_id] = asyncio.Queue()
        self._loops[task_id] = asyncio.get_running_loop()
        logger.debug("mailbox event=register channel=%s task_id=%s", self.name, task_id)

    def close(self, task_id: str) -> None:
        self._queues.pop(task_id, None)
        self._loops.pop(task_id, None)
        logger.debug("mailbox event=close channel=%s task_id=%s", self.name, task_id)

    def is_open(self, task_id: str) -> bool:
        return task_id in self._queues

    async def receive(self, task_id: str) -> T:
        return await self._queue(task_id).get()

    def poll(self, task_id: str) -> T | None:
        try:
            return self._queue(task_id).get_nowait()
        except asyncio.QueueEmpty:
            return None

    def deliver(self, task_id: str, item: T) -> None:
        queue = self._queues.get(task_id)
        loop = self._loops.get(task_id)
        if queue is None or loop is None or loop.is_closed():
            raise ChannelUnavailableError(
                f"No orchestrator is listening on {self.name} for task {task_id}"
            )
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            queue.put_nowait(item)
        else:
            loop.call_soon_threadsafe(queue.put_nowait, item)
        logger.info("mailbox event=deliver channel=%s task_id=%s", self.name, task_id)

    def _queue(self, task_id: str) -> asyncio.Queue[T]:
        queue = self._queues.get(task_id)
        if queue is None:
            raise ChannelUnavailableError(f"Mailbox {self.name} is not open for task {task_id}")
        return queue


class ControlChannel(Mailbox[ControlSignal]):
    def __init__(self) -> None:
        super().__init__("control")


class EventChannel(Mailbox[TaskEvent]):
    def __init__(self) -> None:
        super().__init__("event")


# action -> (status it moves the task to, statuses it applies to)
_CONTROL_TARGETS: dict[str, tuple[str, str]] = {
    "pause": ("paused", "running"),
    "resume": ("running", "paused"),
    "stop": ("stopped", "running or paused"),
}

def validate_control(status: str, action: str) -> None:
    """Reject actions that do not apply to the current task status."""
    if action not in _CONTROL_TARGETS:
        raise InvalidControlError("Invalid action. Must be: stop, pause, or resume")
    target, required = _CONTROL_TARGETS[action]
    if not can_transition(status, target):
        raise InvalidControlError(
            f'Cannot {action} task with status "{status}". Must be {required}.'
        )
