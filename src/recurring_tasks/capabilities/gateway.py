"""Schema-enforcing capability invocation with timeout/retry telemetry.

Priced capabilities are charged once per successful invocation through the
billing client carried on their resolution context. A failed charge is
logged and never changes the call result.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor, TimeoutError
from typing import Any

from recurring_tasks.capabilities.registry import Capability

logger = logging.getLogger(__name__)


class CapabilityInvoker:
    """Execute resolved capabilities; failures become results, not exceptions."""

    def __init__(
        self,
        capabilities: Mapping[str, Capability],
        *,
        timeout_s: float = 20.0,
        max_retries: int = 0,
        backoff_s: float = 0.0,
    ) -> None:
        self.capabilities = dict(capabilities)
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self.backoff_s = backoff_s
        self._charged: dict[str, int] = {}

    def invoke(self, name: str, args: Mapping[str, Any]) -> dict[str, Any]:
        started_at = time.perf_counter()
        attempts = 0
        final_error = "unknown error"

        capability = self.capabilities.get(name)
        if capability is None:
            return {
                "status": "failed",
                "error": f"Unknown capability: {name}",
                "attempts": 0,
                "duration_ms": _duration_ms(started_at),
            }

        for attempt in range(self.max_retries + 1):
            attempts = attempt + 1
            try:
                output = self._invoke_once(capability, args)
                self._charge(capability)
                return {
                    "status": "ok",
                    "output": output,
                    "attempts": attempts,
                    "duration_ms": _duration_ms(started_at),
                }
            except Exception as exc:  # noqa: BLE001
                final_error = str(exc) or exc.__class__.__name__
                logger.warning(
                    "capability_call event=failed name=%s attempt=%d/%d reason=%s",
                    name,
                    attempts,
                    self.max_retries + 1,
                    final_error,
                )
                if attempt < self.max_retries and self.backoff_s > 0:
                    time.sleep(self.backoff_s)

        return {
            "status": "failed",
            "error": final_error,
            "attempts": attempts,
            "duration_ms": _duration_ms(started_at),
        }

    def _invoke_once(self, capability: Capability, args: Mapping[str, Any]) -> Any:
        pool = ThreadPoolExecutor(max_workers=1)
        future = pool.submit(capability.execute, args)
        try:
            return future.result(timeout=self.timeout_s)
        except TimeoutError as exc:
            raise TimeoutError(
                f"Capability '{capability.name}' timed out after {self.timeout_s:.2f}s"
            ) from exc
        finally:
            pool.shutdown(wait=False)

    def _charge(self, capability: Capability) -> None:
        context = capability.context
        if capability.cost <= 0 or context is None or context.billing is None:
            return
        count = self._charged.get(capability.name, 0) + 1
        self._charged[capability.name] = count
        key = f"{context.task_id}:{context.iteration}:{capability.name}:{count}"
        try:
            result = context.billing.charge_for_usage(
                context.owner_id,
                capability.cost,
                (
                    f"Task [{context.task_id}] Iteration {context.iteration} - "
                    f"{capability.billing_label}"
                ),
                {"tool": capability.name, "category": capability.category},
                idempotency_key=key,
            )
        except Exception:  # noqa: BLE001
            logger.exception(
                "billing event=tool_charge_error task_id=%s tool=%s",
                context.task_id,
                capability.name,
            )
            return
        if not result.success:
            logger.error(
                "billing event=tool_charge_failed task_id=%s tool=%s reason=%s",
                context.task_id,
                capability.name,
                result.error,
            )


def _duration_ms(started_at: float) -> float:
    return round((time.perf_counter() - started_at) * 1000.0, 2)
