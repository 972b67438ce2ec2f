"""Iteration executor: one reasoning step against the task's capabilities.

Any failure while resolving capabilities or running the model is converted
into an error ``IterationResult``; nothing is raised to the orchestrator, so a
single bad iteration never ends a long-running task. Billing failures are
logged and do not change the iteration outcome.
"""

from __future__ import annotations

import asyncio
import json
import logging

from recurring_tasks.billing import BillingClient, ModelPricing, calculate_cost
from recurring_tasks.capabilities import CapabilityContext, CapabilityRegistry
from recurring_tasks.llm import ReasoningModel
from recurring_tasks.models import IterationResult, TaskConfig, TaskEvent, TokenUsage

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOOL_STEPS = 10
EMPTY_RESPONSE_TEXT = "(No text response)"


def idempotency_key(task_id: str, iteration: int) -> str:
    return f"{task_id}:{iteration}"


def build_prompt(config: TaskConfig, iteration: int, event: TaskEvent | None = None) -> str:
    prompt = f"[Task Iteration {iteration}] {config.task_prompt}"
    if event is None:
        return prompt

    lines = [prompt, "", f"[Triggered by {event.source} {event.event_type} event]"]
    if event.occurred_at is not None:
        lines.append(f"Occurred at: {event.occurred_at.isoformat()}")
    if event.summary:
        lines.append(event.summary)
    if event.payload:
        lines.append(f"Payload: {json.dumps(event.payload, default=str, ensure_ascii=True)}")
    return "\n".join(lines)


class IterationExecutor:
    def __init__(
        self,
        *,
        registry: CapabilityRegistry,
        model: ReasoningModel,
        billing: BillingClient,
        max_tool_steps: int = DEFAULT_MAX_TOOL_STEPS,
        timeout_s: float | None = None,
        pricing: dict[str, ModelPricing] | None = None,
    ) -> None:
        self.registry = registry
        self.model = model
        self.billing = billing
        self.max_tool_steps = max_tool_steps
        self.timeout_s = timeout_s
        self.pricing = pricing

    async def execute(
        self,
        config: TaskConfig,
        iteration: int,
        event: TaskEvent | None = None,
    ) -> IterationResult:
        try:
            work = asyncio.to_thread(self._run, config, iteration, event)
            if self.timeout_s:
                return await asyncio.wait_for(work, timeout=self.timeout_s)
            return await work
        except asyncio.TimeoutError:
            message = f"Iteration timed out after {self.timeout_s:g}s"
        except Exception as exc:  # noqa: BLE001
            message = str(exc) or exc.__class__.__name__

        logger.error(
            "iteration event=failed task_id=%s iteration=%s reason=%s",
            config.task_id,
            iteration,
            message,
        )
        return IterationResult.failure(message)

    def _run(
        self,
        config: TaskConfig,
        iteration: int,
        event: TaskEvent | None,
    ) -> IterationResult:
        context = CapabilityContext(
            task_id=config.task_id,
            agent_id=config.agent_id,
            owner_id=config.owner_id,
            configs=config.skill_configs,
            iteration=iteration,
            billing=self.billing,
        )
        capabilities = self.registry.resolve(
            config.enabled_tool_groups,
            config.enabled_skills,
            context,
        )
        outcome = self.model.generate(
            model=config.model,
            system_prompt=config.system_prompt,
            prompt=build_prompt(config, iteration, event),
            capabilities=capabilities,
            max_steps=self.max_tool_steps,
        )
        logger.info(
            "iteration event=completed task_id=%s iteration=%s steps=%d tool_calls=%d tokens=%d",
            config.task_id,
            iteration,
            outcome.steps,
            len(outcome.tool_calls),
            outcome.usage.total,
        )
        self._charge(config, iteration, outcome.usage)
        return IterationResult(
            content=outcome.text or EMPTY_RESPONSE_TEXT,
            tool_calls=outcome.tool_calls,
            token_usage=outcome.usage,
            status="success",
        )

    def _charge(self, config: TaskConfig, iteration: int, usage: TokenUsage) -> None:
        try:
            cost = calculate_cost(config.model, usage, self.pricing)
            if cost is None or cost.total_cost <= 0:
                return
            result = self.billing.charge_for_usage(
                config.owner_id,
                cost.total_cost,
                (
                    f"Task [{config.task_id}] Iteration {iteration} - {config.model} - "
                    f"{usage.total} tokens"
                ),
                {
                    "model": config.model,
                    "inputTokens": usage.input_tokens,
                    "outputTokens": usage.output_tokens,
                },
                idempotency_key=idempotency_key(config.task_id, iteration),
            )
            if not result.success:
                logger.error(
                    "billing event=charge_failed task_id=%s iteration=%s reason=%s",
                    config.task_id,
                    iteration,
                    result.error,
                )
        except Exception:  # noqa: BLE001
            logger.exception(
                "billing event=charge_error task_id=%s iteration=%s",
                config.task_id,
                iteration,
            )
