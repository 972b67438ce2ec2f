"""Reasoning step: a bounded multi-step tool-calling loop against an LLM.

The model is asked to respond to the iteration prompt. Whenever it requests
tool calls, each call is dispatched through ``CapabilityInvoker`` and the
results are fed back, up to ``max_steps`` model turns. The loop never runs
unbounded within one iteration.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib import error, request

from recurring_tasks.capabilities import Capability, CapabilityInvoker
from recurring_tasks.config.settings import Settings
from recurring_tasks.models import TokenUsage, ToolCallRecord

logger = logging.getLogger(__name__)


@dataclass
class ReasoningOutcome:
    text: str
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    steps: int = 0


class ReasoningModel(Protocol):
    """Interface for one reasoning-plus-tool-call step."""

    def generate(
        self,
        *,
        model: str,
        system_prompt: str,
        prompt: str,
        capabilities: Mapping[str, Capability],
        max_steps: int,
    ) -> ReasoningOutcome: ...


class OpenAIToolCallingModel:
    """OpenAI-compatible chat completions client with function tools."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        timeout_s: float = 30.0,
        max_retries: int = 1,
        backoff_s: float = 0.2,
        capability_timeout_s: float = 20.0,
        capability_max_retries: int = 0,
    ) -> None:
        if not api_key:
            raise RuntimeError("OPENAI_API_KEY is missing")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)
        self.capability_timeout_s = capability_timeout_s
        self.capability_max_retries = capability_max_retries

    def generate(
        self,
        *,
        model: str,
        system_prompt: str,
        prompt: str,
        capabilities: Mapping[str, Capability],
        max_steps: int,
    ) -> ReasoningOutcome:
        invoker = CapabilityInvoker(
            capabilities,
            timeout_s=self.capability_timeout_s,
            max_retries=self.capability_max_retries,
        )
        messages: list[dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        tools = [_tool_definition(capability) for capability in capabilities.values()]

        outcome = ReasoningOutcome(text="")
        for step in range(max_steps):
            body: dict[str, Any] = {"model": model, "messages": messages}
            if tools:
                body["tools"] = tools
            response_json = self._request_with_retry(body)
            outcome.steps = step + 1
            outcome.usage = outcome.usage + _usage(response_json)

            message = _first_message(response_json)
            text = _message_text(message)
            if text:
                outcome.text = text
            requested = message.get("tool_calls") or []
            if not requested:
                break

            messages.append(
                {
                    "role": "assistant",
                    "content": message.get("content"),
                    "tool_calls": requested,
                }
            )
            for call in requested:
                function = call.get("function") or {}
                name = str(function.get("name", ""))
                args = _parse_arguments(function.get("arguments"))
                result = invoker.invoke(name, args)
                outcome.tool_calls.append(
                    ToolCallRecord(tool_name=name, args=args, result=result)
                )
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": call.get("id", ""),
                        "content": json.dumps(result, default=str),
                    }
                )
        else:
            logger.warning(
                "reasoning event=step_cap_reached model=%s max_steps=%d", model, max_steps
            )

        return outcome

    def _request_with_retry(self, body: dict[str, Any]) -> dict[str, Any]:
        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                return self._request(body)
            except (TimeoutError, ValueError, error.URLError) as exc:
                last_error = exc
                logger.warning(
                    "LLM request failed attempt=%d/%d model=%s reason=%s",
                    attempt + 1,
                    self.max_retries + 1,
                    body.get("model"),
                    exc,
                )
                if attempt < self.max_retries and self.backoff_s > 0:
                    time.sleep(self.backoff_s)
        if last_error is None:
            raise RuntimeError("LLM request failed with unknown error")
        raise last_error

    def _request(self, body: dict[str, Any]) -> dict[str, Any]:
        req = request.Request(
            url=f"{self.base_url}/chat/completions",
            data=json.dumps(body).encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                raw = response.read().decode("utf-8")
        except error.HTTPError as exc:
            message = exc.read().decode("utf-8", errors="replace")
            raise RuntimeError(
                f"LLM request failed with status {exc.code}: {message[:400]}"
            ) from exc
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError("LLM returned non-JSON response") from exc
        if not isinstance(parsed, dict):
            raise ValueError("LLM response must be a JSON object")
        return parsed


def build_reasoning_model(settings: Settings) -> OpenAIToolCallingModel:
    if settings.llm_provider.lower().strip() != "openai":
        raise RuntimeError(f"Unsupported LLM provider: {settings.llm_provider}")
    return OpenAIToolCallingModel(
        api_key=settings.resolved_openai_api_key(),
        base_url=settings.llm_base_url,
        timeout_s=settings.llm_timeout_s,
        max_retries=settings.llm_max_retries,
        backoff_s=settings.llm_backoff_s,
        capability_timeout_s=settings.capability_timeout_s,
        capability_max_retries=settings.capability_max_retries,
    )


def _tool_definition(capability: Capability) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": capability.name,
            "description": capability.description,
            "parameters": capability.input_schema,
        },
    }


def _first_message(response_json: dict[str, Any]) -> dict[str, Any]:
    choices = response_json.get("choices", [])
    if not choices:
        raise ValueError("LLM response did not contain choices")
    message = choices[0].get("message")
    if not isinstance(message, dict):
        raise ValueError("LLM response choice is missing a message")
    return message


def _message_text(message: dict[str, Any]) -> str:
    content = message.get("content")
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        parts = [
            item["text"]
            for item in content
            if isinstance(item, dict) and isinstance(item.get("text"), str)
        ]
        return "".join(parts).strip()
    return ""


def _usage(response_json: dict[str, Any]) -> TokenUsage:
    usage = response_json.get("usage") or {}
    return TokenUsage(
        input_tokens=int(usage.get("prompt_tokens", 0) or 0),
        output_tokens=int(usage.get("completion_tokens", 0) or 0),
    )


def _parse_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return {"_raw": str(raw)}
    return parsed if isinstance(parsed, dict) else {"_value": parsed}
