"""Usage-based billing: model pricing, cost calculation, and charge clients."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib import error, request

from recurring_tasks.models import TokenUsage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelPricing:
    model_id: str
    input_cost_per_token: float
    output_cost_per_token: float


@dataclass(frozen=True)
class CalculatedCost:
    total_cost: float
    input_cost: float
    output_cost: float
    model_id: str


@dataclass(frozen=True)
class BillingResult:
    success: bool
    error: str | None = None


# USD per token.
DEFAULT_PRICING: dict[str, ModelPricing] = {
    pricing.model_id: pricing
    for pricing in (
        ModelPricing("openai/gpt-4o-mini", 0.15e-6, 0.60e-6),
        ModelPricing("openai/gpt-4o", 2.50e-6, 10.00e-6),
        ModelPricing("openai/gpt-4.1-mini", 0.40e-6, 1.60e-6),
        ModelPricing("anthropic/claude-haiku-4.5", 1.00e-6, 5.00e-6),
        ModelPricing("anthropic/claude-sonnet-4.5", 3.00e-6, 15.00e-6),
    )
}


def find_pricing(
    model_id: str,
    pricing: Mapping[str, ModelPricing] | None = None,
) -> ModelPricing | None:
    table = DEFAULT_PRICING if pricing is None else pricing
    exact = table.get(model_id)
    if exact is not None:
        return exact

    wanted = _normalize(model_id.split("/")[-1])
    for known_id, known in table.items():
        if _normalize(known_id.split("/")[-1]) == wanted:
            return known
    for known_id, known in table.items():
        if _normalize(known_id.split("/")[-1]).startswith(wanted):
            return known
    return None


def calculate_cost(
    model_id: str,
    usage: TokenUsage,
    pricing: Mapping[str, ModelPricing] | None = None,
) -> CalculatedCost | None:
    """Return the USD cost of ``usage`` or None when the model has no pricing."""
    found = find_pricing(model_id, pricing)
    if found is None:
        return None
    input_cost = usage.input_tokens * found.input_cost_per_token
    output_cost = usage.output_tokens * found.output_cost_per_token
    return CalculatedCost(
        total_cost=input_cost + output_cost,
        input_cost=input_cost,
        output_cost=output_cost,
        model_id=found.model_id,
    )


class BillingClient(Protocol):
    def charge_for_usage(
        self,
        owner_id: str,
        usd_amount: float,
        description: str,
        metadata: Mapping[str, Any],
        *,
        idempotency_key: str,
    ) -> BillingResult: ...


@dataclass
class LedgerEntry:
    owner_id: str
    usd_amount: float
    description: str
    metadata: dict[str, Any] = field(default_factory=dict)


class InMemoryBillingLedger:
    """Records charges; a repeated idempotency key is accepted but not charged twice."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.entries: dict[str, LedgerEntry] = {}

    def charge_for_usage(
        self,
        owner_id: str,
        usd_amount: float,
        description: str,
        metadata: Mapping[str, Any],
        *,
        idempotency_key: str,
    ) -> BillingResult:
        with self._lock:
            if idempotency_key not in self.entries:
                self.entries[idempotency_key] = LedgerEntry(
                    owner_id=owner_id,
                    usd_amount=usd_amount,
                    description=description,
                    metadata=dict(metadata),
                )
        return BillingResult(success=True)

    def total_for(self, owner_id: str) -> float:
        with self._lock:
            return sum(
                entry.usd_amount for entry in self.entries.values() if entry.owner_id == owner_id
            )


class HttpBillingClient:
    """Posts charges to an external billing service as JSON."""

    def __init__(self, *, url: str, api_key: str = "", timeout_s: float = 10.0) -> None:
        if not url:
            raise ValueError("billing url is required")
        self.url = url
        self.api_key = api_key
        self.timeout_s = timeout_s

    def charge_for_usage(
        self,
        owner_id: str,
        usd_amount: float,
        description: str,
        metadata: Mapping[str, Any],
        *,
        idempotency_key: str,
    ) -> BillingResult:
        headers = {
            "Content-Type": "application/json",
            "Idempotency-Key": idempotency_key,
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        req = request.Request(
            url=self.url,
            data=json.dumps(
                {
                    "ownerId": owner_id,
                    "usdAmount": usd_amount,
                    "description": description,
                    "metadata": dict(metadata),
                }
            ).encode("utf-8"),
            method="POST",
            headers=headers,
        )
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                raw = response.read().decode("utf-8")
        except error.HTTPError as exc:
            message = exc.read().decode("utf-8", errors="replace")
            return BillingResult(success=False, error=f"status {exc.code}: {message[:200]}")
        except error.URLError as exc:
            return BillingResult(success=False, error=f"billing unreachable: {exc.reason}")

        try:
            parsed = json.loads(raw) if raw else {}
        except json.JSONDecodeError:
            return BillingResult(success=False, error="billing returned non-JSON response")
        if not isinstance(parsed, dict):
            return BillingResult(success=False, error="billing response must be a JSON object")
        return BillingResult(success=bool(parsed.get("success", True)), error=parsed.get("error"))


def _normalize(model_name: str) -> str:
    return model_name.lower().replace(".", "-").replace("_", "-")
