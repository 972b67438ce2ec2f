"""Deterministic built-in capability groups available to every deployment."""

from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta, timezone

from recurring_tasks.capabilities.registry import (
    Capability,
    CapabilityContext,
    CapabilityRegistry,
)
from recurring_tasks.capabilities.schemas import (
    AddDurationInput,
    AddDurationOutput,
    CurrentTimeInput,
    CurrentTimeOutput,
    ExtractActionItemsInput,
    ExtractActionItemsOutput,
    ExtractEntitiesInput,
    ExtractEntitiesOutput,
    SummarizeInput,
    SummarizeOutput,
)

_ACTION_LEADS = {
    "prepare",
    "draft",
    "review",
    "send",
    "post",
    "reply",
    "create",
    "update",
    "check",
    "investigate",
    "follow",
    "publish",
}


def current_time(payload: CurrentTimeInput) -> CurrentTimeOutput:
    tz = timezone(timedelta(minutes=payload.utc_offset_minutes))
    now = datetime.now(UTC).astimezone(tz)
    return CurrentTimeOutput(
        iso=now.isoformat(),
        weekday=now.strftime("%A"),
        unix=int(now.timestamp()),
    )


def add_duration(payload: AddDurationInput) -> AddDurationOutput:
    start = datetime.fromisoformat(payload.start)
    shifted = start + timedelta(days=payload.days, hours=payload.hours, minutes=payload.minutes)
    return AddDurationOutput(result=shifted.isoformat())


def summarize(payload: SummarizeInput) -> SummarizeOutput:
    words = payload.text.split()
    summary = " ".join(words[: payload.max_words]).strip()
    return SummarizeOutput(summary=summary)


def extract_entities(payload: ExtractEntitiesInput) -> ExtractEntitiesOutput:
    matches = re.findall(r"(?:[@#$][A-Za-z0-9_]+|\b[A-Z][a-zA-Z0-9_-]*\b)", payload.text)
    return ExtractEntitiesOutput(entities=_dedupe(matches))


def extract_action_items(payload: ExtractActionItemsInput) -> ExtractActionItemsOutput:
    items: list[str] = []
    for raw_line in re.split(r"[\n.;]", payload.text):
        line = raw_line.strip(" -*\t")
        if not line:
            continue
        lowered = line.lower()
        first_word = lowered.split(maxsplit=1)[0]
        if first_word in _ACTION_LEADS or lowered.startswith(("todo:", "action:")):
            items.append(line)
    return ExtractActionItemsOutput(action_items=_dedupe(items)[:10])


def datetime_group(_: CapabilityContext) -> list[Capability]:
    return [
        Capability(
            name="current_time",
            description="Return the current date and time, optionally shifted by a UTC offset.",
            input_model=CurrentTimeInput,
            output_model=CurrentTimeOutput,
            fn=current_time,
        ),
        Capability(
            name="add_duration",
            description="Add a number of days, hours, and minutes to an ISO-8601 timestamp.",
            input_model=AddDurationInput,
            output_model=AddDurationOutput,
            fn=add_duration,
        ),
    ]


def text_group(_: CapabilityContext) -> list[Capability]:
    return [
        Capability(
            name="summarize",
            description="Shorten text to at most max_words words.",
            input_model=SummarizeInput,
            output_model=SummarizeOutput,
            fn=summarize,
        ),
        Capability(
            name="extract_entities",
            description="List capitalized names, @handles, #hashtags, and $tickers found in text.",
            input_model=ExtractEntitiesInput,
            output_model=ExtractEntitiesOutput,
            fn=extract_entities,
        ),
        Capability(
            name="extract_action_items",
            description="Pull imperative follow-up lines out of free text.",
            input_model=ExtractActionItemsInput,
            output_model=ExtractActionItemsOutput,
            fn=extract_action_items,
        ),
    ]


def build_default_registry() -> CapabilityRegistry:
    registry = CapabilityRegistry()
    registry.register_group(
        "datetime",
        datetime_group,
        description="Current time and date arithmetic.",
    )
    registry.register_group(
        "text",
        text_group,
        description="Summaries, entity and action-item extraction.",
    )
    return registry


def _dedupe(values: list[str]) -> list[str]:
    seen: set[str] = set()
    output: list[str] = []
    for value in values:
        normalized = " ".join(value.split()).strip()
        key = normalized.lower()
        if not normalized or key in seen:
            continue
        seen.add(key)
        output.append(normalized)
    return output
