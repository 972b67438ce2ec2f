"""Strict Pydantic schemas for built-in capability inputs and outputs."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class StrictModel(BaseModel):
    """Base model for strict schema validation."""

    model_config = ConfigDict(extra="forbid")


class CurrentTimeInput(StrictModel):
    utc_offset_minutes: int = Field(default=0, ge=-720, le=840)


class CurrentTimeOutput(StrictModel):
    iso: str
    weekday: str
    unix: int


class AddDurationInput(StrictModel):
    start: str
    minutes: int = 0
    hours: int = 0
    days: int = 0


class AddDurationOutput(StrictModel):
    result: str


class SummarizeInput(StrictModel):
    text: str
    max_words: int = Field(default=60, ge=1, le=300)


class SummarizeOutput(StrictModel):
    summary: str


class ExtractEntitiesInput(StrictModel):
    text: str


class ExtractEntitiesOutput(StrictModel):
    entities: list[str]


class ExtractActionItemsInput(StrictModel):
    text: str


class ExtractActionItemsOutput(StrictModel):
    action_items: list[str]
