"""Capability registry: named groups and skills composed into one tool map.

The registry is built once at process start and passed explicitly to the
iteration executor. Resolving a task's capability set is an explicit union:
two sources contributing the same capability name is an error, never a
silent overwrite.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any, Callable

from pydantic import BaseModel

from recurring_tasks.billing import BillingClient

logger = logging.getLogger(__name__)


class CapabilityCollisionError(ValueError):
    """Raised when two capability sources expose the same name."""


@dataclass(frozen=True)
class CapabilityContext:
    """Who a capability set is being resolved for."""

    task_id: str
    agent_id: str
    owner_id: str
    configs: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    iteration: int = 0
    billing: BillingClient | None = None


@dataclass(frozen=True)
class Capability:
    name: str
    description: str
    input_model: type[BaseModel]
    fn: Callable[[BaseModel], Any]
    output_model: type[BaseModel] | None = None
    group: str = ""
    implementation: str = "deterministic"
    # USD charged per successful invocation; 0 means free.
    cost: float = 0.0
    category: str = ""
    context: CapabilityContext | None = field(default=None, compare=False, repr=False)

    @property
    def billing_label(self) -> str:
        return f"{self.category}: {self.name}" if self.category else self.name

    @property
    def input_schema(self) -> dict[str, Any]:
        return self.input_model.model_json_schema()

    def execute(self, args: Mapping[str, Any]) -> Any:
        payload = self.input_model.model_validate(dict(args))
        raw_output = self.fn(payload)
        if self.output_model is None:
            if isinstance(raw_output, BaseModel):
                return raw_output.model_dump(mode="json")
            return raw_output
        validated = self.output_model.model_validate(raw_output)
        return validated.model_dump(mode="json")


CapabilityFactory = Callable[[CapabilityContext], Iterable[Capability]]


@dataclass(frozen=True)
class _Source:
    kind: str
    name: str
    factory: CapabilityFactory
    description: str = ""
    optional: bool = False


class CapabilityRegistry:
    """Registered capability sources, keyed by group name or skill id."""

    def __init__(self) -> None:
        self._groups: dict[str, _Source] = {}
        self._skills: dict[str, _Source] = {}

    def register_group(
        self,
        name: str,
        factory: CapabilityFactory,
        *,
        description: str = "",
        optional: bool = False,
    ) -> None:
        if name in self._groups:
            raise ValueError(f"Capability group already registered: {name}")
        self._groups[name] = _Source("group", name, factory, description, optional)

    def register_skill(
        self,
        skill_id: str,
        factory: CapabilityFactory,
        *,
        description: str = "",
    ) -> None:
        if skill_id in self._skills:
            raise ValueError(f"Skill already registered: {skill_id}")
        self._skills[skill_id] = _Source("skill", skill_id, factory, description, optional=True)

    def groups(self) -> dict[str, str]:
        return {name: source.description for name, source in sorted(self._groups.items())}

    def skills(self) -> dict[str, str]:
        return {name: source.description for name, source in sorted(self._skills.items())}

    def resolve(
        self,
        group_names: Iterable[str],
        skill_ids: Iterable[str],
        context: CapabilityContext,
    ) -> dict[str, Capability]:
        resolved: dict[str, Capability] = {}
        owners: dict[str, str] = {}
        sources = self._select(self._groups, group_names, "group") + self._select(
            self._skills, skill_ids, "skill"
        )

        for source in sources:
            try:
                capabilities = list(source.factory(context))
            except Exception:  # noqa: BLE001
                if not source.optional:
                    raise
                logger.exception(
                    "capability_resolve event=source_failed kind=%s name=%s task_id=%s",
                    source.kind,
                    source.name,
                    context.task_id,
                )
                continue

            label = f"{source.kind}:{source.name}"
            for capability in capabilities:
                if capability.name in resolved:
                    raise CapabilityCollisionError(
                        f"Capability '{capability.name}' from {label} collides with "
                        f"{owners[capability.name]}"
                    )
                owners[capability.name] = label
                resolved[capability.name] = replace(
                    capability, group=capability.group or source.name, context=context
                )

        return resolved

    @staticmethod
    def _select(
        table: dict[str, _Source],
        names: Iterable[str],
        kind: str,
    ) -> list[_Source]:
        selected: list[_Source] = []
        seen: set[str] = set()
        for name in names:
            if name in seen:
                continue
            seen.add(name)
            source = table.get(name)
            if source is None:
                logger.warning("capability_resolve event=unknown_%s name=%s", kind, name)
                continue
            selected.append(source)
        return selected
