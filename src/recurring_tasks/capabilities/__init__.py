"""Capability layer for schema-validated tool execution."""

from recurring_tasks.capabilities.builtin import build_default_registry
from recurring_tasks.capabilities.gateway import CapabilityInvoker
from recurring_tasks.capabilities.registry import (
    Capability,
    CapabilityCollisionError,
    CapabilityContext,
    CapabilityFactory,
    CapabilityRegistry,
)

__all__ = [
    "Capability",
    "CapabilityCollisionError",
    "CapabilityContext",
    "CapabilityFactory",
    "CapabilityInvoker",
    "CapabilityRegistry",
    "build_default_registry",
]
