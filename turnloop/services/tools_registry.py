"""Tools Registry — explicit registration of capabilities and the declared tool catalog.

Invariants:
    - Every capability registered explicitly; names are unique
    - with_defaults() adds the built-in completion tool only when the caller has none
    - catalog() order == registration order (stable across iterations, cache-friendly)
    - Registry is read-mostly: safe to share across concurrent conversations once built

Design Decisions:
    - Explicit register() over auto-discovery: every tool visible at the call site
    - FunctionCapability adapts plain sync or async callables to the Capability protocol
"""

import inspect
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from turnloop.core.protocols import Capability
from turnloop.services.define_completion_tool import (
    REPORT_COMPLETE_TOOL,
    handle_report_complete,
)


@dataclass
class FunctionCapability:
    """Capability backed by a callable taking the parameters dict."""
    name: str
    description: str
    func: Callable[[dict], Any]
    input_schema: dict = field(
        default_factory=lambda: {"type": "object", "properties": {}},
    )

    async def execute(self, parameters: dict) -> Any:
        result = self.func(parameters)
        if inspect.isawaitable(result):
            result = await result
        return result


class CapabilityRegistry:
    """Name → capability map that also renders the Anthropic tool catalog."""

    def __init__(self, capabilities: Iterable[Capability] = ()):
        self._capabilities: dict[str, Capability] = {}
        for capability in capabilities:
            self.register(capability)

    @classmethod
    def with_defaults(cls, *capabilities: Capability) -> "CapabilityRegistry":
        """Registry pre-loaded with the built-in report_complete capability.

        A caller-supplied capability named report_complete takes the built-in's place.
        """
        builtin = report_complete_capability()
        if any(c.name == builtin.name for c in capabilities):
            return cls(capabilities)
        return cls([builtin, *capabilities])

    def register(self, capability: Capability) -> Capability:
        if capability.name in self._capabilities:
            raise ValueError(f"Capability '{capability.name}' already registered")
        self._capabilities[capability.name] = capability
        return capability

    def register_function(
        self, name: str, description: str, func: Callable[[dict], Any],
        input_schema: dict | None = None,
    ) -> Capability:
        capability = FunctionCapability(name=name, description=description, func=func)
        if input_schema is not None:
            capability.input_schema = input_schema
        return self.register(capability)

    def lookup(self, name: str) -> Capability | None:
        return self._capabilities.get(name)

    def catalog(self) -> list[dict]:
        return [
            {
                "name": c.name,
                "description": c.description,
                "input_schema": c.input_schema,
            }
            for c in self._capabilities.values()
        ]

    @property
    def names(self) -> list[str]:
        return list(self._capabilities)

    def __contains__(self, name: object) -> bool:
        return name in self._capabilities

    def __len__(self) -> int:
        return len(self._capabilities)


def report_complete_capability() -> FunctionCapability:
    return FunctionCapability(
        name=REPORT_COMPLETE_TOOL["name"],
        description=REPORT_COMPLETE_TOOL["description"],
        input_schema=REPORT_COMPLETE_TOOL["input_schema"],
        func=handle_report_complete,
    )
