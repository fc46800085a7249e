"""Boundary Protocols — contracts between the conversation core and its collaborators.

Invariants:
    - Core NEVER imports a concrete model client or tool implementation
    - Collaborators shared across conversations are stateless or read-mostly
      (capability registry, cost function, model service)

Design Decisions:
    - Protocol over ABC: structural subtyping, fakes need no inheritance
    - open_stream is an async context manager so cancellation can close the stream
"""

from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from typing import Any, Protocol

from turnloop.core.turn_types import StreamingEvent, Usage


@dataclass
class TurnRequest:
    """Everything the model service needs for one turn."""
    messages: list[dict]
    system: str
    tools: list[dict] = field(default_factory=list)
    model: str | None = None
    max_tokens: int = 16_384
    thinking_budget: int | None = None
    betas: list[str] = field(default_factory=list)


class ModelService(Protocol):
    """Language-model service: batch or streaming turn."""

    async def create(self, request: TurnRequest) -> Any: ...

    def open_stream(
        self, request: TurnRequest,
    ) -> AbstractAsyncContextManager[AsyncIterator[StreamingEvent]]: ...


class Capability(Protocol):
    """Named, schema-described action invocable on the model's request."""
    name: str
    description: str
    input_schema: dict

    async def execute(self, parameters: dict) -> Any: ...


class CapabilityLookup(Protocol):
    def lookup(self, name: str) -> Capability | None: ...

    def catalog(self) -> list[dict]: ...


class CostFunction(Protocol):
    def __call__(self, usage: Usage) -> float: ...
