"""Conversation Schemas — Pydantic models for run options and progress payloads.

Invariants:
    - max_iterations >= 1 when given; cost_budget >= 0 when given
    - None means "use the Settings default" for every overridable field
    - ProgressUpdate.elapsed_ms and tokens_received_estimate are never negative

Design Decisions:
    - Callbacks live on the options model (arbitrary_types_allowed): one object
      carries everything a caller controls for a run
    - Callbacks may be plain functions or coroutine functions
"""

from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field, field_validator

from turnloop.core.domain_types import StreamPhase
from turnloop.core.message_builder import DEFAULT_SYSTEM_PROMPT


class ProgressUpdate(BaseModel):
    """Periodic streaming progress snapshot."""
    phase: StreamPhase
    message: str
    tokens_received_estimate: int = Field(ge=0)
    elapsed_ms: int = Field(ge=0)


class ConversationOptions(BaseModel):
    """Per-run options for run_conversation()."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    max_iterations: int | None = Field(None, ge=1)
    cost_budget: float | None = Field(None, ge=0)
    use_streaming: bool | None = None
    typewriter: bool | None = None
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    conversation_id: str | None = None
    completion_tools: list[str] | None = None

    on_progress: Callable[[ProgressUpdate], Any] | None = None
    on_partial_text: Callable[[str], Any] | None = None
    on_partial_thinking: Callable[[str], Any] | None = None

    @field_validator("system_prompt")
    @classmethod
    def strip_system_prompt(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("system_prompt cannot be empty or whitespace")
        return v
