"""Orchestrator Helpers — pure run-config resolution, request building and result shaping.

Invariants:
    - All functions are pure (stateless, deterministic) except new_conversation_id
    - ConversationOptions override Settings field by field; None means "use Settings"
    - turn_cost() never returns a negative or non-finite cost

Design Decisions:
    - Extracted from conversation_orchestrator.py: the loop reads as control flow only
"""

import math
import uuid
from collections.abc import Iterable
from dataclasses import dataclass

from turnloop.config import Settings
from turnloop.core.domain_types import ConversationStatus
from turnloop.core.errors import (
    AgentLoopExceededError,
    BudgetExceededError,
    ErrorContext,
)
from turnloop.core.protocols import CostFunction, TurnRequest
from turnloop.core.turn_types import (
    ConversationResult,
    ConversationState,
    ParsedTurn,
    Usage,
)
from turnloop.schemas.conversation import ConversationOptions


@dataclass(frozen=True)
class RunConfig:
    """Effective limits and switches for one run."""
    max_iterations: int
    cost_budget: float | None
    use_streaming: bool
    typewriter: bool
    completion_tools: frozenset[str]
    text_fallback: bool
    prune_threshold_tokens: int
    keep_recent: int


def resolve_run_config(options: ConversationOptions, settings: Settings) -> RunConfig:
    return RunConfig(
        max_iterations=_pick(options.max_iterations, settings.agent_max_iterations),
        cost_budget=_pick(options.cost_budget, settings.agent_cost_budget),
        use_streaming=_pick(options.use_streaming, settings.agent_use_streaming),
        typewriter=_pick(options.typewriter, settings.stream_typewriter),
        completion_tools=frozenset(
            _pick(options.completion_tools, settings.completion_tools),
        ),
        text_fallback=settings.completion_text_fallback,
        prune_threshold_tokens=settings.context_prune_threshold_tokens,
        keep_recent=settings.context_keep_recent,
    )


def new_conversation_id() -> str:
    return uuid.uuid4().hex


def turn_key(conversation_id: str, iteration: int) -> str:
    return f"{conversation_id}:{iteration}"


def build_turn_request(
    messages: list[dict], system: str, catalog: list[dict], settings: Settings,
) -> TurnRequest:
    return TurnRequest(
        messages=list(messages),
        system=system,
        tools=catalog,
        model=settings.anthropic_model,
        max_tokens=settings.anthropic_max_tokens,
        thinking_budget=settings.anthropic_thinking_budget,
        betas=list(settings.anthropic_betas),
    )


def turn_cost(cost_function: CostFunction, usage: Usage) -> float:
    cost = float(cost_function(usage))
    if not math.isfinite(cost) or cost < 0:
        return 0.0
    return cost


def error_context(state: ConversationState) -> ErrorContext:
    return ErrorContext(
        conversation_id=state.conversation_id, iteration=state.iteration_count,
    )


def log_extra(state: ConversationState, **fields) -> dict:
    return {
        "conversation_id": state.conversation_id,
        "iteration": state.iteration_count,
        "total_cost": round(state.total_cost, 6),
        **fields,
    }


def terminal_error(
    state: ConversationState, max_iterations: int,
) -> Exception | None:
    """Error object describing a non-successful terminal status."""
    if state.status == ConversationStatus.BUDGET_EXCEEDED:
        return BudgetExceededError(
            state.total_cost, state.budget or 0.0, error_context(state),
        )
    if state.status == ConversationStatus.MAX_ITERATIONS:
        return AgentLoopExceededError(max_iterations, error_context(state))
    return None


def build_result(
    state: ConversationState,
    final_turn: ParsedTurn | None,
    error: Exception | None = None,
    cancelled: bool = False,
    messages: list[dict] | None = None,
) -> ConversationResult:
    return ConversationResult(
        success=state.status == ConversationStatus.COMPLETED,
        status=state.status,
        iteration_count=state.iteration_count,
        total_cost=state.total_cost,
        conversation_id=state.conversation_id,
        final_turn=final_turn,
        error=error,
        cancelled=cancelled,
        messages=list(messages or []),
    )


def tool_names(turn: ParsedTurn) -> Iterable[str]:
    return [c.name for c in turn.tool_calls]


def _pick(value, default):
    return default if value is None else value
