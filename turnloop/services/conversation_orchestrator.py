"""Conversation Orchestrator — async turn loop with budgets, retries and tool fan-out.

Invariants:
    - One conversation is strictly sequential: never two model calls in flight
    - RUNNING until exactly one terminal status (COMPLETED, BUDGET_EXCEEDED,
      MAX_ITERATIONS, FAILED); the result always carries iteration count and spend
    - Budget checked once, before each iteration: a turn that crosses the budget
      still folds its results; the next iteration halts without a model call
    - total_cost and iteration_count owned by this run's ConversationState only
    - History and cancel state live in a per-run _ActiveRun: overlapping runs on
      one orchestrator never see each other's messages
    - Tool failures become is_error tool results, never loop failures

Design Decisions:
    - Completion tool is the primary completion signal; a tool-free turn completes
      on its stop reason (text matching only when completion_text_fallback is on)
    - A tool-calling turn is always dispatched first, so tool_use ids get results
    - Cancellation ends the run COMPLETED with cancelled=True and skips dispatch
    - Pure helpers extracted to orchestrator_helpers.py
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from turnloop.config import Settings, get_settings
from turnloop.core.context_compaction import estimate_tokens, optimize_context
from turnloop.core.cost import TokenPricing
from turnloop.core.domain_types import ConversationStatus
from turnloop.core.error_classifier import classify
from turnloop.core.errors import TurnloopError
from turnloop.core.message_builder import (
    CONTINUE_PROMPT,
    assistant_message,
    conversation_summary,
    tool_result_messages,
    user_message,
)
from turnloop.core.protocols import (
    Capability,
    CapabilityLookup,
    CostFunction,
    ModelService,
    TurnRequest,
)
from turnloop.core.response_parser import is_complete, parse
from turnloop.core.turn_types import ConversationResult, ConversationState, ParsedTurn
from turnloop.schemas.conversation import ConversationOptions
from turnloop.services.orchestrator_helpers import (
    RunConfig,
    build_result,
    build_turn_request,
    error_context,
    log_extra,
    new_conversation_id,
    resolve_run_config,
    terminal_error,
    tool_names,
    turn_cost,
    turn_key,
)
from turnloop.services.retry_policy import RetryPolicy
from turnloop.services.streaming_processor import AccumulatorRegistry, StreamingProcessor
from turnloop.services.tool_dispatch import ToolDispatch
from turnloop.services.tools_registry import CapabilityRegistry

logger = logging.getLogger(__name__)


@dataclass
class _ActiveRun:
    """Mutable state of one run_conversation call."""
    state: ConversationState
    messages: list[dict] = field(default_factory=list)
    cancel_requested: bool = False
    processor: StreamingProcessor | None = None

    def cancel(self) -> None:
        self.cancel_requested = True
        if self.processor is not None:
            self.processor.cancel()


class ConversationOrchestrator:
    """Drives conversations against a model service; runs may overlap."""

    def __init__(
        self,
        model_service: ModelService,
        settings: Settings | None = None,
        cost_function: CostFunction | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        self.model_service = model_service
        self.settings = settings or get_settings()
        self.cost_function = cost_function or TokenPricing()
        self.retry_policy = retry_policy or RetryPolicy(self.settings.backoff_policy())
        self.accumulators = AccumulatorRegistry()
        self._active: dict[str, _ActiveRun] = {}

    async def run_conversation(
        self,
        initial_prompt: str,
        capabilities: CapabilityLookup | Iterable[Capability] | None = None,
        options: ConversationOptions | None = None,
    ) -> ConversationResult:
        """Run the turn loop until a terminal status. Never raises for service errors."""
        options = options or ConversationOptions()
        config = resolve_run_config(options, self.settings)
        registry = _as_registry(capabilities)
        state = ConversationState(
            conversation_id=options.conversation_id or new_conversation_id(),
            budget=config.cost_budget,
        )
        if state.conversation_id in self._active:
            raise ValueError(
                f"Conversation '{state.conversation_id}' is already running",
            )
        run = _ActiveRun(state, [user_message(initial_prompt)])
        self._active[state.conversation_id] = run
        try:
            return await self._run(run, registry, options, config)
        finally:
            del self._active[state.conversation_id]

    def cancel(self, conversation_id: str | None = None) -> None:
        """Stop the active streaming turn of one run, or of every active run.

        A cancelled run ends after folding its current turn.
        """
        if conversation_id is None:
            runs = list(self._active.values())
        else:
            run = self._active.get(conversation_id)
            runs = [run] if run is not None else []
        for run in runs:
            run.cancel()

    @property
    def active_conversations(self) -> list[str]:
        return list(self._active)

    # -- Loop ------------------------------------------------------------------

    async def _run(
        self,
        run: _ActiveRun,
        registry: CapabilityLookup,
        options: ConversationOptions,
        config: RunConfig,
    ) -> ConversationResult:
        state = run.state
        logger.info(
            "Conversation started (max %d iterations)", config.max_iterations,
            extra=log_extra(state),
        )

        try:
            final_turn, cancelled = await self._iteration_loop(
                run, registry, options, config,
            )
        except TurnloopError as e:
            state.status = ConversationStatus.FAILED
            logger.error(
                "Conversation failed: %s", e.message,
                extra=log_extra(state, error_code=e.code),
            )
            return build_result(state, None, error=e, messages=run.messages)
        except Exception as e:
            state.status = ConversationStatus.FAILED
            logger.error(
                "Unexpected error in conversation loop: %s", e,
                extra=log_extra(state), exc_info=True,
            )
            return build_result(
                state, None, error=classify(e, error_context(state)),
                messages=run.messages,
            )

        error = terminal_error(state, config.max_iterations)
        summary = conversation_summary(run.messages, estimate_tokens(run.messages))
        logger.info(
            "Conversation finished: %s after %d iteration(s), $%.4f",
            state.status.value, state.iteration_count, state.total_cost,
            extra=log_extra(state, tool_usage=summary["tool_usage"]),
        )
        return build_result(
            state, final_turn, error=error, cancelled=cancelled, messages=run.messages,
        )

    async def _iteration_loop(
        self,
        run: _ActiveRun,
        registry: CapabilityLookup,
        options: ConversationOptions,
        config: RunConfig,
    ) -> tuple[ParsedTurn | None, bool]:
        """Returns (final_turn, cancelled). Sets run.state.status."""
        state = run.state
        catalog = registry.catalog()
        final_turn = None

        while True:
            if run.cancel_requested:
                state.status = ConversationStatus.COMPLETED
                return final_turn, True
            if state.budget_reached():
                state.status = ConversationStatus.BUDGET_EXCEEDED
                logger.warning(
                    "Cost budget reached ($%.4f >= $%.4f)",
                    state.total_cost, state.budget, extra=log_extra(state),
                )
                return final_turn, False
            if state.iteration_count >= config.max_iterations:
                state.status = ConversationStatus.MAX_ITERATIONS
                logger.warning(
                    "Iteration limit reached (%d)", config.max_iterations,
                    extra=log_extra(state),
                )
                return final_turn, False

            state.iteration_count += 1
            request = build_turn_request(
                run.messages, options.system_prompt, catalog, self.settings,
            )
            turn = await self._model_turn(run, request, options, config)
            final_turn = turn

            cost = turn_cost(self.cost_function, turn.usage)
            state.add_cost(cost)
            logger.info(
                "Turn %d: stop_reason=%s, tools=%s",
                state.iteration_count, turn.stop_reason, tool_names(turn),
                extra=log_extra(
                    state, cost=round(cost, 6),
                    input_tokens=turn.usage.input_tokens,
                    output_tokens=turn.usage.output_tokens,
                ),
            )
            run.messages.append(assistant_message(turn))

            if turn.cancelled or run.cancel_requested:
                state.status = ConversationStatus.COMPLETED
                return final_turn, True

            if turn.has_tool_calls:
                dispatch = ToolDispatch(
                    registry, config.completion_tools, error_context(state),
                )
                results = await dispatch.execute_all(turn.tool_calls)
                run.messages.extend(tool_result_messages(results))
                if dispatch.completion_signalled(results):
                    state.status = ConversationStatus.COMPLETED
                    return final_turn, False
            elif is_complete(turn, config.completion_tools, config.text_fallback):
                state.status = ConversationStatus.COMPLETED
                return final_turn, False
            else:
                run.messages.append(user_message(CONTINUE_PROMPT))

            self._compact(run, config)

    async def _model_turn(
        self,
        run: _ActiveRun,
        request: TurnRequest,
        options: ConversationOptions,
        config: RunConfig,
    ) -> ParsedTurn:
        """One model call through the retry policy (streaming or batch)."""
        state = run.state
        ctx = error_context(state)
        if config.use_streaming:
            key = turn_key(state.conversation_id, state.iteration_count)

            async def operation() -> ParsedTurn:
                return await self._stream_turn(run, request, key, options, config, ctx)

            name = "stream_turn"
        else:
            async def operation() -> ParsedTurn:
                return parse(await self.model_service.create(request))

            name = "create_turn"
        return await self.retry_policy.execute_with_retry(
            operation, operation_name=name, context=ctx,
        )

    async def _stream_turn(self, run, request, key, options, config, ctx) -> ParsedTurn:
        processor = StreamingProcessor(
            self.accumulators,
            inactivity_timeout=self.settings.stream_inactivity_timeout_seconds,
            typewriter=config.typewriter,
            typewriter_delay_ms=self.settings.stream_typewriter_delay_ms,
            progress_interval=self.settings.stream_progress_interval_seconds,
            on_progress=options.on_progress,
            on_partial_text=options.on_partial_text,
            on_partial_thinking=options.on_partial_thinking,
            context=ctx,
        )
        run.processor = processor
        if run.cancel_requested:
            processor.cancel()
        try:
            async with self.model_service.open_stream(request) as events:
                return await processor.process(events, key)
        finally:
            run.processor = None

    def _compact(self, run: _ActiveRun, config: RunConfig) -> None:
        before = len(run.messages)
        run.messages = optimize_context(
            run.messages,
            max_tokens=config.prune_threshold_tokens,
            keep_recent=config.keep_recent,
        )
        if len(run.messages) != before:
            logger.info(
                "History compacted: %d -> %d messages", before, len(run.messages),
                extra=log_extra(run.state),
            )


async def run_conversation(
    initial_prompt: str,
    capabilities: CapabilityLookup | Iterable[Capability] | None = None,
    options: ConversationOptions | None = None,
    *,
    model_service: ModelService | None = None,
    settings: Settings | None = None,
    cost_function: CostFunction | None = None,
) -> ConversationResult:
    """Convenience entry point: one orchestrator, one conversation."""
    settings = settings or get_settings()
    if model_service is None:
        from turnloop.infrastructure.anthropic_client import AnthropicModelService
        model_service = AnthropicModelService.from_settings(settings)
    orchestrator = ConversationOrchestrator(
        model_service, settings=settings, cost_function=cost_function,
    )
    return await orchestrator.run_conversation(initial_prompt, capabilities, options)


def _as_registry(
    capabilities: CapabilityLookup | Iterable[Capability] | None,
) -> CapabilityLookup:
    if capabilities is None:
        return CapabilityRegistry.with_defaults()
    if hasattr(capabilities, "lookup") and hasattr(capabilities, "catalog"):
        return capabilities
    return CapabilityRegistry.with_defaults(*capabilities)
