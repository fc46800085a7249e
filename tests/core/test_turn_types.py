"""Turn Types & Errors tests — state bookkeeping and error envelopes."""

from turnloop.core.domain_types import ErrorCode, StreamPhase
from turnloop.core.errors import (
    AgentLoopExceededError,
    BudgetExceededError,
    ErrorCategory,
    ModelServiceError,
    ToolNotFoundError,
)
from turnloop.core.turn_types import ConversationState, StreamingAccumulator, Usage


class TestConversationState:

    def test_cost_never_decreases(self):
        state = ConversationState("c1")
        state.add_cost(0.5)
        state.add_cost(-0.2)
        state.add_cost(0.0)
        assert state.total_cost == 0.5

    def test_budget_reached_at_boundary(self):
        state = ConversationState("c1", budget=0.01)
        assert not state.budget_reached()
        state.add_cost(0.01)
        assert state.budget_reached()

    def test_no_budget_never_reached(self):
        state = ConversationState("c1")
        state.add_cost(1e9)
        assert not state.budget_reached()


class TestUsage:

    def test_clamps_and_totals(self):
        usage = Usage(input_tokens=-3, output_tokens=5, thinking_tokens=None)
        assert (usage.input_tokens, usage.output_tokens, usage.thinking_tokens) == (0, 5, 0)
        assert usage.total == 5


class TestAccumulator:

    def test_recent_window_bounded(self):
        acc = StreamingAccumulator(turn_key="k")
        for _ in range(20):
            acc.recent_events.append(StreamPhase.STREAMING)
        assert len(acc.recent_events) == 8

    def test_terminal_phases(self):
        acc = StreamingAccumulator(turn_key="k")
        assert not acc.is_terminal
        acc.phase = StreamPhase.ERROR
        assert acc.is_terminal


class TestErrors:

    def test_model_service_error_envelope(self):
        err = ModelServiceError("slow down", ErrorCode.RATE_LIMIT, retry_after_ms=2000, status_code=429)
        body = err.to_response()["error"]
        assert body["code"] == "rate_limit"
        assert body["retryable"] is True
        assert body["status_code"] == 429
        assert body["context"]["retry_after_ms"] == 2000
        assert body["category"] == "external_api"

    def test_timeout_category(self):
        assert ModelServiceError("t", ErrorCode.TIMEOUT).category == ErrorCategory.TIMEOUT

    def test_budget_error_message(self):
        err = BudgetExceededError(0.0234, 0.01)
        assert err.code == "budget_exceeded"
        assert "$0.0100" in err.message and "$0.0234" in err.message

    def test_loop_exceeded(self):
        err = AgentLoopExceededError(5)
        assert err.code == "AGENT_LOOP_EXCEEDED"
        assert "(5)" in err.message

    def test_tool_not_found(self):
        err = ToolNotFoundError("foo")
        assert err.message == "Tool 'foo' not found"
        assert err.context.tool_name == "foo"
