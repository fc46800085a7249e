"""Domain Types — enums and identity types shared across the conversation engine.

Invariants:
    - All valid states encoded as Enums — no raw string matching outside core/
    - RETRYABLE_CODES is the single source of truth for retry eligibility

Design Decisions:
    - str Enums: serialize to JSON and compare equal to the wire strings
    - NewType for ids: zero runtime cost, full type-checker support
"""

from enum import Enum
from typing import NewType


# ─── Identity Types ──────────────────────────────────────────────

ConversationId = NewType("ConversationId", str)
TurnKey = NewType("TurnKey", str)


# ─── Enums ───────────────────────────────────────────────────────

class ErrorCode(str, Enum):
    """Diagnosis assigned to a failed model-service call."""
    RATE_LIMIT = "rate_limit"
    OVERLOADED = "overloaded"
    CONTEXT_OVERFLOW = "context_overflow"
    INVALID_REQUEST = "invalid_request"
    AUTHENTICATION = "authentication"
    PERMISSION_DENIED = "permission_denied"
    NOT_FOUND = "not_found"
    SERVER_ERROR = "server_error"
    TIMEOUT = "timeout"
    NETWORK = "network"
    BUDGET_EXCEEDED = "budget_exceeded"
    UNKNOWN = "unknown"


RETRYABLE_CODES = frozenset({
    ErrorCode.RATE_LIMIT,
    ErrorCode.OVERLOADED,
    ErrorCode.SERVER_ERROR,
    ErrorCode.TIMEOUT,
    ErrorCode.NETWORK,
})


class StreamPhase(str, Enum):
    """Lifecycle of one streamed turn."""
    STARTING = "starting"
    STREAMING = "streaming"
    THINKING = "thinking"
    TOOL_USE = "tool_use"
    COMPLETE = "complete"
    ERROR = "error"


# Higher wins when several phases appear in the trailing event window.
PHASE_PRIORITY = {
    StreamPhase.STARTING: 0,
    StreamPhase.STREAMING: 1,
    StreamPhase.TOOL_USE: 2,
    StreamPhase.THINKING: 3,
    StreamPhase.COMPLETE: 4,
}

TERMINAL_PHASES = frozenset({StreamPhase.COMPLETE, StreamPhase.ERROR})


class ConversationStatus(str, Enum):
    """Orchestrator loop states — RUNNING until exactly one terminal state."""
    RUNNING = "running"
    COMPLETED = "completed"
    BUDGET_EXCEEDED = "budget_exceeded"
    MAX_ITERATIONS = "max_iterations"
    FAILED = "failed"


class SignalKind(str, Enum):
    """Signals emitted by the stream reducer for the async driver."""
    TEXT = "text"
    THINKING = "thinking"
    TOOL_CALL = "tool_call"
    PHASE = "phase"
    FLUSH = "flush"
    COMPLETE = "complete"
    ERROR = "error"


# ─── Constants ───────────────────────────────────────────────────

COMPLETION_STOP_REASONS = frozenset({"end_turn", "stop_sequence"})
DEFAULT_COMPLETION_TOOLS = frozenset({"report_complete", "task_complete"})
DEFAULT_THINKING_SIGNATURE = "thinking"
CHARS_PER_TOKEN = 4
