"""Error Hierarchy — typed, categorized exceptions for every conversation failure mode.

Invariants:
    - Each error carries a string code plus an ErrorCategory and an ErrorSeverity
    - ModelServiceError always carries an ErrorCode and a retryable flag derived from it
    - to_response() produces a JSON-safe envelope; no raw exception objects leak out

Design Decisions:
    - Single hierarchy with TurnloopError base: callers catch one type
    - ErrorContext as dataclass: rich observability without coupling to logging
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from turnloop.core.domain_types import ErrorCode, RETRYABLE_CODES


class ErrorSeverity(str, Enum):
    """Error severity for observability and caller handling."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    """Coarse grouping used by callers deciding how to react."""
    VALIDATION = "validation"
    BUSINESS_RULE = "business_rule"
    RESOURCE_NOT_FOUND = "resource_not_found"
    EXTERNAL_API = "external_api"
    INTERNAL = "internal"
    TIMEOUT = "timeout"


@dataclass
class ErrorContext:
    """Where in the conversation the failure happened."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    conversation_id: str | None = None
    iteration: int | None = None
    tool_name: str | None = None
    attempt: int | None = None
    debug_info: dict[str, Any] | None = None
    retry_after_ms: int | None = None


class TurnloopError(Exception):
    """Base exception for all turnloop errors."""

    def __init__(
        self,
        message: str,
        code: str,
        category: ErrorCategory,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: ErrorContext | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.category = category
        self.severity = severity
        self.context = context or ErrorContext()

    def to_response(self) -> dict:
        """Convert to a standardized error envelope."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "category": self.category.value,
                "severity": self.severity.value,
                "timestamp": self.context.timestamp.isoformat(),
                "context": {
                    "conversation_id": self.context.conversation_id,
                    "iteration": self.context.iteration,
                    "tool_name": self.context.tool_name,
                    "attempt": self.context.attempt,
                    "retry_after_ms": self.context.retry_after_ms,
                },
            }
        }


# ─── Service Errors ─────────────────────────────────────────────

class ModelServiceError(TurnloopError):
    """Classified language-model service failure."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        retry_after_ms: int | None = None,
        status_code: int | None = None,
        context: ErrorContext | None = None,
    ):
        ctx = context or ErrorContext()
        ctx.retry_after_ms = retry_after_ms
        retryable = error_code in RETRYABLE_CODES
        super().__init__(
            message, error_code.value,
            ErrorCategory.TIMEOUT if error_code == ErrorCode.TIMEOUT
            else ErrorCategory.EXTERNAL_API,
            ErrorSeverity.WARNING if retryable else ErrorSeverity.CRITICAL,
            ctx,
        )
        self.error_code = error_code
        self.retryable = retryable
        self.retry_after_ms = retry_after_ms
        self.status_code = status_code

    def to_response(self) -> dict:
        envelope = super().to_response()
        envelope["error"]["retryable"] = self.retryable
        envelope["error"]["status_code"] = self.status_code
        return envelope


class StreamTimeoutError(TurnloopError):
    """No streaming event arrived within the inactivity ceiling."""
    def __init__(self, timeout_seconds: float, context: ErrorContext | None = None):
        super().__init__(
            f"Streaming inactivity timeout after {timeout_seconds:g}s",
            "STREAM_TIMEOUT", ErrorCategory.TIMEOUT,
            ErrorSeverity.WARNING, context,
        )
        self.timeout_seconds = timeout_seconds


# ─── Domain Errors ──────────────────────────────────────────────

class BudgetExceededError(TurnloopError):
    """Running cost met or exceeded the conversation budget."""
    def __init__(
        self, total_cost: float, budget: float, context: ErrorContext | None = None,
    ):
        super().__init__(
            f"Cost budget of ${budget:.4f} exceeded (actual: ${total_cost:.4f})",
            ErrorCode.BUDGET_EXCEEDED.value, ErrorCategory.BUSINESS_RULE,
            ErrorSeverity.ERROR, context,
        )
        self.total_cost = total_cost
        self.budget = budget


class AgentLoopExceededError(TurnloopError):
    """Conversation reached the maximum iteration limit."""
    def __init__(self, max_iterations: int, context: ErrorContext | None = None):
        super().__init__(
            f"Conversation exceeded maximum iteration limit ({max_iterations})",
            "AGENT_LOOP_EXCEEDED", ErrorCategory.INTERNAL,
            ErrorSeverity.ERROR, context,
        )
        self.max_iterations = max_iterations


class ToolNotFoundError(TurnloopError):
    """Requested capability is not registered."""
    def __init__(self, tool_name: str, context: ErrorContext | None = None):
        ctx = context or ErrorContext()
        ctx.tool_name = tool_name
        super().__init__(
            f"Tool '{tool_name}' not found",
            "TOOL_NOT_FOUND", ErrorCategory.RESOURCE_NOT_FOUND,
            ErrorSeverity.WARNING, ctx,
        )
        self.tool_name = tool_name
