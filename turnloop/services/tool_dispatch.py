"""Tool Dispatch — concurrent execution of one turn's tool calls.

Invariants:
    - One ToolExecutionResult per ToolCall, in tool-call order
    - Unknown tools produce a failed result "Tool '<name>' not found" (never raises)
    - One failing call never aborts its siblings
    - Every return shape normalized at this boundary (bare str, envelope, other)
    - Every call logged with tool_name and duration

Design Decisions:
    - asyncio.gather fan-out/fan-in: all calls settle before the next turn
    - Handlers never raise into gather (execute() is the error boundary), so
      CancelledError is the only exception that escapes
"""

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from typing import Any

from turnloop.core.domain_types import DEFAULT_COMPLETION_TOOLS
from turnloop.core.errors import ErrorContext, ToolNotFoundError
from turnloop.core.message_builder import serialize_payload
from turnloop.core.protocols import CapabilityLookup
from turnloop.core.turn_types import ToolCall, ToolExecutionResult

logger = logging.getLogger(__name__)


class ToolDispatch:
    """Routes each tool call to its registered capability."""

    def __init__(
        self,
        registry: CapabilityLookup,
        completion_tools: Iterable[str] = DEFAULT_COMPLETION_TOOLS,
        context: ErrorContext | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry
        self.completion_tools = frozenset(completion_tools)
        self.context = context or ErrorContext()
        self._clock = clock

    async def execute_all(
        self, tool_calls: list[ToolCall],
    ) -> list[ToolExecutionResult]:
        """Run all calls concurrently. Results in call order."""
        if not tool_calls:
            return []
        results = list(await asyncio.gather(*(self.execute(c) for c in tool_calls)))
        failed = sum(1 for r in results if not r.success)
        logger.info(
            "Tool batch complete: %d succeeded, %d failed",
            len(results) - failed, failed,
            extra={
                "conversation_id": self.context.conversation_id,
                "iteration": self.context.iteration,
            },
        )
        return results

    async def execute(self, call: ToolCall) -> ToolExecutionResult:
        """Execute one call. Never raises (except cancellation)."""
        capability = self.registry.lookup(call.name)
        if capability is None:
            error = ToolNotFoundError(call.name)
            self._log(call, False, 0, error.message)
            return ToolExecutionResult(
                tool_call=call, success=False, payload="", error=error.message,
            )

        start = self._clock()
        try:
            raw = await capability.execute(call.parameters)
        except Exception as e:
            duration = _elapsed_ms(start, self._clock())
            logger.warning(
                "Tool '%s' raised: %s", call.name, e, exc_info=True,
                extra={"tool_name": call.name},
            )
            result = ToolExecutionResult(
                tool_call=call, success=False, payload="",
                error=f"Tool execution failed: {e}", duration_ms=duration,
            )
        else:
            result = normalize_result(call, raw, _elapsed_ms(start, self._clock()))
        self._log(call, result.success, result.duration_ms, result.error)
        return result

    def completion_signalled(self, results: list[ToolExecutionResult]) -> bool:
        """True if any successful call targets a completion tool."""
        return any(
            r.success and r.tool_call.name in self.completion_tools
            for r in results
        )

    def _log(
        self, call: ToolCall, success: bool, duration_ms: int, error: str | None,
    ) -> None:
        logger.info(
            "Tool '%s' %s in %dms%s", call.name,
            "succeeded" if success else "failed", duration_ms,
            "" if success else f": {error}",
            extra={
                "tool_name": call.name,
                "conversation_id": self.context.conversation_id,
                "iteration": self.context.iteration,
                "error_code": None if success else "TOOL_ERROR",
            },
        )


def normalize_result(
    call: ToolCall, raw: Any, duration_ms: int = 0,
) -> ToolExecutionResult:
    """Map a capability's return value onto ToolExecutionResult."""
    if isinstance(raw, str):
        return ToolExecutionResult(
            tool_call=call, success=True, payload=raw, duration_ms=duration_ms,
        )
    if _is_envelope(raw):
        if raw["success"]:
            body = raw["result"] if "result" in raw else raw
            return ToolExecutionResult(
                tool_call=call, success=True,
                payload=serialize_payload(body), duration_ms=duration_ms,
            )
        return ToolExecutionResult(
            tool_call=call, success=False, payload="",
            error=str(raw.get("error") or "Tool reported failure"),
            duration_ms=duration_ms,
        )
    return ToolExecutionResult(
        tool_call=call, success=True,
        payload=serialize_payload(raw), duration_ms=duration_ms,
    )


def _is_envelope(raw: Any) -> bool:
    return (
        isinstance(raw, dict)
        and isinstance(raw.get("success"), bool)
        and ("result" in raw or "error" in raw)
    )


def _elapsed_ms(start: float, end: float) -> int:
    return max(0, int((end - start) * 1000))
