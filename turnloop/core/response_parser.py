"""Response Parser — converts one complete service response into a ParsedTurn.

Invariants:
    - parse() handles SDK objects and plain dicts alike (field access via block_field)
    - Content blocks processed in order; unknown block types logged and skipped
    - sanitize_tool_parameters() is total: never raises, always returns a dict
    - is_complete() is pure and idempotent on the same turn

Design Decisions:
    - Completion tool call is the primary completion signal; free-text matching is
      an opt-in fallback (text_fallback=False by default) because phrasing is unreliable
    - Thinking blocks kept twice: concatenated for display, individually with
      signatures for replay in history
"""

import json
import logging
import re
from collections.abc import Iterable
from typing import Any

from turnloop.core.domain_types import (
    COMPLETION_STOP_REASONS,
    DEFAULT_COMPLETION_TOOLS,
)
from turnloop.core.turn_types import ParsedTurn, ThinkingBlock, ToolCall, Usage

logger = logging.getLogger(__name__)

_COMPLETION_PATTERNS = (
    re.compile(r"task\s+completed", re.IGNORECASE),
    re.compile(r"work\s+finished", re.IGNORECASE),
    re.compile(r"implementation\s+complete", re.IGNORECASE),
    re.compile(r"requirements\s+satisfied", re.IGNORECASE),
)


def block_field(obj: Any, name: str, default: Any = None) -> Any:
    """Read a field from a dict or an SDK model object."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


# -- Parsing -------------------------------------------------------------------

def parse(response: Any) -> ParsedTurn:
    """Reconstruct a ParsedTurn from a complete (batch) response."""
    turn = ParsedTurn(
        stop_reason=block_field(response, "stop_reason") or "unknown",
        usage=parse_usage(block_field(response, "usage")),
        message_id=block_field(response, "id"),
    )
    for block in block_field(response, "content") or []:
        _parse_block(block, turn)

    logger.debug(
        "Response parsed",
        extra={
            "text_length": len(turn.text_content),
            "thinking_blocks": len(turn.thinking_blocks),
            "tool_calls": len(turn.tool_calls),
            "stop_reason": turn.stop_reason,
        },
    )
    return turn


def parse_with_fallback(response: Any) -> ParsedTurn:
    """parse() that never raises — minimal turn with stop_reason='error' on failure."""
    try:
        return parse(response)
    except Exception as e:
        logger.error("Failed to parse response, using fallback: %s", e)
        content = block_field(response, "content")
        text = ""
        if isinstance(content, list) and content:
            text = block_field(content[0], "text") or ""
        return ParsedTurn(
            text_content=text or "Error parsing response", stop_reason="error",
        )


def parse_usage(usage: Any) -> Usage:
    """Usage counters; missing fields default to 0, negatives clamp to 0."""
    return Usage(
        input_tokens=block_field(usage, "input_tokens", 0) or 0,
        output_tokens=block_field(usage, "output_tokens", 0) or 0,
        thinking_tokens=block_field(usage, "thinking_tokens", 0) or 0,
    )


def _parse_block(block: Any, turn: ParsedTurn) -> None:
    btype = block_field(block, "type")

    if btype == "text":
        turn.text_content += block_field(block, "text") or ""
        return

    if btype == "thinking":
        thinking = block_field(block, "thinking") or ""
        turn.thinking_blocks.append(ThinkingBlock(
            content=thinking,
            signature=block_field(block, "signature") or "",
        ))
        turn.thinking_content += thinking
        return

    if btype == "redacted_thinking":
        turn.thinking_blocks.append(ThinkingBlock(
            content="", signature=block_field(block, "data") or "",
            redacted=True,
        ))
        return

    if btype == "tool_use":
        name = block_field(block, "name") or ""
        turn.tool_calls.append(ToolCall(
            id=block_field(block, "id") or "",
            name=name,
            parameters=sanitize_tool_parameters(
                block_field(block, "input"), name,
            ),
        ))
        return

    logger.warning("Unknown content block type: %s", btype)


# -- Tool parameters -----------------------------------------------------------

def sanitize_tool_parameters(value: Any, tool_name: str = "") -> dict:
    """Coerce tool input into a dict. Never raises."""
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except (json.JSONDecodeError, ValueError):
            logger.warning(
                "Unparseable tool parameters, wrapping raw string",
                extra={"tool_name": tool_name},
            )
            return {"input": value}
        if isinstance(parsed, dict):
            return parsed
        return {"value": parsed}
    return {"value": value}


# -- Completion & usage --------------------------------------------------------

def is_complete(
    turn: ParsedTurn,
    completion_tools: Iterable[str] = DEFAULT_COMPLETION_TOOLS,
    text_fallback: bool = False,
) -> bool:
    """True when the turn signals task completion."""
    if turn.stop_reason in COMPLETION_STOP_REASONS:
        return True
    tools = frozenset(completion_tools)
    if any(call.name in tools for call in turn.tool_calls):
        return True
    if text_fallback:
        return any(p.search(turn.text_content) for p in _COMPLETION_PATTERNS)
    return False


def usage_stats(turn: ParsedTurn) -> dict[str, int]:
    u = turn.usage
    return {
        "input_tokens": u.input_tokens,
        "output_tokens": u.output_tokens,
        "thinking_tokens": u.thinking_tokens,
        "total_tokens": u.total,
    }


def validate_response(response: Any) -> tuple[bool, list[str]]:
    """Structural check of a raw response. Returns (is_valid, errors)."""
    if response is None:
        return False, ["Response is null"]
    errors = []
    content = block_field(response, "content")
    if content is None:
        errors.append("Response missing content")
    elif not isinstance(content, list):
        errors.append("Response content is not a list")
    if not block_field(response, "stop_reason"):
        errors.append("Response missing stop_reason")
    if block_field(response, "usage") is None:
        errors.append("Response missing usage information")
    return not errors, errors
