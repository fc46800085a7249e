"""Message Builder — pure constructors for Anthropic-format history entries.

Invariants:
    - Assistant messages replay thinking blocks first, verbatim (content + signature)
    - Every tool_use id in an assistant message gets exactly one tool_result block
    - Builders return new dicts; history lists are never mutated here
"""

import json
from collections import Counter
from typing import Any

from turnloop.core.turn_types import ParsedTurn, ToolExecutionResult

CONTINUE_PROMPT = "Please continue with the task."

DEFAULT_SYSTEM_PROMPT = """You are an autonomous agent working on the task given in the first user message.

Operating protocol:
1. Continue working until the task is fully completed
2. Use the available tools to inspect your environment and carry out the work
3. Call report_complete with a summary once the task is finished"""


def user_message(text: str) -> dict:
    return {"role": "user", "content": text}


def assistant_message(turn: ParsedTurn) -> dict:
    """Assistant entry preserving thinking blocks, then text, then tool_use blocks."""
    content: list[dict[str, Any]] = []
    for block in turn.thinking_blocks:
        if block.redacted:
            content.append({"type": "redacted_thinking", "data": block.signature})
        else:
            content.append({
                "type": "thinking",
                "thinking": block.content,
                "signature": block.signature,
            })
    if turn.text_content.strip():
        content.append({"type": "text", "text": turn.text_content})
    for call in turn.tool_calls:
        content.append({
            "type": "tool_use",
            "id": call.id,
            "name": call.name,
            "input": call.parameters,
        })
    if not content:
        content.append({"type": "text", "text": "(no content)"})
    return {"role": "assistant", "content": content}


def tool_result_block(result: ToolExecutionResult) -> dict:
    block = {
        "type": "tool_result",
        "tool_use_id": result.tool_call.id,
        "content": result.payload if result.success else f"Error: {result.error}",
    }
    if not result.success:
        block["is_error"] = True
    return block


def tool_result_messages(results: list[ToolExecutionResult]) -> list[dict]:
    """Fold tool results into history.

    A single result is inlined as the only block of one user message; several
    results are batched into one user message, in tool-call order.
    """
    if not results:
        return []
    return [{
        "role": "user",
        "content": [tool_result_block(r) for r in results],
    }]


def serialize_payload(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


def conversation_summary(messages: list[dict], estimated_tokens: int) -> dict:
    """Message count, token estimate and per-tool usage counts."""
    names_by_id = {}
    for msg in messages:
        content = msg.get("content")
        if msg.get("role") == "assistant" and isinstance(content, list):
            for block in content:
                if block.get("type") == "tool_use":
                    names_by_id[block.get("id")] = block.get("name")

    usage: Counter = Counter()
    for msg in messages:
        content = msg.get("content")
        if msg.get("role") == "user" and isinstance(content, list):
            for block in content:
                if block.get("type") == "tool_result":
                    usage[names_by_id.get(block.get("tool_use_id"), "unknown")] += 1

    return {
        "message_count": len(messages),
        "estimated_tokens": estimated_tokens,
        "tool_usage": dict(usage),
    }
