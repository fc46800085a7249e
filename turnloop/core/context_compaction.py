"""Context Compaction — pure functions bounding history growth.

Invariants:
    - All functions are pure (no IO) and return NEW lists — never mutate input
    - System entries and the anchor prompt (first message) are never dropped
    - Only the oldest non-system entries are dropped; the most recent context survives
    - tool_use_id always preserved; a kept tool_result never loses its tool_use
    - Role alternation preserved: anchor user → summary assistant → ack user → tail

Design Decisions:
    - Token size estimated at ~4 characters per token (no tokenizer dependency)
    - Static summary pair (not model-generated) to avoid an extra service call
    - Re-compaction replaces the previous summary pair instead of stacking another
"""

import json
import math

from turnloop.core.domain_types import CHARS_PER_TOKEN


_COMPACTED_MARKER = "__COMPACTED__"


# === Public API ===============================================================

def optimize_context(
    messages: list[dict], *, max_tokens: int = 180_000,
    keep_recent: int = 10, preserve_tool_n: int = 4,
) -> list[dict]:
    """Trim old tool results, then prune if still over the threshold."""
    if not should_prune(messages, max_tokens=max_tokens):
        return messages
    result = trim_old_tool_results(messages, preserve_last_n=preserve_tool_n)
    if should_prune(result, max_tokens=max_tokens):
        result = prune_history(result, keep_recent=keep_recent)
    return result


def estimate_tokens(messages: list[dict]) -> int:
    """Rough token estimate over text, thinking, tool inputs and tool results."""
    return sum(_estimate_text(text) for text in _iter_text(messages))


def should_prune(messages: list[dict], *, max_tokens: int = 180_000) -> bool:
    return estimate_tokens(messages) > max_tokens


def prune_history(messages: list[dict], keep_recent: int = 10) -> list[dict]:
    """Drop the oldest non-system entries, keeping anchor + last N (+ summary pair)."""
    if not messages:
        return []

    anchor_idx = _anchor_index(messages)
    tail_start = _tail_start(messages, keep_recent, anchor_idx)
    if tail_start is None:
        return messages

    dropped = [
        m for m in messages[anchor_idx + 1:tail_start]
        if m.get("role") != "system" and not _is_summary(m)
    ]
    if not dropped:
        return messages

    head = [
        m for i, m in enumerate(messages[:tail_start])
        if i <= anchor_idx or m.get("role") == "system"
    ]
    return head + _summary_pair(len(dropped)) + messages[tail_start:]


def trim_old_tool_results(
    messages: list[dict], preserve_last_n: int = 4,
) -> list[dict]:
    """Replace old tool_result content with [ok] or [error].

    Preserves the last N user messages that contain tool_result blocks.
    """
    tr_indices = _find_user_tool_result_indices(messages)
    if len(tr_indices) <= preserve_last_n:
        return messages

    to_trim = set(tr_indices[:-preserve_last_n] if preserve_last_n else tr_indices)
    return [
        _trim_tool_result_msg(msg) if i in to_trim else msg
        for i, msg in enumerate(messages)
    ]


# === Private helpers ==========================================================

def _iter_text(messages: list[dict]):
    for msg in messages:
        content = msg.get("content")
        if isinstance(content, str):
            yield content
            continue
        if not isinstance(content, list):
            continue
        for block in content:
            if not isinstance(block, dict):
                continue
            for key in ("text", "thinking"):
                if isinstance(block.get(key), str):
                    yield block[key]
            inner = block.get("content")
            if isinstance(inner, str):
                yield inner
            if block.get("type") == "tool_use":
                yield json.dumps(block.get("input") or {}, ensure_ascii=False)


def _estimate_text(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _anchor_index(messages: list[dict]) -> int:
    """Index of the first non-system message (the initial prompt)."""
    for i, msg in enumerate(messages):
        if msg.get("role") != "system":
            return i
    return len(messages) - 1


def _tail_start(
    messages: list[dict], keep_recent: int, anchor_idx: int,
) -> int | None:
    """First index of the kept tail; always an assistant message."""
    start = max(anchor_idx + 1, len(messages) - max(1, keep_recent))
    while start < len(messages):
        msg = messages[start]
        if msg.get("role") == "assistant" and not _is_summary(msg):
            return start
        start += 1
    return None


def _is_summary(msg: dict) -> bool:
    content = msg.get("content")
    if isinstance(content, list):
        return any(
            isinstance(b, dict) and _COMPACTED_MARKER in (b.get("text") or "")
            for b in content
        )
    return isinstance(content, str) and _COMPACTED_MARKER in content


def _summary_pair(dropped: int) -> list[dict]:
    return [
        {
            "role": "assistant",
            "content": [{
                "type": "text",
                "text": (
                    f"[{_COMPACTED_MARKER}] Prior {dropped} messages compacted."
                    " Key context preserved in recent messages."
                ),
            }],
        },
        {
            "role": "user",
            "content": f"[{_COMPACTED_MARKER}] Acknowledged. Continue with the current task.",
        },
    ]


def _find_user_tool_result_indices(messages: list[dict]) -> list[int]:
    indices = []
    for i, msg in enumerate(messages):
        if msg.get("role") != "user":
            continue
        content = msg.get("content")
        if not isinstance(content, list):
            continue
        if any(b.get("type") == "tool_result" for b in content):
            indices.append(i)
    return indices


def _trim_tool_result_msg(msg: dict) -> dict:
    new_content = []
    for block in msg.get("content", []):
        if block.get("type") == "tool_result":
            trimmed = {
                "type": "tool_result",
                "tool_use_id": block["tool_use_id"],
                "content": "[error]" if block.get("is_error") else "[ok]",
            }
            if block.get("is_error"):
                trimmed["is_error"] = True
            new_content.append(trimmed)
        else:
            new_content.append(block)
    return {**msg, "content": new_content}
