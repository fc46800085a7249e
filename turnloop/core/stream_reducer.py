"""Stream Reducer — folds an ordered streaming event sequence into a ParsedTurn.

Invariants:
    - apply_event(acc, event) is the only writer of a StreamingAccumulator
    - Events applied strictly in arrival order; text/thinking buffers are append-only
    - Post-terminal events (after COMPLETE or ERROR) are a no-op plus a diagnostic
    - finalize_turn() text == concatenation of every text_delta payload
    - compute_progress() reads only the bounded recent_events window (O(1) per tick)

Design Decisions:
    - Explicit reducer returning signals instead of event-emitter callbacks:
      unit-testable without an event loop, the async driver decides delivery
    - Tool input reassembled from input_json_delta fragments at content_block_stop
    - Service-reported stop_reason kept; defaults to end_turn when none was sent
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable

from turnloop.core.domain_types import (
    CHARS_PER_TOKEN,
    DEFAULT_THINKING_SIGNATURE,
    PHASE_PRIORITY,
    SignalKind,
    StreamPhase,
)
from turnloop.core.response_parser import parse_usage, sanitize_tool_parameters
from turnloop.core.turn_types import (
    OpenBlock,
    ParsedTurn,
    StreamingAccumulator,
    StreamingEvent,
    ThinkingBlock,
    ToolCall,
)

logger = logging.getLogger(__name__)

_PHASE_MESSAGES = {
    StreamPhase.STARTING: "Initiating streaming connection...",
    StreamPhase.STREAMING: "Receiving text...",
    StreamPhase.THINKING: "Thinking...",
    StreamPhase.TOOL_USE: "Preparing tool calls...",
    StreamPhase.COMPLETE: "Streaming complete",
    StreamPhase.ERROR: "Streaming failed",
}

_BLOCK_PHASES = {
    "text": StreamPhase.STREAMING,
    "thinking": StreamPhase.THINKING,
    "redacted_thinking": StreamPhase.THINKING,
    "tool_use": StreamPhase.TOOL_USE,
}


@dataclass
class StreamSignal:
    """Side-effect request emitted by the reducer for the async driver."""
    kind: SignalKind
    payload: Any = None


# -- Public API ----------------------------------------------------------------

def apply_event(
    acc: StreamingAccumulator, event: StreamingEvent,
) -> list[StreamSignal]:
    """Apply one event to the accumulator (in place). Returns emitted signals."""
    if acc.is_terminal:
        logger.warning(
            "Streaming event after terminal state ignored",
            extra={"event_type": event.type, "phase": acc.phase.value},
        )
        return []

    handler = _HANDLERS.get(event.type)
    if handler is None:
        logger.debug("Unknown streaming event type: %s", event.type)
        return []

    acc.events.append(event)
    before = acc.phase
    signals = handler(acc, event)
    acc.recent_events.append(acc.phase)
    if acc.phase != before:
        signals.insert(0, StreamSignal(SignalKind.PHASE, acc.phase))
    return signals


def cancel_accumulator(acc: StreamingAccumulator) -> list[StreamSignal]:
    """Explicit stop: keep accumulated text/thinking, drop half-built tool calls."""
    if acc.is_terminal:
        return []
    _close_thinking(acc, None)
    acc.open_blocks.clear()
    acc.cancelled = True
    acc.phase = StreamPhase.COMPLETE
    acc.recent_events.append(acc.phase)
    return [
        StreamSignal(SignalKind.FLUSH),
        StreamSignal(SignalKind.PHASE, acc.phase),
        StreamSignal(SignalKind.COMPLETE),
    ]


def finalize_turn(acc: StreamingAccumulator) -> ParsedTurn:
    """Build the ParsedTurn from a completed (or cancelled) accumulator."""
    return ParsedTurn(
        text_content=acc.text_buffer,
        thinking_content=acc.thinking_content,
        thinking_blocks=list(acc.thinking_blocks),
        tool_calls=list(acc.tool_calls),
        stop_reason=acc.stop_reason or "end_turn",
        usage=acc.usage,
        message_id=acc.message_id,
        cancelled=acc.cancelled,
    )


def compute_progress(acc: StreamingAccumulator, now: float) -> dict:
    """Progress payload derived from the trailing event window."""
    if acc.phase == StreamPhase.ERROR:
        phase = StreamPhase.ERROR
    elif acc.recent_events:
        phase = max(acc.recent_events, key=lambda p: PHASE_PRIORITY.get(p, 0))
    else:
        phase = StreamPhase.STARTING

    if acc.usage_reported:
        tokens = acc.usage.output_tokens + acc.usage.thinking_tokens
    else:
        tokens = acc.emitted_chars // CHARS_PER_TOKEN

    return {
        "phase": phase.value,
        "message": _PHASE_MESSAGES[phase],
        "tokens_received_estimate": tokens,
        "elapsed_ms": max(0, int((now - acc.start_time) * 1000)),
    }


# -- Event handlers ------------------------------------------------------------

def _on_message_start(acc, event):
    message = event.data.get("message") or {}
    acc.message_id = message.get("id") or acc.message_id
    acc.usage = parse_usage(message.get("usage"))
    acc.usage_reported = False
    acc.phase = StreamPhase.STREAMING
    return []


def _on_block_start(acc, event):
    idx = _index(event)
    cb = event.data.get("content_block") or {}
    btype = cb.get("type", "text")
    block = OpenBlock(index=idx, block_type=btype)

    if btype == "tool_use":
        block.tool_id = cb.get("id")
        block.tool_name = cb.get("name")
        block.initial_input = cb.get("input")
    elif btype == "thinking":
        block.signature = cb.get("signature") or None
        _append_thinking(acc, cb.get("thinking") or "")
    elif btype == "redacted_thinking":
        block.signature = cb.get("data") or None

    acc.open_blocks[idx] = block
    acc.phase = _BLOCK_PHASES.get(btype, acc.phase)
    return []


def _on_block_delta(acc, event):
    delta = event.data.get("delta") or {}
    dtype = delta.get("type")
    block = acc.open_blocks.get(_index(event))

    if dtype == "text_delta":
        text = delta.get("text") or ""
        if not text:
            return []
        acc.text_buffer += text
        acc.emitted_chars += len(text)
        acc.phase = StreamPhase.STREAMING
        return [StreamSignal(SignalKind.TEXT, text)]

    if dtype == "thinking_delta":
        thinking = delta.get("thinking") or ""
        if not thinking:
            return []
        _append_thinking(acc, thinking)
        acc.phase = StreamPhase.THINKING
        return [StreamSignal(SignalKind.THINKING, thinking)]

    if dtype == "signature_delta":
        if block is not None:
            block.signature = (block.signature or "") + (delta.get("signature") or "")
        return []

    if dtype == "input_json_delta":
        if block is not None:
            block.json_fragments.append(delta.get("partial_json") or "")
        acc.phase = StreamPhase.TOOL_USE
        return []

    logger.debug("Unhandled delta type: %s", dtype)
    return []


def _on_block_stop(acc, event):
    signals = [StreamSignal(SignalKind.FLUSH)]
    block = acc.open_blocks.pop(_index(event), None)
    if block is not None:
        call = _finish_block(acc, block)
        if call is not None:
            signals.append(StreamSignal(SignalKind.TOOL_CALL, call))
    return signals


def _on_message_delta(acc, event):
    delta = event.data.get("delta") or {}
    if delta.get("stop_reason"):
        acc.stop_reason = delta["stop_reason"]
    usage = event.data.get("usage") or {}
    for key in ("input_tokens", "output_tokens", "thinking_tokens"):
        val = usage.get(key)
        if val is not None:
            setattr(acc.usage, key, max(0, int(val)))
    if usage.get("output_tokens") is not None:
        acc.usage_reported = True
    return []


def _on_message_stop(acc, event):
    signals = [StreamSignal(SignalKind.FLUSH)]
    for idx in sorted(acc.open_blocks):
        call = _finish_block(acc, acc.open_blocks[idx])
        if call is not None:
            signals.append(StreamSignal(SignalKind.TOOL_CALL, call))
    acc.open_blocks.clear()
    _close_thinking(acc, None)
    acc.phase = StreamPhase.COMPLETE
    signals.append(StreamSignal(SignalKind.COMPLETE))
    return signals


def _on_error(acc, event):
    err = event.data.get("error") or event.data
    acc.error = {
        "type": err.get("type", "unknown_error"),
        "message": err.get("message", ""),
    }
    acc.phase = StreamPhase.ERROR
    return [StreamSignal(SignalKind.ERROR, acc.error)]


def _on_ping(acc, event):
    return []


_HANDLERS: dict[str, Callable[[StreamingAccumulator, StreamingEvent], list]] = {
    "message_start": _on_message_start,
    "content_block_start": _on_block_start,
    "content_block_delta": _on_block_delta,
    "content_block_stop": _on_block_stop,
    "message_delta": _on_message_delta,
    "message_stop": _on_message_stop,
    "error": _on_error,
    "ping": _on_ping,
}


# -- Helpers -------------------------------------------------------------------

def _index(event: StreamingEvent) -> int:
    if event.index is not None:
        return event.index
    return int(event.data.get("index") or 0)


def _append_thinking(acc: StreamingAccumulator, thinking: str) -> None:
    if thinking:
        acc.thinking_buffer += thinking
        acc.thinking_content += thinking
        acc.emitted_chars += len(thinking)


def _close_thinking(acc: StreamingAccumulator, signature: str | None) -> None:
    if acc.thinking_buffer:
        acc.thinking_blocks.append(ThinkingBlock(
            content=acc.thinking_buffer,
            signature=signature or DEFAULT_THINKING_SIGNATURE,
        ))
        acc.thinking_buffer = ""


def _finish_block(
    acc: StreamingAccumulator, block: OpenBlock,
) -> ToolCall | None:
    """Close a content block. Returns the ToolCall for tool_use blocks."""
    if block.block_type == "thinking":
        _close_thinking(acc, block.signature)
        return None
    if block.block_type == "redacted_thinking":
        acc.thinking_blocks.append(ThinkingBlock(
            content="", signature=block.signature or "", redacted=True,
        ))
        return None
    if block.block_type != "tool_use":
        return None

    raw = "".join(block.json_fragments)
    params = sanitize_tool_parameters(
        raw if raw else block.initial_input, block.tool_name or "",
    )
    call = ToolCall(
        id=block.tool_id or f"tool_{acc.turn_key}_{block.index}",
        name=block.tool_name or "unknown",
        parameters=params,
    )
    acc.tool_calls.append(call)
    return call
