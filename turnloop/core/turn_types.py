"""Turn Types — dataclasses for reconstructed turns, tool calls and conversation state.

Invariants:
    - ParsedTurn.tool_calls preserves arrival order
    - Usage counters are never negative (clamped on construction)
    - ToolExecutionResult pairs 1:1 with exactly one ToolCall
    - ConversationState.total_cost never decreases

Design Decisions:
    - Plain dataclasses, no IO: shared by the batch parser and the stream reducer
    - ThinkingBlock signature kept opaque — never parsed for control flow
"""

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from turnloop.core.domain_types import ConversationStatus, StreamPhase


RECENT_EVENT_WINDOW = 8


@dataclass
class Usage:
    """Token counters reported by the service for one turn."""
    input_tokens: int = 0
    output_tokens: int = 0
    thinking_tokens: int = 0

    def __post_init__(self):
        self.input_tokens = max(0, int(self.input_tokens or 0))
        self.output_tokens = max(0, int(self.output_tokens or 0))
        self.thinking_tokens = max(0, int(self.thinking_tokens or 0))

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens + self.thinking_tokens


@dataclass
class ThinkingBlock:
    """Opaque reasoning segment, preserved verbatim."""
    content: str
    signature: str
    redacted: bool = False


@dataclass
class ToolCall:
    id: str
    name: str
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolExecutionResult:
    """Normalized outcome of one tool call."""
    tool_call: ToolCall
    success: bool
    payload: str
    error: str | None = None
    duration_ms: int = 0


@dataclass
class ParsedTurn:
    """Structured decomposition of one model turn."""
    text_content: str = ""
    thinking_content: str = ""
    thinking_blocks: list[ThinkingBlock] = field(default_factory=list)
    tool_calls: list[ToolCall] = field(default_factory=list)
    stop_reason: str = "unknown"
    usage: Usage = field(default_factory=Usage)
    message_id: str | None = None
    cancelled: bool = False

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


@dataclass
class StreamingEvent:
    """One incremental event from a streamed turn."""
    type: str
    data: dict[str, Any] = field(default_factory=dict)
    index: int | None = None
    timestamp: float = field(default_factory=time.monotonic)


@dataclass
class OpenBlock:
    """A content block between content_block_start and content_block_stop."""
    index: int
    block_type: str
    tool_id: str | None = None
    tool_name: str | None = None
    json_fragments: list[str] = field(default_factory=list)
    initial_input: Any = None
    signature: str | None = None


@dataclass
class StreamingAccumulator:
    """Mutable per-turn state reconstructing a ParsedTurn from events."""
    turn_key: str
    start_time: float = field(default_factory=time.monotonic)
    message_id: str | None = None
    phase: StreamPhase = StreamPhase.STARTING
    text_buffer: str = ""
    thinking_buffer: str = ""
    thinking_content: str = ""
    thinking_blocks: list[ThinkingBlock] = field(default_factory=list)
    tool_calls: list[ToolCall] = field(default_factory=list)
    events: list[StreamingEvent] = field(default_factory=list)
    recent_events: deque = field(
        default_factory=lambda: deque(maxlen=RECENT_EVENT_WINDOW),
    )
    open_blocks: dict[int, OpenBlock] = field(default_factory=dict)
    usage: Usage = field(default_factory=Usage)
    usage_reported: bool = False
    stop_reason: str | None = None
    emitted_chars: int = 0
    error: dict[str, Any] | None = None
    cancelled: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.phase in (StreamPhase.COMPLETE, StreamPhase.ERROR)


@dataclass
class ConversationState:
    """Loop bookkeeping owned by exactly one orchestrator run."""
    conversation_id: str
    budget: float | None = None
    iteration_count: int = 0
    total_cost: float = 0.0
    status: ConversationStatus = ConversationStatus.RUNNING

    def add_cost(self, cost: float) -> float:
        """Add a turn's cost; negative costs are ignored. Returns the new total."""
        if cost > 0:
            self.total_cost += cost
        return self.total_cost

    def budget_reached(self) -> bool:
        return self.budget is not None and self.total_cost >= self.budget


@dataclass
class ConversationResult:
    """Outcome of run_conversation — always reports iterations and spend."""
    success: bool
    status: ConversationStatus
    iteration_count: int
    total_cost: float
    conversation_id: str
    final_turn: ParsedTurn | None = None
    error: Exception | None = None
    cancelled: bool = False
    messages: list[dict] = field(default_factory=list)
