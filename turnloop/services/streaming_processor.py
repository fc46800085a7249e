"""Streaming Processor — async driver feeding stream events through the pure reducer.

Invariants:
    - Events consumed strictly in arrival order; one accumulator per in-flight turn
    - Every buffered character reaches its callback (flush on block stop, message
      stop, cancellation, and on exit)
    - No event within inactivity_timeout → StreamTimeoutError (retryable as timeout)
    - An `error` event raises the classified ModelServiceError for the turn
    - Callback failures are logged, never propagated into the stream

Design Decisions:
    - Accumulators live in an AccumulatorRegistry owned by one orchestrator:
      concurrent conversations never share streaming state
    - The reducer (core/stream_reducer.py) decides WHAT happens; this module only
      decides WHEN (callbacks, typewriter ticks, progress timer)
    - cancel() is synchronous: it marks the accumulator COMPLETE and wakes the reader
"""

import asyncio
import contextlib
import inspect
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from turnloop.core.domain_types import SignalKind, StreamPhase
from turnloop.core.error_classifier import classify
from turnloop.core.errors import ErrorContext, StreamTimeoutError
from turnloop.core.output_buffer import OutputBuffer
from turnloop.core.stream_reducer import (
    StreamSignal,
    apply_event,
    cancel_accumulator,
    compute_progress,
    finalize_turn,
)
from turnloop.core.turn_types import ParsedTurn, StreamingAccumulator, StreamingEvent
from turnloop.schemas.conversation import ProgressUpdate

logger = logging.getLogger(__name__)


class AccumulatorRegistry:
    """Instance-owned map of turn key → active StreamingAccumulator."""

    def __init__(self):
        self._accumulators: dict[str, StreamingAccumulator] = {}

    def open(self, turn_key: str) -> StreamingAccumulator:
        """Fresh accumulator for turn_key; a stale active one is discarded."""
        stale = self._accumulators.get(turn_key)
        if stale is not None and not stale.is_terminal:
            logger.info(
                "Discarding stale accumulator (turn restarted)",
                extra={"turn_key": turn_key, "phase": stale.phase.value},
            )
        acc = StreamingAccumulator(turn_key=turn_key)
        self._accumulators[turn_key] = acc
        return acc

    def get(self, turn_key: str) -> StreamingAccumulator | None:
        return self._accumulators.get(turn_key)

    def release(self, turn_key: str) -> None:
        self._accumulators.pop(turn_key, None)

    def active_count(self) -> int:
        return sum(1 for acc in self._accumulators.values() if not acc.is_terminal)

    def __len__(self) -> int:
        return len(self._accumulators)


class StreamingProcessor:
    """Drives one streamed turn: events in, ParsedTurn out, callbacks along the way."""

    def __init__(
        self,
        registry: AccumulatorRegistry,
        *,
        inactivity_timeout: float = 120.0,
        typewriter: bool = False,
        typewriter_delay_ms: int = 15,
        progress_interval: float = 2.0,
        on_progress: Callable[[ProgressUpdate], Any] | None = None,
        on_partial_text: Callable[[str], Any] | None = None,
        on_partial_thinking: Callable[[str], Any] | None = None,
        context: ErrorContext | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.registry = registry
        self.inactivity_timeout = inactivity_timeout
        self.typewriter_delay_ms = typewriter_delay_ms
        self.progress_interval = progress_interval
        self.on_progress = on_progress
        self.on_partial_text = on_partial_text
        self.on_partial_thinking = on_partial_thinking
        self.context = context
        self._clock = clock
        self._sleep = sleep
        self._text = OutputBuffer(typewriter=typewriter)
        self._thinking = OutputBuffer(typewriter=typewriter)
        self._stop = asyncio.Event()
        self._acc: StreamingAccumulator | None = None

    @property
    def accumulator(self) -> StreamingAccumulator | None:
        return self._acc

    async def process(
        self, events: AsyncIterator[StreamingEvent], turn_key: str,
    ) -> ParsedTurn:
        """Consume the event stream for one turn and return the reconstructed turn."""
        acc = self.registry.open(turn_key)
        acc.start_time = self._clock()
        self._acc = acc
        progress_task = None
        if self.on_progress is not None and self.progress_interval > 0:
            progress_task = asyncio.create_task(self._progress_loop(acc))
        try:
            await self._consume(events.__aiter__(), acc)
            await self._flush()
            if acc.phase == StreamPhase.ERROR:
                err = acc.error or {}
                raise classify(
                    f"{err.get('type', 'unknown_error')}: {err.get('message', '')}",
                    self.context,
                )
            await self._emit_progress(acc)
            return finalize_turn(acc)
        finally:
            self.registry.release(turn_key)
            if progress_task is not None:
                progress_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await progress_task

    def cancel(self) -> ParsedTurn | None:
        """Stop the turn now. Returns the partial turn (cancelled=True)."""
        self._stop.set()
        acc = self._acc
        if acc is None:
            return None
        if not acc.is_terminal:
            cancel_accumulator(acc)
            logger.info(
                "Streaming turn cancelled", extra={"turn_key": acc.turn_key},
            )
        return finalize_turn(acc)

    # -- Event loop ------------------------------------------------------------

    async def _consume(
        self, iterator: AsyncIterator[StreamingEvent], acc: StreamingAccumulator,
    ) -> None:
        stop_waiter = asyncio.ensure_future(self._stop.wait())
        try:
            while not acc.is_terminal:
                next_event = asyncio.ensure_future(iterator.__anext__())
                done, _ = await asyncio.wait(
                    {next_event, stop_waiter},
                    timeout=self.inactivity_timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if next_event not in done:
                    next_event.cancel()
                    if self._stop.is_set():
                        break
                    acc.error = {"type": "timeout", "message": "inactivity"}
                    acc.phase = StreamPhase.ERROR
                    raise StreamTimeoutError(self.inactivity_timeout, self.context)
                try:
                    event = next_event.result()
                except StopAsyncIteration:
                    break
                for signal in apply_event(acc, event):
                    await self._handle(signal, acc)
        finally:
            stop_waiter.cancel()

        if self._stop.is_set():
            cancel_accumulator(acc)
        elif not acc.is_terminal:
            logger.warning(
                "Stream ended without message_stop, finalizing",
                extra={"turn_key": acc.turn_key},
            )
            for signal in apply_event(acc, StreamingEvent(type="message_stop")):
                await self._handle(signal, acc)

    async def _handle(self, signal: StreamSignal, acc: StreamingAccumulator) -> None:
        kind = signal.kind
        if kind == SignalKind.TEXT:
            await self._release(self._text, signal.payload, self.on_partial_text)
        elif kind == SignalKind.THINKING:
            await self._release(
                self._thinking, signal.payload, self.on_partial_thinking,
            )
        elif kind in (SignalKind.FLUSH, SignalKind.COMPLETE):
            await self._flush()
        elif kind == SignalKind.TOOL_CALL:
            logger.debug(
                "Tool call streamed", extra={"tool_name": signal.payload.name},
            )
        elif kind == SignalKind.ERROR:
            logger.warning(
                "Streaming error event: %s", signal.payload,
                extra={"turn_key": acc.turn_key},
            )

    # -- Output delivery -------------------------------------------------------

    async def _release(
        self, buffer: OutputBuffer, text: str, callback: Callable | None,
    ) -> None:
        immediate = buffer.feed(text)
        if immediate:
            await _invoke(callback, immediate)
            return
        # typewriter: one character per tick until drained or stopped
        while buffer and not self._stop.is_set():
            await _invoke(callback, buffer.take(1))
            await self._sleep(self.typewriter_delay_ms / 1000)

    async def _flush(self) -> None:
        text = self._text.drain()
        if text:
            await _invoke(self.on_partial_text, text)
        thinking = self._thinking.drain()
        if thinking:
            await _invoke(self.on_partial_thinking, thinking)

    # -- Progress --------------------------------------------------------------

    async def _progress_loop(self, acc: StreamingAccumulator) -> None:
        while not acc.is_terminal:
            await asyncio.sleep(self.progress_interval)
            await self._emit_progress(acc)

    async def _emit_progress(self, acc: StreamingAccumulator) -> None:
        if self.on_progress is None:
            return
        update = ProgressUpdate(**compute_progress(acc, self._clock()))
        await _invoke(self.on_progress, update)


async def _invoke(callback: Callable | None, arg: Any) -> None:
    """Call a sync or async callback; failures are logged, never raised."""
    if callback is None:
        return
    try:
        result = callback(arg)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.warning("Streaming callback failed: %s", e, exc_info=True)
