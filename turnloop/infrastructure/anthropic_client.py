"""Anthropic Model Service — AsyncAnthropic adapter for batch and streaming turns.

Invariants:
    - SDK-level retries disabled (max_retries=0): RetryPolicy owns every retry
    - All SDK failures mapped to ModelServiceError via classify() (core/error_classifier.py);
      the SDK exception type decides the code wherever it is unambiguous
    - Streams are always closed on exit, including cancellation
    - Raw SDK stream events converted to StreamingEvent dicts; core never sees SDK types

Design Decisions:
    - Beta endpoint used only when betas are configured (1M context, interleaved thinking)
    - Raw create(stream=True) over messages.stream(): the stream reducer rebuilds the
      turn itself, so the SDK's own accumulation would be duplicated work
    - CancelledError (BaseException) passes through uncaught
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import anthropic
import httpx
from anthropic import APIError

from turnloop.core.domain_types import ErrorCode
from turnloop.core.error_classifier import classify
from turnloop.core.protocols import TurnRequest
from turnloop.core.turn_types import StreamingEvent

logger = logging.getLogger(__name__)


class AnthropicModelService:
    """ModelService backed by the Anthropic Messages API."""

    # 1M context window beta; premium pricing applies above 200K input tokens.
    CONTEXT_1M_BETA = "context-1m-2025-08-07"
    INTERLEAVED_THINKING_BETA = "interleaved-thinking-2025-05-14"

    def __init__(
        self,
        api_key: str,
        model: str,
        max_tokens: int = 16_384,
        timeout_seconds: int = 300,
        betas: list[str] | None = None,
        thinking_budget: int | None = None,
        client: Any = None,
    ):
        self.client = client or anthropic.AsyncAnthropic(
            api_key=api_key,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            max_retries=0,
        )
        self.model = model
        self.max_tokens = max_tokens
        self.betas = list(betas or [])
        self.thinking_budget = thinking_budget

    @classmethod
    def from_settings(cls, settings) -> "AnthropicModelService":
        return cls(
            api_key=settings.anthropic_api_key,
            model=settings.anthropic_model,
            max_tokens=settings.anthropic_max_tokens,
            timeout_seconds=settings.anthropic_timeout_seconds,
            betas=settings.anthropic_betas,
            thinking_budget=settings.anthropic_thinking_budget,
        )

    async def create(self, request: TurnRequest):
        """One batch turn. Raises ModelServiceError on any SDK failure."""
        try:
            response = await self._call_api(request, stream=False)
        except APIError as e:
            raise classify(e, code=sdk_error_code(e)) from e
        self._log_success(response)
        return response

    @asynccontextmanager
    async def open_stream(self, request: TurnRequest):
        """Stream one turn as StreamingEvents.

        Catches errors from both connection setup AND mid-stream (errors from
        the caller's async for propagate through the yield).
        """
        try:
            stream = await self._call_api(request, stream=True)
        except APIError as e:
            raise classify(e, code=sdk_error_code(e)) from e
        try:
            yield _convert_events(stream)
        except APIError as e:
            raise classify(e, code=sdk_error_code(e)) from e
        finally:
            await stream.close()

    async def _call_api(self, request: TurnRequest, *, stream: bool):
        """Route to beta or standard endpoint based on betas."""
        params = self._params(request)
        if stream:
            params["stream"] = True
        betas = request.betas or self.betas
        if betas:
            return await self.client.beta.messages.create(**params, betas=betas)
        return await self.client.messages.create(**params)

    def _params(self, request: TurnRequest) -> dict:
        params: dict[str, Any] = {
            "model": request.model or self.model,
            "max_tokens": request.max_tokens or self.max_tokens,
            "system": request.system,
            "messages": request.messages,
        }
        if request.tools:
            params["tools"] = request.tools
        budget = request.thinking_budget or self.thinking_budget
        if budget:
            params["thinking"] = {"type": "enabled", "budget_tokens": budget}
        return params

    def _log_success(self, response) -> None:
        usage = getattr(response, "usage", None)
        logger.info(
            "Anthropic API success",
            extra={
                "input_tokens": getattr(usage, "input_tokens", None),
                "output_tokens": getattr(usage, "output_tokens", None),
                "stop_reason": getattr(response, "stop_reason", None),
            },
        )


def sdk_error_code(error: APIError) -> ErrorCode | None:
    """ErrorCode implied by the SDK exception type; None falls back to classify()."""
    # APITimeoutError subclasses APIConnectionError: check it first
    if isinstance(error, anthropic.APITimeoutError):
        return ErrorCode.TIMEOUT
    if isinstance(error, anthropic.APIConnectionError):
        return ErrorCode.NETWORK
    if isinstance(error, anthropic.RateLimitError):
        return ErrorCode.RATE_LIMIT
    if isinstance(error, anthropic.InternalServerError):
        if getattr(error, "status_code", None) == 529:
            return ErrorCode.OVERLOADED
        return ErrorCode.SERVER_ERROR
    return None


async def _convert_events(stream) -> AsyncIterator[StreamingEvent]:
    async for raw in stream:
        data = event_to_dict(raw)
        yield StreamingEvent(
            type=data.get("type", ""), data=data, index=data.get("index"),
        )


def event_to_dict(raw: Any) -> dict:
    """SDK event model (or plain dict) to a plain dict."""
    if isinstance(raw, dict):
        return raw
    if hasattr(raw, "model_dump"):
        return raw.model_dump(exclude_none=True)
    return dict(vars(raw))
