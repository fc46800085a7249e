"""Anthropic Model Service tests — request params, beta routing, error mapping, streams.

Uses a fake SDK client: no network, no API key needed.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import anthropic
import httpx
import pytest

from turnloop.core.domain_types import ErrorCode
from turnloop.core.errors import ModelServiceError
from turnloop.core.protocols import TurnRequest
from turnloop.infrastructure.anthropic_client import AnthropicModelService, event_to_dict

_REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


class _FakeEvent:
    def __init__(self, **data):
        self._data = data

    def model_dump(self, exclude_none=False):
        if exclude_none:
            return {k: v for k, v in self._data.items() if v is not None}
        return dict(self._data)


class _FakeStream:
    def __init__(self, events, fail_after=None):
        self._events = list(events)
        self._fail_after = fail_after
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for i, ev in enumerate(self._events):
            if self._fail_after is not None and i == self._fail_after:
                raise anthropic.APIConnectionError(request=_REQUEST)
            yield ev

    async def close(self):
        self.closed = True


def _client(result):
    """SDK client double: messages.create and beta.messages.create as AsyncMocks."""
    kwargs = (
        {"side_effect": result} if isinstance(result, BaseException)
        else {"return_value": result}
    )
    return SimpleNamespace(
        messages=SimpleNamespace(create=AsyncMock(**kwargs)),
        beta=SimpleNamespace(messages=SimpleNamespace(create=AsyncMock(**kwargs))),
    )


def _service(result, **kwargs):
    kwargs.setdefault("model", "claude-test")
    return AnthropicModelService(api_key="sk-test", client=_client(result), **kwargs)


def _request(**kwargs):
    kwargs.setdefault("messages", [{"role": "user", "content": "hi"}])
    kwargs.setdefault("system", "Be brief.")
    return TurnRequest(**kwargs)


_RESPONSE = SimpleNamespace(
    id="msg_1", content=[], stop_reason="end_turn",
    usage=SimpleNamespace(input_tokens=5, output_tokens=2),
)


# --- Batch ----------------------------------------------------------------------

async def test_create_sends_core_params():
    service = _service(_RESPONSE)
    response = await service.create(_request(model=None, max_tokens=1024))
    assert response is _RESPONSE
    params = service.client.messages.create.call_args.kwargs
    assert params == {
        "model": "claude-test",
        "max_tokens": 1024,
        "system": "Be brief.",
        "messages": [{"role": "user", "content": "hi"}],
    }
    service.client.beta.messages.create.assert_not_called()


async def test_tools_and_thinking_included_when_set():
    tools = [{"name": "t", "description": "", "input_schema": {"type": "object"}}]
    service = _service(_RESPONSE, thinking_budget=8000)
    await service.create(_request(tools=tools))
    params = service.client.messages.create.call_args.kwargs
    assert params["tools"] == tools
    assert params["thinking"] == {"type": "enabled", "budget_tokens": 8000}


async def test_request_thinking_budget_overrides_default():
    service = _service(_RESPONSE, thinking_budget=8000)
    await service.create(_request(thinking_budget=2000))
    assert service.client.messages.create.call_args.kwargs["thinking"]["budget_tokens"] == 2000


async def test_betas_route_to_beta_endpoint():
    service = _service(_RESPONSE, betas=[AnthropicModelService.CONTEXT_1M_BETA])
    await service.create(_request())
    service.client.messages.create.assert_not_called()
    beta_params = service.client.beta.messages.create.call_args.kwargs
    assert beta_params["betas"] == ["context-1m-2025-08-07"]


async def test_connection_error_classified():
    service = _service(anthropic.APIConnectionError(request=_REQUEST))
    with pytest.raises(ModelServiceError) as exc_info:
        await service.create(_request())
    assert exc_info.value.error_code == ErrorCode.NETWORK
    assert exc_info.value.retryable
    assert isinstance(exc_info.value.__cause__, anthropic.APIConnectionError)


async def test_rate_limit_reads_retry_after_header():
    response = httpx.Response(429, headers={"retry-after": "3"}, request=_REQUEST)
    error = anthropic.RateLimitError("rate limit exceeded", response=response, body=None)
    with pytest.raises(ModelServiceError) as exc_info:
        await _service(error).create(_request())
    assert exc_info.value.error_code == ErrorCode.RATE_LIMIT
    assert exc_info.value.retry_after_ms == 3000
    assert exc_info.value.status_code == 429


@pytest.mark.parametrize("status, code", [
    (502, ErrorCode.SERVER_ERROR),
    (503, ErrorCode.SERVER_ERROR),
    (529, ErrorCode.OVERLOADED),
])
async def test_internal_server_error_is_retryable(status, code):
    response = httpx.Response(status, request=_REQUEST)
    error = anthropic.InternalServerError(
        f"Error code: {status} - upstream unavailable", response=response, body=None,
    )
    with pytest.raises(ModelServiceError) as exc_info:
        await _service(error).create(_request())
    assert exc_info.value.error_code == code
    assert exc_info.value.retryable
    assert exc_info.value.status_code == status


async def test_sdk_timeout_classified_as_timeout():
    service = _service(anthropic.APITimeoutError(request=_REQUEST))
    with pytest.raises(ModelServiceError) as exc_info:
        await service.create(_request())
    assert exc_info.value.error_code == ErrorCode.TIMEOUT
    assert exc_info.value.retryable


async def test_authentication_error_not_retryable():
    response = httpx.Response(401, request=_REQUEST)
    error = anthropic.AuthenticationError("invalid x-api-key", response=response, body=None)
    with pytest.raises(ModelServiceError) as exc_info:
        await _service(error).create(_request())
    assert exc_info.value.error_code == ErrorCode.AUTHENTICATION
    assert not exc_info.value.retryable


# --- Streaming ------------------------------------------------------------------

async def test_open_stream_converts_events_and_closes():
    stream = _FakeStream([
        _FakeEvent(type="message_start", message={"id": "m1"}),
        _FakeEvent(type="content_block_delta", index=0,
                   delta={"type": "text_delta", "text": "hi"}, extra=None),
        {"type": "message_stop"},
    ])
    service = _service(stream)
    async with service.open_stream(_request()) as events:
        received = [ev async for ev in events]

    assert [ev.type for ev in received] == [
        "message_start", "content_block_delta", "message_stop",
    ]
    assert received[1].index == 0
    assert "extra" not in received[1].data
    assert service.client.messages.create.call_args.kwargs["stream"] is True
    assert stream.closed


async def test_mid_stream_api_error_classified_and_stream_closed():
    stream = _FakeStream([
        _FakeEvent(type="message_start", message={"id": "m1"}),
        _FakeEvent(type="message_stop"),
    ], fail_after=1)
    service = _service(stream)
    with pytest.raises(ModelServiceError) as exc_info:
        async with service.open_stream(_request()) as events:
            async for _ in events:
                pass
    assert exc_info.value.error_code == ErrorCode.NETWORK
    assert stream.closed


async def test_stream_closed_when_consumer_fails():
    stream = _FakeStream([_FakeEvent(type="message_start")])
    service = _service(stream)
    with pytest.raises(RuntimeError):
        async with service.open_stream(_request()):
            raise RuntimeError("consumer broke")
    assert stream.closed


# --- Construction ---------------------------------------------------------------

def test_from_settings_disables_sdk_retries(settings):
    service = AnthropicModelService.from_settings(settings)
    assert isinstance(service.client, anthropic.AsyncAnthropic)
    assert service.client.max_retries == 0
    assert service.model == settings.anthropic_model


def test_event_to_dict_variants():
    assert event_to_dict({"type": "ping"}) == {"type": "ping"}
    assert event_to_dict(_FakeEvent(type="ping", index=None)) == {"type": "ping"}
    assert event_to_dict(SimpleNamespace(type="ping")) == {"type": "ping"}
