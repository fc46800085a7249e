"""Tool Dispatch tests — concurrent execution, error boundary, result normalization."""

import asyncio

from turnloop.core.turn_types import ToolCall
from turnloop.services.tool_dispatch import ToolDispatch, normalize_result
from turnloop.services.tools_registry import CapabilityRegistry


def _call(name, tool_id=None, **params):
    return ToolCall(id=tool_id or f"toolu_{name}", name=name, parameters=params)


def _dispatch(*funcs, **kwargs):
    registry = CapabilityRegistry.with_defaults()
    for func in funcs:
        registry.register_function(func.__name__, f"{func.__name__} tool", func)
    return ToolDispatch(registry, **kwargs)


# --- Routing --------------------------------------------------------------------

async def test_unknown_tool_returns_failed_result():
    result = await _dispatch().execute(_call("foo"))
    assert result.success is False
    assert result.error == "Tool 'foo' not found"
    assert result.tool_call.id == "toolu_foo"


async def test_sync_and_async_handlers_receive_parameters():
    def echo(params):
        return params["text"]

    async def shout(params):
        return params["text"].upper()

    dispatch = _dispatch(echo, shout)
    results = await dispatch.execute_all([
        _call("echo", text="hi"), _call("shout", text="hi"),
    ])
    assert [r.payload for r in results] == ["hi", "HI"]
    assert all(r.success for r in results)


async def test_calls_run_concurrently_and_keep_call_order():
    started = []
    release = asyncio.Event()

    async def slow(params):
        started.append(params["n"])
        await release.wait()
        return str(params["n"])

    async def releaser(params):
        while len(started) < 2:
            await asyncio.sleep(0)
        release.set()
        return "released"

    dispatch = _dispatch(slow, releaser)
    results = await asyncio.wait_for(dispatch.execute_all([
        _call("slow", "a", n=1), _call("slow", "b", n=2), _call("releaser"),
    ]), timeout=1.0)
    assert [r.tool_call.id for r in results] == ["a", "b", "toolu_releaser"]
    assert [r.payload for r in results] == ["1", "2", "released"]


async def test_empty_batch():
    assert await _dispatch().execute_all([]) == []


# --- Error boundary -------------------------------------------------------------

async def test_exception_becomes_failed_result_without_aborting_siblings():
    def broken(params):
        raise RuntimeError("disk full")

    def fine(params):
        return "ok"

    results = await _dispatch(broken, fine).execute_all([
        _call("broken"), _call("fine"),
    ])
    assert results[0].success is False
    assert results[0].error == "Tool execution failed: disk full"
    assert results[1].success is True


async def test_report_complete_blank_summary_fails():
    result = await _dispatch().execute(_call("report_complete", summary="   "))
    assert result.success is False
    assert "summary" in result.error


async def test_duration_measured_with_clock():
    ticks = iter([10.0, 10.25])
    dispatch = _dispatch(lambda p: "x", clock=lambda: next(ticks))
    result = await dispatch.execute(_call("<lambda>"))
    assert result.duration_ms == 250


# --- Normalization --------------------------------------------------------------

def test_normalize_bare_string():
    result = normalize_result(_call("t"), "plain")
    assert result.success and result.payload == "plain"


def test_normalize_success_envelope_unwraps_result():
    result = normalize_result(_call("t"), {"success": True, "result": {"rows": 2}})
    assert result.success
    assert result.payload == '{"rows": 2}'


def test_normalize_failure_envelope():
    result = normalize_result(_call("t"), {"success": False, "error": "denied"})
    assert not result.success
    assert result.error == "denied"
    assert result.payload == ""


def test_normalize_failure_envelope_without_message():
    result = normalize_result(_call("t"), {"success": False, "error": None})
    assert result.error == "Tool reported failure"


def test_dict_with_success_field_but_no_envelope_keys_is_plain_data():
    raw = {"success": False, "count": 3}
    result = normalize_result(_call("t"), raw)
    assert result.success
    assert result.payload == '{"success": false, "count": 3}'


def test_normalize_other_values_serialized():
    assert normalize_result(_call("t"), [1, "ü"]).payload == '[1, "ü"]'
    assert normalize_result(_call("t"), None).payload == ""
    assert normalize_result(_call("t"), 42).payload == "42"


# --- Completion -----------------------------------------------------------------

async def test_completion_signalled_only_on_success():
    dispatch = _dispatch()
    ok = await dispatch.execute(_call("report_complete", summary="Done"))
    bad = await dispatch.execute(_call("report_complete"))
    assert dispatch.completion_signalled([ok])
    assert not dispatch.completion_signalled([bad])


async def test_report_complete_with_failed_task_still_signals():
    dispatch = _dispatch()
    result = await dispatch.execute(
        _call("report_complete", summary="Could not fix", success=False),
    )
    assert result.success
    assert '"task_success": false' in result.payload
    assert dispatch.completion_signalled([result])


async def test_custom_completion_tools():
    def finish(params):
        return "bye"

    dispatch = _dispatch(finish, completion_tools=["finish"])
    results = await dispatch.execute_all([_call("finish")])
    assert dispatch.completion_signalled(results)
    done = await dispatch.execute(_call("report_complete", summary="x"))
    assert not dispatch.completion_signalled([done])
