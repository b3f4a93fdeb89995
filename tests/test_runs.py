import asyncio
import json
import time

import pytest

from assistant_relay.errors import RunFailedError, RunTimeoutError
from assistant_relay.providers.base import ToolConfig
from assistant_relay.providers.mock import MockRunScript
from assistant_relay.runs import Reply, RunEngine, ToolRegistry, extract_reply


async def _thread_with_question(assistant, text="What's a good P/E ratio?"):
    thread_id = await assistant.create_thread()
    await assistant.post_message(thread_id, text)
    return thread_id


def _engine(assistant, clock, **kwargs):
    kwargs.setdefault("poll_interval", 1.0)
    kwargs.setdefault("timeout", 60.0)
    return RunEngine(assistant, clock=clock, sleep=clock.sleep, **kwargs)


@pytest.mark.asyncio
async def test_completed_run_returns_latest_assistant_text(assistant, clock):
    assistant.add_script(MockRunScript(statuses=("queued", "in_progress", "completed"), reply="A P/E of 15 is typical."))
    thread_id = await _thread_with_question(assistant)

    reply = await _engine(assistant, clock).run_and_get_reply(thread_id, ToolConfig.retrieval("vs_1"))

    assert reply == Reply(text="A P/E of 15 is typical.")
    assert reply.usable
    assert clock.sleeps == [1.0, 1.0]
    assert assistant.run_configs == [ToolConfig.retrieval("vs_1")]


@pytest.mark.asyncio
async def test_append_message_posts_user_message(assistant, clock):
    thread_id = await assistant.create_thread()
    await _engine(assistant, clock).append_message(thread_id, "hello")
    assert assistant.threads[thread_id][-1]["role"] == "user"


@pytest.mark.asyncio
async def test_failed_run_carries_remote_reason(assistant, clock):
    assistant.add_script(MockRunScript(statuses=("in_progress", "failed"), last_error="Rate limit reached"))
    thread_id = await _thread_with_question(assistant)

    with pytest.raises(RunFailedError) as ei:
        await _engine(assistant, clock).run_and_get_reply(thread_id, ToolConfig.auto())
    assert str(ei.value) == "Rate limit reached"
    assert ei.value.status == "failed"


@pytest.mark.asyncio
@pytest.mark.parametrize("status", ["expired", "cancelled", "incomplete"])
async def test_other_terminal_failures(assistant, clock, status):
    assistant.add_script(MockRunScript(statuses=(status,)))
    thread_id = await _thread_with_question(assistant)

    with pytest.raises(RunFailedError) as ei:
        await _engine(assistant, clock).run_and_get_reply(thread_id, ToolConfig.auto())
    assert str(ei.value) == f"Run {status}"


@pytest.mark.asyncio
async def test_timeout_cancels_run_and_raises(assistant, clock):
    assistant.add_script(MockRunScript(statuses=("in_progress",)))
    thread_id = await _thread_with_question(assistant)
    engine = _engine(assistant, clock, timeout=5.0)

    with pytest.raises(RunTimeoutError):
        await engine.run_and_get_reply(thread_id, ToolConfig.auto())

    assert len(assistant.cancelled) == 1
    assert sum(clock.sleeps) == 5.0
    assert assistant.call_count("list_messages") == 0


@pytest.mark.asyncio
async def test_timeout_still_raised_when_cancel_fails(assistant, clock):
    assistant.add_script(MockRunScript(statuses=("queued",)))
    assistant.cancel_error = RuntimeError("cancel refused")
    thread_id = await _thread_with_question(assistant)

    with pytest.raises(RunTimeoutError):
        await _engine(assistant, clock, timeout=3.0).run_and_get_reply(thread_id, ToolConfig.auto())
    assert assistant.call_count("cancel_run") == 1


@pytest.mark.asyncio
async def test_requires_action_without_handlers_submits_empty_outputs(assistant, clock):
    tool_calls = [{"id": "call_1", "type": "function", "function": {"name": "get_quote", "arguments": "{}"}}]
    assistant.add_script(MockRunScript(statuses=("requires_action", "in_progress", "completed"),
                                       reply="Done without the quote.", tool_calls=tool_calls))
    thread_id = await _thread_with_question(assistant)

    reply = await _engine(assistant, clock).run_and_get_reply(thread_id, ToolConfig.auto())

    assert reply.text == "Done without the quote."
    assert assistant.submitted_tool_outputs == [[]]


@pytest.mark.asyncio
async def test_requires_action_invokes_registered_handlers(assistant, clock):
    tool_calls = [
        {"id": "call_1", "type": "function", "function": {"name": "get_quote", "arguments": json.dumps({"symbol": "VTI"})}},
        {"id": "call_2", "type": "function", "function": {"name": "unknown_tool", "arguments": "{}"}},
        {"id": "call_3", "type": "function", "function": {"name": "broken", "arguments": "{}"}},
    ]
    assistant.add_script(MockRunScript(statuses=("requires_action", "completed"), reply="VTI is at 250.",
                                       tool_calls=tool_calls))
    thread_id = await _thread_with_question(assistant)

    async def get_quote(args):
        return {"symbol": args["symbol"], "price": 250}

    def broken(args):
        raise ValueError("feed down")

    tools = ToolRegistry()
    tools.register("get_quote", get_quote)
    tools.register("broken", broken)

    reply = await _engine(assistant, clock, tools=tools).run_and_get_reply(thread_id, ToolConfig.auto())

    assert reply.text == "VTI is at 250."
    (outputs,) = assistant.submitted_tool_outputs
    assert outputs[0] == {"tool_call_id": "call_1", "output": json.dumps({"symbol": "VTI", "price": 250})}
    assert outputs[1] == {"tool_call_id": "call_2", "output": ""}
    assert outputs[2] == {"tool_call_id": "call_3", "output": json.dumps({"error": "feed down"})}


@pytest.mark.asyncio
async def test_latest_message_not_from_assistant_is_unusable(assistant, clock):
    assistant.add_script(MockRunScript(reply=""))
    thread_id = await _thread_with_question(assistant)

    reply = await _engine(assistant, clock).run_and_get_reply(thread_id, ToolConfig.auto())

    assert reply.text == ""
    assert reply.empty_reason == "not_assistant"
    assert not reply.usable


def test_extract_reply_edge_cases():
    assert extract_reply([]).empty_reason == "no_messages"
    image_only = {"role": "assistant", "content": [{"type": "image_file", "image_file": {"file_id": "f"}}]}
    assert extract_reply([image_only]).empty_reason == "no_text"
    blank = {"role": "assistant", "content": [{"type": "text", "text": {"value": ""}}]}
    assert extract_reply([blank]).empty_reason == "no_text"
    mixed = {"role": "assistant", "content": [
        {"type": "image_file", "image_file": {"file_id": "f"}},
        {"type": "text", "text": {"value": "Here you go", "annotations": []}},
    ]}
    assert extract_reply([mixed]) == Reply(text="Here you go")


@pytest.mark.asyncio
async def test_concurrent_runs_poll_without_blocking_each_other(assistant):
    for _ in range(2):
        assistant.add_script(MockRunScript(statuses=("queued", "in_progress", "completed"), reply="Stocks and bonds."))
    first = await _thread_with_question(assistant)
    second = await _thread_with_question(assistant)
    # Real clock and asyncio.sleep: each run needs two polls of 0.2s
    engine = RunEngine(assistant, poll_interval=0.2, timeout=10.0)

    t0 = time.monotonic()
    replies = await asyncio.gather(
        engine.run_and_get_reply(first, ToolConfig.auto()),
        engine.run_and_get_reply(second, ToolConfig.auto()),
    )
    elapsed = time.monotonic() - t0

    assert [r.text for r in replies] == ["Stocks and bonds.", "Stocks and bonds."]
    assert elapsed < 0.7
