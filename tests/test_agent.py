import copy
import json
import threading

import pytest

from mimiclaw.agent import (
    ERROR_REPLY_TEXT,
    WORKING_STATUS_TEXT,
    Agent,
    SessionStore,
    append_turn_context,
    build_assistant_content,
    build_tool_results,
    patch_tool_input,
)
from mimiclaw.bus import BusTimeoutError, Message, MessageBus
from mimiclaw.llm_client import LLMError
from mimiclaw.llm_payload import LLMResponse, ToolCall


class FakeLLM:
    def __init__(self, responses):
        self._responses = list(responses)
        self.calls = []

    def chat_tools(self, system_prompt, messages, tools_json):
        self.calls.append((system_prompt, copy.deepcopy(messages), tools_json))
        item = self._responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class RecordingTools:
    def __init__(self, output="done"):
        self.output = output
        self.calls = []

    def __call__(self, name, tool_input):
        self.calls.append((name, tool_input))
        return self.output


def drain(bus):
    out = []
    while True:
        try:
            out.append(bus.pop_outbound(timeout=0.01))
        except BusTimeoutError:
            return out


def make_agent(bus, llm, tools=None, **kwargs):
    return Agent(
        bus,
        llm,
        '[{"name":"web_search"}]',
        tools if tools is not None else RecordingTools(),
        build_prompt=lambda: "BASE",
        **kwargs,
    )


def test_append_turn_context_names_source():
    msg = Message("telegram", "12345", "hi")
    prompt = append_turn_context("BASE", msg)
    assert prompt.startswith("BASE\n## Current Turn Context\n")
    assert "- source_channel: telegram\n" in prompt
    assert "- source_chat_id: 12345\n" in prompt
    assert prompt.endswith("- Never use chat_id 'cron' for Telegram messages.\n")


def test_append_turn_context_placeholders_for_empty_fields():
    prompt = append_turn_context("", Message("", "", "hi"))
    assert "- source_channel: (unknown)\n" in prompt
    assert "- source_chat_id: (empty)\n" in prompt


def test_patch_ignores_other_tools():
    call = ToolCall(id="t1", name="web_search", input='{"query":"x"}')
    assert patch_tool_input(call, Message("telegram", "12345", "hi")) is None


def test_patch_fills_channel_and_chat_id():
    call = ToolCall(id="t1", name="cron_add", input='{"message":"ping"}')
    patched = patch_tool_input(call, Message("telegram", "12345", "hi"))
    assert json.loads(patched) == {
        "message": "ping",
        "channel": "telegram",
        "chat_id": "12345",
    }


def test_patch_replaces_cron_chat_id():
    call = ToolCall(
        id="t1", name="cron_add", input='{"channel":"telegram","chat_id":"cron"}'
    )
    patched = patch_tool_input(call, Message("telegram", "777", "hi"))
    assert json.loads(patched) == {"channel": "telegram", "chat_id": "777"}


def test_patch_leaves_explicit_other_channel():
    call = ToolCall(id="t1", name="cron_add", input='{"channel":"websocket"}')
    assert patch_tool_input(call, Message("telegram", "777", "hi")) is None


def test_patch_invalid_input_starts_from_empty_object():
    call = ToolCall(id="t1", name="cron_add", input="not json")
    patched = patch_tool_input(call, Message("websocket", "ws_1", "hi"))
    assert json.loads(patched) == {"channel": "websocket"}


def test_build_assistant_content_blocks():
    resp = LLMResponse(
        text="thinking",
        tool_use=True,
        calls=[
            ToolCall(id="a", name="web_search", input='{"query":"x"}'),
            ToolCall(id="b", name="list_dir", input="broken"),
        ],
    )
    assert build_assistant_content(resp) == [
        {"type": "text", "text": "thinking"},
        {"type": "tool_use", "id": "a", "name": "web_search", "input": {"query": "x"}},
        {"type": "tool_use", "id": "b", "name": "list_dir", "input": {}},
    ]


def test_build_assistant_content_without_text():
    resp = LLMResponse(calls=[ToolCall(id="a", name="n", input=None)])
    assert build_assistant_content(resp) == [
        {"type": "tool_use", "id": "a", "name": "n", "input": {}}
    ]


def test_build_tool_results_runs_tools_with_patched_input():
    tools = RecordingTools(output="ok")
    resp = LLMResponse(
        tool_use=True,
        calls=[
            ToolCall(id="a", name="web_search", input=None),
            ToolCall(id="b", name="cron_add", input='{"message":"m"}'),
        ],
    )
    blocks = build_tool_results(resp, Message("telegram", "42", "hi"), tools)
    assert blocks == [
        {"type": "tool_result", "tool_use_id": "a", "content": "ok"},
        {"type": "tool_result", "tool_use_id": "b", "content": "ok"},
    ]
    assert tools.calls[0] == ("web_search", "{}")
    assert json.loads(tools.calls[1][1]) == {
        "message": "m",
        "channel": "telegram",
        "chat_id": "42",
    }


def test_session_store_limits_history():
    store = SessionStore()
    for n in range(5):
        store.append("c", "user", str(n))
    assert [m["content"] for m in store.history("c", 2)] == ["3", "4"]
    assert store.history("c", 0) == []
    assert store.history("other", 3) == []


def test_process_final_text_sends_status_and_reply():
    bus = MessageBus()
    llm = FakeLLM([LLMResponse(text="hello back")])
    agent = make_agent(bus, llm)
    reply = agent.process(Message("telegram", "12345", "hello"))
    assert reply == Message("telegram", "12345", "hello back")
    assert drain(bus) == [
        Message("telegram", "12345", WORKING_STATUS_TEXT),
        Message("telegram", "12345", "hello back"),
    ]
    assert agent.sessions.history("12345", 10) == [
        {"role": "user", "content": "hello"},
        {"role": "assistant", "content": "hello back"},
    ]
    system_prompt, messages, tools_json = llm.calls[0]
    assert system_prompt.startswith("BASE\n## Current Turn Context")
    assert messages == [{"role": "user", "content": "hello"}]
    assert tools_json == '[{"name":"web_search"}]'


def test_process_runs_tool_loop():
    bus = MessageBus()
    tools = RecordingTools(output="sunny")
    llm = FakeLLM([
        LLMResponse(
            text="let me check",
            tool_use=True,
            calls=[ToolCall(id="t1", name="web_search", input='{"query":"weather"}')],
        ),
        LLMResponse(text="It is sunny."),
    ])
    agent = make_agent(bus, llm, tools=tools)
    reply = agent.process(Message("websocket", "ws_1", "weather?"))
    assert reply.content == "It is sunny."
    assert tools.calls == [("web_search", '{"query":"weather"}')]
    second_messages = llm.calls[1][1]
    assert second_messages[1] == {
        "role": "assistant",
        "content": [
            {"type": "text", "text": "let me check"},
            {"type": "tool_use", "id": "t1", "name": "web_search",
             "input": {"query": "weather"}},
        ],
    }
    assert second_messages[2] == {
        "role": "user",
        "content": [{"type": "tool_result", "tool_use_id": "t1", "content": "sunny"}],
    }
    # Working status is sent only once per turn.
    sent = drain(bus)
    assert [m.content for m in sent].count(WORKING_STATUS_TEXT) == 1


def test_process_llm_error_sends_apology_and_saves_nothing():
    bus = MessageBus()
    agent = make_agent(bus, FakeLLM([LLMError("boom")]))
    reply = agent.process(Message("websocket", "ws_1", "hi"))
    assert reply.content == ERROR_REPLY_TEXT
    assert drain(bus)[-1] == Message("websocket", "ws_1", ERROR_REPLY_TEXT)
    assert agent.sessions.history("ws_1", 10) == []


def test_process_system_channel_has_no_working_status():
    bus = MessageBus()
    agent = make_agent(bus, FakeLLM([LLMResponse(text="HEARTBEAT_OK")]))
    agent.process(Message("system", "heartbeat", "check"))
    assert drain(bus) == [Message("system", "heartbeat", "HEARTBEAT_OK")]


def test_process_stops_after_max_iterations():
    bus = MessageBus()
    looping = LLMResponse(tool_use=True, calls=[ToolCall(id="x", name="list_dir")])
    llm = FakeLLM([looping, looping, looping])
    agent = make_agent(bus, llm, max_iterations=2, send_working_status=False)
    reply = agent.process(Message("cli", "c", "go"))
    assert reply.content == ERROR_REPLY_TEXT
    assert len(llm.calls) == 2


def test_process_includes_history():
    bus = MessageBus()
    sessions = SessionStore()
    sessions.append("c", "user", "old question")
    sessions.append("c", "assistant", "old answer")
    llm = FakeLLM([LLMResponse(text="new answer")])
    agent = make_agent(bus, llm, sessions=sessions, max_history=1,
                       send_working_status=False)
    agent.process(Message("cli", "c", "new question"))
    assert llm.calls[0][1] == [
        {"role": "assistant", "content": "old answer"},
        {"role": "user", "content": "new question"},
    ]


def test_run_processes_until_stopped():
    bus = MessageBus()
    agent = make_agent(bus, FakeLLM([LLMResponse(text="pong")]),
                       send_working_status=False)
    stop = threading.Event()
    worker = threading.Thread(target=agent.run, args=(stop,))
    worker.start()
    try:
        bus.push_inbound(Message("cli", "c", "ping"))
        reply = bus.pop_outbound(timeout=5)
    finally:
        stop.set()
        worker.join(timeout=5)
    assert reply == Message("cli", "c", "pong")
    assert not worker.is_alive()


@pytest.mark.parametrize("chat_id", ["", "cron"])
def test_patch_telegram_chat_id_replaced_when_missing(chat_id):
    body = {"channel": "telegram"}
    if chat_id:
        body["chat_id"] = chat_id
    call = ToolCall(id="t", name="cron_add", input=json.dumps(body))
    patched = json.loads(patch_tool_input(call, Message("telegram", "99", "x")))
    assert patched["chat_id"] == "99"