import json

import pytest

from mimiclaw.llm_payload import (
    LLMResponse,
    ToolCall,
    build_chat_body,
    build_tools_body,
    convert_messages_openai,
    convert_tools_openai,
    extract_text_anthropic,
    extract_text_openai,
    parse_tools_response_anthropic,
    parse_tools_response_openai,
    preview_payload,
)

TOOLS = [
    {
        "name": "web_search",
        "description": "Search the web",
        "input_schema": {"type": "object", "properties": {"query": {"type": "string"}}},
    },
    {"description": "no name"},
    {"name": "get_current_time"},
]


def test_convert_tools_openai_wraps_functions():
    out = convert_tools_openai(json.dumps(TOOLS))
    assert len(out) == 2
    assert out[0]["type"] == "function"
    assert out[0]["function"]["name"] == "web_search"
    assert out[0]["function"]["description"] == "Search the web"
    assert out[0]["function"]["parameters"] == TOOLS[0]["input_schema"]
    assert out[1]["function"] == {"name": "get_current_time"}


@pytest.mark.parametrize("text", [None, "not json", '{"a": 1}'])
def test_convert_tools_openai_rejects_non_arrays(text):
    assert convert_tools_openai(text) is None


def test_convert_messages_openai_plain_and_system():
    msgs = [{"role": "user", "content": "hi"}, {"content": "orphan"}]
    out = convert_messages_openai("sys", msgs)
    assert out == [
        {"role": "system", "content": "sys"},
        {"role": "user", "content": "hi"},
    ]


def test_convert_messages_openai_without_system_or_list():
    assert convert_messages_openai("", None) == []
    assert convert_messages_openai(None, "oops") == []


def test_convert_messages_openai_assistant_tool_use():
    msgs = [{
        "role": "assistant",
        "content": [
            {"type": "text", "text": "Let me "},
            {"type": "text", "text": "check."},
            {"type": "tool_use", "id": "toolu_1", "name": "web_search",
             "input": {"query": "weather"}},
        ],
    }]
    (msg,) = convert_messages_openai(None, msgs)
    assert msg["role"] == "assistant"
    assert msg["content"] == "Let me check."
    (call,) = msg["tool_calls"]
    assert call["id"] == "toolu_1"
    assert call["type"] == "function"
    assert call["function"]["name"] == "web_search"
    assert json.loads(call["function"]["arguments"]) == {"query": "weather"}


def test_convert_messages_openai_assistant_nameless_tool_keeps_empty_list():
    msgs = [{"role": "assistant", "content": [{"type": "tool_use", "id": "x"}]}]
    (msg,) = convert_messages_openai(None, msgs)
    assert msg["tool_calls"] == []
    assert msg["content"] == ""


def test_convert_messages_openai_user_tool_results_then_text():
    msgs = [{
        "role": "user",
        "content": [
            {"type": "text", "text": "also"},
            {"type": "tool_result", "tool_use_id": "toolu_1", "content": "sunny"},
            {"type": "tool_result", "tool_use_id": "toolu_2"},
            {"type": "tool_result", "content": "no id"},
        ],
    }]
    out = convert_messages_openai(None, msgs)
    assert out == [
        {"role": "tool", "tool_call_id": "toolu_1", "content": "sunny"},
        {"role": "tool", "tool_call_id": "toolu_2", "content": ""},
        {"role": "user", "content": "also"},
    ]


def test_extract_text_anthropic_joins_text_blocks():
    root = {"content": [
        {"type": "text", "text": "a"},
        {"type": "tool_use", "name": "x"},
        {"type": "text", "text": "b"},
    ]}
    assert extract_text_anthropic(root) == "ab"
    assert extract_text_anthropic({}) == ""


def test_extract_text_openai():
    root = {"choices": [{"message": {"content": "hello"}}]}
    assert extract_text_openai(root) == "hello"
    assert extract_text_openai({"choices": []}) == ""
    assert extract_text_openai({"choices": [{"message": {"content": None}}]}) == ""


def test_parse_tools_response_anthropic():
    root = {
        "stop_reason": "tool_use",
        "content": [
            {"type": "text", "text": "Checking"},
            {"type": "tool_use", "id": "toolu_1", "name": "web_search",
             "input": {"query": "q"}},
            {"type": "tool_use", "id": "toolu_2", "name": "get_current_time"},
        ],
    }
    resp = parse_tools_response_anthropic(root)
    assert resp.tool_use is True
    assert resp.text == "Checking"
    assert [c.id for c in resp.calls] == ["toolu_1", "toolu_2"]
    assert json.loads(resp.calls[0].input) == {"query": "q"}
    assert resp.calls[1].input is None


def test_parse_tools_response_anthropic_respects_max_calls_and_end_turn():
    root = {
        "stop_reason": "end_turn",
        "content": [{"type": "tool_use", "id": str(i), "name": "t"} for i in range(5)],
    }
    resp = parse_tools_response_anthropic(root, max_calls=2)
    assert resp.tool_use is False
    assert len(resp.calls) == 2


def test_parse_tools_response_anthropic_clips_id_and_name():
    long_id = "i" * 100
    long_name = "n" * 50
    root = {"content": [{"type": "tool_use", "id": long_id, "name": long_name}]}
    (call,) = parse_tools_response_anthropic(root).calls
    assert long_id.startswith(call.id) and len(call.id) < len(long_id)
    assert long_name.startswith(call.name) and len(call.name) < len(long_name)


def test_parse_tools_response_openai_tool_calls():
    root = {"choices": [{
        "finish_reason": "stop",
        "message": {
            "content": "ok",
            "tool_calls": [
                {"id": "call_1", "function": {"name": "web_search",
                                               "arguments": '{"query":"q"}'}},
                "junk",
            ],
        },
    }]}
    resp = parse_tools_response_openai(root)
    assert resp.tool_use is True
    assert resp.text == "ok"
    assert resp.calls[0] == ToolCall("call_1", "web_search", '{"query":"q"}')
    assert resp.calls[1] == ToolCall()


def test_parse_tools_response_openai_plain_answer():
    root = {"choices": [{"finish_reason": "stop", "message": {"content": "done"}}]}
    assert parse_tools_response_openai(root) == LLMResponse(text="done")
    assert parse_tools_response_openai({}) == LLMResponse()


def test_build_chat_body_anthropic():
    body = build_chat_body("anthropic", "model-x", 1024, "sys",
                           '[{"role":"user","content":"hi"}]')
    assert body == {
        "model": "model-x",
        "max_tokens": 1024,
        "system": "sys",
        "messages": [{"role": "user", "content": "hi"}],
    }


def test_build_chat_body_openai_falls_back_to_user_text():
    body = build_chat_body("openai", "model-y", 256, "sys", "plain words")
    assert body["max_completion_tokens"] == 256
    assert "max_tokens" not in body
    assert body["messages"] == [
        {"role": "system", "content": "sys"},
        {"role": "user", "content": "plain words"},
    ]


def test_build_tools_body_anthropic_copies_messages():
    messages = [{"role": "user", "content": "hi"}]
    body = build_tools_body("anthropic", "m", 10, "sys", messages, json.dumps(TOOLS))
    assert body["tools"] == TOOLS
    assert body["messages"] == messages
    body["messages"].append({"role": "assistant", "content": "x"})
    assert len(messages) == 1


def test_build_tools_body_openai():
    messages = [{"role": "user", "content": "hi"}]
    body = build_tools_body("openai", "m", 10, "sys", messages, json.dumps(TOOLS))
    assert body["tool_choice"] == "auto"
    assert body["tools"] == convert_tools_openai(json.dumps(TOOLS))
    assert body["messages"][0] == {"role": "system", "content": "sys"}


def test_build_tools_body_openai_invalid_tools_omitted():
    body = build_tools_body("openai", "m", 10, None, [], "broken")
    assert "tools" not in body and "tool_choice" not in body


def test_preview_payload():
    assert preview_payload(None) == "<null>"
    assert preview_payload("a\nb\tc", 100) == "(5 bytes): a b c"
    short = preview_payload("abcdefgh", 3)
    assert short.endswith("abc ...")
    assert preview_payload("abcdefgh", 0) == "(8 bytes)"