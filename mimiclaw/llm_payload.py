"""Request bodies and response parsing for the Anthropic and OpenAI chat APIs."""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from typing import Any

OPENAI = "openai"
ANTHROPIC = "anthropic"

DEFAULT_MAX_TOOL_CALLS = 4
DEFAULT_PREVIEW_BYTES = 160

_ID_LEN = 63
_NAME_LEN = 31

_INVALID = object()


@dataclass
class ToolCall:
    """One tool invocation requested by the model."""

    id: str = ""
    name: str = ""
    input: str | None = None


@dataclass
class LLMResponse:
    """Text and tool calls from one model reply."""

    text: str = ""
    tool_use: bool = False
    calls: list[ToolCall] = field(default_factory=list)


def is_openai(provider: str | None) -> bool:
    """True if the provider name selects the OpenAI-style API."""
    return provider == OPENAI


def _compact(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def _parse(text: str | None) -> Any:
    if text is None:
        return _INVALID
    try:
        return json.loads(text)
    except (ValueError, TypeError):
        return _INVALID


def _get(obj: Any, key: str) -> Any:
    return obj.get(key) if isinstance(obj, dict) else None


def _is_type(block: Any, name: str) -> bool:
    return _get(block, "type") == name


def convert_tools_openai(tools_json: str | None) -> list[dict] | None:
    """Turn an Anthropic tools array (JSON text) into OpenAI function tools."""
    tools = _parse(tools_json)
    if not isinstance(tools, list):
        return None
    out: list[dict] = []
    for tool in tools:
        if not isinstance(tool, dict):
            continue
        name = tool.get("name")
        if not isinstance(name, str):
            continue
        func: dict[str, Any] = {"name": name}
        description = tool.get("description")
        if isinstance(description, str):
            func["description"] = description
        if "input_schema" in tool:
            func["parameters"] = copy.deepcopy(tool["input_schema"])
        out.append({"type": "function", "function": func})
    return out


def _convert_assistant(content: list) -> dict:
    message: dict[str, Any] = {"role": "assistant"}
    texts: list[str] = []
    tool_calls: list[dict] | None = None
    for block in content:
        if _is_type(block, "text"):
            text = block.get("text")
            if isinstance(text, str):
                texts.append(text)
        elif _is_type(block, "tool_use"):
            if tool_calls is None:
                tool_calls = []
            name = block.get("name")
            if not isinstance(name, str):
                continue
            call: dict[str, Any] = {}
            call_id = block.get("id")
            if isinstance(call_id, str):
                call["id"] = call_id
            call["type"] = "function"
            func: dict[str, Any] = {"name": name}
            if "input" in block:
                func["arguments"] = _compact(block["input"])
            call["function"] = func
            tool_calls.append(call)
    message["content"] = "".join(texts)
    if tool_calls is not None:
        message["tool_calls"] = tool_calls
    return message


def _convert_user(content: list) -> list[dict]:
    out: list[dict] = []
    texts: list[str] = []
    has_text = False
    for block in content:
        if _is_type(block, "tool_result"):
            tool_id = block.get("tool_use_id")
            if not isinstance(tool_id, str):
                continue
            result = block.get("content")
            out.append({
                "role": "tool",
                "tool_call_id": tool_id,
                "content": result if isinstance(result, str) else "",
            })
        elif _is_type(block, "text"):
            text = block.get("text")
            if isinstance(text, str):
                texts.append(text)
                has_text = True
    if has_text:
        out.append({"role": "user", "content": "".join(texts)})
    return out


def convert_messages_openai(system_prompt: str | None, messages: Any) -> list[dict]:
    """Turn an Anthropic message list into OpenAI chat messages."""
    out: list[dict] = []
    if system_prompt:
        out.append({"role": "system", "content": system_prompt})
    if not isinstance(messages, list):
        return out

    for msg in messages:
        role = _get(msg, "role")
        if not isinstance(role, str):
            continue
        content = msg.get("content")
        if isinstance(content, str):
            out.append({"role": role, "content": content})
            continue
        if not isinstance(content, list):
            continue
        if role == "assistant":
            out.append(_convert_assistant(content))
        elif role == "user":
            out.extend(_convert_user(content))
    return out


def _anthropic_text(content: Any) -> str:
    if not isinstance(content, list):
        return ""
    return "".join(
        block["text"]
        for block in content
        if _is_type(block, "text") and isinstance(block.get("text"), str)
    )


def extract_text_anthropic(root: Any) -> str:
    """Join the text blocks of an Anthropic response."""
    return _anthropic_text(_get(root, "content"))


def _first_choice(root: Any) -> Any:
    choices = _get(root, "choices")
    if isinstance(choices, list) and choices:
        return choices[0]
    return None


def extract_text_openai(root: Any) -> str:
    """Return the first choice's message content of an OpenAI response."""
    content = _get(_get(_first_choice(root), "message"), "content")
    return content if isinstance(content, str) else ""


def parse_tools_response_anthropic(
    root: Any, max_calls: int = DEFAULT_MAX_TOOL_CALLS
) -> LLMResponse:
    """Read text, stop reason and tool_use blocks from an Anthropic response."""
    resp = LLMResponse()
    stop_reason = _get(root, "stop_reason")
    if isinstance(stop_reason, str):
        resp.tool_use = stop_reason == "tool_use"

    content = _get(root, "content")
    if not isinstance(content, list):
        return resp
    resp.text = _anthropic_text(content)

    for block in content:
        if not _is_type(block, "tool_use"):
            continue
        if len(resp.calls) >= max_calls:
            break
        call = ToolCall()
        call_id = block.get("id")
        if isinstance(call_id, str):
            call.id = call_id[:_ID_LEN]
        name = block.get("name")
        if isinstance(name, str):
            call.name = name[:_NAME_LEN]
        if "input" in block:
            call.input = _compact(block["input"])
        resp.calls.append(call)
    return resp


def parse_tools_response_openai(
    root: Any, max_calls: int = DEFAULT_MAX_TOOL_CALLS
) -> LLMResponse:
    """Read text, finish reason and tool calls from an OpenAI response."""
    resp = LLMResponse()
    choice = _first_choice(root)
    if choice is None:
        return resp

    finish = _get(choice, "finish_reason")
    if isinstance(finish, str):
        resp.tool_use = finish == "tool_calls"

    message = _get(choice, "message")
    if message is None:
        return resp
    content = _get(message, "content")
    if isinstance(content, str):
        resp.text = content

    tool_calls = _get(message, "tool_calls")
    if isinstance(tool_calls, list):
        for entry in tool_calls:
            if len(resp.calls) >= max_calls:
                break
            call = ToolCall()
            call_id = _get(entry, "id")
            if isinstance(call_id, str):
                call.id = call_id[:_ID_LEN]
            func = _get(entry, "function")
            name = _get(func, "name")
            if isinstance(name, str):
                call.name = name[:_NAME_LEN]
            args = _get(func, "arguments")
            if isinstance(args, str):
                call.input = args
            resp.calls.append(call)
        if resp.calls:
            resp.tool_use = True
    return resp


def _base_body(provider: str, model: str, max_tokens: int) -> dict[str, Any]:
    key = "max_completion_tokens" if is_openai(provider) else "max_tokens"
    return {"model": model, key: max_tokens}


def build_chat_body(
    provider: str,
    model: str,
    max_tokens: int,
    system_prompt: str | None,
    messages_json: str,
) -> dict[str, Any]:
    """Build a plain chat request; unparsable messages become one user message."""
    body = _base_body(provider, model, max_tokens)
    parsed = _parse(messages_json)
    if parsed is _INVALID:
        parsed = [{"role": "user", "content": messages_json}]
    if is_openai(provider):
        body["messages"] = convert_messages_openai(system_prompt, parsed)
    else:
        if system_prompt is not None:
            body["system"] = system_prompt
        body["messages"] = parsed
    return body


def build_tools_body(
    provider: str,
    model: str,
    max_tokens: int,
    system_prompt: str | None,
    messages: Any,
    tools_json: str | None,
) -> dict[str, Any]:
    """Build a chat request carrying tool definitions; messages are not modified."""
    body = _base_body(provider, model, max_tokens)
    if is_openai(provider):
        body["messages"] = convert_messages_openai(system_prompt, messages)
        if tools_json is not None:
            tools = convert_tools_openai(tools_json)
            if tools is not None:
                body["tools"] = tools
                body["tool_choice"] = "auto"
    else:
        if system_prompt is not None:
            body["system"] = system_prompt
        if messages is not None:
            body["messages"] = copy.deepcopy(messages)
        if tools_json is not None:
            tools = _parse(tools_json)
            if tools is not _INVALID:
                body["tools"] = tools
    return body


def preview_payload(payload: str | None, limit: int = DEFAULT_PREVIEW_BYTES) -> str:
    """Describe a payload for logging: its size and a one-line head of it."""
    if payload is None:
        return "<null>"
    data = payload.encode("utf-8")
    total = len(data)
    if limit <= 0:
        return f"({total} bytes)"
    head = data[:limit].decode("utf-8", errors="ignore")
    head = head.translate(str.maketrans("\n\r\t", "   "))
    suffix = " ..." if limit < total else ""
    return f"({total} bytes): {head}{suffix}"