"""The agent: turns inbound messages into model calls, runs tools and sends replies."""

from __future__ import annotations

import copy
import json
import logging
import threading
from typing import Any, Callable, Protocol

from mimiclaw.bus import BusFullError, BusTimeoutError, Channel, Message, MessageBus
from mimiclaw.context_builder import build_system_prompt
from mimiclaw.llm_client import LLMError
from mimiclaw.llm_payload import LLMResponse, ToolCall

_log = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 10
DEFAULT_MAX_HISTORY = 20
POLL_INTERVAL = 0.5

WORKING_STATUS_TEXT = "\U0001F431mimi is working..."
ERROR_REPLY_TEXT = "Sorry, I encountered an error."

_CRON_ADD = "cron_add"
_CRON_CHAT_ID = "cron"

ToolExecutor = Callable[[str, str], str]


class _ChatModel(Protocol):
    def chat_tools(
        self, system_prompt: str | None, messages: Any, tools_json: str | None
    ) -> LLMResponse: ...


class SessionStore:
    """Conversation history per chat id, kept in memory."""

    def __init__(self) -> None:
        self._sessions: dict[str, list[dict[str, str]]] = {}
        self._lock = threading.Lock()

    def append(self, chat_id: str, role: str, content: str) -> None:
        """Record one message of a conversation."""
        with self._lock:
            self._sessions.setdefault(chat_id, []).append(
                {"role": role, "content": content}
            )

    def history(self, chat_id: str, max_messages: int) -> list[dict[str, str]]:
        """Return copies of the last max_messages messages of a conversation."""
        if max_messages <= 0:
            return []
        with self._lock:
            recent = self._sessions.get(chat_id, [])[-max_messages:]
            return [dict(entry) for entry in recent]


def append_turn_context(prompt: str, msg: Message) -> str:
    """Add a section naming the source channel and chat id of this turn."""
    return (
        f"{prompt}"
        "\n## Current Turn Context\n"
        f"- source_channel: {msg.channel or '(unknown)'}\n"
        f"- source_chat_id: {msg.chat_id or '(empty)'}\n"
        "- If using cron_add for Telegram in this turn, set channel='telegram' "
        "and chat_id to source_chat_id.\n"
        "- Never use chat_id 'cron' for Telegram messages.\n"
    )


def _set_string(root: dict, key: str, value: str) -> None:
    root.pop(key, None)
    root[key] = value


def patch_tool_input(call: ToolCall, msg: Message) -> str | None:
    """Fill in a cron_add call's reply target from the current turn; None if unchanged."""
    if call.name != _CRON_ADD:
        return None
    try:
        root = json.loads(call.input if call.input is not None else "{}")
    except ValueError:
        root = None
    if not isinstance(root, dict):
        root = {}

    changed = False
    channel = root.get("channel")
    if not isinstance(channel, str):
        channel = None

    if not channel and msg.channel:
        _set_string(root, "channel", msg.channel)
        channel = msg.channel
        changed = True

    telegram = Channel.TELEGRAM.value
    if channel == telegram and msg.channel == telegram and msg.chat_id:
        chat_id = root.get("chat_id")
        if not isinstance(chat_id, str) or not chat_id or chat_id == _CRON_CHAT_ID:
            _set_string(root, "chat_id", msg.chat_id)
            changed = True

    if not changed:
        return None
    _log.info("Patched cron_add target to %s:%s", msg.channel, msg.chat_id)
    return json.dumps(root, separators=(",", ":"), ensure_ascii=False)


def build_assistant_content(resp: LLMResponse) -> list[dict]:
    """Content blocks (text and tool_use) recording the model's turn."""
    content: list[dict] = []
    if resp.text:
        content.append({"type": "text", "text": resp.text})
    for call in resp.calls:
        try:
            tool_input = json.loads(call.input) if call.input is not None else {}
        except ValueError:
            tool_input = {}
        content.append(
            {"type": "tool_use", "id": call.id, "name": call.name, "input": tool_input}
        )
    return content


def build_tool_results(
    resp: LLMResponse, msg: Message, execute_tool: ToolExecutor
) -> list[dict]:
    """Run every requested tool and return the tool_result blocks."""
    content: list[dict] = []
    for call in resp.calls:
        patched = patch_tool_input(call, msg)
        if patched is not None:
            tool_input = patched
        elif call.input is not None:
            tool_input = call.input
        else:
            tool_input = "{}"
        try:
            output = execute_tool(call.name, tool_input)
        except Exception:
            _log.exception("Tool %s failed", call.name)
            output = ""
        output = output or ""
        _log.info("Tool %s result: %d bytes", call.name, len(output.encode("utf-8")))
        content.append(
            {"type": "tool_result", "tool_use_id": call.id, "content": output}
        )
    return content


class Agent:
    """Consumes inbound messages, runs the tool loop and pushes replies outbound."""

    def __init__(
        self,
        bus: MessageBus,
        llm: _ChatModel,
        tools_json: str | None,
        execute_tool: ToolExecutor,
        build_prompt: Callable[[], str] = build_system_prompt,
        sessions: SessionStore | None = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        max_history: int = DEFAULT_MAX_HISTORY,
        send_working_status: bool = True,
    ) -> None:
        self._bus = bus
        self._llm = llm
        self._tools_json = tools_json
        self._execute_tool = execute_tool
        self._build_prompt = build_prompt
        self.sessions = sessions if sessions is not None else SessionStore()
        self.max_iterations = max_iterations
        self.max_history = max_history
        self.send_working_status = send_working_status
        _log.info("Agent loop initialized")

    def _push(self, msg: Message, label: str) -> bool:
        try:
            self._bus.push_outbound(msg)
        except BusFullError:
            _log.warning("Outbound queue full, drop %s", label)
            return False
        return True

    def _react(self, prompt: str, messages: list, msg: Message) -> str | None:
        sent_status = False
        for iteration in range(self.max_iterations):
            if (
                self.send_working_status
                and not sent_status
                and msg.channel != Channel.SYSTEM.value
            ):
                status = Message(msg.channel, msg.chat_id, WORKING_STATUS_TEXT)
                sent_status = self._push(status, "working status")

            try:
                resp = self._llm.chat_tools(prompt, messages, self._tools_json)
            except LLMError as exc:
                _log.error("LLM call failed: %s", exc)
                return None

            if not resp.tool_use:
                return resp.text or None

            _log.info("Tool use iteration %d: %d calls", iteration + 1, len(resp.calls))
            messages.append(
                {"role": "assistant", "content": build_assistant_content(resp)}
            )
            messages.append(
                {
                    "role": "user",
                    "content": build_tool_results(resp, msg, self._execute_tool),
                }
            )
        return None

    def process(self, msg: Message) -> Message:
        """Handle one inbound message and return the reply pushed outbound."""
        _log.info("Processing message from %s:%s", msg.channel, msg.chat_id)
        prompt = append_turn_context(self._build_prompt(), msg)
        messages: list = copy.deepcopy(
            self.sessions.history(msg.chat_id, self.max_history)
        )
        messages.append({"role": "user", "content": msg.content})

        final_text = self._react(prompt, messages, msg)

        if final_text:
            try:
                self.sessions.append(msg.chat_id, "user", msg.content)
                self.sessions.append(msg.chat_id, "assistant", final_text)
            except OSError as exc:
                _log.warning("Session save failed for chat %s: %s", msg.chat_id, exc)
            reply = Message(msg.channel, msg.chat_id, final_text)
            _log.info(
                "Queue final response to %s:%s (%d bytes)",
                reply.channel, reply.chat_id, len(final_text.encode("utf-8")),
            )
            self._push(reply, "final response")
        else:
            reply = Message(msg.channel, msg.chat_id, ERROR_REPLY_TEXT)
            self._push(reply, "error response")
        return reply

    def run(self, stop_event: threading.Event | None = None) -> None:
        """Process inbound messages until the stop event is set."""
        stop = stop_event if stop_event is not None else threading.Event()
        _log.info("Agent loop started")
        while not stop.is_set():
            try:
                msg = self._bus.pop_inbound(timeout=POLL_INTERVAL)
            except BusTimeoutError:
                continue
            try:
                self.process(msg)
            except Exception:
                _log.exception("Agent turn failed for %s:%s", msg.channel, msg.chat_id)