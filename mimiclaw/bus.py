"""Inbound and outbound message queues between channels and the agent."""

from __future__ import annotations

import logging
import queue
from dataclasses import dataclass
from enum import Enum

_log = logging.getLogger(__name__)

DEFAULT_QUEUE_LEN = 16
PUSH_TIMEOUT = 1.0


class Channel(str, Enum):
    """Known channel identifiers."""

    TELEGRAM = "telegram"
    WEBSOCKET = "websocket"
    CLI = "cli"
    SYSTEM = "system"


@dataclass
class Message:
    """A message travelling on the bus."""

    channel: str
    chat_id: str
    content: str

    def __post_init__(self) -> None:
        if isinstance(self.channel, Channel):
            self.channel = self.channel.value


class BusFullError(Exception):
    """The queue stayed full for the whole push timeout."""


class BusTimeoutError(TimeoutError):
    """No message arrived before the pop timeout ran out."""


class MessageBus:
    """A pair of bounded FIFO queues: inbound (to the agent) and outbound (to channels)."""

    def __init__(self, maxsize: int = DEFAULT_QUEUE_LEN) -> None:
        if maxsize < 1:
            raise ValueError("queue length must be at least 1")
        self.maxsize = maxsize
        self._inbound: queue.Queue[Message] = queue.Queue(maxsize)
        self._outbound: queue.Queue[Message] = queue.Queue(maxsize)
        _log.info("Message bus initialized (queue depth %d)", maxsize)

    @staticmethod
    def _push(q: queue.Queue, msg: Message, timeout: float | None, label: str) -> None:
        try:
            q.put(msg, block=True, timeout=timeout)
        except queue.Full:
            _log.warning("%s queue full, dropping message", label)
            raise BusFullError(f"{label.lower()} queue full") from None

    @staticmethod
    def _pop(q: queue.Queue, timeout: float | None) -> Message:
        try:
            return q.get(block=True, timeout=timeout)
        except queue.Empty:
            raise BusTimeoutError("no message before timeout") from None

    def push_inbound(self, msg: Message, timeout: float | None = PUSH_TIMEOUT) -> None:
        """Queue a message for the agent; raise BusFullError if no room in time."""
        self._push(self._inbound, msg, timeout, "Inbound")

    def pop_inbound(self, timeout: float | None = None) -> Message:
        """Take the oldest inbound message; None waits forever."""
        return self._pop(self._inbound, timeout)

    def push_outbound(self, msg: Message, timeout: float | None = PUSH_TIMEOUT) -> None:
        """Queue a message for the channels; raise BusFullError if no room in time."""
        self._push(self._outbound, msg, timeout, "Outbound")

    def pop_outbound(self, timeout: float | None = None) -> Message:
        """Take the oldest outbound message; None waits forever."""
        return self._pop(self._outbound, timeout)