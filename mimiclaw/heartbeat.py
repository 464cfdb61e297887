"""Periodic check of a task file that prompts the agent when work is pending."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Iterable

from mimiclaw.bus import BusFullError, Channel, Message, MessageBus

_log = logging.getLogger(__name__)

DEFAULT_INTERVAL = 30 * 60.0
HEARTBEAT_CHAT_ID = "heartbeat"

_WHITESPACE = " \t\n\r\v\f"


def heartbeat_prompt(path: str | Path) -> str:
    """Return the prompt sent to the agent for the given task file."""
    return (
        f"Read {path} and follow any instructions or tasks listed there. "
        "If nothing needs attention, reply with just: HEARTBEAT_OK"
    )


def _is_done_checkbox(line: str) -> bool:
    return (
        len(line) >= 5
        and line[0] in "-*"
        and line[1] == " "
        and line[2] == "["
        and line[3] in "xX"
        and line[4] == "]"
    )


def has_tasks(lines: Iterable[str]) -> bool:
    """True if any line is not blank, a header, or a completed checkbox."""
    for raw in lines:
        line = raw.lstrip(_WHITESPACE)
        if not line or line.startswith("#") or _is_done_checkbox(line):
            continue
        return True
    return False


def file_has_tasks(path: str | Path) -> bool:
    """Check the task file; a missing or unreadable file has no tasks."""
    try:
        with open(path, encoding="utf-8", errors="replace") as handle:
            return has_tasks(handle)
    except OSError:
        return False


class Heartbeat:
    """Timer that prompts the agent whenever the task file holds open tasks."""

    def __init__(
        self,
        path: str | Path,
        bus: MessageBus,
        interval: float = DEFAULT_INTERVAL,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.path = Path(path)
        self._bus = bus
        self.interval = interval
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        _log.info(
            "Heartbeat service initialized (file: %s, interval: %gs)", self.path, interval
        )

    @property
    def running(self) -> bool:
        return self._thread is not None

    def trigger(self) -> bool:
        """Check the task file now; return True if the agent was prompted."""
        if not file_has_tasks(self.path):
            _log.debug("No actionable tasks in %s", self.path)
            return False
        msg = Message(Channel.SYSTEM, HEARTBEAT_CHAT_ID, heartbeat_prompt(self.path))
        try:
            self._bus.push_inbound(msg)
        except BusFullError as exc:
            _log.warning("Failed to push heartbeat message: %s", exc)
            return False
        _log.info("Triggered agent check")
        return True

    def start(self) -> None:
        """Start the periodic check in a background thread."""
        if self._thread is not None:
            _log.warning("Heartbeat timer already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="heartbeat", daemon=True)
        self._thread.start()
        _log.info("Heartbeat started (every %g min)", self.interval / 60)

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                self.trigger()
            except Exception:
                _log.exception("Heartbeat check failed")

    def stop(self) -> None:
        """Stop the periodic check if it is running."""
        thread = self._thread
        if thread is None:
            return
        self._stop_event.set()
        thread.join()
        self._thread = None
        _log.info("Heartbeat stopped")