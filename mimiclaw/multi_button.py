"""Debounced button state machine reporting clicks, double clicks and long presses."""

from __future__ import annotations

from enum import IntEnum
from typing import Callable

TICKS_INTERVAL = 5
DEBOUNCE_TICKS = 3
SHORT_TICKS = 300 // TICKS_INTERVAL
LONG_TICKS = 1000 // TICKS_INTERVAL
PRESS_REPEAT_MAX_NUM = 15


class PressEvent(IntEnum):
    """Events a button reports."""

    PRESS_DOWN = 0
    PRESS_UP = 1
    PRESS_REPEAT = 2
    SINGLE_CLICK = 3
    DOUBLE_CLICK = 4
    LONG_PRESS_START = 5
    LONG_PRESS_HOLD = 6
    NONE_PRESS = 8


class _State(IntEnum):
    IDLE = 0
    DOWN = 1
    UP = 2
    REPEAT_DOWN = 3
    LONG_HOLD = 5


class Button:
    """One button, sampled by calling tick() at a fixed interval."""

    def __init__(
        self,
        read_level: Callable[[int], int],
        active_level: int = 0,
        button_id: int = 0,
    ) -> None:
        self._read_level = read_level
        self.active_level = 1 if active_level else 0
        self.button_level = 1 - self.active_level
        self.button_id = button_id
        self.event = PressEvent.NONE_PRESS
        self.ticks = 0
        self.repeat = 0
        self.debounce_cnt = 0
        self._state = _State.IDLE
        self._callbacks: dict[PressEvent, Callable[[Button], None]] = {}

    def attach(self, event: PressEvent, callback: Callable[[Button], None]) -> None:
        """Register the callback for an event, replacing any earlier one."""
        event = PressEvent(event)
        if event is PressEvent.NONE_PRESS:
            raise ValueError("cannot attach a callback to NONE_PRESS")
        self._callbacks[event] = callback

    def _fire(self, event: PressEvent) -> None:
        callback = self._callbacks.get(event)
        if callback is not None:
            callback(self)

    def _report(self, event: PressEvent) -> None:
        self.event = event
        self._fire(event)

    def tick(self) -> None:
        """Sample the input once and advance the state machine."""
        level = 1 if self._read_level(self.button_id) else 0

        if self._state is not _State.IDLE:
            self.ticks = (self.ticks + 1) & 0xFFFF

        if level != self.button_level:
            self.debounce_cnt += 1
            if self.debounce_cnt >= DEBOUNCE_TICKS:
                self.button_level = level
                self.debounce_cnt = 0
        else:
            self.debounce_cnt = 0

        pressed = self.button_level == self.active_level
        state = self._state

        if state is _State.IDLE:
            if pressed:
                self._report(PressEvent.PRESS_DOWN)
                self.ticks = 0
                self.repeat = 1
                self._state = _State.DOWN
            else:
                self.event = PressEvent.NONE_PRESS

        elif state is _State.DOWN:
            if not pressed:
                self._report(PressEvent.PRESS_UP)
                self.ticks = 0
                self._state = _State.UP
            elif self.ticks > LONG_TICKS:
                self._report(PressEvent.LONG_PRESS_START)
                self._state = _State.LONG_HOLD

        elif state is _State.UP:
            if pressed:
                self._report(PressEvent.PRESS_DOWN)
                if self.repeat != PRESS_REPEAT_MAX_NUM:
                    self.repeat += 1
                self._fire(PressEvent.PRESS_REPEAT)
                self.ticks = 0
                self._state = _State.REPEAT_DOWN
            elif self.ticks > SHORT_TICKS:
                if self.repeat == 1:
                    self._report(PressEvent.SINGLE_CLICK)
                elif self.repeat == 2:
                    self._report(PressEvent.DOUBLE_CLICK)
                self._state = _State.IDLE

        elif state is _State.REPEAT_DOWN:
            if not pressed:
                self._report(PressEvent.PRESS_UP)
                if self.ticks < SHORT_TICKS:
                    self.ticks = 0
                    self._state = _State.UP
                else:
                    self._state = _State.IDLE
            elif self.ticks > SHORT_TICKS:
                self._state = _State.DOWN

        elif state is _State.LONG_HOLD:
            if pressed:
                self._report(PressEvent.LONG_PRESS_HOLD)
            else:
                self._report(PressEvent.PRESS_UP)
                self._state = _State.IDLE


class ButtonGroup:
    """The set of started buttons, ticked together; newest first."""

    def __init__(self) -> None:
        self._buttons: list[Button] = []

    @property
    def buttons(self) -> tuple[Button, ...]:
        return tuple(self._buttons)

    def start(self, button: Button) -> None:
        """Add a button; raises ValueError if it is already started."""
        if any(existing is button for existing in self._buttons):
            raise ValueError("button already started")
        self._buttons.insert(0, button)

    def stop(self, button: Button) -> None:
        """Remove a button if it is started."""
        for index, existing in enumerate(self._buttons):
            if existing is button:
                del self._buttons[index]
                return

    def ticks(self) -> None:
        """Tick every started button once."""
        for button in tuple(self._buttons):
            button.tick()