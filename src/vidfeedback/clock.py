"""Timeline clock: the single authoritative elapsed-time source of a session.

A capture clock moves ``IDLE -> RECORDING -> STOPPED``; a replay clock moves
``IDLE -> REPLAYING <-> PAUSED -> COMPLETED``. ``now()`` reports milliseconds
since the origin and never decreases while the clock runs. Only ``seek()`` on a
replay clock may move it backwards, and it does so explicitly.

At most one capture clock and one replay clock may be active in the process.
The registry below enforces that; clocks themselves are still passed by
reference to every producer and consumer.
"""
from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Callable, Optional

from vidfeedback.errors import AlreadyActiveError, ClockStateError
from vidfeedback.signals import Signal

logger = logging.getLogger(__name__)

TimeSource = Callable[[], int]  # nanoseconds, monotonic


class ClockMode(str, Enum):
    CAPTURE = "capture"
    REPLAY = "replay"


class ClockState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    STOPPED = "stopped"
    REPLAYING = "replaying"
    PAUSED = "paused"
    COMPLETED = "completed"


_RUNNING = {ClockState.RECORDING, ClockState.REPLAYING}
_ACTIVE = {ClockState.RECORDING, ClockState.REPLAYING, ClockState.PAUSED}
_TERMINAL = {ClockState.STOPPED, ClockState.COMPLETED}

# Process-wide registry of active clocks, one slot per mode.
_REGISTRY_LOCK = threading.Lock()
_active_clocks: dict[ClockMode, "TimelineClock"] = {}


def active_clock(mode: ClockMode) -> Optional["TimelineClock"]:
    """Return the clock currently holding the ``mode`` slot, if any."""
    with _REGISTRY_LOCK:
        return _active_clocks.get(mode)


def reset_active_clocks() -> None:
    """Forget every registered clock. Intended for test teardown."""
    with _REGISTRY_LOCK:
        _active_clocks.clear()


class TimelineClock:
    """Elapsed-milliseconds clock for one capture or replay session."""

    def __init__(
        self,
        mode: ClockMode,
        time_source: TimeSource = time.monotonic_ns,
        speed: float = 1.0,
    ) -> None:
        if speed <= 0:
            raise ValueError(f"speed must be > 0, got {speed}")
        self.mode = mode
        self.speed = speed
        self._time_source = time_source
        self._state = ClockState.IDLE
        self._origin_ns = 0
        self._base_ms = 0.0
        self._last_ms = 0.0
        self.transitions: Signal[tuple[ClockState, ClockState]] = Signal(f"{mode.value}-clock")

    @property
    def state(self) -> ClockState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state in _ACTIVE

    @property
    def is_running(self) -> bool:
        return self._state in _RUNNING

    def _set_state(self, new: ClockState) -> None:
        old = self._state
        self._state = new
        logger.debug("%s clock: %s -> %s at %.1fms", self.mode.value, old.value, new.value, self._last_ms)
        self.transitions.publish((old, new))

    def _claim(self) -> None:
        with _REGISTRY_LOCK:
            holder = _active_clocks.get(self.mode)
            if holder is not None and holder is not self and holder.is_active:
                raise AlreadyActiveError(f"{self.mode.value} clock")
            _active_clocks[self.mode] = self

    def _release(self) -> None:
        with _REGISTRY_LOCK:
            if _active_clocks.get(self.mode) is self:
                del _active_clocks[self.mode]

    def _elapsed_ms(self) -> float:
        # integer nanosecond deltas keep whole-millisecond offsets exact
        return self._base_ms + (self._time_source() - self._origin_ns) * self.speed / 1_000_000

    def start(self, origin_ms: float = 0.0) -> None:
        """Fix the origin and begin advancing.

        Raises:
            AlreadyActiveError: this clock, or another clock of the same mode, is active.
            ClockStateError: the clock already reached a terminal state.
        """
        if self.is_active:
            raise AlreadyActiveError(f"{self.mode.value} clock")
        if self._state in _TERMINAL:
            raise ClockStateError("start", self._state.value)
        self._claim()
        self._origin_ns = self._time_source()
        self._base_ms = float(origin_ms)
        self._last_ms = float(origin_ms)
        self._set_state(ClockState.RECORDING if self.mode is ClockMode.CAPTURE else ClockState.REPLAYING)

    def now(self) -> float:
        """Milliseconds since origin; frozen unless the clock is running."""
        if self._state in _RUNNING:
            self._last_ms = max(self._last_ms, self._elapsed_ms())
        return self._last_ms

    def pause(self) -> None:
        if self.mode is not ClockMode.REPLAY or self._state is not ClockState.REPLAYING:
            raise ClockStateError("pause", self._state.value)
        self.now()
        self._set_state(ClockState.PAUSED)

    def resume(self) -> None:
        if self._state is not ClockState.PAUSED:
            raise ClockStateError("resume", self._state.value)
        self._origin_ns = self._time_source()
        self._base_ms = self._last_ms
        self._set_state(ClockState.REPLAYING)

    def seek(self, offset_ms: float) -> None:
        """Move a replay clock to ``offset_ms``, keeping its running/paused state."""
        if self.mode is not ClockMode.REPLAY or not self.is_active:
            raise ClockStateError("seek", self._state.value)
        offset_ms = max(0.0, float(offset_ms))
        self._origin_ns = self._time_source()
        self._base_ms = offset_ms
        self._last_ms = offset_ms

    def stop(self) -> float:
        """Terminate the clock and return its final value."""
        if not self.is_active:
            raise ClockStateError("stop", self._state.value)
        final = self.now()
        self._release()
        self._set_state(ClockState.STOPPED if self.mode is ClockMode.CAPTURE else ClockState.COMPLETED)
        return final

    def complete(self) -> float:
        if self.mode is not ClockMode.REPLAY:
            raise ClockStateError("complete", self._state.value)
        return self.stop()
