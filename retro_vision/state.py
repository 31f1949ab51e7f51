# state.py
"""The two fields shared between the processing loop and the telemetry session."""
from __future__ import annotations

import logging
import threading
from typing import Callable, List

from retro_vision.common import Mode, TelemetryValue

log = logging.getLogger(__name__)

ModeListener = Callable[[Mode, Mode], None]


class ModeState:
    """
    Lock-guarded operating mode plus the latched halt flag.

    ``set()`` is the session's path for fault markers (a ``DISABLED`` written
    while the link is down is *not* a shutdown). ``command()`` applies a mode
    received from the controller; a commanded ``DISABLED`` latches the halt
    flag. Once halted every further write is refused.
    """

    def __init__(self, initial: Mode = Mode.IDLE) -> None:
        self._mode = initial
        self._lock = threading.Lock()
        self._halted = threading.Event()
        self._listeners: List[ModeListener] = []

    # ------------------------------------------------------------------ #
    #   Reads
    # ------------------------------------------------------------------ #
    def get(self) -> Mode:
        with self._lock:
            return self._mode

    @property
    def halted(self) -> bool:
        return self._halted.is_set()

    def wait_for_halt(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; returns True as soon as halted."""
        return self._halted.wait(timeout)

    # ------------------------------------------------------------------ #
    #   Writes
    # ------------------------------------------------------------------ #
    def set(self, mode: Mode) -> bool:
        return self._write(mode, latch=False)

    def command(self, mode: Mode) -> bool:
        return self._write(mode, latch=mode is Mode.DISABLED)

    def halt(self) -> None:
        """Local stop request: same effect as a commanded ``DISABLED``."""
        self._write(Mode.DISABLED, latch=True)

    def subscribe(self, listener: ModeListener) -> None:
        self._listeners.append(listener)

    def _write(self, mode: Mode, *, latch: bool) -> bool:
        with self._lock:
            if self._halted.is_set():
                if mode is not Mode.DISABLED:
                    log.debug("Mode write %s refused: halted", mode.name)
                return False
            previous = self._mode
            self._mode = mode
            if latch:
                self._halted.set()

        if latch:
            log.info("Halt latched (mode %s -> DISABLED)", previous.name)
        elif previous is not mode:
            log.info("Mode %s -> %s", previous.name, mode.name)
        if previous is not mode:
            for listener in list(self._listeners):
                listener(previous, mode)
        return True

    def __repr__(self) -> str:
        return f"<ModeState {self.get().name}{' halted' if self.halted else ''}>"


class TelemetryCell:
    """Last known good telemetry value; always readable, never blocks on I/O."""

    def __init__(self, initial: TelemetryValue = 0.0) -> None:
        self._value: TelemetryValue = initial
        self._lock = threading.Lock()
        self._updates = 0

    def set(self, value: TelemetryValue) -> None:
        with self._lock:
            self._value = value
            self._updates += 1

    def get(self) -> TelemetryValue:
        with self._lock:
            return self._value

    @property
    def updates(self) -> int:
        with self._lock:
            return self._updates
