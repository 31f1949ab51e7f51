# session.py
"""
UDP telemetry session: the vision node's side of the link to the controller.

Each tick sends the current telemetry value and waits (bounded) for a reply
whose first byte is the mode the controller wants tracked::

    CLOSED -> CONNECTING -> ACTIVE -> ... -> CLOSED
                  ^            |
                  |            v  (hard socket error)
                  +----- RECONNECTING

A reply timeout is not an error: the tick ends and the next one resends.
"""
from __future__ import annotations

import errno
import logging
import socket
from enum import Enum, auto
from typing import Callable, List, Optional, Tuple

from retro_vision.common import Mode
from retro_vision.config import TelemetryConfig
from retro_vision.protocol import decode_mode, make_codec
from retro_vision.state import ModeState, TelemetryCell

log = logging.getLogger(__name__)


# ------------------- Exceptions / Enums -------------------
class SessionError(RuntimeError):
    """Raised in strict mode when the socket cannot be set up."""


class SessionState(Enum):
    CLOSED = auto()
    CONNECTING = auto()
    ACTIVE = auto()
    RECONNECTING = auto()


class TickResult(Enum):
    UPDATED = auto()      # Reply carried a valid mode
    IGNORED = auto()      # Reply arrived but its first byte was not a mode
    TIMEOUT = auto()
    TRANSIENT = auto()    # Send/receive failed; try again next tick


# errnos meaning the socket itself is unusable
_SOCKET_ERRNOS = frozenset({errno.EBADF, errno.ENOTSOCK})


# ------------------------ Backoff -------------------------
class FixedBackoff:
    def __init__(self, delay: float) -> None:
        self.delay = delay

    def next_delay(self) -> float:
        return self.delay

    def reset(self) -> None:
        pass


class ExponentialBackoff:
    def __init__(self, initial: float, maximum: float, factor: float = 2.0) -> None:
        self.initial = initial
        self.maximum = maximum
        self.factor = factor
        self._next = initial

    def next_delay(self) -> float:
        delay = self._next
        self._next = min(self._next * self.factor, self.maximum)
        return delay

    def reset(self) -> None:
        self._next = self.initial


def make_backoff(cfg: TelemetryConfig):
    if cfg.exponential_backoff:
        return ExponentialBackoff(cfg.reconnect_delay_s, cfg.max_reconnect_delay_s)
    return FixedBackoff(cfg.reconnect_delay_s)


def _udp_socket() -> socket.socket:
    return socket.socket(socket.AF_INET, socket.SOCK_DGRAM)


# ---------------------- Main class ----------------------
class TelemetrySession:
    """
    Owns the socket and the network-side write path of :class:`ModeState`.

    ``sleep(seconds)`` must return True when the wait was cut short by a halt;
    by default it waits on the mode state's halt flag.
    """

    def __init__(
        self,
        config: TelemetryConfig,
        mode: ModeState,
        cell: TelemetryCell,
        codec=None,
        *,
        socket_factory: Callable[[], socket.socket] = _udp_socket,
        resolver: Callable[[str], str] = socket.gethostbyname,
        backoff=None,
        sleep: Optional[Callable[[float], bool]] = None,
    ) -> None:
        self.config = config
        self.mode = mode
        self.cell = cell
        self.codec = codec or make_codec("angle", config.buffer_size)
        self._socket_factory = socket_factory
        self._resolver = resolver
        self._backoff = backoff or make_backoff(config)
        self._sleep = sleep or mode.wait_for_halt

        self._sock: Optional[socket.socket] = None
        self._peer: Optional[Tuple[str, int]] = None
        self._state = SessionState.CLOSED
        self._listeners: List[Callable[[SessionState, SessionState], None]] = []
        self.last_error: Optional[BaseException] = None

        # Counters
        self.ticks = 0
        self.timeouts = 0
        self.send_failures = 0
        self.reconnects = 0
        self._consecutive_failures = 0

    # ---------------- State plumbing ----------------
    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def peer_address(self) -> Optional[Tuple[str, int]]:
        return self._peer

    def add_listener(self, listener: Callable[[SessionState, SessionState], None]) -> None:
        self._listeners.append(listener)

    def _transition(self, new: SessionState) -> None:
        old, self._state = self._state, new
        if old is new:
            return
        log.debug("Session %s -> %s", old.name, new.name)
        for listener in list(self._listeners):
            listener(old, new)

    def _wait(self, seconds: float) -> bool:
        """True if the session should stop (halt latched during/before wait)."""
        if self.mode.halted:
            return True
        return bool(self._sleep(seconds)) or self.mode.halted

    # ---------------- Socket plumbing ----------------
    def _open_socket(self) -> None:
        sock = self._socket_factory()
        try:
            sock.settimeout(self.config.response_timeout_s)
            host = self._resolver(self.config.peer_host)
        except OSError:
            sock.close()
            raise
        self._sock = sock
        self._peer = (host, self.config.peer_port)

    def _close_socket(self) -> None:
        if self._sock is not None:
            try:
                self._sock.close()
            except OSError as exc:
                log.debug("Error closing socket: %s", exc)
            log.info("Shutting down socket")
        self._sock = None

    def is_active(self) -> bool:
        return self._state is SessionState.ACTIVE and self._sock is not None

    # ------------------ Public API -------------------
    def connect(self) -> bool:
        """
        Set up the socket, retrying with backoff until it works or a halt is
        latched. Returns False on halt; raises SessionError in strict mode.
        """
        while not self.mode.halted:
            self._transition(SessionState.CONNECTING)
            try:
                self._open_socket()
            except OSError as exc:
                self.last_error = exc
                self._close_socket()
                self.mode.set(Mode.DISABLED)
                log.warning(
                    "Failed to reach controller %s:%d: %s",
                    self.config.peer_host, self.config.peer_port, exc,
                )
                if self.config.strict:
                    self._transition(SessionState.CLOSED)
                    raise SessionError(f"cannot reach {self.config.peer_host}") from exc
                if self._wait(self._backoff.next_delay()):
                    break
                continue

            self._backoff.reset()
            self._consecutive_failures = 0
            self._transition(SessionState.ACTIVE)
            self.mode.set(Mode.IDLE)
            log.info("Connected to controller %s:%d", *self._peer)
            return True

        self._transition(SessionState.CLOSED)
        return False

    def reconnect(self) -> bool:
        """Tear down the stale socket, back off, and connect again."""
        self.reconnects += 1
        self._transition(SessionState.RECONNECTING)
        self._close_socket()
        self.mode.set(Mode.DISABLED)
        if self._wait(self._backoff.next_delay()):
            self._transition(SessionState.CLOSED)
            return False
        return self.connect()

    def tick(self) -> TickResult:
        """
        One request/response exchange. A timeout or a failed send/receive ends
        the tick without touching Mode. The OSError is re-raised for the caller
        to treat as fatal only when the socket itself is unusable or
        ``max_send_failures`` exchanges in a row have failed.
        """
        if not self.is_active():
            raise RuntimeError("Session is not active")

        self.ticks += 1
        payload = self.codec.encode(self.cell.get())
        log.debug("Request: %r", payload)
        try:
            self._sock.sendto(payload, self._peer)
            data, addr = self._sock.recvfrom(self.config.buffer_size)
        except TimeoutError:
            self._consecutive_failures = 0
            self.timeouts += 1
            log.debug("No response within %.3fs", self.config.response_timeout_s)
            return TickResult.TIMEOUT
        except OSError as exc:
            self.last_error = exc
            if exc.errno in _SOCKET_ERRNOS:
                raise
            self.send_failures += 1
            self._consecutive_failures += 1
            limit = self.config.max_send_failures
            if limit > 0 and self._consecutive_failures >= limit:
                log.warning("%d consecutive send/receive failures", self._consecutive_failures)
                raise
            log.warning("Transient socket error: %s", exc)
            return TickResult.TRANSIENT

        self._consecutive_failures = 0
        if addr != self._peer:
            log.debug("Ignoring datagram from %s:%d", *addr[:2])
            return TickResult.IGNORED
        log.debug("Response: %r", data)
        mode = decode_mode(data)
        if mode is None:
            log.debug("Ignoring response %r", data[:16])
            return TickResult.IGNORED
        self.mode.command(mode)
        return TickResult.UPDATED

    def run(self) -> None:
        """Exchange until halted. Intended to run on its own thread."""
        try:
            if not self.connect():
                return
            while not self.mode.halted:
                try:
                    self.tick()
                except OSError as exc:
                    self.last_error = exc
                    log.error("Socket failure, reconnecting: %s", exc)
                    if not self.reconnect():
                        break
                    continue
                if self._wait(self.config.tick_interval_s):
                    break
        finally:
            self.close()
            log.info(
                "Session ended: %d ticks, %d timeouts, %d reconnects",
                self.ticks, self.timeouts, self.reconnects,
            )

    def close(self) -> None:
        self._close_socket()
        self._transition(SessionState.CLOSED)

    # ---------------- Context / repr ---------------
    def __enter__(self) -> "TelemetrySession":
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"<TelemetrySession peer={self.config.peer_host}:{self.config.peer_port} ({self._state.name})>"
