# controller.py
"""Controller side of the telemetry link: answer each request with a mode."""
from __future__ import annotations

import logging
import socket
import threading
from typing import Optional, Tuple

from retro_vision.common import Mode, TelemetryValue
from retro_vision.protocol import MalformedPayload, encode_mode, make_codec

log = logging.getLogger(__name__)


class ControllerResponder:
    """
    Binds the well-known port, decodes each telemetry request and replies to
    its sender with the currently commanded mode digit.
    """

    def __init__(
        self,
        bind_host: str = "0.0.0.0",
        port: int = 5800,
        codec=None,
        *,
        buffer_size: int = 1024,
        poll_timeout_s: float = 0.5,
        mode: Mode = Mode.IDLE,
    ) -> None:
        self.codec = codec or make_codec("angle", buffer_size)
        self.buffer_size = buffer_size
        self._mode = mode
        self._value: Optional[TelemetryValue] = None
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self.requests = 0
        self.rejected = 0

        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind((bind_host, port))
        self.sock.settimeout(poll_timeout_s)
        log.info("Controller listening on %s:%d", *self.address)

    @property
    def address(self) -> Tuple[str, int]:
        return self.sock.getsockname()

    # -------------------- State ---------------------
    def set_mode(self, mode: Mode) -> None:
        with self._lock:
            self._mode = mode
        log.info("Commanding %s", mode.name)

    def mode(self) -> Mode:
        with self._lock:
            return self._mode

    def latest_value(self) -> Optional[TelemetryValue]:
        with self._lock:
            return self._value

    # ------------------ Serving ---------------------
    def serve_once(self) -> bool:
        """Handle at most one request; False if none arrived in time."""
        try:
            data, addr = self.sock.recvfrom(self.buffer_size)
        except TimeoutError:
            return False

        self.requests += 1
        try:
            value = self.codec.decode(data)
        except MalformedPayload as exc:
            self.rejected += 1
            log.warning("Bad request from %s: %s", addr, exc)
        else:
            with self._lock:
                self._value = value
            log.debug("Request from %s: %r", addr, value)

        self.sock.sendto(encode_mode(self.mode()), addr)
        return True

    def serve_forever(self) -> None:
        while not self._stop.is_set():
            try:
                self.serve_once()
            except OSError as exc:
                if self._stop.is_set():
                    break
                log.warning("Controller socket error: %s", exc)

    def stop(self) -> None:
        self._stop.set()

    def close(self) -> None:
        self.stop()
        self.sock.close()

    def __enter__(self) -> "ControllerResponder":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
