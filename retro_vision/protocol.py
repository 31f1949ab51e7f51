# protocol.py
"""
Text wire format shared by the vision node and the controller.

Vision node -> controller
    angle:     ``"<angle>!"``                   e.g. ``b"12.5!"``
    position:  ``"<x>,<y>,<z>,<vx>,<vy>,<vz>"`` (no trailing delimiter)

Controller -> vision node
    A single leading digit ``0``-``3`` (see :class:`~retro_vision.common.Mode`).
    Anything after the first byte is ignored.
"""
from __future__ import annotations

from typing import Optional

from retro_vision.common import Mode, PositionReport, TelemetryValue

DEFAULT_BUFFER_SIZE = 1024
ANGLE_TERMINATOR = "!"
FIELD_SEPARATOR = ","


class PayloadTooLarge(ValueError):
    """Raised when an encoded payload does not fit in one datagram buffer."""


class MalformedPayload(ValueError):
    """Raised when a telemetry payload cannot be parsed."""


def _fmt(value: float) -> str:
    # float() first: numpy scalars repr as e.g. "np.float64(12.5)"
    return repr(float(value))


def _check_size(data: bytes, limit: int) -> bytes:
    if len(data) > limit:
        raise PayloadTooLarge(f"{len(data)} byte payload exceeds {limit} byte buffer")
    return data


class AngleCodec:
    name = "angle"

    def __init__(self, buffer_size: int = DEFAULT_BUFFER_SIZE) -> None:
        self.buffer_size = buffer_size

    def encode(self, value: TelemetryValue) -> bytes:
        if isinstance(value, PositionReport):
            raise TypeError("AngleCodec cannot encode a PositionReport")
        text = _fmt(value) + ANGLE_TERMINATOR
        return _check_size(text.encode("ascii"), self.buffer_size)

    def decode(self, data: bytes) -> float:
        text = data.decode("ascii", errors="replace")
        head, sep, _ = text.partition(ANGLE_TERMINATOR)
        if not sep:
            raise MalformedPayload(f"missing {ANGLE_TERMINATOR!r} terminator: {text!r}")
        try:
            return float(head)
        except ValueError as exc:
            raise MalformedPayload(f"bad angle {head!r}") from exc


class PositionCodec:
    name = "position"

    def __init__(self, buffer_size: int = DEFAULT_BUFFER_SIZE) -> None:
        self.buffer_size = buffer_size

    def encode(self, value: TelemetryValue) -> bytes:
        if not isinstance(value, PositionReport):
            value = PositionReport(float(value), 0.0, 0.0, 0.0, 0.0, 0.0)
        text = FIELD_SEPARATOR.join(_fmt(v) for v in value)
        return _check_size(text.encode("ascii"), self.buffer_size)

    def decode(self, data: bytes) -> PositionReport:
        text = data.decode("ascii", errors="replace").strip("\x00 \r\n")
        parts = text.split(FIELD_SEPARATOR)
        if len(parts) != len(PositionReport._fields):
            raise MalformedPayload(f"expected 6 fields, got {len(parts)}: {text!r}")
        try:
            return PositionReport(*(float(p) for p in parts))
        except ValueError as exc:
            raise MalformedPayload(f"bad position payload {text!r}") from exc


_CODECS = {AngleCodec.name: AngleCodec, PositionCodec.name: PositionCodec}


def make_codec(name: str, buffer_size: int = DEFAULT_BUFFER_SIZE):
    try:
        return _CODECS[name](buffer_size)
    except KeyError:
        raise ValueError(f"Unknown payload codec {name!r}") from None


# ---------------------- Mode payloads ----------------------
def encode_mode(mode: Mode) -> bytes:
    return mode.digit.encode("ascii")


def decode_mode(data: bytes) -> Optional[Mode]:
    """Leading byte -> Mode, or None when it is not a known digit."""
    if not data:
        return None
    return Mode.from_digit(chr(data[0]))
