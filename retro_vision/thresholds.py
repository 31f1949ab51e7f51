# thresholds.py
"""Runtime-adjustable color and area thresholds."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Sequence, Tuple

log = logging.getLogger(__name__)

HSV = Tuple[int, int, int]


@dataclass(frozen=True)
class Thresholds:
    hsv_low: HSV
    hsv_high: HSV
    min_area: float
    max_area: float


def _as_hsv(name: str, values: Sequence[int]) -> HSV:
    if len(values) != 3:
        raise ValueError(f"{name} needs 3 components, got {len(values)}")
    out = tuple(int(v) for v in values)
    for v in out:
        if not 0 <= v <= 255:
            raise ValueError(f"{name} component {v} outside 0-255")
    return out  # type: ignore[return-value]


class ThresholdStore:
    """
    Holds the current :class:`Thresholds` snapshot.

    Readers get an immutable snapshot, so a reload that lands mid-frame never
    mixes old and new values.
    """

    def __init__(self, initial: Thresholds) -> None:
        self._lock = threading.Lock()
        self._current = initial
        self.set_thresholds(initial.hsv_low, initial.hsv_high, initial.min_area, initial.max_area)

    def set_thresholds(
        self,
        low: Sequence[int],
        high: Sequence[int],
        min_area: float,
        max_area: float,
    ) -> Thresholds:
        hsv_low = _as_hsv("low", low)
        hsv_high = _as_hsv("high", high)
        if any(lo > hi for lo, hi in zip(hsv_low, hsv_high)):
            raise ValueError(f"low {hsv_low} exceeds high {hsv_high}")
        min_area, max_area = float(min_area), float(max_area)
        if min_area < 0 or max_area < min_area:
            raise ValueError(f"bad area range [{min_area}, {max_area}]")

        snapshot = Thresholds(hsv_low, hsv_high, min_area, max_area)
        with self._lock:
            changed = snapshot != self._current
            self._current = snapshot
        if changed:
            log.info(
                "Thresholds: HSV %s..%s, area %.1f..%.1f",
                hsv_low, hsv_high, min_area, max_area,
            )
        return snapshot

    def current(self) -> Thresholds:
        with self._lock:
            return self._current
