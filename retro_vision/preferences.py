# preferences.py
"""
Hot-reload of the eight-line preferences file.

File layout (one number per line, blank lines ignored)::

    H_low
    S_low
    V_low
    H_high
    S_high
    V_high
    min_area
    max_area
"""
from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Optional, Tuple

from retro_vision.thresholds import Thresholds, ThresholdStore

log = logging.getLogger(__name__)

PREFERENCE_LINES = 8


def parse_preferences(text: str) -> Thresholds:
    lines = [ln.strip() for ln in text.splitlines() if ln.strip()]
    if len(lines) != PREFERENCE_LINES:
        raise ValueError(f"expected {PREFERENCE_LINES} values, found {len(lines)}")
    try:
        low = tuple(int(v) for v in lines[0:3])
        high = tuple(int(v) for v in lines[3:6])
        min_area, max_area = float(lines[6]), float(lines[7])
    except ValueError as exc:
        raise ValueError(f"non-numeric preference: {exc}") from exc
    return Thresholds(low, high, min_area, max_area)  # type: ignore[arg-type]


class PreferencesWatcher:
    """Watch the preferences file and push changes into a ThresholdStore."""

    def __init__(
        self,
        path: str | Path,
        store: ThresholdStore,
        poll_interval_s: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.path = Path(path).expanduser().resolve()
        self.store = store
        self.poll_interval_s = poll_interval_s
        self._clock = clock
        self._stamp: Tuple[float, int] = (0.0, -1)  # (mtime, size)
        self._next_poll = 0.0
        self.reloads = 0

        log.info("Watching preferences: %s", self.path)
        if not self._load(initial=True):
            log.info("%s not readable yet, using built-in thresholds", self.path)

    # ------------------------------------------------------------------
    #   Internal helpers
    # ------------------------------------------------------------------
    def _load(self, *, initial: bool = False) -> bool:
        try:
            stat = self.path.stat()
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            if not initial:
                log.warning("%s was deleted, keeping old thresholds", self.path)
            return False
        except OSError as exc:
            log.warning("Failed to read %s: %s", self.path, exc)
            return False

        # Stamp even on a parse error so a broken file is not re-parsed every poll
        self._stamp = (stat.st_mtime, stat.st_size)
        try:
            t = parse_preferences(text)
            self.store.set_thresholds(t.hsv_low, t.hsv_high, t.min_area, t.max_area)
        except ValueError as exc:
            log.warning("Ignoring %s: %s", self.path, exc)
            return False

        self.reloads += 1
        if not initial:
            log.info("Reloaded preferences from %s", self.path)
        return True

    # ------------------------------------------------------------------
    #   Public API
    # ------------------------------------------------------------------
    def maybe_reload(self) -> bool:
        """Reload if the file changed since the last look; True if applied."""
        try:
            stat = self.path.stat()
        except FileNotFoundError:
            return False

        mtime, fsize = self._stamp
        if stat.st_size != fsize or stat.st_mtime != mtime:
            return self._load()
        return False

    def poll(self) -> Optional[bool]:
        """Rate-limited :meth:`maybe_reload`; None when not due yet."""
        now = self._clock()
        if now < self._next_poll:
            return None
        self._next_poll = now + self.poll_interval_s
        return self.maybe_reload()
