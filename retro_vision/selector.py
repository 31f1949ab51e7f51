# selector.py
"""Pick the two outlines most likely to be the taped target."""
from __future__ import annotations

import logging
from typing import Callable, Dict, Optional, Sequence, Tuple

from retro_vision.common import Candidate, Outline
from retro_vision.config import SelectorConfig
from retro_vision.thresholds import ThresholdStore

log = logging.getLogger(__name__)

RankKey = Callable[[Outline], Tuple[float, ...]]

RANKINGS: Dict[str, RankKey] = {
    "area": lambda o: (o.area,),
    # Fill ratio first; a merged blob or noise fragment rarely fills its box
    "concavity": lambda o: (o.concavity, o.area),
}


class TargetSelector:
    def __init__(self, thresholds: ThresholdStore, config: SelectorConfig | None = None):
        self.thresholds = thresholds
        self.config = config or SelectorConfig()
        try:
            self._key = RANKINGS[self.config.ranking]
        except KeyError:
            raise ValueError(f"Unknown ranking {self.config.ranking!r}") from None

    def accepted(self, outlines: Sequence[Outline]) -> list[Outline]:
        t = self.thresholds.current()
        return [o for o in outlines if t.min_area <= o.area <= t.max_area]

    def select(self, outlines: Sequence[Outline]) -> Optional[Candidate]:
        """Best two outlines in the area window, or None if fewer than two qualify."""
        survivors = self.accepted(outlines)
        if len(survivors) < 2:
            log.debug("No target: %d/%d outlines in area range", len(survivors), len(outlines))
            return None

        ranked = sorted(survivors, key=self._key, reverse=True)
        return Candidate(primary=ranked[0], secondary=ranked[1])
