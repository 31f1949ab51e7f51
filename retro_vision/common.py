# common.py
"""Objects that are shared across multiple modules."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import NamedTuple, Optional, Tuple, Union

import numpy as np


class Mode(Enum):
    """Target mode commanded by the controller, keyed by its wire digit."""
    TRACKING_A = "3"
    TRACKING_B = "2"
    IDLE = "1"
    DISABLED = "0"

    @property
    def digit(self) -> str:
        return self.value

    @property
    def is_tracking(self) -> bool:
        return self in (Mode.TRACKING_A, Mode.TRACKING_B)

    @classmethod
    def from_digit(cls, char: str) -> Optional["Mode"]:
        try:
            return cls(char)
        except ValueError:
            return None


@dataclass(frozen=True)
class BoundingBox:
    x: float
    y: float
    width: float
    height: float

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def center(self) -> Tuple[float, float]:
        return (self.x + self.width / 2.0, self.y + self.height / 2.0)

    def as_int_tuple(self) -> Tuple[int, int, int, int]:
        return (int(self.x), int(self.y), int(self.width), int(self.height))


@dataclass(frozen=True, eq=False)
class Outline:
    """
    A closed boundary from the binary mask.
    ``points`` is an N×2 array in pixel space; it is never mutated.
    """
    points: np.ndarray
    area: float
    bbox: BoundingBox

    @property
    def concavity(self) -> float:
        """Fill ratio of the outline inside its bounding box."""
        box_area = self.bbox.area
        if box_area <= 0:
            return 0.0
        return self.area / box_area


@dataclass(frozen=True)
class Candidate:
    primary: Outline
    secondary: Outline


class PositionReport(NamedTuple):
    x: float
    y: float
    z: float
    vx: float
    vy: float
    vz: float


TelemetryValue = Union[float, PositionReport]
