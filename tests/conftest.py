"""Shared fixtures for the retro_vision test-suite."""
import numpy as np
import pytest

from retro_vision.common import BoundingBox, Outline
from retro_vision.thresholds import Thresholds, ThresholdStore


def outline(x, y, w, h, area=None):
    """Rectangle-ish outline with an explicit area (defaults to a full box)."""
    pts = np.array([[x, y], [x + w, y], [x + w, y + h], [x, y + h]], dtype=float)
    return Outline(
        points=pts,
        area=float(w * h if area is None else area),
        bbox=BoundingBox(x, y, w, h),
    )


@pytest.fixture
def make_outline():
    return outline


@pytest.fixture
def store():
    return ThresholdStore(Thresholds((50, 100, 100), (70, 255, 255), 50.0, 5000.0))
