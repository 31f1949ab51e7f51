# measurement.py
"""Turn a selected Candidate into the value reported to the controller."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional

import numpy as np

from retro_vision.common import Candidate, PositionReport, TelemetryValue
from retro_vision.config import MeasurementConfig

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CameraGeometry:
    horizontal_fov_deg: float
    frame_width: int

    @property
    def focal_length_px(self) -> float:
        """Pinhole focal length implied by the horizontal FOV."""
        half_fov = math.radians(self.horizontal_fov_deg) / 2.0
        return (self.frame_width / 2.0) / math.tan(half_fov)


def _midpoint_x(candidate: Candidate) -> float:
    a = candidate.primary.bbox
    b = candidate.secondary.bbox
    return ((a.x + a.width / 2.0) + (b.x + b.width / 2.0)) / 2.0


class AngleMeasurement:
    """
    Horizontal incidence angle of the target centre.

    0 when the target is centred, +-FOV/2 at the frame edges (before
    ``angle_scale`` / ``zero_offset`` are applied).
    """

    def __init__(self, geometry: CameraGeometry, config: MeasurementConfig | None = None):
        self.geometry = geometry
        self.config = config or MeasurementConfig()
        if self.config.angle_units == "deg":
            self._fov = geometry.horizontal_fov_deg
        elif self.config.angle_units == "rad":
            self._fov = math.radians(geometry.horizontal_fov_deg)
        else:
            raise ValueError(f"Unknown angle units {self.config.angle_units!r}")

    def measure(self, candidate: Candidate) -> float:
        width = self.geometry.frame_width
        normalized = (_midpoint_x(candidate) - width / 2.0) / width
        return normalized * self._fov * self.config.angle_scale + self.config.zero_offset

    def reset(self) -> None:
        pass


class VelocityFilter:
    """
    First-order IIR low-pass on the frame-to-frame delta::

        v_t = decay * v_(t-1) + gain * (p_t - p_(t-1))
    """

    def __init__(self, decay: float = 0.4, gain: float = 0.6, dims: int = 3):
        self.decay = decay
        self.gain = gain
        self.dims = dims
        self.reset()

    def reset(self) -> None:
        self.last: Optional[np.ndarray] = None
        self.velocity = np.zeros(self.dims)

    def update(self, position) -> np.ndarray:
        p = np.asarray(position, dtype=float)
        if self.last is not None:
            self.velocity = self.decay * self.velocity + self.gain * (p - self.last)
        self.last = p
        return self.velocity.copy()


class PositionMeasurement:
    """Pixel midpoint, pseudo-distance and smoothed velocity of the target."""

    def __init__(self, geometry: CameraGeometry, config: MeasurementConfig | None = None):
        self.geometry = geometry
        self.config = config or MeasurementConfig()
        self.velocity = VelocityFilter(self.config.velocity_decay, self.config.velocity_gain)

    def distance(self, separation_px: float) -> float:
        """Range at which the target's width subtends ``separation_px`` pixels."""
        if separation_px <= 0:
            log.debug("Degenerate separation %.2f px, reporting z=0", separation_px)
            return 0.0
        # Angle the two strips subtend, assuming they straddle the optical axis
        theta = 2.0 * math.atan(separation_px / (2.0 * self.geometry.focal_length_px))
        return self.config.target_width_m / (2.0 * math.tan(theta / 2.0))

    def measure(self, candidate: Candidate) -> PositionReport:
        (ax, ay) = candidate.primary.bbox.center
        (bx, by) = candidate.secondary.bbox.center
        x = (ax + bx) / 2.0
        y = (ay + by) / 2.0
        z = self.distance(abs(ax - bx))
        vx, vy, vz = self.velocity.update((x, y, z))
        return PositionReport(x, y, z, float(vx), float(vy), float(vz))

    def reset(self) -> None:
        self.velocity.reset()


def make_measurement(geometry: CameraGeometry, config: MeasurementConfig):
    if config.variant == "angle":
        return AngleMeasurement(geometry, config)
    if config.variant == "position":
        return PositionMeasurement(geometry, config)
    raise ValueError(f"Unknown measurement variant {config.variant!r}")


def initial_value(config: MeasurementConfig) -> TelemetryValue:
    if config.variant == "position":
        return PositionReport(0.0, 0.0, 0.0, 0.0, 0.0, 0.0)
    return 0.0
