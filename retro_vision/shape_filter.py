# shape_filter.py
"""HSV threshold + contour extraction producing Outlines."""
from __future__ import annotations

from typing import List

import cv2
import numpy as np

from retro_vision.common import BoundingBox, Outline
from retro_vision.config import FilterConfig
from retro_vision.thresholds import ThresholdStore


def outline_from_points(points) -> Outline:
    """Build an Outline from an N×2 point list (or an OpenCV contour)."""
    contour = np.asarray(points)
    if contour.dtype != np.int32:
        contour = contour.astype(np.float32)
    contour = contour.reshape(-1, 1, 2)
    area = float(cv2.contourArea(contour))
    x, y, w, h = cv2.boundingRect(contour)
    pts = contour.reshape(-1, 2).copy()
    pts.flags.writeable = False
    return Outline(points=pts, area=area, bbox=BoundingBox(x, y, w, h))


class ShapeFilter:
    def __init__(self, thresholds: ThresholdStore, config: FilterConfig | None = None):
        self.thresholds = thresholds
        self.config = config or FilterConfig()
        k = max(1, self.config.kernel_size)
        self._kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (k, k))

    def mask(self, frame_bgr: np.ndarray) -> np.ndarray:
        """Binary mask of in-range pixels with small specks opened away."""
        t = self.thresholds.current()
        hsv = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2HSV)
        mask = cv2.inRange(hsv, np.array(t.hsv_low, np.uint8), np.array(t.hsv_high, np.uint8))
        if self.config.open_iterations > 0:
            mask = cv2.morphologyEx(
                mask, cv2.MORPH_OPEN, self._kernel, iterations=self.config.open_iterations
            )
        return mask

    def extract(self, frame_bgr: np.ndarray) -> List[Outline]:
        """External outlines of the mask, largest first."""
        return self.outlines(self.mask(frame_bgr))

    @staticmethod
    def outlines(mask: np.ndarray) -> List[Outline]:
        found = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
        # OpenCV 3 returns (image, contours, hierarchy)
        contours = found[1] if len(found) == 3 else found[0]
        out = [outline_from_points(c) for c in contours]
        out.sort(key=lambda o: o.area, reverse=True)
        return out
