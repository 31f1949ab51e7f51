# camera.py
"""Thin VideoCapture wrapper with reconnection logic."""
from __future__ import annotations

import logging
import time
from typing import Optional, Tuple

import cv2
import numpy as np

from retro_vision.config import CameraConfig

log = logging.getLogger(__name__)


class Camera:
    def __init__(self, config: CameraConfig) -> None:
        self.config = config
        self.cap: Optional[cv2.VideoCapture] = None

        # Exposed runtime-queryable values
        self.actual_width: int = 0
        self.actual_height: int = 0
        self.actual_fps: float = 0.0
        self.reopens: int = 0

    # ------------------------------------------------------------------ #
    #   P U B L I C   A P I
    # ------------------------------------------------------------------ #
    def open(self) -> bool:
        """Open the device or stream URL and apply resolution/fps."""
        src = self.config.source
        if isinstance(src, int) and self.config.use_v4l2:
            self.cap = cv2.VideoCapture(src, cv2.CAP_V4L2)
        else:
            self.cap = cv2.VideoCapture(src)
        if not self.cap or not self.cap.isOpened():
            log.warning("Could not open video source %r", src)
            self.cap = None
            return False

        # Network streams ignore these; local devices honour them
        if isinstance(src, int):
            self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.config.width)
            self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.config.height)
            if self.config.fps_request > 0:
                self.cap.set(cv2.CAP_PROP_FPS, self.config.fps_request)
            time.sleep(0.1)  # Let driver settle

        self.actual_width = int(self.cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        self.actual_height = int(self.cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
        self.actual_fps = self.cap.get(cv2.CAP_PROP_FPS)

        log.info(
            "Stream opened: %dx%d@%.1f FPS (HFOV=%.1f°)",
            self.actual_width, self.actual_height, self.actual_fps,
            self.config.horizontal_fov_deg,
        )
        if self.actual_width == 0 or self.actual_height == 0:
            # Some MJPEG sources only report size after the first frame
            log.debug("Source did not report a resolution, using configured %dx%d",
                      self.config.width, self.config.height)
            self.actual_width = self.config.width
            self.actual_height = self.config.height
        return True

    def reopen(self) -> bool:
        self.release()
        self.reopens += 1
        return self.open()

    # ------------------------------------------------------------------ #
    #   S T A N D A R D   W R A P P E R S
    # ------------------------------------------------------------------ #
    def read(self) -> Tuple[float, Optional[np.ndarray]]:
        if not self.is_opened():
            return time.time(), None
        ts = time.time()
        ret, frame = self.cap.read()
        return (ts, frame) if ret and frame is not None else (ts, None)

    def is_opened(self) -> bool:
        return bool(self.cap and self.cap.isOpened())

    def release(self) -> None:
        if self.cap:
            log.info("Releasing capture source")
            self.cap.release()
            self.cap = None

    @property
    def frame_width(self) -> int:
        return self.actual_width or self.config.width
