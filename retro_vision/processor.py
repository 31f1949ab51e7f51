# processor.py
"""Glue logic that wires camera → shape filter → selector → measurement → telemetry."""
from __future__ import annotations

import logging
import threading
import time
from typing import Optional

import cv2
import numpy as np

from retro_vision.camera import Camera
from retro_vision.common import Candidate, Mode, PositionReport, TelemetryValue
from retro_vision.config import (
    CameraConfig,
    FilterConfig,
    MeasurementConfig,
    PreferencesConfig,
    ProcessingConfig,
    SelectorConfig,
    TelemetryConfig,
)
from retro_vision.measurement import CameraGeometry, initial_value, make_measurement
from retro_vision.preferences import PreferencesWatcher
from retro_vision.protocol import make_codec
from retro_vision.selector import TargetSelector
from retro_vision.session import SessionError, TelemetrySession
from retro_vision.shape_filter import ShapeFilter
from retro_vision.state import ModeState, TelemetryCell
from retro_vision.thresholds import Thresholds, ThresholdStore

log = logging.getLogger(__name__)


class VisionProcessor:
    """The main high-level orchestrator."""

    def __init__(
        self,
        camera_cfg: CameraConfig,
        filter_cfg: FilterConfig,
        selector_cfg: SelectorConfig,
        measurement_cfg: MeasurementConfig,
        telemetry_cfg: TelemetryConfig,
        prefs_cfg: PreferencesConfig,
        processing_cfg: ProcessingConfig,
        *,
        camera: Optional[Camera] = None,
    ):
        # Save configs
        self.camera_cfg = camera_cfg
        self.measurement_cfg = measurement_cfg
        self.processing_cfg = processing_cfg

        # Shared state
        self.mode = ModeState(Mode.IDLE)
        self.cell = TelemetryCell(initial_value(measurement_cfg))
        self.thresholds = ThresholdStore(
            Thresholds(prefs_cfg.hsv_low, prefs_cfg.hsv_high, prefs_cfg.min_area, prefs_cfg.max_area)
        )

        # Build sub-systems
        self.camera = camera or Camera(camera_cfg)
        self.preferences = PreferencesWatcher(
            prefs_cfg.path, self.thresholds, prefs_cfg.poll_interval_s
        )
        self.shape_filter = ShapeFilter(self.thresholds, filter_cfg)
        self.selector = TargetSelector(self.thresholds, selector_cfg)
        self.measurement = make_measurement(
            CameraGeometry(camera_cfg.horizontal_fov_deg, camera_cfg.width), measurement_cfg
        )
        self.session = TelemetrySession(
            telemetry_cfg,
            self.mode,
            self.cell,
            make_codec(measurement_cfg.variant, telemetry_cfg.buffer_size),
        )
        self._session_thread: Optional[threading.Thread] = None

        # Runtime metrics
        self.total_frames = 0
        self.processed_frames = 0
        self.targets_found = 0
        self.proc_time_sum = 0.0
        self.stats_timer_start = time.monotonic()
        self._interval_frames = 0
        self.last_candidate: Optional[Candidate] = None
        self._last_mode = self.mode.get()

    # ---------------------------------------------------------------------
    #                         Setup / teardown
    # ---------------------------------------------------------------------
    def setup(self) -> bool:
        """Open the camera and size the measurement to the real frame width."""
        if self.processing_cfg.show_window:
            cv2.namedWindow(self.processing_cfg.window_name, cv2.WINDOW_NORMAL)
        if not self.camera.open():
            return False
        self._sync_geometry()
        return True

    def _sync_geometry(self) -> None:
        """Rebuild the measurement if the open camera reports a new width."""
        width = self.camera.frame_width
        if width == self.measurement.geometry.frame_width:
            return
        log.info("Frame width now %d px, rebuilding measurement", width)
        self.measurement = make_measurement(
            CameraGeometry(self.camera_cfg.horizontal_fov_deg, width), self.measurement_cfg
        )

    def _run_session(self) -> None:
        try:
            self.session.run()
        except SessionError as exc:
            log.error("Telemetry session gave up: %s", exc)
            self.mode.halt()

    def start_session(self) -> threading.Thread:
        self._session_thread = threading.Thread(
            target=self._run_session, name="telemetry-session", daemon=True
        )
        self._session_thread.start()
        return self._session_thread

    def cleanup(self) -> None:
        log.info("Cleaning up...")
        self.mode.halt()
        if self._session_thread is not None:
            self._session_thread.join(self.processing_cfg.join_timeout_s)
            if self._session_thread.is_alive():
                log.warning("Telemetry session did not stop in time")
        self.camera.release()
        if self.processing_cfg.show_window:
            cv2.destroyAllWindows()
        log.info(
            "Exited. Frames: %d read, %d processed, %d with target",
            self.total_frames, self.processed_frames, self.targets_found,
        )

    # ---------------------------------------------------------------------
    #                        Drawing / UI helpers
    # ---------------------------------------------------------------------
    def _draw_overlay(self, img: np.ndarray, mode: Mode) -> None:
        cv2.putText(img, mode.name, (10, 30), cv2.FONT_HERSHEY_SIMPLEX, 0.7, (0, 255, 0), 2)

        value = self.cell.get()
        if isinstance(value, PositionReport):
            label = f"x:{value.x:.0f} y:{value.y:.0f} z:{value.z:.2f}"
        else:
            label = f"Angle:{value:.2f}"
        cv2.putText(img, label, (10, 60), cv2.FONT_HERSHEY_SIMPLEX, 0.7, (0, 255, 0), 2)

        if self.last_candidate:
            for outline, color in (
                (self.last_candidate.primary, (0, 255, 255)),
                (self.last_candidate.secondary, (0, 0, 255)),
            ):
                x, y, w, h = outline.bbox.as_int_tuple()
                cv2.rectangle(img, (x, y), (x + w, y + h), color, 2)

    # ---------------------------------------------------------------------
    #                          Main per-frame loop
    # ---------------------------------------------------------------------
    def process_frame(self, frame: np.ndarray) -> Optional[TelemetryValue]:
        """
        Run one frame through the pipeline. Publishes and returns the new
        value, or returns None (previous value left standing) if no target.
        """
        outlines = self.shape_filter.extract(frame)
        candidate = self.selector.select(outlines)
        self.last_candidate = candidate
        if candidate is None:
            return None

        value = self.measurement.measure(candidate)
        self.cell.set(value)
        self.targets_found += 1
        return value

    def _step(self) -> None:
        self.preferences.poll()

        # -------- Capture frame (no shared lock held) --------
        _, frame = self.camera.read()
        if frame is None:
            log.warning("Error reading frame, reopening capture source")
            if self.mode.wait_for_halt(self.camera_cfg.reopen_delay_s):
                return
            if self.camera.reopen():
                self._sync_geometry()
            return
        self.total_frames += 1
        self._interval_frames += 1

        # -------- Gate on mode --------
        mode = self.mode.get()
        if mode is not self._last_mode:
            if not mode.is_tracking:
                # Frame-to-frame history is meaningless across a pause
                self.measurement.reset()
            self._last_mode = mode

        if mode.is_tracking:
            tic = time.monotonic()
            value = self.process_frame(frame)
            self.proc_time_sum += time.monotonic() - tic
            self.processed_frames += 1
            if value is None:
                log.debug("Frame processed (%s): no target", mode.name)
            else:
                log.debug("Frame processed (%s): %s", mode.name, value)
        else:
            log.debug("Frame read, processing disabled (%s)", mode.name)

        # -------- Stats --------
        now = time.monotonic()
        elapsed = now - self.stats_timer_start
        if elapsed >= self.processing_cfg.stats_interval_s:
            avg_ms = 1000.0 * self.proc_time_sum / self.processed_frames if self.processed_frames else 0.0
            log.info(
                "%.1f FPS, %.1f ms/frame, %d targets, mode %s",
                self._interval_frames / elapsed, avg_ms,
                self.targets_found, mode.name,
            )
            self.stats_timer_start = now
            self._interval_frames = 0

        # -------- Display --------
        if self.processing_cfg.show_window:
            out = frame.copy()
            self._draw_overlay(out, mode)
            cv2.imshow(self.processing_cfg.window_name, out)

    # ---------------------------------------------------------------------
    #                             Public run()
    # ---------------------------------------------------------------------
    def run(self) -> None:
        if not self.setup():
            log.error("Error opening video stream, will keep retrying")

        self.start_session()
        try:
            while not self.mode.halted:
                self._step()
                if self.processing_cfg.show_window:
                    if (cv2.waitKey(1) & 0xFF) == ord("q"):
                        break
                elif self.mode.wait_for_halt(self.processing_cfg.loop_delay_s):
                    break
        except KeyboardInterrupt:
            log.info("Stopped by user.")
        finally:
            self.cleanup()
