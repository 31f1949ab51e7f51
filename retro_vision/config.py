# config.py
"""Typed configuration blobs for the whole system."""
from dataclasses import dataclass
from typing import Tuple


@dataclass
class CameraConfig:
    source: int | str = 0             # Device index or stream URL
    width: int = 640
    height: int = 480
    fps_request: int = 30
    use_v4l2: bool = False
    horizontal_fov_deg: float = 67.0  # From camera data-sheet
    reopen_delay_s: float = 1.0


@dataclass
class FilterConfig:
    kernel_size: int = 3
    open_iterations: int = 1


@dataclass
class SelectorConfig:
    ranking: str = "concavity"        # "concavity" | "area"


@dataclass
class MeasurementConfig:
    variant: str = "angle"            # "angle" | "position"
    angle_units: str = "deg"          # "deg" | "rad"
    angle_scale: float = 1.0
    zero_offset: float = 0.0
    target_width_m: float = 0.254     # Outer width of the taped target
    velocity_decay: float = 0.4
    velocity_gain: float = 0.6


@dataclass
class TelemetryConfig:
    peer_host: str = "10.54.50.2"
    peer_port: int = 5800
    buffer_size: int = 1024
    response_timeout_s: float = 0.5
    tick_interval_s: float = 0.5
    reconnect_delay_s: float = 1.0
    max_reconnect_delay_s: float = 8.0
    exponential_backoff: bool = False
    strict: bool = False              # Give up instead of retrying on connect failure
    max_send_failures: int = 5        # Consecutive failed exchanges before reconnecting


@dataclass
class PreferencesConfig:
    path: str = "preferences.txt"
    poll_interval_s: float = 1.0
    # Used until the file is readable
    hsv_low: Tuple[int, int, int] = (50, 100, 100)
    hsv_high: Tuple[int, int, int] = (90, 255, 255)
    min_area: float = 50.0
    max_area: float = 20_000.0


@dataclass
class ProcessingConfig:
    loop_delay_s: float = 0.05
    show_window: bool = False
    stats_interval_s: float = 5.0
    join_timeout_s: float = 2.0
    window_name: str = "Target Tracking"
