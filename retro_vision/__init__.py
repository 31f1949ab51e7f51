# retro_vision/__init__.py
"""Retro-reflective target tracking – re-export high-level API."""
from .common import Candidate, Mode, Outline, PositionReport  # noqa: F401
from .config import (                                         # noqa: F401
    CameraConfig, FilterConfig, MeasurementConfig, PreferencesConfig,
    ProcessingConfig, SelectorConfig, TelemetryConfig,
)
from .processor import VisionProcessor                        # noqa: F401
from .session import SessionState, TelemetrySession           # noqa: F401
