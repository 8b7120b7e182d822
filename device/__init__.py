from __future__ import annotations

from .capture import Camera, Frame, OpenCVCamera, StubCamera
from .scheduler import FrameScheduler, FrameSchedulerConfig, IntervalFrameScheduler

__all__ = [
    "Camera",
    "Frame",
    "OpenCVCamera",
    "StubCamera",
    "FrameScheduler",
    "FrameSchedulerConfig",
    "IntervalFrameScheduler",
]
