from __future__ import annotations

from dataclasses import dataclass, field
import pathlib
import time
from typing import Protocol

import numpy as np
from PIL import Image

from teachable.errors import NotReady


@dataclass
class Frame:
    """Container for a captured RGB frame."""

    pixels: np.ndarray
    timestamp: float = field(default_factory=time.time)

    @property
    def size(self) -> tuple[int, int]:
        height, width = self.pixels.shape[:2]
        return width, height


class Camera(Protocol):
    def start(self) -> None: ...

    def is_ready(self) -> bool: ...

    def next_frame(self) -> Frame: ...

    def release(self) -> None: ...


class StubCamera:
    """Camera stand-in that serves a fixed image or a solid colour."""

    def __init__(
        self,
        sample_path: pathlib.Path | None = None,
        *,
        color: tuple[int, int, int] = (128, 128, 128),
        resolution: tuple[int, int] = (640, 480),
        auto_start: bool = True,
    ) -> None:
        self._sample_path = sample_path
        self._color = color
        self._resolution = resolution
        self._pixels: np.ndarray | None = None
        self._ready = False
        self.frames_served = 0
        if auto_start:
            self.start()

    def start(self) -> None:
        if self._sample_path and self._sample_path.exists():
            with Image.open(self._sample_path) as img:
                self._pixels = np.asarray(img.convert("RGB"), dtype=np.uint8)
        else:
            width, height = self._resolution
            self._pixels = np.full((height, width, 3), self._color, dtype=np.uint8)
        self._ready = True

    def is_ready(self) -> bool:
        return self._ready

    def next_frame(self) -> Frame:
        if not self._ready or self._pixels is None:
            raise NotReady("Camera has not been started")
        self.frames_served += 1
        return Frame(pixels=self._pixels.copy())

    def release(self) -> None:
        self._ready = False


class OpenCVCamera:
    """Capture frames from an OpenCV-compatible source (USB/RTSP)."""

    _BACKEND_ALIASES = {
        "any": "CAP_ANY",
        "auto": "CAP_ANY",
        "dshow": "CAP_DSHOW",
        "directshow": "CAP_DSHOW",
        "msmf": "CAP_MSMF",
        "mediafoundation": "CAP_MSMF",
        "v4l2": "CAP_V4L2",
        "avfoundation": "CAP_AVFOUNDATION",
        "opencv": "CAP_ANY",
    }

    def __init__(
        self,
        source: int | str = 0,
        *,
        resolution: tuple[int, int] | None = (640, 480),
        backend: str | int | None = None,
        warmup_frames: int = 2,
    ) -> None:
        try:
            import cv2  # type: ignore
        except ImportError as exc:  # pragma: no cover - depends on optional dep
            raise RuntimeError("opencv-python is required for OpenCVCamera") from exc

        self._cv2 = cv2
        self._source = source
        self._resolution = resolution
        self._backend = self._resolve_backend(backend, cv2)
        self._warmup_frames = warmup_frames
        self._cap = None

    def _resolve_backend(self, backend: str | int | None, cv2_module) -> int:
        if backend is None:
            return cv2_module.CAP_ANY
        if isinstance(backend, int):
            return backend
        key = backend.strip().lower()
        attr_name = self._BACKEND_ALIASES.get(key)
        if attr_name is None:
            raise ValueError(f"Unknown OpenCV backend alias: {backend!r}")
        return getattr(cv2_module, attr_name, cv2_module.CAP_ANY)

    def start(self) -> None:
        if self._cap is not None:
            return
        cap = self._cv2.VideoCapture(self._source, self._backend)
        if not cap.isOpened():
            cap.release()
            raise NotReady(f"Unable to open camera source {self._source!r}")
        if self._resolution:
            width, height = self._resolution
            cap.set(self._cv2.CAP_PROP_FRAME_WIDTH, float(width))
            cap.set(self._cv2.CAP_PROP_FRAME_HEIGHT, float(height))
        self._cap = cap
        if self._warmup_frames > 0:
            self._warmup(self._warmup_frames)

    def _warmup(self, warmup_frames: int) -> None:
        for _ in range(warmup_frames):
            ok, _ = self._cap.read()
            if not ok:
                break

    def is_ready(self) -> bool:
        return self._cap is not None and self._cap.isOpened()

    def next_frame(self) -> Frame:
        if not self.is_ready():
            raise NotReady("Camera has not been started")
        ok, frame = self._cap.read()
        if not ok or frame is None:
            raise NotReady("Failed to capture frame from camera")
        rgb = self._cv2.cvtColor(frame, self._cv2.COLOR_BGR2RGB)
        return Frame(pixels=rgb)

    def release(self) -> None:
        if getattr(self, "_cap", None) is not None:
            self._cap.release()
            self._cap = None

    def __del__(self) -> None:  # pragma: no cover - destructor best effort
        try:
            self.release()
        except Exception:
            pass


__all__ = ["Frame", "Camera", "StubCamera", "OpenCVCamera"]
