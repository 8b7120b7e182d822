"""Session configuration.

Configuration is read from a JSON file (path taken from the
``TEACHABLE_CONFIG`` environment variable, which may come from a ``.env``
file). Every key is optional; missing or malformed values fall back to the
defaults below, which match the original teachable-machine extension:

- training: batch size 5, 10 epochs, Adam with learning rate 0.001
- head: one hidden layer of 128 units
- feature extractor: MobileNet v3 small on 224x224 inputs
- camera: first OpenCV device at 640x480, 30 frames per second
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "TEACHABLE_CONFIG"


@dataclass
class TrainingConfigData:
    batch_size: int = 5
    epochs: int = 10
    hidden_units: int = 128
    learning_rate: float = 0.001
    seed: int | None = None


@dataclass
class CameraConfigData:
    source: int | str = 0
    resolution: tuple[int, int] | None = (640, 480)
    backend: str | int | None = None
    warmup_frames: int = 2
    fps: float = 30.0


@dataclass
class SessionConfig:
    """Settings for one teachable session."""

    training: TrainingConfigData = field(default_factory=TrainingConfigData)
    camera: CameraConfigData = field(default_factory=CameraConfigData)
    input_size: tuple[int, int] = (224, 224)
    pretrained: bool = True
    device: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        camera = asdict(self.camera)
        camera["resolution"] = list(self.camera.resolution) if self.camera.resolution else None
        return {
            "training": asdict(self.training),
            "camera": camera,
            "input_size": list(self.input_size),
            "pretrained": self.pretrained,
            "device": self.device,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionConfig:
        """Create SessionConfig from dictionary, dropping invalid values."""
        defaults_training = TrainingConfigData()
        defaults_camera = CameraConfigData()

        training_data = data.get("training", {})
        if not isinstance(training_data, dict):
            training_data = {}
        training = TrainingConfigData(
            batch_size=_positive_int(training_data.get("batch_size"), defaults_training.batch_size),
            epochs=_positive_int(training_data.get("epochs"), defaults_training.epochs),
            hidden_units=_positive_int(
                training_data.get("hidden_units"), defaults_training.hidden_units
            ),
            learning_rate=_positive_float(
                training_data.get("learning_rate"), defaults_training.learning_rate
            ),
            seed=_optional_int(training_data.get("seed")),
        )

        camera_data = data.get("camera", {})
        if not isinstance(camera_data, dict):
            camera_data = {}
        source = camera_data.get("source", defaults_camera.source)
        if not isinstance(source, (int, str)) or isinstance(source, bool):
            source = defaults_camera.source
        backend = camera_data.get("backend")
        if backend is not None and (not isinstance(backend, (int, str)) or isinstance(backend, bool)):
            backend = None
        if "resolution" in camera_data and camera_data["resolution"] is None:
            resolution = None
        else:
            resolution = _pair(camera_data.get("resolution"), defaults_camera.resolution)
        camera = CameraConfigData(
            source=source,
            resolution=resolution,
            backend=backend,
            warmup_frames=_non_negative_int(
                camera_data.get("warmup_frames"), defaults_camera.warmup_frames
            ),
            fps=_positive_float(camera_data.get("fps"), defaults_camera.fps),
        )

        device = data.get("device")
        if device is not None and not isinstance(device, str):
            device = None

        return cls(
            training=training,
            camera=camera,
            input_size=_pair(data.get("input_size"), (224, 224)) or (224, 224),
            pretrained=bool(data.get("pretrained", True)),
            device=device,
        )


def _positive_int(value: Any, default: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


def _non_negative_int(value: Any, default: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return number if number >= 0 else default


def _positive_float(value: Any, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


def _optional_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _pair(value: Any, default: tuple[int, int] | None) -> tuple[int, int] | None:
    if value is None:
        return default
    if isinstance(value, str):
        value = value.lower().split("x")
    try:
        width, height = (int(part) for part in value)
    except (TypeError, ValueError):
        return default
    if width <= 0 or height <= 0:
        return default
    return width, height


def resolve_config_path() -> Path | None:
    """Return the config path named by the environment, if any."""
    load_dotenv()
    raw = os.environ.get(CONFIG_PATH_ENV, "").strip()
    return Path(raw) if raw else None


def load_session_config(path: Path | None = None) -> SessionConfig:
    """Load session configuration.

    Returns defaults when no path is given, the file is missing, or its
    contents cannot be parsed.
    """
    if path is None:
        path = resolve_config_path()
    if path is None:
        return SessionConfig()
    if not path.exists():
        logger.info("No session config found at %s; using defaults", path)
        return SessionConfig()

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError("top-level JSON value must be an object")
        config = SessionConfig.from_dict(data)
        logger.info(
            "Loaded session config from %s: batch_size=%d epochs=%d camera=%r",
            path,
            config.training.batch_size,
            config.training.epochs,
            config.camera.source,
        )
        return config
    except (OSError, ValueError) as exc:
        logger.warning("Failed to load session config from %s: %s; using defaults", path, exc)
        return SessionConfig()


__all__ = [
    "CONFIG_PATH_ENV",
    "CameraConfigData",
    "SessionConfig",
    "TrainingConfigData",
    "load_session_config",
    "resolve_config_path",
]
