from __future__ import annotations

import asyncio
import inspect
import logging
import platform
from typing import Any, Mapping

from device.capture import Camera, OpenCVCamera
from device.scheduler import FrameScheduler, FrameSchedulerConfig, IntervalFrameScheduler
from teachable.config import CameraConfigData, SessionConfig, load_session_config
from teachable.errors import NotReady, SessionError
from teachable.features import MobileNetFeatureExtractor
from teachable.head import torch_head_factory
from teachable.session import SessionController
from teachable.status import RecordingStatusSink
from teachable.types import FeatureExtractor, HeadFactory, StatusSink

from .blocks import ArgumentInfo, ArgumentType, BlockInfo, BlockType, ExtensionInfo

logger = logging.getLogger(__name__)

EXTENSION_ID = "googleTM"
CAMERA_DENIED_MESSAGE = "Could not open your camera. You may have denied access."

# opcode -> (handler attribute, takes block arguments)
_OPCODES: dict[str, tuple[str, bool]] = {
    "enableCam": ("enable_cam", False),
    "getClassName": ("get_class_name", True),
    "getImageDataOne": ("get_image_data_one", False),
    "getImageDataTwo": ("get_image_data_two", False),
    "trainAndPredict": ("train_and_predict", False),
    "stopPredicting": ("stop_predicting", False),
    "reset": ("reset", False),
    "predictedClass": ("predicted_class", False),
    "statusText": ("status_text", False),
}


class TeachableMachineExtension:
    """Block handlers that drive a SessionController from a host block runtime."""

    def __init__(
        self,
        controller: SessionController,
        *,
        camera: Camera,
        extractor: FeatureExtractor | None = None,
        status: StatusSink | None = None,
    ) -> None:
        self._controller = controller
        self._camera = camera
        self._extractor = extractor
        self._status = status
        self._models_loaded = False

    @property
    def controller(self) -> SessionController:
        return self._controller

    def get_info(self) -> ExtensionInfo:
        return ExtensionInfo(
            id=EXTENSION_ID,
            name="googleTM",
            blocks=[
                BlockInfo(opcode="enableCam", block_type=BlockType.BUTTON, text="enable camera"),
                BlockInfo(
                    opcode="getClassName",
                    block_type=BlockType.COMMAND,
                    text="Enter class name [TEXT]",
                    arguments={
                        "TEXT": ArgumentInfo(type=ArgumentType.TEXT, default_value="classA")
                    },
                ),
                BlockInfo(
                    opcode="getImageDataOne",
                    block_type=BlockType.BUTTON,
                    text="Get image data for first class",
                ),
                BlockInfo(
                    opcode="getImageDataTwo",
                    block_type=BlockType.BUTTON,
                    text="Get image data for second class",
                ),
                BlockInfo(opcode="trainAndPredict", block_type=BlockType.BUTTON, text="train and predict"),
                BlockInfo(opcode="stopPredicting", block_type=BlockType.BUTTON, text="stop predicting"),
                BlockInfo(opcode="reset", block_type=BlockType.BUTTON, text="RESET"),
                BlockInfo(opcode="predictedClass", block_type=BlockType.REPORTER, text="predicted class"),
                BlockInfo(opcode="statusText", block_type=BlockType.REPORTER, text="status"),
            ],
        )

    async def dispatch(self, opcode: str, args: Mapping[str, Any] | None = None) -> Any:
        """Run the handler for ``opcode``; session errors are shown on the status sink."""
        attr, takes_args = _OPCODES[opcode]
        handler = getattr(self, attr)
        try:
            result = handler(dict(args or {})) if takes_args else handler()
            if inspect.isawaitable(result):
                result = await result
        except SessionError as exc:
            logger.warning("Block %s failed: %s", opcode, exc)
            self._display(f"Error: {exc}")
            raise
        return result

    async def load_models(self) -> None:
        """Load and warm up the feature extractor off the event loop."""
        if self._models_loaded:
            return
        await asyncio.to_thread(self.preload_models)

    def preload_models(self) -> None:
        """Load the feature extractor on the calling thread; no-op once loaded."""
        if self._models_loaded:
            return
        load = getattr(self._extractor, "load", None)
        if load is not None:
            load()
        self._models_loaded = True

    def enable_cam(self) -> None:
        logger.info("enable camera called")
        if self._camera.is_ready():
            return
        try:
            self._camera.start()
        except (NotReady, RuntimeError) as exc:
            self._display(CAMERA_DENIED_MESSAGE)
            raise NotReady(CAMERA_DENIED_MESSAGE) from exc

    def get_class_name(self, args: Mapping[str, Any]) -> int:
        name = str(args.get("TEXT", ""))
        logger.info("className %r", name)
        return self._controller.register_class(name)

    async def get_image_data_one(self) -> None:
        await self._controller.toggle_gathering(0)

    async def get_image_data_two(self) -> None:
        await self._controller.toggle_gathering(1)

    async def train_and_predict(self) -> None:
        await self._controller.train()

    async def stop_predicting(self) -> None:
        await self._controller.stop_predicting()

    async def reset(self) -> None:
        await self._controller.reset()

    def predicted_class(self) -> str:
        prediction = self._controller.last_prediction
        return prediction.class_name if prediction is not None else ""

    def status_text(self) -> str:
        text = getattr(self._status, "text", None)
        return text if text is not None else self._controller.status_summary()

    def close(self) -> None:
        try:
            self._camera.release()
        except Exception:  # pragma: no cover - best effort cleanup
            logger.debug("Camera release failed", exc_info=True)

    def _display(self, text: str) -> None:
        if self._status is not None:
            self._status.display(text)


def build_camera(camera_config: CameraConfigData) -> OpenCVCamera:
    source = camera_config.source
    if isinstance(source, str):
        try:
            source = int(source)
        except ValueError:
            pass

    backend = camera_config.backend
    if backend is None and platform.system().lower().startswith("win"):
        backend = "dshow"
    return OpenCVCamera(
        source=source,
        resolution=camera_config.resolution,
        backend=backend,
        warmup_frames=camera_config.warmup_frames,
    )


def create_extension(
    config: SessionConfig | None = None,
    *,
    camera: Camera | None = None,
    extractor: FeatureExtractor | None = None,
    head_factory: HeadFactory | None = None,
    scheduler: FrameScheduler | None = None,
    status: StatusSink | None = None,
    preload_models: bool = True,
) -> TeachableMachineExtension:
    """Wire a ready-to-use extension from config and optional overrides.

    The feature extractor is loaded here, before any block runs, unless
    ``preload_models`` is false; the host must then await ``load_models()``
    before gathering, or the first frame pays for the model load.
    """
    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s [%(name)s] %(message)s")
    cfg = config or load_session_config()
    status = status or RecordingStatusSink()
    camera = camera or build_camera(cfg.camera)
    extractor = extractor or MobileNetFeatureExtractor(
        pretrained=cfg.pretrained,
        input_size=cfg.input_size,
        device=cfg.device,
        status=status,
    )
    head_factory = head_factory or torch_head_factory(
        hidden_units=cfg.training.hidden_units,
        learning_rate=cfg.training.learning_rate,
        device=cfg.device,
        seed=cfg.training.seed,
    )
    scheduler = scheduler or IntervalFrameScheduler(FrameSchedulerConfig(fps=cfg.camera.fps))
    controller = SessionController(
        camera,
        extractor,
        head_factory,
        scheduler,
        status,
        batch_size=cfg.training.batch_size,
        epochs=cfg.training.epochs,
        seed=cfg.training.seed,
    )
    logger.info(
        "Extension %s ready batch_size=%d epochs=%d fps=%.1f",
        EXTENSION_ID,
        cfg.training.batch_size,
        cfg.training.epochs,
        cfg.camera.fps,
    )
    extension = TeachableMachineExtension(
        controller, camera=camera, extractor=extractor, status=status
    )
    if preload_models:
        extension.preload_models()
    return extension


__all__ = ["TeachableMachineExtension", "build_camera", "create_extension", "EXTENSION_ID"]
