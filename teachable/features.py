from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

import numpy as np
import torch
import torchvision.models as models
from PIL import Image

from .errors import ExtractionFailure
from .types import StatusSink

if TYPE_CHECKING:
    from device.capture import Frame

logger = logging.getLogger(__name__)

MOBILE_NET_FEATURE_DIM = 1024
IMAGENET_MEAN = np.array([0.485, 0.456, 0.406], dtype="float32")
IMAGENET_STD = np.array([0.229, 0.224, 0.225], dtype="float32")


def pil_preprocess(pixels: np.ndarray, size: tuple[int, int] = (224, 224)) -> np.ndarray:
    """
    Turn an RGB uint8 array (H,W,C) into a normalized float32 array (C,H,W):
    - bilinear resize to size
    - scale to 0-1
    - normalize using ImageNet mean/std
    """
    img = Image.fromarray(np.asarray(pixels, dtype=np.uint8)).convert("RGB")
    img = img.resize(size, Image.Resampling.BILINEAR)
    arr = np.asarray(img).astype("float32") / 255.0
    arr = (arr - IMAGENET_MEAN) / IMAGENET_STD
    return arr.transpose(2, 0, 1)


class MobileNetFeatureExtractor:
    """
    Frozen MobileNet v3 small with the final classification layer removed.

    The model is loaded on first use. It is never disposed by a session reset,
    so one extractor can serve any number of sessions.
    """

    def __init__(
        self,
        *,
        pretrained: bool = True,
        input_size: tuple[int, int] = (224, 224),
        device: str | None = None,
        status: StatusSink | None = None,
    ) -> None:
        self._pretrained = pretrained
        self._input_size = input_size
        self._device = device or ("cuda" if torch.cuda.is_available() else "cpu")
        self._status = status
        self._model: torch.nn.Module | None = None
        self._lock = threading.Lock()

    @property
    def feature_dim(self) -> int:
        return MOBILE_NET_FEATURE_DIM

    @property
    def loaded(self) -> bool:
        return self._model is not None

    def load(self) -> None:
        with self._lock:
            if self._model is not None:
                return
            weights = models.MobileNet_V3_Small_Weights.DEFAULT if self._pretrained else None
            backbone = models.mobilenet_v3_small(weights=weights)
            # drop the 1000-way ImageNet layer, keep the 1024-unit embedding
            backbone.classifier = torch.nn.Sequential(*list(backbone.classifier.children())[:-1])
            for param in backbone.parameters():
                param.requires_grad = False
            backbone.to(self._device)
            backbone.eval()

            width, height = self._input_size
            with torch.no_grad():
                warm = backbone(torch.zeros(1, 3, height, width, device=self._device))
            logger.info("MobileNet v3 warm-up output shape %s", tuple(warm.shape))
            self._model = backbone

        if self._status is not None:
            self._status.display("MobileNet v3 loaded successfully!")

    def extract(self, frame: "Frame") -> np.ndarray:
        try:
            if self._model is None:
                self.load()
            arr = pil_preprocess(frame.pixels, size=self._input_size)
            x = torch.from_numpy(arr).unsqueeze(0).to(self._device)
            with torch.no_grad():
                features = self._model(x).squeeze(0)
            return features.cpu().numpy().astype(np.float32)
        except Exception as exc:
            raise ExtractionFailure(f"Feature extraction failed: {exc}") from exc


__all__ = ["MobileNetFeatureExtractor", "pil_preprocess", "MOBILE_NET_FEATURE_DIM"]
