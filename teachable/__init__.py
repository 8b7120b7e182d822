from __future__ import annotations

from .errors import (
    ExtractionFailure,
    InsufficientData,
    InvalidState,
    NotReady,
    SessionError,
    TrainingFailure,
)
from .types import Prediction, Sample, SessionState, StateKind

__all__ = [
    "ExtractionFailure",
    "InsufficientData",
    "InvalidState",
    "NotReady",
    "SessionError",
    "TrainingFailure",
    "Prediction",
    "Sample",
    "SessionState",
    "StateKind",
    "SessionController",
    "SampleStore",
    "MobileNetFeatureExtractor",
    "TorchClassifierHead",
]


def __getattr__(name: str):
    if name == "SessionController":
        from .session import SessionController

        return SessionController
    if name == "SampleStore":
        from .store import SampleStore

        return SampleStore
    if name == "MobileNetFeatureExtractor":
        from .features import MobileNetFeatureExtractor

        return MobileNetFeatureExtractor
    if name == "TorchClassifierHead":
        from .head import TorchClassifierHead

        return TorchClassifierHead
    raise AttributeError(f"module 'teachable' has no attribute {name!r}")
