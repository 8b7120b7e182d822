from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, Dict, Mapping, Protocol, Sequence

import numpy as np

if TYPE_CHECKING:
    from device.capture import Frame

ClassLabel = int
ExampleCounts = Dict[ClassLabel, int]
EpochCallback = Callable[[int, Mapping[str, float]], None]


class StateKind(str, Enum):
    IDLE = "idle"
    GATHERING = "gathering"
    TRAINING = "training"
    PREDICTING = "predicting"


@dataclass(frozen=True)
class SessionState:
    kind: StateKind
    label: ClassLabel | None = None

    @classmethod
    def idle(cls) -> "SessionState":
        return cls(StateKind.IDLE)

    @classmethod
    def gathering(cls, label: ClassLabel) -> "SessionState":
        return cls(StateKind.GATHERING, label)

    @classmethod
    def training(cls) -> "SessionState":
        return cls(StateKind.TRAINING)

    @classmethod
    def predicting(cls) -> "SessionState":
        return cls(StateKind.PREDICTING)

    def __str__(self) -> str:
        if self.kind is StateKind.GATHERING:
            return f"Gathering({self.label})"
        return self.kind.value.capitalize()


@dataclass(frozen=True)
class Sample:
    features: np.ndarray
    label: ClassLabel


@dataclass(frozen=True)
class Prediction:
    label: ClassLabel
    class_name: str
    confidence: float
    probabilities: tuple[float, ...]

    def describe(self) -> str:
        return (
            f"Prediction: {self.class_name} with "
            f"{int(np.floor(self.confidence * 100))}% confidence"
        )


class CaptureSource(Protocol):
    def is_ready(self) -> bool: ...

    def next_frame(self) -> "Frame": ...


class FeatureExtractor(Protocol):
    @property
    def feature_dim(self) -> int: ...

    def extract(self, frame: "Frame") -> np.ndarray: ...


class StatusSink(Protocol):
    def display(self, text: str) -> None: ...


class ClassifierHead(Protocol):
    @property
    def num_classes(self) -> int: ...

    @property
    def loss(self) -> str: ...

    async def fit(
        self,
        features: Sequence[np.ndarray],
        labels: Sequence[ClassLabel],
        *,
        batch_size: int,
        epochs: int,
        on_epoch_end: EpochCallback | None = None,
    ) -> None: ...

    def predict(self, features: np.ndarray) -> np.ndarray: ...


HeadFactory = Callable[[int, int], ClassifierHead]


__all__ = [
    "ClassLabel",
    "ExampleCounts",
    "EpochCallback",
    "StateKind",
    "SessionState",
    "Sample",
    "Prediction",
    "CaptureSource",
    "FeatureExtractor",
    "StatusSink",
    "ClassifierHead",
    "HeadFactory",
]
