from __future__ import annotations

from typing import Iterator, List

import numpy as np

from .types import ClassLabel, Sample


class SampleStore:
    """Append-only collection of (feature vector, label) samples."""

    def __init__(self) -> None:
        self._samples: List[Sample] = []
        self._counts: dict[ClassLabel, int] = {}

    def __len__(self) -> int:
        return len(self._samples)

    def __iter__(self) -> Iterator[Sample]:
        return iter(list(self._samples))

    def add(self, sample: Sample) -> None:
        self._samples.append(sample)
        self._counts[sample.label] = self._counts.get(sample.label, 0) + 1

    def count_for(self, label: ClassLabel) -> int:
        return self._counts.get(label, 0)

    def all(self) -> List[Sample]:
        return list(self._samples)

    def labels(self) -> set[ClassLabel]:
        return set(self._counts)

    def arrays(self) -> tuple[np.ndarray, np.ndarray]:
        """Return the stacked feature matrix and the matching label vector."""
        if not self._samples:
            return np.empty((0, 0), dtype=np.float32), np.empty((0,), dtype=np.int64)
        features = np.stack([sample.features for sample in self._samples]).astype(
            np.float32, copy=False
        )
        labels = np.asarray([sample.label for sample in self._samples], dtype=np.int64)
        return features, labels

    def clear(self) -> None:
        self._samples.clear()
        self._counts.clear()


__all__ = ["SampleStore"]
