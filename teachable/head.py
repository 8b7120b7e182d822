from __future__ import annotations

import asyncio
import logging
from typing import Sequence

import numpy as np
import torch
from torch import nn, optim
from torch.nn import functional as F
from torch.utils.data import DataLoader, TensorDataset

from .types import ClassifierHead, ClassLabel, EpochCallback, HeadFactory

logger = logging.getLogger(__name__)

LOSS_BINARY = "binary_crossentropy"
LOSS_CATEGORICAL = "categorical_crossentropy"
HIDDEN_UNITS = 128
_EPS = 1e-7


def select_loss(num_classes: int) -> str:
    """Binary cross-entropy for exactly two classes, categorical otherwise."""
    return LOSS_BINARY if num_classes == 2 else LOSS_CATEGORICAL


def paired_shuffle(
    features: Sequence[np.ndarray],
    labels: Sequence[ClassLabel],
    rng: np.random.Generator | None = None,
) -> tuple[list[np.ndarray], list[ClassLabel]]:
    """Shuffle features and labels with one shared permutation."""
    if len(features) != len(labels):
        raise ValueError(
            f"features and labels differ in length: {len(features)} != {len(labels)}"
        )
    rng = rng or np.random.default_rng()
    order = rng.permutation(len(features))
    return [features[i] for i in order], [labels[i] for i in order]


def build_head_model(feature_dim: int, num_classes: int, hidden_units: int = HIDDEN_UNITS) -> nn.Sequential:
    return nn.Sequential(
        nn.Linear(feature_dim, hidden_units),
        nn.ReLU(),
        nn.Linear(hidden_units, num_classes),
        nn.Softmax(dim=1),
    )


class TorchClassifierHead:
    """Dense head trained on frozen feature vectors with Adam."""

    def __init__(
        self,
        feature_dim: int,
        num_classes: int,
        *,
        hidden_units: int = HIDDEN_UNITS,
        learning_rate: float = 0.001,
        device: str | None = None,
        seed: int | None = None,
    ) -> None:
        if num_classes < 1:
            raise ValueError("num_classes must be at least 1")
        self._feature_dim = feature_dim
        self._num_classes = num_classes
        self._loss = select_loss(num_classes)
        self._device = device or ("cuda" if torch.cuda.is_available() else "cpu")
        self._generator = torch.Generator()
        if seed is not None:
            torch.manual_seed(seed)
            self._generator.manual_seed(seed)
        self._model = build_head_model(feature_dim, num_classes, hidden_units).to(self._device)
        self._optimizer = optim.Adam(self._model.parameters(), lr=learning_rate)
        self._model.eval()

    @property
    def num_classes(self) -> int:
        return self._num_classes

    @property
    def feature_dim(self) -> int:
        return self._feature_dim

    @property
    def loss(self) -> str:
        return self._loss

    def _compute_loss(self, probs: torch.Tensor, labels: torch.Tensor) -> torch.Tensor:
        if self._loss == LOSS_BINARY:
            targets = F.one_hot(labels, self._num_classes).float()
            return F.binary_cross_entropy(probs.clamp(_EPS, 1.0 - _EPS), targets)
        return F.nll_loss(torch.log(probs.clamp_min(_EPS)), labels)

    async def fit(
        self,
        features: Sequence[np.ndarray],
        labels: Sequence[ClassLabel],
        *,
        batch_size: int,
        epochs: int,
        on_epoch_end: EpochCallback | None = None,
    ) -> None:
        """Train in a worker thread; ``on_epoch_end`` is called from that thread."""
        await asyncio.to_thread(
            self._fit_sync, features, labels, batch_size, epochs, on_epoch_end
        )

    def _fit_sync(
        self,
        features: Sequence[np.ndarray],
        labels: Sequence[ClassLabel],
        batch_size: int,
        epochs: int,
        on_epoch_end: EpochCallback | None,
    ) -> None:
        if len(features) != len(labels):
            raise ValueError("features and labels differ in length")
        if not len(features):
            raise ValueError("cannot fit on an empty dataset")
        label_array = np.asarray(labels, dtype=np.int64)
        if label_array.min() < 0 or label_array.max() >= self._num_classes:
            raise ValueError(f"labels must lie in [0, {self._num_classes})")

        x = torch.from_numpy(np.stack(features).astype(np.float32))
        y = torch.from_numpy(label_array)
        loader = DataLoader(
            TensorDataset(x, y),
            batch_size=max(1, batch_size),
            shuffle=True,
            generator=self._generator,
        )

        self._model.train()
        try:
            for epoch in range(epochs):
                total_loss = 0.0
                correct = 0
                seen = 0
                for xb, yb in loader:
                    xb = xb.to(self._device)
                    yb = yb.to(self._device)
                    probs = self._model(xb)
                    loss = self._compute_loss(probs, yb)
                    self._optimizer.zero_grad()
                    loss.backward()
                    self._optimizer.step()
                    total_loss += loss.item() * len(yb)
                    correct += int((probs.argmax(dim=1) == yb).sum().item())
                    seen += len(yb)
                logs = {"loss": total_loss / seen, "acc": correct / seen}
                if on_epoch_end is not None:
                    on_epoch_end(epoch, logs)
        finally:
            self._model.eval()

    def predict(self, features: np.ndarray) -> np.ndarray:
        batch = np.asarray(features, dtype=np.float32)
        single = batch.ndim == 1
        if single:
            batch = batch[None, :]
        with torch.no_grad():
            probs = self._model(torch.from_numpy(batch).to(self._device))
        result = probs.cpu().numpy()
        return result[0] if single else result


def torch_head_factory(
    *,
    hidden_units: int = HIDDEN_UNITS,
    learning_rate: float = 0.001,
    device: str | None = None,
    seed: int | None = None,
) -> HeadFactory:
    def factory(feature_dim: int, num_classes: int) -> ClassifierHead:
        return TorchClassifierHead(
            feature_dim,
            num_classes,
            hidden_units=hidden_units,
            learning_rate=learning_rate,
            device=device,
            seed=seed,
        )

    return factory


class HeadLifecycle:
    """Builds the head lazily and rebuilds it when the class count changes."""

    def __init__(self, factory: HeadFactory) -> None:
        self._factory = factory
        self._head: ClassifierHead | None = None
        self.builds = 0

    @property
    def head(self) -> ClassifierHead | None:
        return self._head

    def ensure(self, feature_dim: int, num_classes: int) -> ClassifierHead:
        if self._head is None or self._head.num_classes != num_classes:
            previous = self._head.num_classes if self._head is not None else None
            self._head = self._factory(feature_dim, num_classes)
            self.builds += 1
            logger.info(
                "Built classifier head feature_dim=%d classes=%d (previous=%s) loss=%s",
                feature_dim,
                num_classes,
                previous,
                self._head.loss,
            )
        return self._head

    def invalidate(self) -> None:
        self._head = None


__all__ = [
    "LOSS_BINARY",
    "LOSS_CATEGORICAL",
    "HeadLifecycle",
    "TorchClassifierHead",
    "build_head_model",
    "paired_shuffle",
    "select_loss",
    "torch_head_factory",
]
