from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING, Callable, Mapping

import numpy as np

from .errors import (
    ExtractionFailure,
    InsufficientData,
    InvalidState,
    NotReady,
    SessionError,
    TrainingFailure,
)
from .head import HeadLifecycle, paired_shuffle
from .status import LoggingStatusSink
from .store import SampleStore
from .types import (
    CaptureSource,
    ClassifierHead,
    ClassLabel,
    EpochCallback,
    ExampleCounts,
    FeatureExtractor,
    HeadFactory,
    Prediction,
    Sample,
    SessionState,
    StateKind,
    StatusSink,
)

if TYPE_CHECKING:
    from device.scheduler import FrameScheduler

logger = logging.getLogger(__name__)

NO_DATA_MESSAGE = "No data collected"

StateListener = Callable[[SessionState], None]


class SessionController:
    """State machine behind data gathering, training and live prediction.

    Gathering and prediction each run as one asyncio task that awaits the
    frame scheduler between iterations. Stopping cancels the task at that
    await, so a sample is either fully recorded or not at all.
    """

    def __init__(
        self,
        capture: CaptureSource,
        extractor: FeatureExtractor,
        head_factory: HeadFactory,
        scheduler: FrameScheduler,
        status: StatusSink | None = None,
        *,
        batch_size: int = 5,
        epochs: int = 10,
        seed: int | None = None,
    ) -> None:
        self._capture = capture
        self._extractor = extractor
        self._heads = HeadLifecycle(head_factory)
        self._scheduler = scheduler
        self._status: StatusSink = status or LoggingStatusSink()
        self._batch_size = batch_size
        self._epochs = epochs
        self._rng = np.random.default_rng(seed)
        self._store = SampleStore()
        self._class_names: list[str] = []
        self._example_counts: ExampleCounts = {}
        self._state = SessionState.idle()
        self._loop_task: asyncio.Task[None] | None = None
        self._generation = 0
        self._listeners: list[StateListener] = []
        self.last_prediction: Prediction | None = None
        self.last_error: BaseException | None = None

    # -- queries ---------------------------------------------------------

    def current_state(self) -> SessionState:
        return self._state

    @property
    def class_names(self) -> list[str]:
        return list(self._class_names)

    @property
    def store(self) -> SampleStore:
        return self._store

    @property
    def head(self) -> ClassifierHead | None:
        return self._heads.head

    def example_counts(self) -> ExampleCounts:
        return dict(self._example_counts)

    def status_summary(self) -> str:
        if not self._class_names:
            return "No classes registered"
        if not len(self._store):
            return NO_DATA_MESSAGE
        return " ".join(
            f"{name} data count: {self._example_counts.get(label, 0)}."
            for label, name in enumerate(self._class_names)
        )

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    # -- operations ------------------------------------------------------

    def register_class(self, name: str) -> ClassLabel:
        if self._state.kind in (StateKind.GATHERING, StateKind.TRAINING):
            raise InvalidState(f"Cannot register a class while {self._state}")
        name = str(name).strip()
        if not name:
            raise InvalidState("Class name must not be empty")
        if name in self._class_names:
            raise InvalidState(f"Class {name!r} is already registered")
        self._class_names.append(name)
        label = len(self._class_names) - 1
        logger.info("Registered class %r as label %d", name, label)
        return label

    async def toggle_gathering(self, label: ClassLabel) -> None:
        state = self._state
        if state.kind is StateKind.GATHERING:
            if state.label != label:
                raise InvalidState(
                    f"Already gathering for label {state.label}; stop it before gathering {label}"
                )
            await self._stop_loop()
            self._set_state(SessionState.idle())
            self._status.display(self.status_summary())
            return

        if state.kind is not StateKind.IDLE:
            raise InvalidState(f"Cannot gather data while {state}")
        if not 0 <= label < len(self._class_names):
            raise InvalidState(f"Class label {label} is not registered")
        if not self._capture.is_ready():
            raise NotReady("Camera is not ready; enable the camera first")

        logger.info(
            "Gathering data for class %r index %d", self._class_names[label], label
        )
        self._set_state(SessionState.gathering(label))
        self._start_loop(lambda: self._gather_step(label), f"gather-{label}")

    async def train(
        self,
        *,
        batch_size: int | None = None,
        epochs: int | None = None,
        on_epoch_end: EpochCallback | None = None,
    ) -> None:
        if self._state.kind is not StateKind.IDLE:
            raise InvalidState(f"Cannot train while {self._state}")
        num_classes = len(self._class_names)
        if num_classes == 0:
            raise InsufficientData("No classes registered")
        present = self._store.labels()
        missing = [
            name for label, name in enumerate(self._class_names) if label not in present
        ]
        if missing:
            raise InsufficientData(f"No samples collected for: {', '.join(missing)}")

        generation = self._generation
        self._set_state(SessionState.training())
        stacked_features, stacked_labels = self._store.arrays()
        features, labels = paired_shuffle(stacked_features, stacked_labels, self._rng)

        def report(epoch: int, logs: Mapping[str, float]) -> None:
            logger.info("Data for epoch %d: %s", epoch, dict(logs))
            if on_epoch_end is not None:
                on_epoch_end(epoch, logs)

        try:
            head = self._heads.ensure(self._extractor.feature_dim, num_classes)
            await head.fit(
                features,
                labels,
                batch_size=batch_size or self._batch_size,
                epochs=epochs or self._epochs,
                on_epoch_end=report,
            )
        except asyncio.CancelledError:
            # the fit worker thread keeps running; never hand its head out again
            if generation == self._generation:
                self._heads.invalidate()
            self._abort_training(generation)
            raise
        except Exception as exc:
            if generation != self._generation:
                logger.info("Training discarded by reset failed: %s", exc)
                return
            logger.exception("Training failed")
            self._abort_training(generation)
            self._status.display(f"Error: training failed: {exc}")
            raise TrainingFailure(f"Training failed: {exc}") from exc

        if generation != self._generation:
            logger.info("Session was reset during training; discarding the result")
            return
        logger.info("Training finished on %d samples", len(labels))
        self._set_state(SessionState.predicting())
        self._start_loop(self._predict_step, "predict")

    async def stop_predicting(self) -> None:
        if self._state.kind is not StateKind.PREDICTING:
            raise InvalidState(f"Not predicting (state is {self._state})")
        await self._stop_loop()
        self._set_state(SessionState.idle())
        self._status.display(self.status_summary())

    async def reset(self) -> None:
        """Purge collected data and start over.

        The feature extractor is kept for reuse; the trained head is released.
        """
        self._generation += 1
        await self._stop_loop()
        self._store.clear()
        self._example_counts.clear()
        self._heads.invalidate()
        self.last_prediction = None
        self.last_error = None
        self._set_state(SessionState.idle())
        self._status.display(NO_DATA_MESSAGE)
        logger.info("Session reset; %d class(es) kept", len(self._class_names))

    # -- loop internals --------------------------------------------------

    def _set_state(self, state: SessionState) -> None:
        previous = self._state
        if previous == state:
            return
        self._state = state
        logger.debug("Session state %s -> %s", previous, state)
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("State listener %r failed on %s", listener, state)

    def _abort_training(self, generation: int) -> None:
        if generation == self._generation:
            self._set_state(SessionState.idle())

    def _start_loop(self, step: Callable[[], None], name: str) -> None:
        self.last_error = None
        self._loop_task = asyncio.create_task(self._run_loop(step), name=f"session-{name}")

    async def _run_loop(self, step: Callable[[], None]) -> None:
        try:
            while True:
                await self._scheduler.next_tick()
                step()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("%s loop stopped", self._state)
            self.last_error = exc
            self._loop_task = None
            self._set_state(SessionState.idle())
            self._status.display(f"Error: {exc}")

    async def _stop_loop(self) -> None:
        task = self._loop_task
        self._loop_task = None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def _features_for_next_frame(self) -> np.ndarray:
        frame = self._capture.next_frame()
        try:
            features = self._extractor.extract(frame)
        except SessionError:
            raise
        except Exception as exc:
            raise ExtractionFailure(f"Feature extraction failed: {exc}") from exc
        vector = np.asarray(features, dtype=np.float32).reshape(-1)
        if vector.shape[0] != self._extractor.feature_dim:
            raise ExtractionFailure(
                f"Expected {self._extractor.feature_dim} features, got {vector.shape[0]}"
            )
        return vector

    def _gather_step(self, label: ClassLabel) -> None:
        vector = self._features_for_next_frame()
        self._record_example(label)
        self._store.add(Sample(features=vector, label=label))
        self._status.display(self.status_summary())

    def _record_example(self, label: ClassLabel) -> None:
        if not 0 <= label < len(self._class_names):
            raise InvalidState(f"Class label {label} is not registered")
        self._example_counts[label] = self._example_counts.get(label, 0) + 1

    def _predict_step(self) -> None:
        head = self._heads.head
        if head is None:
            raise InvalidState("No trained classifier head")
        vector = self._features_for_next_frame()
        probs = np.asarray(head.predict(vector), dtype=np.float64).reshape(-1)
        index = int(np.argmax(probs))
        name = self._class_names[index] if index < len(self._class_names) else str(index)
        prediction = Prediction(
            label=index,
            class_name=name,
            confidence=float(probs[index]),
            probabilities=tuple(float(p) for p in probs),
        )
        self.last_prediction = prediction
        self._status.display(prediction.describe())


__all__ = ["SessionController", "NO_DATA_MESSAGE"]
