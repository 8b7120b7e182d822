import asyncio
import unittest

import numpy as np

from device.capture import Frame
from teachable.errors import (
    ExtractionFailure,
    InsufficientData,
    InvalidState,
    NotReady,
    TrainingFailure,
)
from teachable.head import LOSS_BINARY, LOSS_CATEGORICAL, select_loss
from teachable.session import NO_DATA_MESSAGE, SessionController
from teachable.status import RecordingStatusSink
from teachable.types import SessionState, StateKind

FEATURE_DIM = 4


class _StubCamera:
    def __init__(self, ready: bool = True) -> None:
        self.ready = ready
        self.frames = 0

    def is_ready(self) -> bool:
        return self.ready

    def next_frame(self) -> Frame:
        if not self.ready:
            raise NotReady("camera off")
        self.frames += 1
        return Frame(pixels=np.full((2, 2, 3), self.frames % 255, dtype=np.uint8))


class _CountingExtractor:
    def __init__(self, fail_with: Exception | None = None) -> None:
        self.calls = 0
        self._fail_with = fail_with

    @property
    def feature_dim(self) -> int:
        return FEATURE_DIM

    def extract(self, frame: Frame) -> np.ndarray:
        if self._fail_with is not None:
            raise self._fail_with
        self.calls += 1
        return np.full(FEATURE_DIM, float(self.calls), dtype=np.float32)


class _StubHead:
    def __init__(self, feature_dim: int, num_classes: int, *, winner: int = 0) -> None:
        self.feature_dim = feature_dim
        self._num_classes = num_classes
        self._winner = winner
        self.fit_calls: list[dict] = []
        self.fail_with: Exception | None = None
        self.release: asyncio.Event | None = None

    @property
    def num_classes(self) -> int:
        return self._num_classes

    @property
    def loss(self) -> str:
        return select_loss(self._num_classes)

    async def fit(self, features, labels, *, batch_size, epochs, on_epoch_end=None) -> None:
        self.fit_calls.append(
            {
                "features": list(features),
                "labels": list(labels),
                "batch_size": batch_size,
                "epochs": epochs,
            }
        )
        if self.release is not None:
            await self.release.wait()
        if self.fail_with is not None:
            raise self.fail_with
        for epoch in range(epochs):
            if on_epoch_end is not None:
                on_epoch_end(epoch, {"loss": 1.0 / (epoch + 1), "acc": 0.5})

    def predict(self, features: np.ndarray) -> np.ndarray:
        probs = np.full(self._num_classes, 0.1 / max(1, self._num_classes - 1))
        probs[self._winner] = 0.9
        return probs


class _StubHeadFactory:
    def __init__(self, **head_kwargs) -> None:
        self.heads: list[_StubHead] = []
        self.fail_with: Exception | None = None
        self.release: asyncio.Event | None = None
        self._head_kwargs = head_kwargs

    def __call__(self, feature_dim: int, num_classes: int) -> _StubHead:
        head = _StubHead(feature_dim, num_classes, **self._head_kwargs)
        head.fail_with = self.fail_with
        head.release = self.release
        self.heads.append(head)
        return head


class _CountdownScheduler:
    """Allows a fixed number of ticks, then parks the loop until it is cancelled."""

    def __init__(self) -> None:
        self._remaining = 0
        self.exhausted = asyncio.Event()

    def refill(self, ticks: int) -> None:
        self._remaining = ticks
        self.exhausted.clear()

    async def next_tick(self) -> None:
        if self._remaining <= 0:
            self.exhausted.set()
            await asyncio.Event().wait()
        self._remaining -= 1
        await asyncio.sleep(0)


class SessionControllerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.camera = _StubCamera()
        self.extractor = _CountingExtractor()
        self.heads = _StubHeadFactory(winner=1)
        self.scheduler = _CountdownScheduler()
        self.status = RecordingStatusSink()
        self.controller = SessionController(
            self.camera,
            self.extractor,
            self.heads,
            self.scheduler,
            self.status,
            seed=7,
        )
        self.transitions: list[str] = []
        self.controller.add_listener(lambda state: self.transitions.append(str(state)))

    async def asyncTearDown(self) -> None:
        await self.controller.reset()

    async def _gather(self, label: int, samples: int) -> None:
        self.scheduler.refill(samples)
        await self.controller.toggle_gathering(label)
        await asyncio.wait_for(self.scheduler.exhausted.wait(), timeout=5)
        await self.controller.toggle_gathering(label)

    async def _wait_for_state(self, kind: StateKind) -> None:
        for _ in range(200):
            if self.controller.current_state().kind is kind:
                return
            await asyncio.sleep(0)
        self.fail(f"controller never reached {kind}")

    def _register_two(self) -> None:
        self.controller.register_class("classA")
        self.controller.register_class("classB")

    async def test_register_class_assigns_labels_in_call_order(self) -> None:
        names = ["apple", "banana", "cherry", "date"]

        labels = [self.controller.register_class(name) for name in names]

        self.assertEqual(labels, [0, 1, 2, 3])
        self.assertEqual(self.controller.class_names, names)

    async def test_register_class_rejects_duplicates_and_blank_names(self) -> None:
        self.controller.register_class("classA")

        with self.assertRaises(InvalidState):
            self.controller.register_class("classA")
        with self.assertRaises(InvalidState):
            self.controller.register_class("   ")
        self.assertEqual(self.controller.class_names, ["classA"])

    async def test_register_class_rejected_while_gathering(self) -> None:
        self._register_two()
        await self.controller.toggle_gathering(0)

        with self.assertRaises(InvalidState):
            self.controller.register_class("classC")

        await self.controller.toggle_gathering(0)
        self.assertEqual(self.controller.register_class("classC"), 2)

    async def test_toggle_twice_returns_to_idle_with_gathered_samples_only(self) -> None:
        self._register_two()

        await self._gather(0, 3)
        for _ in range(10):
            await asyncio.sleep(0)

        self.assertEqual(self.controller.current_state(), SessionState.idle())
        self.assertEqual(len(self.controller.store), 3)
        self.assertEqual(self.controller.store.count_for(0), 3)
        self.assertEqual(self.controller.example_counts(), {0: 3})
        self.assertEqual(self.status.text, "classA data count: 3. classB data count: 0.")

    async def test_samples_keep_insertion_order(self) -> None:
        self._register_two()

        await self._gather(0, 2)
        await self._gather(1, 2)

        samples = self.controller.store.all()
        self.assertEqual([sample.label for sample in samples], [0, 0, 1, 1])
        self.assertEqual([float(sample.features[0]) for sample in samples], [1.0, 2.0, 3.0, 4.0])

    async def test_toggle_with_other_label_while_gathering_is_rejected(self) -> None:
        self._register_two()
        await self.controller.toggle_gathering(0)

        with self.assertRaises(InvalidState):
            await self.controller.toggle_gathering(1)

        self.assertEqual(self.controller.current_state(), SessionState.gathering(0))
        await self.controller.toggle_gathering(0)
        self.assertEqual(self.controller.current_state(), SessionState.idle())

    async def test_toggle_unregistered_label_is_rejected(self) -> None:
        self.controller.register_class("classA")

        with self.assertRaises(InvalidState):
            await self.controller.toggle_gathering(1)
        self.assertEqual(self.controller.current_state(), SessionState.idle())

    async def test_toggle_without_camera_raises_not_ready(self) -> None:
        self._register_two()
        self.camera.ready = False

        with self.assertRaises(NotReady):
            await self.controller.toggle_gathering(0)
        self.assertEqual(self.controller.current_state(), SessionState.idle())
        self.assertEqual(self.transitions, [])

    async def test_train_without_samples_for_every_class_leaves_state_untouched(self) -> None:
        self._register_two()
        await self._gather(0, 2)
        before = [id(sample) for sample in self.controller.store.all()]

        with self.assertRaises(InsufficientData):
            await self.controller.train()

        self.assertEqual(self.controller.current_state(), SessionState.idle())
        self.assertEqual([id(sample) for sample in self.controller.store.all()], before)
        self.assertEqual(self.heads.heads, [])

    async def test_train_without_classes_raises_insufficient_data(self) -> None:
        with self.assertRaises(InsufficientData):
            await self.controller.train()
        self.assertEqual(self.controller.current_state(), SessionState.idle())

    async def test_two_class_scenario(self) -> None:
        self._register_two()
        epochs_seen: list[int] = []

        await self._gather(0, 5)
        await self._gather(1, 5)
        await self.controller.train(
            batch_size=5, epochs=10, on_epoch_end=lambda epoch, logs: epochs_seen.append(epoch)
        )

        self.assertEqual(
            self.transitions,
            ["Gathering(0)", "Idle", "Gathering(1)", "Idle", "Training", "Predicting"],
        )
        self.assertEqual(self.controller.current_state(), SessionState.predicting())
        self.assertEqual(self.controller.store.count_for(0), 5)
        self.assertEqual(self.controller.store.count_for(1), 5)
        self.assertEqual(epochs_seen, list(range(10)))

        self.assertEqual(len(self.heads.heads), 1)
        head = self.heads.heads[0]
        self.assertEqual(head.loss, LOSS_BINARY)
        call = head.fit_calls[0]
        self.assertEqual((call["batch_size"], call["epochs"]), (5, 10))
        self.assertEqual(sorted(call["labels"]), [0] * 5 + [1] * 5)
        # gathered vectors are 1..5 for class 0 and 6..10 for class 1
        for vector, label in zip(call["features"], call["labels"]):
            self.assertEqual(label, 0 if vector[0] <= 5 else 1)

    async def test_train_uses_configured_defaults(self) -> None:
        controller = SessionController(
            self.camera, self.extractor, self.heads, self.scheduler, self.status,
            batch_size=3, epochs=2,
        )
        controller.register_class("only")
        self.scheduler.refill(2)
        await controller.toggle_gathering(0)
        await asyncio.wait_for(self.scheduler.exhausted.wait(), timeout=5)
        await controller.toggle_gathering(0)

        await controller.train()

        call = self.heads.heads[-1].fit_calls[0]
        self.assertEqual((call["batch_size"], call["epochs"]), (3, 2))
        self.assertEqual(self.heads.heads[-1].loss, LOSS_CATEGORICAL)
        await controller.reset()

    async def test_training_failure_returns_to_idle_and_keeps_samples(self) -> None:
        self._register_two()
        await self._gather(0, 2)
        await self._gather(1, 2)
        boom = RuntimeError("optimizer exploded")
        self.heads.fail_with = boom

        with self.assertRaises(TrainingFailure) as ctx:
            await self.controller.train()

        self.assertIs(ctx.exception.__cause__, boom)
        self.assertEqual(self.controller.current_state(), SessionState.idle())
        self.assertEqual(len(self.controller.store), 4)
        self.assertEqual(self.transitions[-2:], ["Training", "Idle"])

    async def test_prediction_loop_reports_highest_class(self) -> None:
        self._register_two()
        await self._gather(0, 1)
        await self._gather(1, 1)

        self.scheduler.refill(3)
        await self.controller.train()
        await asyncio.wait_for(self.scheduler.exhausted.wait(), timeout=5)

        prediction = self.controller.last_prediction
        self.assertIsNotNone(prediction)
        self.assertEqual(prediction.label, 1)
        self.assertEqual(prediction.class_name, "classB")
        self.assertAlmostEqual(prediction.confidence, 0.9)
        self.assertEqual(self.status.text, "Prediction: classB with 90% confidence")

    async def test_gathering_rejected_while_predicting(self) -> None:
        self._register_two()
        await self._gather(0, 1)
        await self._gather(1, 1)
        await self.controller.train()

        with self.assertRaises(InvalidState):
            await self.controller.toggle_gathering(0)
        with self.assertRaises(InvalidState):
            await self.controller.train()

    async def test_stop_predicting_keeps_samples_and_head(self) -> None:
        self._register_two()
        await self._gather(0, 1)
        await self._gather(1, 1)
        await self.controller.train()

        await self.controller.stop_predicting()

        self.assertEqual(self.controller.current_state(), SessionState.idle())
        self.assertEqual(len(self.controller.store), 2)
        self.assertIs(self.controller.head, self.heads.heads[0])
        with self.assertRaises(InvalidState):
            await self.controller.stop_predicting()

    async def test_head_rebuilt_only_when_class_count_changes(self) -> None:
        self._register_two()
        await self._gather(0, 1)
        await self._gather(1, 1)
        await self.controller.train()
        await self.controller.stop_predicting()
        await self.controller.train()
        await self.controller.stop_predicting()
        self.assertEqual(len(self.heads.heads), 1)

        self.controller.register_class("classC")
        await self._gather(2, 1)
        await self.controller.train()

        self.assertEqual(len(self.heads.heads), 2)
        self.assertEqual(self.heads.heads[1].num_classes, 3)
        self.assertEqual(self.heads.heads[1].loss, LOSS_CATEGORICAL)

    async def test_reset_from_every_state_clears_data(self) -> None:
        self._register_two()

        # idle with data
        await self._gather(0, 2)
        await self.controller.reset()
        self._assert_reset()

        # gathering
        self.scheduler.refill(100)
        await self.controller.toggle_gathering(1)
        await asyncio.sleep(0)
        await self.controller.reset()
        self._assert_reset()

        # predicting
        await self._gather(0, 1)
        await self._gather(1, 1)
        await self.controller.train()
        await self.controller.reset()
        self._assert_reset()
        self.assertIsNone(self.controller.head)
        self.assertIsNone(self.controller.last_prediction)

    def _assert_reset(self) -> None:
        self.assertEqual(self.controller.current_state(), SessionState.idle())
        self.assertEqual(len(self.controller.store), 0)
        self.assertEqual(self.controller.example_counts(), {})
        self.assertEqual(self.status.text, NO_DATA_MESSAGE)
        self.assertEqual(self.controller.class_names, ["classA", "classB"])

    async def test_reset_keeps_feature_extractor_usable(self) -> None:
        self._register_two()
        await self._gather(0, 2)
        await self.controller.reset()

        await self._gather(0, 2)

        self.assertEqual(self.extractor.calls, 4)
        self.assertEqual(self.controller.store.count_for(0), 2)

    async def test_reset_during_training_discards_result(self) -> None:
        self._register_two()
        await self._gather(0, 1)
        await self._gather(1, 1)
        self.heads.release = asyncio.Event()

        training = asyncio.create_task(self.controller.train())
        await self._wait_for_state(StateKind.TRAINING)
        await self.controller.reset()
        self.heads.release.set()
        await training

        self.assertEqual(self.controller.current_state(), SessionState.idle())
        self.assertIsNone(self.controller.head)

    async def test_failed_training_discarded_by_reset_stays_quiet(self) -> None:
        self._register_two()
        await self._gather(0, 1)
        await self._gather(1, 1)
        self.heads.release = asyncio.Event()
        self.heads.fail_with = RuntimeError("late failure")

        training = asyncio.create_task(self.controller.train())
        await self._wait_for_state(StateKind.TRAINING)
        await self.controller.reset()
        self.heads.release.set()
        await training

        self.assertEqual(self.controller.current_state(), SessionState.idle())
        self.assertEqual(self.status.text, NO_DATA_MESSAGE)
        self.assertNotIn("Error: training failed: late failure", self.status.history)

    async def test_cancelled_training_builds_a_fresh_head_on_retrain(self) -> None:
        self._register_two()
        await self._gather(0, 1)
        await self._gather(1, 1)
        self.heads.release = asyncio.Event()

        training = asyncio.create_task(self.controller.train())
        await self._wait_for_state(StateKind.TRAINING)
        training.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await training

        self.assertEqual(self.controller.current_state(), SessionState.idle())
        self.assertIsNone(self.controller.head)

        self.heads.release = None
        await self.controller.train()

        self.assertEqual(len(self.heads.heads), 2)
        self.assertIs(self.controller.head, self.heads.heads[1])
        self.assertEqual(self.controller.current_state(), SessionState.predicting())

    async def test_failing_listener_does_not_block_transitions(self) -> None:
        def explode_on_training(state: SessionState) -> None:
            if state.kind is StateKind.TRAINING:
                raise RuntimeError("listener broke")

        self.controller.add_listener(explode_on_training)
        self._register_two()
        await self._gather(0, 1)
        await self._gather(1, 1)

        with self.assertLogs("teachable.session", level="ERROR") as logs:
            await self.controller.train()

        self.assertEqual(self.controller.current_state(), SessionState.predicting())
        self.assertEqual(self.transitions[-2:], ["Training", "Predicting"])
        self.assertTrue(
            any(
                record.exc_info and str(record.exc_info[1]) == "listener broke"
                for record in logs.records
            )
        )
        await self.controller.stop_predicting()
        self.assertEqual(self.controller.current_state(), SessionState.idle())

    async def test_extraction_failure_stops_gathering(self) -> None:
        controller = SessionController(
            self.camera,
            _CountingExtractor(fail_with=RuntimeError("model missing")),
            self.heads,
            self.scheduler,
            self.status,
        )
        controller.register_class("classA")
        self.scheduler.refill(5)

        await controller.toggle_gathering(0)
        for _ in range(50):
            if controller.current_state().kind is StateKind.IDLE:
                break
            await asyncio.sleep(0)

        self.assertEqual(controller.current_state(), SessionState.idle())
        self.assertIsInstance(controller.last_error, ExtractionFailure)
        self.assertEqual(len(controller.store), 0)
        self.assertTrue(self.status.text.startswith("Error: Feature extraction failed"))


if __name__ == "__main__":
    unittest.main()
