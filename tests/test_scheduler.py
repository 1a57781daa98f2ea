"""
Tests for the detection scheduler.

Backends and streams are replaced with in-memory fakes so the tests
exercise scheduling without model files or a camera.
"""

import asyncio
import threading

import numpy as np
import pytest

from detectview.config import AppConfig, DetectionConfig, SchedulerConfig, VisualizationConfig
from detectview.errors import AcquisitionError, ModelLoadError
from detectview.gateway import ModelGateway
from detectview.media import StillImage
from detectview.renderer import Renderer
from detectview.scheduler import DetectionScheduler, SchedulerState

FRAME = np.zeros((120, 160, 3), dtype=np.uint8)

PERSON = {"bbox": [0, 0, 100, 100], "class": "person", "score": 0.9}
PERSON_DUPLICATE = {"bbox": [10, 0, 100, 100], "class": "person", "score": 0.6}
DOG = {"bbox": [20, 20, 40, 40], "class": "dog", "score": 0.8}

FAST = SchedulerConfig(
    still_image_delay_ms=0,
    frame_interval_ms=1,
    idle_backoff_ms=1,
    stall_warning_cycles=3,
)


class FakeBackend:
    def __init__(self, output=None, error=None, release=None, events=None, name="backend"):
        self.output = output if output is not None else []
        self.error = error
        self.release = release
        self.events = events if events is not None else []
        self.name = name
        self.calls = 0
        self.closed = False
        self.options = None

    def detect(self, frame, options):
        self.calls += 1
        self.options = options
        if self.release is not None:
            self.release.wait(timeout=5)
        if self.error is not None:
            raise self.error
        return self.output

    def close(self):
        self.closed = True
        self.events.append(f"close-{self.name}")


class FakeStream:
    """Live source yielding queued frames, then FRAME forever."""

    is_live = True

    def __init__(self, frames=()):
        self.frames = list(frames)
        self.released = 0

    @property
    def active(self):
        return self.released == 0

    def read_frame(self):
        if self.frames:
            return self.frames.pop(0)
        return FRAME

    def release(self):
        self.released += 1


def _factory(*backends, events=None):
    """Gateway factory handing out the given backends in order."""
    queue = list(backends)

    def load(options):
        backend = queue.pop(0)
        if events is not None:
            events.append(f"load-{backend.name}")
        return backend

    return load


def _scheduler(factory, family="general-detector", config=None, **kwargs):
    gateway = ModelGateway(backends={family: factory})
    return DetectionScheduler(gateway, config or AppConfig(scheduler=FAST), **kwargs)


def _record(scheduler):
    batches, states, diagnostics, errors = [], [], [], []
    scheduler.on_detection_batch(batches.append)
    scheduler.on_state_change(lambda snapshot: states.append(snapshot.state))
    scheduler.on_diagnostic(diagnostics.append)
    scheduler.on_error(errors.append)
    return batches, states, diagnostics, errors


async def _wait_until(predicate, timeout=5.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.005)
    await asyncio.wait_for(poll(), timeout)


def test_still_image_runs_one_cycle():
    """A still image gets exactly one refined batch and returns to READY."""
    backend = FakeBackend(output=[PERSON, PERSON_DUPLICATE])
    renderer = Renderer()

    async def scenario():
        scheduler = _scheduler(_factory(backend), renderer=renderer)
        recorded = _record(scheduler)
        await scheduler.select_model("general-detector")
        await scheduler.set_source(StillImage(FRAME.copy()))
        await scheduler.join()
        return scheduler, recorded

    scheduler, (batches, states, diagnostics, errors) = asyncio.run(scenario())

    assert len(batches) == 1
    batch = batches[0]
    assert [d.confidence for d in batch] == [0.9]
    assert (batch.source_width, batch.source_height) == (160, 120)
    assert batch.family == "general-detector"
    assert batch.generation == scheduler.generation
    assert states == [
        SchedulerState.LOADING_MODEL,
        SchedulerState.READY,
        SchedulerState.DETECTING_ONCE,
        SchedulerState.READY,
    ]
    assert diagnostics == [] and errors == []
    assert backend.calls == 1
    assert renderer.surface.pixels.shape == (120, 160, 3)
    assert renderer.surface.pixels.any()


def test_source_before_model():
    """A source attached before the model is detected once the model loads."""
    backend = FakeBackend(output=[DOG])

    async def scenario():
        scheduler = _scheduler(_factory(backend))
        batches, states, _, _ = _record(scheduler)
        await scheduler.set_source(StillImage(FRAME.copy()))
        assert scheduler.state.state is SchedulerState.IDLE
        await scheduler.select_model("general-detector")
        await scheduler.join()
        return batches

    batches = asyncio.run(scenario())
    assert [d.class_label for d in batches[0]] == ["dog"]


def test_model_load_failure():
    """A failed load moves to ERROR, reports it, and can be recovered."""
    backend = FakeBackend(output=[DOG])
    attempts = []

    def flaky(options):
        attempts.append(options)
        if len(attempts) == 1:
            raise FileNotFoundError("models/ssd.pb")
        return backend

    async def scenario():
        scheduler = _scheduler(flaky)
        _, states, _, errors = _record(scheduler)
        with pytest.raises(ModelLoadError):
            await scheduler.select_model("general-detector")
        snapshot = scheduler.state
        await scheduler.select_model("general-detector")
        return scheduler, snapshot, states, errors

    scheduler, snapshot, states, errors = asyncio.run(scenario())
    assert snapshot.state is SchedulerState.ERROR
    assert isinstance(snapshot.error, ModelLoadError)
    assert len(errors) == 1
    assert errors[0].reason == "backend"
    assert scheduler.state.state is SchedulerState.READY
    assert states[-1] is SchedulerState.READY


def test_unknown_family_load_error():
    async def scenario():
        scheduler = _scheduler(_factory())
        with pytest.raises(ModelLoadError) as excinfo:
            await scheduler.select_model("yolo")
        return scheduler, excinfo.value

    scheduler, error = asyncio.run(scenario())
    assert error.reason == "unsupported_family"
    assert scheduler.state.state is SchedulerState.ERROR


def test_inference_error_yields_empty_batch():
    """A failing cycle publishes an empty batch and a diagnostic."""
    backend = FakeBackend(error=RuntimeError("bad tensor"))

    async def scenario():
        scheduler = _scheduler(_factory(backend))
        recorded = _record(scheduler)
        await scheduler.select_model("general-detector")
        await scheduler.set_source(StillImage(FRAME.copy()))
        await scheduler.join()
        return scheduler, recorded

    scheduler, (batches, _, diagnostics, errors) = asyncio.run(scenario())
    assert len(batches) == 1 and batches[0].is_empty
    assert [d.kind for d in diagnostics] == ["inference_error"]
    assert errors == []
    assert scheduler.state.state is SchedulerState.READY


def test_malformed_output_yields_empty_batch():
    backend = FakeBackend(output=[{"bbox": [0, 0], "class": "dog", "score": 0.9}])

    async def scenario():
        scheduler = _scheduler(_factory(backend))
        recorded = _record(scheduler)
        await scheduler.select_model("general-detector")
        await scheduler.set_source(StillImage(FRAME.copy()))
        await scheduler.join()
        return recorded

    batches, _, diagnostics, _ = asyncio.run(scenario())
    assert batches[0].is_empty
    assert [d.kind for d in diagnostics] == ["adapter_anomaly"]


def test_configured_threshold_is_applied():
    """Configured thresholds reach the backend and filter results."""
    backend = FakeBackend(output=[PERSON, DOG])
    config = AppConfig(
        detection=DetectionConfig(confidence_threshold=0.85, max_detections=5),
        scheduler=FAST,
    )

    async def scenario():
        scheduler = _scheduler(_factory(backend), config=config)
        batches, _, _, _ = _record(scheduler)
        await scheduler.select_model("general-detector")
        await scheduler.set_source(StillImage(FRAME.copy()))
        await scheduler.join()
        return batches

    batches = asyncio.run(scenario())
    assert [d.class_label for d in batches[0]] == ["person"]
    assert backend.options == {"confidence_threshold": 0.85, "max_detections": 5}


def test_face_family_default_threshold():
    """Without a configured threshold the family default (0.75) applies."""
    backend = FakeBackend(output=[
        {"top_left": [0, 0], "bottom_right": [40, 40], "probability": [0.9]},
        {"top_left": [50, 50], "bottom_right": [90, 90], "probability": [0.7]},
    ])

    async def scenario():
        scheduler = _scheduler(_factory(backend), family="face-detector")
        batches, _, _, _ = _record(scheduler)
        await scheduler.select_model("face-detector")
        await scheduler.set_source(StillImage(FRAME.copy()))
        await scheduler.join()
        return batches

    batches = asyncio.run(scenario())
    assert [(d.class_label, d.confidence) for d in batches[0]] == [("face", 0.9)]
    assert backend.options == {"confidence_threshold": 0.75, "max_detections": 10}


def test_continuous_detection_until_removed():
    """A live stream is detected repeatedly until it is removed."""
    backend = FakeBackend(output=[DOG])
    stream = FakeStream()

    async def scenario():
        scheduler = _scheduler(_factory(backend))
        batches, states, _, _ = _record(scheduler)
        await scheduler.select_model("general-detector")
        await scheduler.set_source(stream)
        assert scheduler.state.state is SchedulerState.DETECTING_CONTINUOUS
        await _wait_until(lambda: len(batches) >= 3)
        await scheduler.remove_source()
        count = len(batches)
        await asyncio.sleep(0.05)
        return scheduler, batches, count

    scheduler, batches, count = asyncio.run(scenario())
    assert len(batches) == count
    assert [b.frame_index for b in batches[:3]] == [0, 1, 2]
    assert stream.released == 1
    assert scheduler.state.state is SchedulerState.READY
    assert scheduler.source is None


def test_unready_frames_are_skipped():
    """Missing frames skip cycles, and a long stall raises one diagnostic."""
    backend = FakeBackend(output=[DOG])
    stream = FakeStream(frames=[None, None, None, None])

    async def scenario():
        scheduler = _scheduler(_factory(backend))
        batches, _, diagnostics, _ = _record(scheduler)
        await scheduler.select_model("general-detector")
        await scheduler.set_source(stream)
        await _wait_until(lambda: len(batches) >= 2)
        await scheduler.close()
        return batches, diagnostics

    batches, diagnostics = asyncio.run(scenario())
    assert [d.kind for d in diagnostics] == ["stalled_stream"]
    assert batches[0].frame_index == 0
    assert backend.closed
    assert stream.released == 1


def test_model_change_discards_stale_result():
    """A result from a replaced model never reaches observers."""
    events = []
    release = threading.Event()
    slow = FakeBackend(output=[{"bbox": [0, 0, 10, 10], "class": "cat", "score": 0.9}],
                       release=release, events=events, name="a")
    fast = FakeBackend(output=[DOG], events=events, name="b")

    async def scenario():
        scheduler = _scheduler(_factory(slow, fast, events=events))
        batches, _, _, _ = _record(scheduler)
        await scheduler.select_model("general-detector")
        await scheduler.set_source(StillImage(FRAME.copy()))
        await _wait_until(lambda: slow.calls == 1)

        swap = asyncio.create_task(scheduler.select_model("general-detector"))
        await asyncio.sleep(0.01)
        assert scheduler.state.state is SchedulerState.LOADING_MODEL

        release.set()
        await asyncio.wait_for(swap, timeout=5)
        await scheduler.join()
        return scheduler, batches

    scheduler, batches = asyncio.run(scenario())
    assert [[d.class_label for d in b] for b in batches] == [["dog"]]
    assert batches[0].generation == scheduler.generation
    assert slow.closed
    # The old handle is disposed before the new model loads
    assert events == ["load-a", "close-a", "load-b"]


def test_source_change_discards_stale_result():
    """Switching images mid-inference drops the old image's result."""
    release = threading.Event()
    backend = FakeBackend(output=[DOG], release=release)

    async def scenario():
        scheduler = _scheduler(_factory(backend))
        batches, _, _, _ = _record(scheduler)
        await scheduler.select_model("general-detector")
        await scheduler.set_source(StillImage(FRAME.copy(), name="first"))
        await _wait_until(lambda: backend.calls == 1)

        switch = asyncio.create_task(
            scheduler.set_source(StillImage(np.zeros((60, 80, 3), np.uint8), name="second"))
        )
        await asyncio.sleep(0.01)
        release.set()
        await asyncio.wait_for(switch, timeout=5)
        await scheduler.join()
        return batches

    batches = asyncio.run(scenario())
    assert len(batches) == 1
    assert (batches[0].source_width, batches[0].source_height) == (80, 60)


def test_stream_acquisition_failure():
    """Camera errors are reported and leave the model untouched."""
    backend = FakeBackend()

    def deny(constraints):
        raise AcquisitionError("no access", reason="permission_denied")

    async def scenario():
        scheduler = _scheduler(_factory(backend), stream_acquirer=deny)
        _, _, _, errors = _record(scheduler)
        await scheduler.select_model("general-detector")
        with pytest.raises(AcquisitionError):
            await scheduler.start_stream()
        return scheduler, errors

    scheduler, errors = asyncio.run(scenario())
    assert [e.reason for e in errors] == ["permission_denied"]
    assert "permission" in errors[0].user_message
    assert scheduler.state.state is SchedulerState.READY
    assert scheduler.handle is not None and not scheduler.handle.disposed


def test_start_stream_and_close():
    """Closing releases the stream and disposes the model."""
    backend = FakeBackend(output=[DOG])
    stream = FakeStream()
    requested = []

    def acquire(constraints):
        requested.append(constraints)
        return stream

    async def scenario():
        async with _scheduler(_factory(backend), stream_acquirer=acquire) as scheduler:
            batches, _, _, _ = _record(scheduler)
            await scheduler.select_model("general-detector")
            await scheduler.start_stream()
            await _wait_until(lambda: len(batches) >= 1)
        return scheduler

    scheduler = asyncio.run(scenario())
    assert (requested[0].width, requested[0].height) == (640, 480)
    assert stream.released == 1
    assert backend.closed
    assert scheduler.state.state is SchedulerState.IDLE


def test_still_image_replaces_stream():
    """Replacing a live stream with a still image releases the stream."""
    backend = FakeBackend(output=[DOG])
    stream = FakeStream()

    async def scenario():
        scheduler = _scheduler(_factory(backend))
        batches, _, _, _ = _record(scheduler)
        await scheduler.select_model("general-detector")
        await scheduler.set_source(stream)
        await _wait_until(lambda: len(batches) >= 1)
        await scheduler.set_source(StillImage(FRAME.copy()))
        await scheduler.join()
        return scheduler

    scheduler = asyncio.run(scenario())
    assert stream.released == 1
    assert scheduler.state.state is SchedulerState.READY


def test_tracking_overlay_does_not_alter_batches():
    """Tracking only feeds the overlay; batches carry the refined detections."""
    backend = FakeBackend(output=[DOG])
    config = AppConfig(
        visualization=VisualizationConfig(enable_tracking=True, enable_heatmap=True),
        scheduler=FAST,
    )
    stream = FakeStream()

    async def scenario():
        scheduler = _scheduler(_factory(backend), config=config, renderer=Renderer())
        batches, _, _, _ = _record(scheduler)
        await scheduler.select_model("general-detector")
        await scheduler.set_source(stream)
        await _wait_until(lambda: len(batches) >= 3)
        await scheduler.close()
        return batches

    batches = asyncio.run(scenario())
    assert all([d.class_label for d in b] == ["dog"] for b in batches)


class ScriptedBackend(FakeBackend):
    """Returns ``outputs[n]`` on call n (1-based), then the last one forever."""

    def __init__(self, outputs, **kwargs):
        super().__init__(**kwargs)
        self.outputs = list(outputs)

    def detect(self, frame, options):
        super().detect(frame, options)
        return self.outputs[min(self.calls, len(self.outputs)) - 1]


class FlakyRenderer(Renderer):
    """Renderer whose first ``failures`` batch paints raise."""

    def __init__(self, failures=1, **kwargs):
        super().__init__(**kwargs)
        self.failures = failures
        self.frames_painted = 0

    def paint_frame(self, frame):
        self.frames_painted += 1
        super().paint_frame(frame)

    def paint_batch(self, detections, paths=None):
        if self.failures:
            self.failures -= 1
            raise ValueError("cannot convert float NaN to integer")
        return super().paint_batch(detections, paths)


def test_non_finite_box_does_not_stop_tracking_loop():
    """A NaN box mid-stream is reported and the loop keeps detecting."""
    nan_box = {"bbox": [float("nan"), 0, 10, 10], "class": "dog", "score": 0.8}
    backend = ScriptedBackend([[DOG], [nan_box], [DOG]])
    config = AppConfig(visualization=VisualizationConfig(enable_tracking=True), scheduler=FAST)
    stream = FakeStream()

    async def scenario():
        scheduler = _scheduler(_factory(backend), config=config, renderer=Renderer())
        recorded = _record(scheduler)
        await scheduler.select_model("general-detector")
        await scheduler.set_source(stream)
        await _wait_until(lambda: len(recorded[0]) >= 4)
        state = scheduler.state.state
        await scheduler.close()
        return state, recorded

    state, (batches, _, diagnostics, errors) = asyncio.run(scenario())

    assert state is SchedulerState.DETECTING_CONTINUOUS
    assert batches[1].is_empty
    assert [d.class_label for d in batches[3]] == ["dog"]
    kinds = [d.kind for d in diagnostics]
    assert "adapter_anomaly" in kinds
    assert "task_failed" not in kinds
    assert errors == []
    assert stream.released == 1


def test_paint_failure_is_diagnosed_and_loop_continues():
    """A failing overlay paint still publishes the batch."""
    backend = FakeBackend(output=[DOG])
    config = AppConfig(visualization=VisualizationConfig(enable_tracking=True), scheduler=FAST)
    renderer = FlakyRenderer(failures=1, config=config.visualization)
    stream = FakeStream()

    async def scenario():
        scheduler = _scheduler(_factory(backend), config=config, renderer=renderer)
        recorded = _record(scheduler)
        await scheduler.select_model("general-detector")
        await scheduler.set_source(stream)
        await _wait_until(lambda: len(recorded[0]) >= 3)
        state = scheduler.state.state
        await scheduler.close()
        return state, recorded

    state, (batches, _, diagnostics, _) = asyncio.run(scenario())

    assert state is SchedulerState.DETECTING_CONTINUOUS
    assert [d.class_label for d in batches[0]] == ["dog"]
    render_errors = [d for d in diagnostics if d.kind == "render_error"]
    assert len(render_errors) == 1
    assert isinstance(render_errors[0].cause, ValueError)
    assert "task_failed" not in [d.kind for d in diagnostics]
    assert stream.released == 1


def test_model_change_during_continuous_inference():
    """Swapping models mid-stream drops the old result and resumes on the new model."""
    events = []
    release = threading.Event()
    cat = {"bbox": [0, 0, 10, 10], "class": "cat", "score": 0.9}
    slow = FakeBackend(output=[cat], release=release, events=events, name="a")
    fast = FakeBackend(output=[DOG], events=events, name="b")
    stream = FakeStream()

    async def scenario():
        scheduler = _scheduler(_factory(slow, fast, events=events))
        batches, _, _, _ = _record(scheduler)
        await scheduler.select_model("general-detector")
        await scheduler.set_source(stream)
        await _wait_until(lambda: slow.calls == 1)

        swap = asyncio.create_task(scheduler.select_model("general-detector"))
        await asyncio.sleep(0.01)
        assert scheduler.state.state is SchedulerState.LOADING_MODEL

        release.set()
        handle = await asyncio.wait_for(swap, timeout=5)
        await _wait_until(lambda: len(batches) >= 3)
        result = (scheduler.generation, scheduler.state.state, scheduler.handle is handle)
        await scheduler.close()
        return result, batches

    (generation, state, same_handle), batches = asyncio.run(scenario())

    assert all(b.generation == generation for b in batches)
    assert all([d.class_label for d in b] == ["dog"] for b in batches)
    assert state is SchedulerState.DETECTING_CONTINUOUS
    assert same_handle
    assert slow.calls == 1
    assert fast.calls >= 3
    # The old handle is disposed before the new model loads
    assert events[:3] == ["load-a", "close-a", "load-b"]
    assert stream.released == 1


def test_still_image_is_painted_once():
    """With a model ready, the raw image is painted a single time."""
    renderer = FlakyRenderer(failures=0)

    async def scenario():
        scheduler = _scheduler(_factory(FakeBackend(output=[DOG])), renderer=renderer)
        batches, _, _, _ = _record(scheduler)
        await scheduler.select_model("general-detector")
        await scheduler.set_source(StillImage(FRAME.copy()))
        await scheduler.join()
        return batches

    batches = asyncio.run(scenario())
    assert len(batches) == 1
    assert renderer.frames_painted == 1


def test_still_image_without_model_is_shown_immediately():
    renderer = FlakyRenderer(failures=0)

    async def scenario():
        scheduler = _scheduler(_factory(FakeBackend()), renderer=renderer)
        await scheduler.set_source(StillImage(FRAME.copy()))
        return scheduler.state.state

    state = asyncio.run(scenario())
    assert renderer.frames_painted == 1
    assert renderer.surface.pixels.shape == FRAME.shape
    assert state is not SchedulerState.DETECTING_ONCE


def test_overlapping_model_selections_load_one_at_a_time():
    """Two overlapping selections never hold two live models."""
    events = []
    release = threading.Event()
    live = []
    peak = [0]

    class TrackedBackend(FakeBackend):
        def close(self):
            super().close()
            live.remove(self)

    def load(options):
        backend = TrackedBackend(output=[DOG], events=events, name=f"m{len(events)}")
        events.append(f"load-start-{backend.name}")
        release.wait(timeout=5)
        live.append(backend)
        peak[0] = max(peak[0], len(live))
        events.append(f"load-end-{backend.name}")
        return backend

    async def scenario():
        scheduler = _scheduler(load)
        first = asyncio.create_task(scheduler.select_model("general-detector"))
        await _wait_until(lambda: len(events) == 1)

        second = asyncio.create_task(scheduler.select_model("general-detector"))
        await asyncio.sleep(0.01)
        # The second load waits for the first to finish
        assert len(events) == 1

        release.set()
        results = await asyncio.wait_for(asyncio.gather(first, second), timeout=5)
        return scheduler, results

    scheduler, (first_handle, second_handle) = asyncio.run(scenario())

    assert first_handle is None
    assert second_handle is scheduler.handle
    assert peak[0] == 1
    assert len(live) == 1
    assert events == ["load-start-m0", "load-end-m0", "close-m0", "load-start-m3", "load-end-m3"]
    assert scheduler.state.state is SchedulerState.READY
