"""
Detection Scheduler: the state machine driving inference cycles.

Responsibility:
    Own the loaded model handle and the current visual source, run
    single-shot detection for still images and a self-scheduling loop
    for live streams, and publish state changes and detection batches to
    registered observers.

States:
    IDLE -> LOADING_MODEL -> READY | ERROR
    READY -> DETECTING_ONCE -> READY            (still image)
    READY -> DETECTING_CONTINUOUS -> READY      (live stream, until removed)
    any -> LOADING_MODEL                        (model changed)
    ERROR -> LOADING_MODEL                      (only by selecting a model)

Concurrency:
    Everything runs on one asyncio event loop. Blocking work (model load,
    inference, camera reads) goes to worker threads through the gateway
    and ``asyncio.to_thread``; results come back to the loop thread.

    Every model change or source change bumps a generation counter. A
    cycle captures the generation, handle and source when it starts and
    re-checks the generation before acting on any result, so a slow
    stale inference can never overwrite newer state. Cancellation is
    cooperative: the detection task notices a stale generation at its
    next check and exits; callers wait for it before disposing the handle
    or releasing the stream.

Failure behavior:
    - Per-cycle inference failures become empty batches plus a
      diagnostic. The continuous loop keeps going.
    - Model load failures move to ERROR, are reported through
      ``on_error`` and re-raised to the caller.
    - Stream acquisition failures are reported and re-raised; the model
      state is untouched.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, TypeVar

import numpy as np

from detectview.adapters import adapt
from detectview.config import AppConfig, model_options
from detectview.detection import Detection, DetectionBatch
from detectview.errors import AcquisitionError, DetectViewError, InferenceError, ModelLoadError
from detectview.families import ModelCapabilities, ModelFamily
from detectview.gateway import ModelGateway, ModelHandle
from detectview.geometry import refine
from detectview.media import (
    StillImage,
    StreamConstraints,
    acquire_stream,
    constraints_for,
    is_frame_ready,
    release_stream,
)
from detectview.renderer import Renderer
from detectview.tracking import PathTracker

logger = logging.getLogger(__name__)

Callback = TypeVar("Callback", bound=Callable[..., Any])


class SchedulerState(enum.Enum):
    IDLE = "idle"
    LOADING_MODEL = "loading_model"
    READY = "ready"
    DETECTING_ONCE = "detecting_once"
    DETECTING_CONTINUOUS = "detecting_continuous"
    ERROR = "error"


@dataclass(frozen=True)
class StateSnapshot:
    """Published on every state transition.

    Attributes:
        state: The new state.
        generation: Generation current at the transition.
        family: Model family loaded or being loaded, if any.
        error: Structured cause when ``state`` is ERROR.
    """

    state: SchedulerState
    generation: int
    family: Optional[ModelFamily] = None
    error: Optional[DetectViewError] = None


@dataclass(frozen=True)
class Diagnostic:
    """A recovered anomaly (failed cycle, bad model output, stalled stream)."""

    kind: str
    message: str
    generation: int
    cause: Optional[BaseException] = None


class DetectionScheduler:
    """Schedules inference for still images and live streams.

    Usage:
        scheduler = DetectionScheduler(ModelGateway(), config, Renderer())
        scheduler.on_detection_batch(print)
        await scheduler.select_model("general-detector")
        await scheduler.set_source(load_image_file("cat.jpg"))
        await scheduler.join()
        await scheduler.close()

    The scheduler owns any live stream attached to it and releases it
    when the stream is removed or replaced, and on close.
    """

    def __init__(
        self,
        gateway: Optional[ModelGateway] = None,
        config: Optional[AppConfig] = None,
        renderer: Optional[Renderer] = None,
        stream_acquirer: Callable[[StreamConstraints], Any] = acquire_stream,
    ) -> None:
        self._gateway = gateway or ModelGateway()
        self._config = config or AppConfig()
        self._renderer = renderer
        self._acquire = stream_acquirer

        self._generation = 0
        self._load_token = 0
        self._load_lock = asyncio.Lock()
        self._family: Optional[ModelFamily] = None
        self._handle: Optional[ModelHandle] = None
        self._source: Any = None
        self._task: Optional[asyncio.Task] = None
        self._frame_index = 0
        self._tracker = PathTracker(max_points=self._config.visualization.max_path_points)
        self._snapshot = StateSnapshot(SchedulerState.IDLE, 0)

        self._batch_callbacks: List[Callable[[DetectionBatch], Any]] = []
        self._state_callbacks: List[Callable[[StateSnapshot], Any]] = []
        self._diagnostic_callbacks: List[Callable[[Diagnostic], Any]] = []
        self._error_callbacks: List[Callable[[DetectViewError], Any]] = []

        if renderer is not None:
            renderer.config = self._config.visualization

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def on_detection_batch(self, callback: Callback) -> Callback:
        """Call ``callback(batch)`` once per completed inference cycle."""
        self._batch_callbacks.append(callback)
        return callback

    def on_state_change(self, callback: Callback) -> Callback:
        """Call ``callback(snapshot)`` on every state transition."""
        self._state_callbacks.append(callback)
        return callback

    def on_diagnostic(self, callback: Callback) -> Callback:
        """Call ``callback(diagnostic)`` for every recovered anomaly."""
        self._diagnostic_callbacks.append(callback)
        return callback

    def on_error(self, callback: Callback) -> Callback:
        """Call ``callback(error)`` for load and acquisition failures."""
        self._error_callbacks.append(callback)
        return callback

    @staticmethod
    def _emit(callbacks: List[Callable], payload: Any) -> None:
        for callback in list(callbacks):
            try:
                callback(payload)
            except Exception:
                logger.exception("Observer %r failed", callback)

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def state(self) -> StateSnapshot:
        return self._snapshot

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def handle(self) -> Optional[ModelHandle]:
        return self._handle

    @property
    def source(self) -> Any:
        return self._source

    @property
    def config(self) -> AppConfig:
        return self._config

    @property
    def renderer(self) -> Optional[Renderer]:
        return self._renderer

    def configure(self, config: AppConfig) -> None:
        """Swap in new options. They apply from the next cycle."""
        self._config = config
        if self._renderer is not None:
            self._renderer.config = config.visualization
        if config.visualization.max_path_points != self._tracker.max_points:
            self._tracker = PathTracker(max_points=config.visualization.max_path_points)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(self, state: SchedulerState, error: Optional[DetectViewError] = None) -> None:
        previous = self._snapshot
        if (previous.state, previous.family, previous.error) == (state, self._family, error):
            return
        snapshot = StateSnapshot(state, self._generation, self._family, error)
        logger.info("Scheduler state: %s -> %s", self._snapshot.state.value, state.value)
        self._snapshot = snapshot
        self._emit(self._state_callbacks, snapshot)

    def _invalidate(self) -> int:
        self._generation += 1
        return self._generation

    def _diagnose(
        self,
        kind: str,
        message: str,
        generation: int,
        cause: Optional[BaseException] = None,
    ) -> None:
        self._emit(self._diagnostic_callbacks, Diagnostic(kind, message, generation, cause))

    def _report_error(self, error: DetectViewError) -> None:
        self._emit(self._error_callbacks, error)

    # ------------------------------------------------------------------
    # Task management
    # ------------------------------------------------------------------

    def _start_task(self, coro, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        task.add_done_callback(self._on_task_done)
        self._task = task

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Detection task %s failed", task.get_name(), exc_info=exc)
            self._diagnose("task_failed", str(exc), self._generation, cause=exc)

    async def join(self) -> None:
        """Wait for the active detection task to finish.

        A still-image task finishes after its single cycle. A continuous
        task only finishes once its stream is removed or the model changes.
        """
        task = self._task
        if task is None or task is asyncio.current_task():
            return
        if not task.done():
            await asyncio.wait({task})
        if self._task is task:
            self._task = None

    def _is_current(self, generation: int, source: Any) -> bool:
        return (
            generation == self._generation
            and self._source is source
            and getattr(source, "active", True)
        )

    # ------------------------------------------------------------------
    # Model lifecycle
    # ------------------------------------------------------------------

    def _default_options(self, family) -> dict:
        try:
            return model_options(self._config.model, family)
        except ValueError:
            # Unknown family: let the gateway report it as a load error
            return {}

    async def _release_handle(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            await self._gateway.wait_idle(handle)
            self._gateway.dispose(handle)

    async def select_model(self, family, options: Optional[dict] = None) -> Optional[ModelHandle]:
        """Load a model, replacing the current one.

        Any in-flight cycle is invalidated and the previous handle is
        disposed before the new load begins. Overlapping calls load one
        after another; a call superseded while waiting never loads. Once
        loaded, any attached source is detected again.

        Returns:
            The new handle, or None if a newer selection superseded this one.

        Raises:
            ModelLoadError: If the load fails (the scheduler is then in ERROR).
        """
        self._load_token += 1
        token = self._load_token
        self._invalidate()

        try:
            self._family = ModelFamily.parse(family)
        except ValueError:
            self._family = None
        self._transition(SchedulerState.LOADING_MODEL)

        # One load at a time, so at most one live handle exists
        async with self._load_lock:
            if token != self._load_token:
                return None

            await self.join()
            await self._release_handle()

            if options is None:
                options = self._default_options(family)

            try:
                handle = await self._gateway.load(family, options)
            except ModelLoadError as e:
                logger.error("Model load failed: %s", e)
                if token == self._load_token:
                    self._transition(SchedulerState.ERROR, error=e)
                    self._report_error(e)
                raise

            if token != self._load_token:
                logger.info("Discarding %r: superseded by a newer model selection.", handle)
                self._gateway.dispose(handle)
                return None

            self._handle = handle
            self._tracker.reset()
            self._transition(SchedulerState.READY)
            self._start_detection(self._generation)
            return handle

    # ------------------------------------------------------------------
    # Source lifecycle
    # ------------------------------------------------------------------

    @staticmethod
    def _release_source(source: Any) -> None:
        if getattr(source, "is_live", False):
            release_stream(source)

    async def set_source(self, source: Any) -> None:
        """Attach a still image or live stream, replacing the current source.

        A still image is painted immediately. Detection starts right away
        when a model is ready, otherwise as soon as one is loaded.
        Passing None is the same as ``remove_source``.
        """
        if source is None:
            await self.remove_source()
            return

        self._invalidate()
        await self.join()

        previous, self._source = self._source, source
        if previous is not None and previous is not source:
            self._release_source(previous)

        self._frame_index = 0
        self._tracker.reset()

        if self._handle is not None:
            self._start_detection(self._generation)
        elif not getattr(source, "is_live", False) and self._renderer is not None:
            # No model yet: show the image now, detection paints it again later
            self._renderer.paint_frame(source.pixels)

    async def start_stream(self, constraints: Optional[StreamConstraints] = None) -> Any:
        """Acquire the camera and attach it as a live source.

        Raises:
            AcquisitionError: If the camera cannot be opened. The model
                              state is unaffected.
        """
        if constraints is None:
            constraints = constraints_for(
                self._config.input.resolution, self._config.input.facing_mode
            )

        try:
            stream = await asyncio.to_thread(self._acquire, constraints)
        except AcquisitionError as e:
            logger.error("Stream acquisition failed: %s", e)
            self._report_error(e)
            raise

        try:
            await self.set_source(stream)
        except BaseException:
            if self._source is stream:
                self._source = None
            release_stream(stream)
            raise
        return stream

    async def remove_source(self) -> None:
        """Detach the current source, stopping any detection on it."""
        self._invalidate()
        await self.join()

        source, self._source = self._source, None
        self._tracker.reset()
        if source is not None:
            self._release_source(source)

        if self._handle is not None and self._snapshot.state in (
            SchedulerState.DETECTING_ONCE, SchedulerState.DETECTING_CONTINUOUS,
        ):
            self._transition(SchedulerState.READY)

    async def close(self) -> None:
        """End the session: stop detection, release the stream and the model."""
        self._load_token += 1
        self._invalidate()
        await self.join()

        source, self._source = self._source, None
        try:
            if source is not None:
                self._release_source(source)
        finally:
            await self._release_handle()
            self._family = None
            self._transition(SchedulerState.IDLE)

    async def __aenter__(self) -> "DetectionScheduler":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def _start_detection(self, generation: int) -> None:
        source, handle = self._source, self._handle
        if source is None or handle is None:
            return

        if getattr(source, "is_live", False):
            self._transition(SchedulerState.DETECTING_CONTINUOUS)
            self._start_task(
                self._run_continuous(generation, handle, source),
                name=f"detect-continuous-{generation}",
            )
        else:
            self._transition(SchedulerState.DETECTING_ONCE)
            self._start_task(
                self._run_once(generation, handle, source),
                name=f"detect-once-{generation}",
            )

    async def _run_once(self, generation: int, handle: ModelHandle, image: StillImage) -> None:
        try:
            if self._renderer is not None:
                self._renderer.paint_frame(image.pixels)

            # Let the display show the raw image before a slow first inference
            await asyncio.sleep(self._config.scheduler.still_image_delay_ms / 1000.0)
            if not self._is_current(generation, image):
                return

            await self._run_cycle(
                generation, handle, image.pixels, frame_index=0, paint_source=False
            )
        finally:
            if generation == self._generation:
                self._transition(SchedulerState.READY)

    async def _run_continuous(self, generation: int, handle: ModelHandle, stream: Any) -> None:
        skipped = 0
        logger.info("Continuous detection started (generation %d).", generation)
        try:
            while self._is_current(generation, stream):
                frame = await asyncio.to_thread(stream.read_frame)
                if not self._is_current(generation, stream):
                    break

                scheduling = self._config.scheduler
                if not is_frame_ready(frame):
                    skipped += 1
                    if skipped == scheduling.stall_warning_cycles:
                        logger.warning("No frame ready for %d consecutive cycles.", skipped)
                        self._diagnose(
                            "stalled_stream",
                            f"no frame ready for {skipped} consecutive cycles",
                            generation,
                        )
                    await asyncio.sleep(scheduling.idle_backoff_ms / 1000.0)
                    continue

                skipped = 0
                await self._run_cycle(generation, handle, frame, self._frame_index)
                self._frame_index += 1

                # Yield to the event loop between cycles
                await asyncio.sleep(scheduling.frame_interval_ms / 1000.0)
        finally:
            logger.info("Continuous detection stopped (generation %d).", generation)
            if (
                generation == self._generation
                and self._snapshot.state is SchedulerState.DETECTING_CONTINUOUS
            ):
                self._transition(SchedulerState.READY)

    def _inference_options(self, capabilities: ModelCapabilities) -> dict:
        detection = self._config.detection
        return {
            "confidence_threshold": (
                detection.confidence_threshold
                if detection.confidence_threshold is not None
                else capabilities.default_threshold
            ),
            "max_detections": detection.max_detections or capabilities.max_detections,
        }

    def _refine(self, detections, options: dict) -> List[Detection]:
        detection = self._config.detection
        return refine(
            detections,
            min_confidence=options["confidence_threshold"],
            allowed_classes=detection.allowed_classes,
            iou_threshold=detection.iou_threshold if detection.enable_suppression else None,
            max_detections=options["max_detections"],
        )

    def _paint_results(self, batch: DetectionBatch) -> None:
        paths = None
        if self._config.visualization.enable_tracking:
            paths = self._tracker.update(batch.detections)
        if self._renderer is not None:
            self._renderer.paint_batch(batch.detections, paths)

    async def _run_cycle(
        self,
        generation: int,
        handle: ModelHandle,
        frame: np.ndarray,
        frame_index: int,
        paint_source: bool = True,
    ) -> Optional[DetectionBatch]:
        """Infer, adapt, refine, paint results and publish one batch.

        The frame is painted here only when ``paint_source`` is set; still
        images are painted once by the caller before their delay.

        Returns:
            The published batch, or None if the result went stale.
        """
        if paint_source and self._renderer is not None:
            self._renderer.paint_frame(frame)

        options = self._inference_options(handle.capabilities)
        try:
            raw = await self._gateway.infer(handle, frame, options)
        except InferenceError as e:
            if generation != self._generation:
                return None
            logger.warning("Inference failed (generation %d): %s", generation, e)
            self._diagnose("inference_error", str(e), generation, cause=e)
            detections: List[Detection] = []
        else:
            if generation != self._generation:
                logger.debug("Discarding stale result from generation %d.", generation)
                return None
            adapted = adapt(handle.family, raw)
            if adapted.anomaly is not None:
                self._diagnose("adapter_anomaly", adapted.anomaly, generation)
            detections = self._refine(adapted.detections, options)

        h, w = frame.shape[:2]
        batch = DetectionBatch(
            detections=tuple(detections),
            source_width=w,
            source_height=h,
            generation=generation,
            family=handle.family.value,
            frame_index=frame_index,
        )

        try:
            self._paint_results(batch)
        except Exception as e:
            # A bad overlay must not stop the loop; the batch is still published
            logger.exception("Painting failed (generation %d, frame %d)", generation, frame_index)
            self._diagnose("render_error", str(e), generation, cause=e)

        logger.debug(
            "Cycle complete (generation %d, frame %d): %d detections",
            generation, frame_index, len(batch),
        )
        self._emit(self._batch_callbacks, batch)
        return batch
