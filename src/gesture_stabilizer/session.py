"""Per-frame orchestration of the local and remote decision paths.

One ``StabilizationSession`` is driven by a single cooperative loop: the
caller reads a frame, calls ``process_frame`` with a monotonic timestamp, and
receives the events produced by that frame. Nothing here blocks; captures are
analyzed in an asyncio task whose result comes back through ``on_event``
callbacks.

Exactly one path runs per frame:
- LOCAL: tracker -> geometric override -> voting window -> segmenter
- CLOUD: downsample -> frame difference -> motion trigger -> capture
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Optional, Union

import cv2
import numpy as np

from gesture_stabilizer.config import EngineConfig, Mode
from gesture_stabilizer.gestures import GeometricClassifier
from gesture_stabilizer.metrics import MetricsCollector
from gesture_stabilizer.motion import (
    CaptureEvent,
    MotionSampleBuffer,
    MotionState,
    MotionTrigger,
    TriggerState,
    downsample,
)
from gesture_stabilizer.remote import AnalysisResult, RemoteAnalyzer, RemoteDispatcher
from gesture_stabilizer.segmentation import (
    ConfirmedGestureEvent,
    GestureSegmenter,
    SegmentationState,
    SegmenterState,
)
from gesture_stabilizer.tracker import HandTrackerLike, TrackerResult

logger = logging.getLogger("gesture_stabilizer.session")

LOCAL_INTERVAL_MS = 100.0
LOCAL_INTERVAL_CPU_MS = 150.0
REMOTE_INTERVAL_MS = 200.0
SLOW_INFERENCE_MS = 20.0

INFERENCE_SIZE = (256, 192)
INFERENCE_SIZE_CPU = (160, 120)

WAITING_TEXT = "Waiting for gesture..."
NO_HAND_TEXT = "Waiting for gesture...\nEnsure hands are in frame."
TRACKING_TEXT = "Tracking Hand...\nHold gesture steady."
ANALYZING_TEXT = "Analyzing..."

PATH_LOCAL = "local"
PATH_REMOTE = "remote"


@dataclass
class BackendProfile:
    """Inference speed assumption. Only ever degrades, never recovers."""
    cpu_bound: bool = False

    def observe(self, latency_ms: float) -> bool:
        """Record one tracker call; returns True if this call latched the downgrade."""
        if self.cpu_bound or latency_ms <= SLOW_INFERENCE_MS:
            return False
        self.cpu_bound = True
        return True

    @property
    def local_interval_ms(self) -> float:
        return LOCAL_INTERVAL_CPU_MS if self.cpu_bound else LOCAL_INTERVAL_MS

    @property
    def inference_size(self) -> tuple[int, int]:
        return INFERENCE_SIZE_CPU if self.cpu_bound else INFERENCE_SIZE


@dataclass(frozen=True)
class StatusUpdate:
    """Observable status for the presentation layer."""
    path: str
    status: str
    display: str
    timestamp: float


SessionEvent = Union[StatusUpdate, ConfirmedGestureEvent, CaptureEvent, AnalysisResult]


@dataclass
class SessionState:
    segmenter: SegmenterState
    trigger: TriggerState
    backend: BackendProfile = field(default_factory=BackendProfile)
    active: bool = False
    online: bool = True
    last_run_ms: Optional[float] = None
    last_track_ms: Optional[int] = None
    status: str = "IDLE"
    display: str = WAITING_TEXT


class StabilizationSession:
    """Owns the per-frame loop state and threads it through each step.

    Usage:
        session = StabilizationSession(config, tracker=GestureTracker())
        session.on_event(print)
        session.start()
        while running:
            session.process_frame(frame_rgb, time.monotonic() * 1000)
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        tracker: Optional[HandTrackerLike] = None,
        analyzer: Optional[RemoteAnalyzer] = None,
        classifier: Optional[GeometricClassifier] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.config = config or EngineConfig()
        self.tracker = tracker
        self.classifier = classifier or GeometricClassifier()
        self.metrics = metrics
        self.segmenter = GestureSegmenter(tie_break=self.config.tie_break)
        self.trigger = MotionTrigger(self.config.stability_threshold_ms)

        self._samples = MotionSampleBuffer()
        self._dispatcher = RemoteDispatcher(analyzer, self._on_analysis_settled) if analyzer else None
        self._callbacks: list[Callable[[SessionEvent], None]] = []

        backend = BackendProfile(cpu_bound=bool(getattr(tracker, "cpu_delegate", False)))
        if backend.cpu_bound and self.metrics:
            self.metrics.set_backend_degraded(True)
        self.state = SessionState(
            segmenter=self.segmenter.initial_state(),
            trigger=self.trigger.initial_state(),
            backend=backend,
        )

    # --- lifecycle ---

    def on_event(self, callback: Callable[[SessionEvent], None]):
        """Register a callback for every emitted event."""
        self._callbacks.append(callback)

    def start(self):
        self._reset()
        self.state.active = True
        logger.info("Session started (%s mode)", self.effective_mode.value)

    def stop(self):
        self._reset()
        self.state.active = False
        logger.info("Session stopped")

    async def aclose(self):
        """Stop the session and release the analyzer's resources."""
        self.stop()
        analyzer = self._dispatcher.analyzer if self._dispatcher else None
        close = getattr(analyzer, "close", None)
        if close is not None:
            await close()

    def set_mode(self, mode: Mode):
        """Switch paths. Discards all history when the effective mode changes."""
        previous = self.effective_mode
        self.config = self.config.update(mode=mode)
        if self.effective_mode != previous:
            logger.info("Mode switched %s -> %s", previous.value, self.effective_mode.value)
            self._reset()

    def set_online(self, online: bool):
        """Cloud mode needs connectivity; offline forces the local path."""
        previous = self.effective_mode
        self.state.online = online
        if self.effective_mode != previous:
            logger.info("Connectivity %s, effective mode now %s",
                        "restored" if online else "lost", self.effective_mode.value)
            self._reset()

    def configure(self, **changes) -> EngineConfig:
        """Apply config changes atomically; mode changes go through ``set_mode``.

        The whole change set is validated before anything is applied, so a
        ``ConfigError`` leaves the session untouched.
        """
        validated = self.config.update(**changes)
        mode = changes.pop("mode", None)
        self.config = replace(validated, mode=self.config.mode)
        if "stability_threshold_ms" in changes:
            self.trigger = MotionTrigger(self.config.stability_threshold_ms)
        if "tie_break" in changes:
            self.segmenter = GestureSegmenter(tie_break=self.config.tie_break)
        if mode is not None:
            self.set_mode(validated.mode)
        return self.config

    def _reset(self):
        if self._dispatcher:
            self._dispatcher.cancel()
        self._samples.clear()
        self.state.segmenter = self.segmenter.reset(self.state.segmenter)
        self.state.trigger = self.trigger.initial_state()
        self.state.last_run_ms = None
        self.state.status = "IDLE"
        self.state.display = WAITING_TEXT

    # --- observable state ---

    @property
    def effective_mode(self) -> Mode:
        if not self.state.online:
            return Mode.LOCAL
        return self.config.mode

    @property
    def active(self) -> bool:
        return self.state.active

    @property
    def status(self) -> str:
        return self.state.status

    @property
    def display(self) -> str:
        return self.state.display

    @property
    def processing(self) -> bool:
        return self._dispatcher is not None and self._dispatcher.processing

    @property
    def backend(self) -> BackendProfile:
        return self.state.backend

    # --- per-frame entry points ---

    def process_frame(self, frame_rgb: np.ndarray, now_ms: float) -> list[SessionEvent]:
        """Run whichever path is active, if its interval has elapsed."""
        if not self.state.active or not self._due(now_ms):
            return []

        t0 = time.perf_counter()
        if self.effective_mode == Mode.LOCAL:
            path = PATH_LOCAL
            result = self._track(frame_rgb, now_ms)
            events = self._step_local(result, now_ms) if result is not None else []
        else:
            path = PATH_REMOTE
            events = self._step_remote(frame_rgb, now_ms)

        if self.metrics:
            self.metrics.record_frame(path, time.perf_counter() - t0)
        self._emit(events)
        return events

    def process_tracking(self, result: TrackerResult, now_ms: float) -> list[SessionEvent]:
        """Feed already-computed tracker output through the local path."""
        if not self.state.active or self.effective_mode != Mode.LOCAL or not self._due(now_ms):
            return []
        events = self._step_local(result, now_ms)
        self._emit(events)
        return events

    def _due(self, now_ms: float) -> bool:
        if self.effective_mode == Mode.LOCAL:
            interval = self.state.backend.local_interval_ms
        else:
            interval = REMOTE_INTERVAL_MS

        last = self.state.last_run_ms
        if last is not None and now_ms - last <= interval:
            return False
        self.state.last_run_ms = now_ms
        return True

    # --- local path ---

    def _track(self, frame_rgb: np.ndarray, now_ms: float) -> Optional[TrackerResult]:
        if self.tracker is None:
            logger.debug("No tracker attached, skipping local frame")
            return None

        timestamp = int(now_ms)
        if self.state.last_track_ms is not None and timestamp <= self.state.last_track_ms:
            return None
        self.state.last_track_ms = timestamp

        small = cv2.resize(frame_rgb, self.state.backend.inference_size, interpolation=cv2.INTER_AREA)

        t0 = time.perf_counter()
        try:
            result = self.tracker.recognize(small, timestamp)
        except Exception as e:
            logger.warning("Tracker failed, treating frame as empty: %s", e)
            result = TrackerResult()
        latency_ms = (time.perf_counter() - t0) * 1000.0

        if self.metrics:
            self.metrics.record_tracker_latency(latency_ms / 1000.0)
        if self.state.backend.observe(latency_ms):
            logger.info("Inference slow (%.1f ms), switching to CPU throttle", latency_ms)
            if self.metrics:
                self.metrics.set_backend_degraded(True)
        return result

    def _step_local(self, result: TrackerResult, now_ms: float) -> list[SessionEvent]:
        observation = None
        if result.hand_present:
            observation = self.classifier.override(result.observation(), result.hands[0])

        self.state.segmenter, confirmed = self.segmenter.step(self.state.segmenter, observation, now_ms)
        status = self.state.segmenter.status

        events: list[SessionEvent] = []
        if confirmed is not None:
            events.append(confirmed)
            if self.metrics:
                self.metrics.record_confirmation(confirmed.label)

        if status == SegmentationState.IDLE:
            display = NO_HAND_TEXT
        elif status == SegmentationState.MOVING:
            display = TRACKING_TEXT
        elif confirmed is not None:
            display = confirmed.display
        else:
            display = self.state.display

        update = self._set_status(PATH_LOCAL, status.value, display, now_ms)
        if update:
            events.insert(0, update)
        return events

    # --- remote path ---

    def _step_remote(self, frame_rgb: np.ndarray, now_ms: float) -> list[SessionEvent]:
        changed = self._samples.push(downsample(frame_rgb))
        self.state.trigger, capture = self.trigger.step(
            self.state.trigger, changed, now_ms, processing=self.processing,
        )

        events: list[SessionEvent] = []
        display = self.state.display
        if capture is not None:
            events.append(capture)
            if self.metrics:
                self.metrics.record_capture()
            if self._dispatch(frame_rgb, now_ms):
                display = ANALYZING_TEXT

        update = self._set_status(PATH_REMOTE, self.state.trigger.status.value, display, now_ms)
        if update:
            events.insert(0, update)
        return events

    def _dispatch(self, frame_rgb: np.ndarray, now_ms: float) -> bool:
        if self._dispatcher is None:
            return False
        try:
            return self._dispatcher.submit(frame_rgb, self.config.scope, self.config.language, now_ms)
        except RuntimeError as e:
            logger.warning("Capture not analyzed, no running event loop: %s", e)
            return False

    def _on_analysis_settled(self, result: AnalysisResult):
        if self.metrics:
            self.metrics.record_analysis(result.ok)
        self.state.trigger = self.trigger.settle(self.state.trigger)

        events: list[SessionEvent] = [result]
        update = self._set_status(PATH_REMOTE, MotionState.IDLE.value, result.text, result.timestamp)
        if update:
            events.insert(0, update)
        self._emit(events)

    # --- helpers ---

    def _set_status(self, path: str, status: str, display: str, now_ms: float) -> Optional[StatusUpdate]:
        if status == self.state.status and display == self.state.display:
            return None
        logger.debug("[%s] %s -> %s", path, self.state.status, status)
        self.state.status = status
        self.state.display = display
        if self.metrics:
            self.metrics.record_transition(path, status)
        return StatusUpdate(path=path, status=status, display=display, timestamp=now_ms)

    def _emit(self, events: list[SessionEvent]):
        for event in events:
            for cb in self._callbacks:
                cb(event)
