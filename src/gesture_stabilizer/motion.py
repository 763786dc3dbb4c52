"""Motion-gated capture trigger for remote analysis.

A cheap stand-in for "the user finished a gesture and is holding it": frames
are shrunk to a tiny RGBA thumbnail and differenced against the previous one.
Once the scene has moved and then stayed still long enough, a single capture
is requested, rate-limited so a remote service is not flooded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

import cv2
import numpy as np

logger = logging.getLogger("gesture_stabilizer.motion")

SAMPLE_WIDTH, SAMPLE_HEIGHT = 64, 48
SAMPLE_CHANNELS = 4
SAMPLE_STRIDE = 16  # bytes; every 4th pixel's red channel
PIXEL_DELTA_THRESHOLD = 30
MIN_CHANGED_SAMPLES = 5
CAPTURE_INTERVAL_MS = 3000.0

DEFAULT_STABILITY_MS = 1000.0
MIN_STABILITY_MS = 500.0
MAX_STABILITY_MS = 3000.0


def clamp_stability(threshold_ms: float) -> float:
    return float(min(MAX_STABILITY_MS, max(MIN_STABILITY_MS, threshold_ms)))


class MotionState(Enum):
    IDLE = "IDLE"
    MOVING = "MOVING"
    STABLE = "STABLE"
    CAPTURING = "CAPTURING"


@dataclass(frozen=True)
class CaptureEvent:
    """Request to hand the current full-resolution frame to remote analysis."""
    timestamp: float  # ms, session clock
    stable_ms: float


def downsample(frame: np.ndarray) -> np.ndarray:
    """Shrink an RGB, RGBA or grayscale frame to a 64x48 RGBA sample."""
    small = cv2.resize(frame, (SAMPLE_WIDTH, SAMPLE_HEIGHT), interpolation=cv2.INTER_AREA)
    if small.dtype != np.uint8:
        small = np.clip(small, 0, 255).astype(np.uint8)

    if small.ndim == 2:
        return cv2.cvtColor(small, cv2.COLOR_GRAY2RGBA)
    if small.shape[2] == 3:
        return cv2.cvtColor(small, cv2.COLOR_RGB2RGBA)
    return small


def count_changed(
    current: np.ndarray,
    reference: np.ndarray,
    stride: int = SAMPLE_STRIDE,
    threshold: int = PIXEL_DELTA_THRESHOLD,
) -> int:
    """Count strided byte positions whose intensity changed by more than threshold."""
    a = current.reshape(-1)[::stride].astype(np.int16)
    b = reference.reshape(-1)[::stride].astype(np.int16)
    return int(np.count_nonzero(np.abs(a - b) > threshold))


class MotionSampleBuffer:
    """Two preallocated sample slots used as current/reference.

    Each push copies the new sample into the free slot, differences it
    against the reference slot, then flips the cursor so the new sample
    becomes the next reference.
    """

    def __init__(self, stride: int = SAMPLE_STRIDE, threshold: int = PIXEL_DELTA_THRESHOLD):
        shape = (SAMPLE_HEIGHT, SAMPLE_WIDTH, SAMPLE_CHANNELS)
        self._slots = (np.zeros(shape, dtype=np.uint8), np.zeros(shape, dtype=np.uint8))
        self._cursor = 0
        self._has_reference = False
        self.stride = stride
        self.threshold = threshold

    def push(self, sample: np.ndarray) -> Optional[int]:
        """Store a sample; return its changed count vs the previous one, if any."""
        current = self._slots[self._cursor]
        np.copyto(current, sample)

        changed = None
        if self._has_reference:
            reference = self._slots[1 - self._cursor]
            changed = count_changed(current, reference, self.stride, self.threshold)

        self._cursor = 1 - self._cursor
        self._has_reference = True
        return changed

    def clear(self):
        self._has_reference = False
        self._cursor = 0

    @property
    def has_reference(self) -> bool:
        return self._has_reference


@dataclass
class TriggerState:
    status: MotionState = MotionState.IDLE
    motion_detected: bool = False
    stable_since_ms: float = 0.0
    last_capture_ms: Optional[float] = None


class MotionTrigger:
    """IDLE / MOVING / STABLE / CAPTURING state machine over changed counts."""

    def __init__(
        self,
        stability_threshold_ms: float = DEFAULT_STABILITY_MS,
        capture_interval_ms: float = CAPTURE_INTERVAL_MS,
        min_changed: int = MIN_CHANGED_SAMPLES,
    ):
        self.stability_threshold_ms = clamp_stability(stability_threshold_ms)
        self.capture_interval_ms = capture_interval_ms
        self.min_changed = min_changed

    def initial_state(self) -> TriggerState:
        return TriggerState()

    def step(
        self,
        state: TriggerState,
        changed: Optional[int],
        now_ms: float,
        processing: bool = False,
    ) -> tuple[TriggerState, Optional[CaptureEvent]]:
        """Advance one motion sample.

        Args:
            state: State returned by the previous step.
            changed: Changed-sample count vs the previous frame, or None when
                there is no reference frame yet.
            now_ms: Monotonic timestamp in milliseconds.
            processing: True while a remote analysis is outstanding.
        """
        if changed is None:
            return state, None

        if changed > self.min_changed:
            return replace(
                state,
                status=MotionState.MOVING,
                motion_detected=True,
                stable_since_ms=now_ms,
            ), None

        if not state.motion_detected:
            if processing and state.status == MotionState.CAPTURING:
                return state, None
            return replace(state, status=MotionState.IDLE), None

        stable_ms = now_ms - state.stable_since_ms
        if stable_ms <= self.stability_threshold_ms:
            return replace(state, status=MotionState.STABLE), None

        last = state.last_capture_ms
        if processing or (last is not None and now_ms - last <= self.capture_interval_ms):
            return replace(state, status=MotionState.STABLE), None

        logger.info("Scene stable for %.0f ms, requesting capture", stable_ms)
        new_state = replace(
            state,
            status=MotionState.CAPTURING,
            motion_detected=False,
            last_capture_ms=now_ms,
        )
        return new_state, CaptureEvent(timestamp=now_ms, stable_ms=stable_ms)

    def settle(self, state: TriggerState) -> TriggerState:
        """Return to IDLE once the outstanding analysis finishes."""
        return replace(state, status=MotionState.IDLE)
