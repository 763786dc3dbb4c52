"""Hand tracking boundary: landmarks plus the model's own gesture label.

The session only needs an object with ``recognize(frame_rgb, timestamp_ms)``
returning a ``TrackerResult``. ``GestureTracker`` provides that on top of the
MediaPipe Tasks gesture recognizer running in VIDEO mode.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol

import numpy as np

from gesture_stabilizer.landmarks import as_landmark_array
from gesture_stabilizer.smoothing import CATEGORY_NONE, Observation

try:
    import mediapipe as mp
    from mediapipe.tasks import python as mp_tasks
    from mediapipe.tasks.python import vision
except ImportError:
    mp = None

logger = logging.getLogger("gesture_stabilizer.tracker")

DEFAULT_MODEL_PATH = "gesture_recognizer.task"


@dataclass
class TrackerResult:
    """One frame of tracker output.

    ``hands`` holds a (21, 3) landmark array per tracked hand, in no
    particular order. ``category``/``score`` is the model's top label for at
    most one hand.
    """
    hands: list[np.ndarray] = field(default_factory=list)
    category: Optional[str] = None
    score: float = 0.0

    @property
    def hand_present(self) -> bool:
        return len(self.hands) > 0

    def observation(self) -> Observation:
        if not self.category:
            return Observation(CATEGORY_NONE, 0.0)
        return Observation(self.category, float(self.score))


class HandTrackerLike(Protocol):
    def recognize(self, frame_rgb: np.ndarray, timestamp_ms: int) -> TrackerResult: ...


class GestureTracker:
    """MediaPipe gesture recognizer wrapper.

    Tries the GPU delegate first and falls back to CPU. ``cpu_delegate``
    tells the session to start with the slower throttle.
    """

    def __init__(
        self,
        model_path: str | Path = DEFAULT_MODEL_PATH,
        num_hands: int = 2,
        min_detection_confidence: float = 0.5,
        min_presence_confidence: float = 0.5,
        min_tracking_confidence: float = 0.5,
        prefer_gpu: bool = True,
    ):
        if mp is None:
            raise ImportError(
                "mediapipe is required. Install with: pip install mediapipe"
            )

        self._options = dict(
            num_hands=num_hands,
            min_hand_detection_confidence=min_detection_confidence,
            min_hand_presence_confidence=min_presence_confidence,
            min_tracking_confidence=min_tracking_confidence,
        )
        self._model_path = str(model_path)
        self.cpu_delegate = not prefer_gpu

        if prefer_gpu:
            try:
                self._recognizer = self._create(mp_tasks.BaseOptions.Delegate.GPU)
            except (RuntimeError, ValueError) as e:
                logger.warning("GPU delegate unavailable, falling back to CPU: %s", e)
                self.cpu_delegate = True

        if self.cpu_delegate:
            self._recognizer = self._create(mp_tasks.BaseOptions.Delegate.CPU)

        logger.info("Gesture recognizer ready (%s delegate)", "CPU" if self.cpu_delegate else "GPU")

    def _create(self, delegate):
        options = vision.GestureRecognizerOptions(
            base_options=mp_tasks.BaseOptions(
                model_asset_path=self._model_path,
                delegate=delegate,
            ),
            running_mode=vision.RunningMode.VIDEO,
            **self._options,
        )
        return vision.GestureRecognizer.create_from_options(options)

    def recognize(self, frame_rgb: np.ndarray, timestamp_ms: int) -> TrackerResult:
        """Run the recognizer on one RGB frame.

        Args:
            frame_rgb: RGB image (H, W, 3), uint8.
            timestamp_ms: Strictly increasing timestamp in milliseconds.
        """
        image = mp.Image(image_format=mp.ImageFormat.SRGB, data=np.ascontiguousarray(frame_rgb))
        results = self._recognizer.recognize_for_video(image, int(timestamp_ms))

        hands = []
        for hand_landmarks in results.hand_landmarks or []:
            arr = as_landmark_array(hand_landmarks)
            if arr is not None:
                hands.append(arr)

        category, score = None, 0.0
        if results.gestures and results.gestures[0]:
            top = results.gestures[0][0]
            category, score = top.category_name, float(top.score)

        return TrackerResult(hands=hands, category=category, score=score)

    def close(self):
        """Release MediaPipe resources."""
        self._recognizer.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
