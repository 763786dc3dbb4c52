"""Geometric hand-shape rules that override the tracker's raw label.

Each finger is classified open or curled by comparing fingertip distance from
the wrist against the distance of the joint just below the tip (a curled
finger folds its tip back toward the wrist). Hand shapes are matched in order,
most specific first; the first match wins.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import numpy as np

from gesture_stabilizer import landmarks as lm
from gesture_stabilizer.smoothing import CATEGORY_NONE, Observation

HEURISTIC_CONFIDENCE = 0.9
PINCH_DISTANCE = 0.06  # normalized thumb-tip to index-tip
POINT_DEADBAND = 0.1  # normalized horizontal offset tip vs MCP

GESTURE_LABELS: dict[str, str] = {
    "Thumb_Up": "👍 Thumbs Up(ok)",
    "Thumb_Down": "👎 Thumbs Down(no)",
    "Closed_Fist": "✊ Closed Fist",
    "Open_Palm": "✋ Open Palm",
    "Pointing_Up": "☝️ Pointing Up",
    "Victory": "✌️ Victory",
    "ILoveYou": "🤟 I Love You",
    "Call_Me": "🤙 Call Me",
    "Rock_On": "🤘 Rock On",
    "Okay": "👌 Super",
    "Point_Right": "👉 Point Right",
    "Point_Left": "👈 Point Left",
    CATEGORY_NONE: "Tracking...",
}


def display_label(label: str) -> str:
    """User-facing text for a gesture label."""
    return GESTURE_LABELS.get(label, label)


class FingerState(Enum):
    """Binary finger state based on landmark positions."""
    OPEN = "open"
    CURLED = "curled"
    ANY = "any"  # don't care


def finger_openness(landmarks: np.ndarray) -> tuple[bool, ...]:
    """Open/curled flags for thumb, index, middle, ring, pinky."""
    states = []
    for tip, joint in zip(lm.FINGER_TIPS, lm.FINGER_JOINTS):
        tip_dist = lm.planar_distance(landmarks, tip, lm.WRIST)
        joint_dist = lm.planar_distance(landmarks, joint, lm.WRIST)
        states.append(tip_dist >= joint_dist)  # curled iff tip_dist < joint_dist
    return tuple(states)


@dataclass(frozen=True)
class HandShape:
    """A hand shape defined by finger states and an optional pinch constraint.

    When ``pointing`` is set the shape resolves to ``<name>_Left`` or
    ``<name>_Right`` from the index finger direction, and does not match
    inside the deadband.
    """

    name: str
    thumb: FingerState = FingerState.ANY
    index: FingerState = FingerState.ANY
    middle: FingerState = FingerState.ANY
    ring: FingerState = FingerState.ANY
    pinky: FingerState = FingerState.ANY
    pinch: bool = False
    pointing: bool = False

    def match(self, landmarks: np.ndarray, openness: tuple[bool, ...]) -> Optional[str]:
        """Return the resolved label if the landmarks fit this shape."""
        expected = (self.thumb, self.index, self.middle, self.ring, self.pinky)
        for is_open, state in zip(openness, expected):
            if state == FingerState.ANY:
                continue
            if is_open != (state == FingerState.OPEN):
                return None

        if self.pinch:
            if lm.planar_distance(landmarks, lm.THUMB_TIP, lm.INDEX_TIP) >= PINCH_DISTANCE:
                return None

        if self.pointing:
            # Frames are mirrored for display, so image-left reads as the user's left.
            offset = float(landmarks[lm.INDEX_TIP, 0] - landmarks[lm.INDEX_MCP, 0])
            if offset < -POINT_DEADBAND:
                return f"{self.name}_Left"
            if offset > POINT_DEADBAND:
                return f"{self.name}_Right"
            return None

        return self.name


DEFAULT_SHAPES: tuple[HandShape, ...] = (
    HandShape(
        name="Call_Me",
        thumb=FingerState.OPEN,
        index=FingerState.CURLED,
        middle=FingerState.CURLED,
        ring=FingerState.CURLED,
        pinky=FingerState.OPEN,
    ),
    HandShape(
        name="Rock_On",
        index=FingerState.OPEN,
        middle=FingerState.CURLED,
        ring=FingerState.CURLED,
        pinky=FingerState.OPEN,
    ),
    HandShape(
        name="Okay",
        middle=FingerState.OPEN,
        ring=FingerState.OPEN,
        pinky=FingerState.OPEN,
        pinch=True,
    ),
    HandShape(
        name="Point",
        index=FingerState.OPEN,
        middle=FingerState.CURLED,
        ring=FingerState.CURLED,
        pinky=FingerState.CURLED,
        pointing=True,
    ),
)


class GeometricClassifier:
    """Rule-based override for the tracker's per-frame gesture label.

    Stateless: ``classify`` is a pure function of one frame's landmarks.
    """

    def __init__(self, shapes: Optional[tuple[HandShape, ...]] = None):
        self._shapes = tuple(shapes) if shapes is not None else DEFAULT_SHAPES

    def classify(self, landmarks: Any) -> Optional[str]:
        """Match landmarks against the ordered shapes.

        Args:
            landmarks: One hand's 21 landmarks, any form accepted by
                ``landmarks.as_landmark_array``.

        Returns:
            The label of the first matching shape, or None.
        """
        points = lm.as_landmark_array(landmarks)
        if points is None:
            return None

        openness = finger_openness(points)
        for shape in self._shapes:
            label = shape.match(points, openness)
            if label is not None:
                return label
        return None

    def override(self, observation: Observation, landmarks: Any) -> Observation:
        """Replace the tracker's observation when a shape fires."""
        label = self.classify(landmarks)
        if label is None:
            return observation
        return Observation(label, HEURISTIC_CONFIDENCE)

    @property
    def shapes(self) -> tuple[HandShape, ...]:
        return self._shapes

    def __len__(self) -> int:
        return len(self._shapes)
