"""Hand landmark indexing and validation.

Landmarks follow the MediaPipe hand model: 21 points, each (x, y) or (x, y, z),
with x and y normalized to [0, 1] relative to the frame.
"""

from __future__ import annotations

from typing import Any, Optional

import numpy as np

WRIST = 0
THUMB_CMC, THUMB_MCP, THUMB_IP, THUMB_TIP = 1, 2, 3, 4
INDEX_MCP, INDEX_PIP, INDEX_DIP, INDEX_TIP = 5, 6, 7, 8
MIDDLE_MCP, MIDDLE_PIP, MIDDLE_DIP, MIDDLE_TIP = 9, 10, 11, 12
RING_MCP, RING_PIP, RING_DIP, RING_TIP = 13, 14, 15, 16
PINKY_MCP, PINKY_PIP, PINKY_DIP, PINKY_TIP = 17, 18, 19, 20

NUM_LANDMARKS = 21

FINGER_NAMES = ("thumb", "index", "middle", "ring", "pinky")
FINGER_TIPS = (THUMB_TIP, INDEX_TIP, MIDDLE_TIP, RING_TIP, PINKY_TIP)
# Joint directly below each tip; thumb uses IP.
FINGER_JOINTS = (THUMB_IP, INDEX_DIP, MIDDLE_DIP, RING_DIP, PINKY_DIP)


def as_landmark_array(points: Any) -> Optional[np.ndarray]:
    """Coerce tracker output into a (21, D) float32 array.

    Accepts arrays, nested sequences, or objects with ``x``/``y``/``z``
    attributes (MediaPipe ``NormalizedLandmark``). Returns None when the
    input is missing, has the wrong shape, or holds non-finite values.
    """
    if points is None:
        return None

    if not isinstance(points, np.ndarray):
        try:
            points = list(points)
        except TypeError:
            return None
        if points and hasattr(points[0], "x"):
            points = [[p.x, p.y, getattr(p, "z", 0.0)] for p in points]

    try:
        arr = np.asarray(points, dtype=np.float32)
    except (TypeError, ValueError):
        return None

    if arr.ndim != 2 or arr.shape[0] != NUM_LANDMARKS or arr.shape[1] < 2:
        return None
    if not np.all(np.isfinite(arr)):
        return None
    return arr


def planar_distance(landmarks: np.ndarray, a: int, b: int) -> float:
    """Euclidean distance between two landmarks in the image plane."""
    return float(np.linalg.norm(landmarks[a, :2] - landmarks[b, :2]))
