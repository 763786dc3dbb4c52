"""Gesture segmentation: turns smoothed votes into confirmed gesture events.

Three independent guards:
- the vote threshold rejects single-frame noise,
- comparing against the last confirmed label stops a held gesture from
  re-firing,
- the cooldown damps oscillation between two labels near a boundary.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional

from gesture_stabilizer.gestures import display_label
from gesture_stabilizer.smoothing import (
    EMPTY_VOTE,
    HISTORY_CAPACITY,
    Observation,
    VoteResult,
    VotingWindow,
)

logger = logging.getLogger("gesture_stabilizer.segmentation")

CONFIRMATION_THRESHOLD = 5
COOLDOWN_MS = 1000.0


class SegmentationState(Enum):
    IDLE = "IDLE"
    MOVING = "MOVING"
    STABLE = "STABLE"
    CONFIRMED = "CONFIRMED"


class TieBreak(Enum):
    FIRST_SEEN = "first_seen"
    LAST_CONFIRMED = "last_confirmed"


@dataclass(frozen=True)
class ConfirmedGestureEvent:
    """A newly confirmed gesture."""
    label: str
    timestamp: float  # ms, session clock

    @property
    def display(self) -> str:
        return display_label(self.label)


@dataclass
class SegmenterState:
    """Everything the segmenter remembers between frames.

    The voting window is carried by reference: a step returns a new state
    that shares the window with its input, so callers must keep only the
    returned state.
    """
    status: SegmentationState = SegmentationState.IDLE
    window: VotingWindow = field(default_factory=VotingWindow)
    last_confirmed: Optional[str] = None
    last_confirmation_ms: Optional[float] = None
    vote: VoteResult = EMPTY_VOTE


class GestureSegmenter:
    """IDLE / MOVING / STABLE / CONFIRMED state machine over the voting window.

    Holds configuration only; per-frame data lives in ``SegmenterState``.

    Usage:
        segmenter = GestureSegmenter()
        state = segmenter.initial_state()
        state, event = segmenter.step(state, Observation("Victory", 0.8), now_ms)
    """

    def __init__(
        self,
        confirmation_threshold: int = CONFIRMATION_THRESHOLD,
        cooldown_ms: float = COOLDOWN_MS,
        window_size: int = HISTORY_CAPACITY,
        tie_break: TieBreak = TieBreak.FIRST_SEEN,
    ):
        if not 1 <= confirmation_threshold <= window_size:
            raise ValueError(
                f"confirmation_threshold must be in [1, {window_size}], got {confirmation_threshold}"
            )
        self.confirmation_threshold = confirmation_threshold
        self.cooldown_ms = cooldown_ms
        self.window_size = window_size
        self.tie_break = tie_break

    def initial_state(self) -> SegmenterState:
        return SegmenterState(window=VotingWindow(self.window_size))

    def reset(self, state: SegmenterState) -> SegmenterState:
        """Forget history and confirmation memory."""
        state.window.clear()
        return replace(
            state,
            status=SegmentationState.IDLE,
            last_confirmed=None,
            last_confirmation_ms=None,
            vote=EMPTY_VOTE,
        )

    def step(
        self,
        state: SegmenterState,
        observation: Optional[Observation],
        now_ms: float,
    ) -> tuple[SegmenterState, Optional[ConfirmedGestureEvent]]:
        """Advance one processed frame.

        Args:
            state: State returned by the previous step.
            observation: This frame's (possibly overridden) observation, or
                None when no hand is in frame.
            now_ms: Monotonic timestamp in milliseconds.

        Returns:
            (new_state, event) where event is set only on CONFIRMED.
        """
        if observation is None:
            return self.reset(state), None

        prefer = state.last_confirmed if self.tie_break == TieBreak.LAST_CONFIRMED else None
        vote = state.window.push(observation, prefer=prefer)

        if not vote.is_decisive(self.confirmation_threshold):
            return replace(state, status=SegmentationState.MOVING, vote=vote), None

        if vote.winner == state.last_confirmed:
            return replace(state, status=SegmentationState.STABLE, vote=vote), None

        last_ms = state.last_confirmation_ms
        if last_ms is not None and now_ms - last_ms <= self.cooldown_ms:
            logger.debug("Suppressed %s by cooldown (%.0f ms since last)", vote.winner, now_ms - last_ms)
            return replace(state, status=SegmentationState.MOVING, vote=vote), None

        event = ConfirmedGestureEvent(label=vote.winner, timestamp=now_ms)
        logger.debug("Confirmed %s (%d/%d)", vote.winner, vote.count, len(state.window))
        new_state = replace(
            state,
            status=SegmentationState.CONFIRMED,
            last_confirmed=vote.winner,
            last_confirmation_ms=now_ms,
            vote=vote,
        )
        return new_state, event
