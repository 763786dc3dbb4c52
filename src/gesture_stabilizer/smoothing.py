"""Majority-vote smoothing over a short window of per-frame observations.

Single-frame labels flicker near pose transitions. Voting over the last
``HISTORY_CAPACITY`` frames turns that into a stable decision, at the cost of
at most ``HISTORY_CAPACITY`` frames of latency before a new label can win.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Optional

CATEGORY_NONE = "None"
HISTORY_CAPACITY = 8


@dataclass(frozen=True)
class Observation:
    """One frame's gesture label and confidence."""
    category: str
    score: float = 0.0


@dataclass(frozen=True)
class VoteResult:
    """Most frequent category in the window and how often it appears."""
    winner: str
    count: int

    def is_decisive(self, threshold: int) -> bool:
        return self.winner != CATEGORY_NONE and self.count >= threshold


EMPTY_VOTE = VoteResult(CATEGORY_NONE, 0)


class ObservationHistory:
    """Fixed-capacity ring of observations.

    Slots are preallocated; ``_start`` points at the oldest entry. Pushing
    into a full ring overwrites the oldest slot, so push and evict are O(1)
    and the ring never grows.
    """

    def __init__(self, capacity: int = HISTORY_CAPACITY):
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._capacity = capacity
        self._slots: list[Optional[Observation]] = [None] * capacity
        self._start = 0
        self._size = 0

    def push(self, observation: Observation):
        if self._size < self._capacity:
            self._slots[(self._start + self._size) % self._capacity] = observation
            self._size += 1
        else:
            self._slots[self._start] = observation
            self._start = (self._start + 1) % self._capacity

    def clear(self):
        for i in range(self._capacity):
            self._slots[i] = None
        self._start = 0
        self._size = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        return self._size

    def __iter__(self) -> Iterator[Observation]:
        """Yield observations oldest first."""
        for i in range(self._size):
            yield self._slots[(self._start + i) % self._capacity]  # type: ignore[misc]


class VotingWindow:
    """Observation history plus majority voting.

    Ties go to the category seen first when walking the window oldest to
    newest. Callers may pass ``prefer`` to ``vote`` to let a specific label
    win ties instead.
    """

    def __init__(self, capacity: int = HISTORY_CAPACITY):
        self._history = ObservationHistory(capacity)

    def push(self, observation: Observation, prefer: Optional[str] = None) -> VoteResult:
        """Append an observation and return the updated vote."""
        self._history.push(observation)
        return self.vote(prefer)

    def vote(self, prefer: Optional[str] = None) -> VoteResult:
        if not len(self._history):
            return EMPTY_VOTE

        counts: dict[str, int] = {}
        for obs in self._history:
            counts[obs.category] = counts.get(obs.category, 0) + 1

        # dicts keep insertion order, so strict ">" keeps the first-seen winner
        winner, best = CATEGORY_NONE, 0
        for category, count in counts.items():
            if count > best:
                winner, best = category, count

        if prefer is not None and prefer != winner and counts.get(prefer, 0) == best:
            winner = prefer

        return VoteResult(winner, best)

    def clear(self):
        self._history.clear()

    @property
    def capacity(self) -> int:
        return self._history.capacity

    def __len__(self) -> int:
        return len(self._history)

    def __iter__(self) -> Iterator[Observation]:
        return iter(self._history)
