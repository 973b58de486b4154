"""Idle-based completion inference.

A work item whose activity count (e.g. message count) stays unchanged for
``threshold`` consecutive polls, after a minimum activation delay, is
reported stable. This is a heuristic: an item that is merely slow looks the
same as one that has finished.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import NamedTuple

from herd.timeutil import Clock, utcnow


class PollResult(NamedTuple):
    stable: bool
    consecutive_stable_polls: int


@dataclass
class _ItemState:
    started_at: datetime
    last_count: int | None = None
    consecutive: int = 0
    reported: bool = False


class StabilityDetector:
    def __init__(
        self,
        threshold: int = 3,
        min_activation_seconds: float = 10.0,
        *,
        clock: Clock = utcnow,
    ):
        self.threshold = threshold
        self.min_activation_seconds = min_activation_seconds
        self.clock = clock
        self._items: dict[str, _ItemState] = {}

    def start(self, item_id: str, started_at: datetime | None = None) -> None:
        self._items[item_id] = _ItemState(started_at=started_at or self.clock())

    def seed(
        self,
        item_id: str,
        *,
        started_at: datetime,
        last_count: int | None,
        consecutive: int = 0,
    ) -> None:
        """Restore counters for an item tracked before a restart."""
        self._items[item_id] = _ItemState(
            started_at=started_at, last_count=last_count, consecutive=consecutive
        )

    def poll(self, item_id: str, activity_count: int) -> PollResult:
        state = self._items.get(item_id)
        if state is None:
            state = self._items[item_id] = _ItemState(started_at=self.clock())

        if state.last_count is None or activity_count != state.last_count:
            state.last_count = activity_count
            state.consecutive = 0
            state.reported = False
        else:
            state.consecutive += 1

        elapsed = (self.clock() - state.started_at).total_seconds()
        stable = (
            not state.reported
            and state.consecutive >= self.threshold
            and elapsed >= self.min_activation_seconds
        )
        if stable:
            state.reported = True
        return PollResult(stable, state.consecutive)

    def reset(self, item_id: str) -> None:
        state = self._items.get(item_id)
        if state is not None:
            state.last_count = None
            state.consecutive = 0
            state.reported = False

    def forget(self, item_id: str) -> None:
        self._items.pop(item_id, None)

    def last_count(self, item_id: str) -> int | None:
        state = self._items.get(item_id)
        return state.last_count if state else None

    def tracked(self) -> list[str]:
        return list(self._items)
