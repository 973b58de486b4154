"""Batched completion notifications, one batch per initiating session.

Completions are buffered per parent session and flushed as a single
combined notification when the batch window elapses or the batch fills up.
Each flush is delivered to subscribers and appended to the event log.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime
from typing import TypedDict

from herd import events as ev
from herd.events import EventLog
from herd.timeutil import Clock, to_iso, utcnow

log = logging.getLogger(__name__)

NO_PARENT = "__none__"


class CompletionPayload(TypedDict):
    task_id: str
    description: str
    status: str
    parent_session_id: str | None
    result: str | None
    error: str | None


class BatchNotification(TypedDict):
    parent_session_id: str | None
    tasks: list[CompletionPayload]
    total: int
    completed_count: int
    failed_count: int
    all_complete: bool
    message: str
    timestamp: str


Subscriber = Callable[[BatchNotification], None]


def format_batch_notification(count: int, completed: int, failed: int) -> str:
    if failed == 0:
        return f"{count} background task(s) completed successfully."
    if completed == 0:
        return f"{count} background task(s) failed."
    return f"{count} background tasks finished: {completed} completed, {failed} failed."


class NotificationManager:
    """Per-parent completion batching.

    With ``auto_flush`` a daemon timer flushes each batch when its window
    elapses; otherwise callers drive flushing through :meth:`flush_due`.
    ``outstanding`` reports how many items a parent still has in flight and
    feeds ``all_complete``.
    """

    def __init__(
        self,
        events: EventLog | None = None,
        *,
        window: float = 1.0,
        max_batch: int = 5,
        auto_flush: bool = False,
        outstanding: Callable[[str | None], int] | None = None,
        clock: Clock = utcnow,
    ):
        self.events = events
        self.window = window
        self.max_batch = max(1, max_batch)
        self.auto_flush = auto_flush
        self.outstanding = outstanding
        self.clock = clock
        self._buffers: dict[str, list[CompletionPayload]] = {}
        self._opened_at: dict[str, datetime] = {}
        self._timers: dict[str, threading.Timer] = {}
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register *callback*; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def record_completion(self, payload: CompletionPayload) -> BatchNotification | None:
        """Buffer one completion. Returns the batch if this call flushed it."""
        key = payload["parent_session_id"] or NO_PARENT
        with self._lock:
            buf = self._buffers.setdefault(key, [])
            buf.append(payload)
            if len(buf) == 1:
                self._opened_at[key] = self.clock()
                if self.auto_flush:
                    timer = threading.Timer(self.window, self.flush, args=(key,))
                    timer.daemon = True
                    self._timers[key] = timer
                    timer.start()
            full = len(buf) >= self.max_batch
        if full:
            return self.flush(key)
        return None

    def pending(self, parent_session_id: str | None = None) -> int:
        with self._lock:
            return len(self._buffers.get(parent_session_id or NO_PARENT, []))

    def flush(self, parent_session_id: str | None) -> BatchNotification | None:
        key = parent_session_id or NO_PARENT
        with self._lock:
            items = self._buffers.pop(key, [])
            self._opened_at.pop(key, None)
            timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        if not items:
            return None
        return self._deliver(None if key == NO_PARENT else key, items)

    def flush_due(self) -> list[BatchNotification]:
        """Flush every batch whose window has elapsed."""
        now = self.clock()
        with self._lock:
            due = [
                key
                for key, opened in self._opened_at.items()
                if (now - opened).total_seconds() >= self.window
            ]
        return [n for key in due if (n := self.flush(key)) is not None]

    def flush_all(self) -> list[BatchNotification]:
        with self._lock:
            keys = list(self._buffers)
        return [n for key in keys if (n := self.flush(key)) is not None]

    def clear(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._buffers.clear()
            self._opened_at.clear()
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    def _deliver(self, parent: str | None, items: list[CompletionPayload]) -> BatchNotification:
        completed = sum(1 for i in items if i["status"] == "completed")
        failed = len(items) - completed
        all_complete = True
        if self.outstanding is not None:
            all_complete = self.outstanding(parent) == 0
        notification: BatchNotification = {
            "parent_session_id": parent,
            "tasks": items,
            "total": len(items),
            "completed_count": completed,
            "failed_count": failed,
            "all_complete": all_complete,
            "message": format_batch_notification(len(items), completed, failed),
            "timestamp": to_iso(self.clock()) or "",
        }
        if self.events is not None:
            try:
                self.events.emit(ev.BATCH_NOTIFICATION, dict(notification), source="notifications")
            except OSError as e:
                log.warning("Failed to log batch notification: %s", e)
        for callback in list(self._subscribers):
            try:
                callback(notification)
            except Exception:
                log.warning("Notification subscriber failed", exc_info=True)
        return notification
