"""Tests for per-parent completion batching."""

from __future__ import annotations

import threading

import pytest

from herd.notifications import (
    CompletionPayload,
    NotificationManager,
    format_batch_notification,
)


def _payload(
    task_id: str, status: str = "completed", parent: str | None = "s1"
) -> CompletionPayload:
    return {
        "task_id": task_id,
        "description": f"task {task_id}",
        "status": status,
        "parent_session_id": parent,
        "result": None,
        "error": None if status == "completed" else "boom",
    }


@pytest.mark.parametrize(
    ("count", "completed", "failed", "expected"),
    [
        (3, 3, 0, "3 background task(s) completed successfully."),
        (2, 0, 2, "2 background task(s) failed."),
        (3, 2, 1, "3 background tasks finished: 2 completed, 1 failed."),
    ],
)
def test_format_batch_notification(count, completed, failed, expected):
    assert format_batch_notification(count, completed, failed) == expected


def test_completions_within_window_are_batched(clock, event_log):
    nm = NotificationManager(event_log, window=1.0, max_batch=5, clock=clock)
    received = []
    nm.subscribe(received.append)

    nm.record_completion(_payload("a"))
    clock.advance(0.3)
    nm.record_completion(_payload("b", status="error"))
    clock.advance(0.3)
    assert nm.flush_due() == []
    assert nm.pending("s1") == 2

    clock.advance(0.5)
    flushed = nm.flush_due()
    assert len(flushed) == 1
    assert received == flushed
    batch = flushed[0]
    assert [t["task_id"] for t in batch["tasks"]] == ["a", "b"]
    assert batch["completed_count"] == 1
    assert batch["failed_count"] == 1
    assert batch["message"] == "2 background tasks finished: 1 completed, 1 failed."
    assert nm.pending("s1") == 0


def test_full_batch_flushes_immediately(clock):
    nm = NotificationManager(window=60, max_batch=3, clock=clock)
    assert nm.record_completion(_payload("a")) is None
    assert nm.record_completion(_payload("b")) is None
    batch = nm.record_completion(_payload("c"))
    assert batch is not None
    assert batch["total"] == 3
    assert batch["message"] == "3 background task(s) completed successfully."


def test_batches_are_per_parent(clock):
    nm = NotificationManager(window=1.0, clock=clock)
    nm.record_completion(_payload("a", parent="s1"))
    nm.record_completion(_payload("b", parent="s2"))
    nm.record_completion(_payload("c", parent=None))
    batches = nm.flush_all()
    parents = sorted(str(b["parent_session_id"]) for b in batches)
    assert parents == ["None", "s1", "s2"]
    assert all(b["total"] == 1 for b in batches)


def test_flush_logs_notification_event(clock, event_log):
    nm = NotificationManager(event_log, clock=clock)
    nm.record_completion(_payload("a"))
    nm.flush("s1")
    events = event_log.poll(0)["events"]
    assert [e["type"] for e in events] == ["background_tasks_notification"]
    assert events[0]["payload"]["total"] == 1


def test_all_complete_uses_outstanding_counter(clock):
    outstanding = {"s1": 2}
    nm = NotificationManager(clock=clock, outstanding=lambda parent: outstanding.get(parent, 0))
    nm.record_completion(_payload("a"))
    assert nm.flush("s1")["all_complete"] is False
    outstanding["s1"] = 0
    nm.record_completion(_payload("b"))
    assert nm.flush("s1")["all_complete"] is True


def test_subscriber_errors_do_not_stop_delivery(clock):
    nm = NotificationManager(clock=clock)
    seen = []

    def broken(_):
        raise ValueError("nope")

    nm.subscribe(broken)
    nm.subscribe(seen.append)
    nm.record_completion(_payload("a"))
    nm.flush_all()
    assert len(seen) == 1


def test_unsubscribe(clock):
    nm = NotificationManager(clock=clock)
    seen = []
    unsubscribe = nm.subscribe(seen.append)
    unsubscribe()
    unsubscribe()
    nm.record_completion(_payload("a"))
    nm.flush_all()
    assert seen == []


def test_auto_flush_timer_delivers_batch():
    nm = NotificationManager(window=0.05, auto_flush=True)
    delivered = threading.Event()
    nm.subscribe(lambda _: delivered.set())
    nm.record_completion(_payload("a"))
    assert delivered.wait(timeout=5)
    assert nm.pending("s1") == 0


def test_clear_drops_buffers(clock):
    nm = NotificationManager(clock=clock)
    nm.record_completion(_payload("a"))
    nm.clear()
    assert nm.flush_all() == []
