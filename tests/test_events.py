"""Tests for the JSON-lines event log and Redis stream forwarding."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

from redis.exceptions import RedisError

from herd.events import EVENTS_STREAM, EventLog


def test_emit_creates_directory_and_appends(state_dir: Path):
    log = EventLog(state_dir)
    first = log.emit("task_started", {"taskId": "bg-1"}, source="test")
    log.emit("task_completed", {"taskId": "bg-1"})

    lines = (state_dir / "events.jsonl").read_text().splitlines()
    assert len(lines) == 2
    parsed = json.loads(lines[0])
    assert parsed == first
    assert parsed["type"] == "task_started"
    assert parsed["source"] == "test"
    assert parsed["id"] and parsed["timestamp"]


def test_poll_returns_events_in_append_order(event_log: EventLog):
    for i in range(5):
        event_log.emit("tick", {"i": i})

    result = event_log.poll(0)
    assert [e["payload"]["i"] for e in result["events"]] == [0, 1, 2, 3, 4]
    assert result["last_line"] == 5
    assert result["has_more"] is False


def test_poll_resumes_from_offset(event_log: EventLog):
    event_log.emit("a")
    event_log.emit("b")
    first = event_log.poll(0)
    event_log.emit("c")

    second = event_log.poll(first["last_line"])
    assert [e["type"] for e in second["events"]] == ["c"]
    assert second["last_line"] == 3


def test_poll_with_limit_reports_more(event_log: EventLog):
    for i in range(4):
        event_log.emit("tick", {"i": i})
    page = event_log.poll(1, limit=2)
    assert [e["payload"]["i"] for e in page["events"]] == [1, 2]
    assert page["last_line"] == 3
    assert page["has_more"] is True


def test_poll_skips_malformed_lines(event_log: EventLog):
    event_log.emit("good")
    with open(event_log.path, "a") as f:
        f.write("not-json\n")
    event_log.emit("also-good")

    result = event_log.poll(0)
    assert [e["type"] for e in result["events"]] == ["good", "also-good"]
    assert result["last_line"] == 3


def test_poll_missing_log(event_log: EventLog):
    assert event_log.poll(0) == {"events": [], "last_line": 0, "has_more": False}


def test_rotate_only_past_threshold(state_dir: Path):
    log = EventLog(state_dir, max_lines=3)
    for _ in range(3):
        log.emit("tick")
    assert log.rotate_if_needed() is False

    log.emit("tick")
    assert log.rotate_if_needed() is True
    assert not log.path.exists()
    archives = log.archives()
    assert len(archives) == 1
    assert archives[0].name.startswith("events.") and archives[0].name.endswith(".jsonl")

    log.emit("fresh")
    assert [e["type"] for e in log.poll(0)["events"]] == ["fresh"]


def test_poll_offset_past_rotated_log_restarts_at_end(state_dir: Path):
    log = EventLog(state_dir, max_lines=1)
    log.emit("a")
    log.emit("b")
    log.rotate_if_needed()
    log.emit("c")
    result = log.poll(2)
    assert result["events"] == []
    assert result["last_line"] == 1


def test_clear_removes_log(event_log: EventLog):
    event_log.emit("a")
    event_log.clear()
    assert event_log.poll(0)["events"] == []


def test_events_forwarded_to_redis_stream(state_dir: Path):
    redis = MagicMock()
    with patch("herd.events.Redis.from_url", return_value=redis) as from_url:
        log = EventLog(state_dir, redis_url="redis://localhost:6379/0", stream_maxlen=50)
        event = log.emit("task_started", {"taskId": "bg-1"})

    from_url.assert_called_once_with("redis://localhost:6379/0")
    redis.xadd.assert_called_once()
    args, kwargs = redis.xadd.call_args
    assert args[0] == EVENTS_STREAM
    assert json.loads(args[1]["data"]) == event
    assert kwargs == {"maxlen": 50, "approximate": True}


def test_redis_failure_does_not_break_emit(state_dir: Path):
    redis = MagicMock()
    redis.xadd.side_effect = RedisError("down")
    with patch("herd.events.Redis.from_url", return_value=redis):
        log = EventLog(state_dir, redis_url="redis://localhost:6379/0")
        log.emit("task_started")
    assert log.line_count() == 1


def test_no_redis_without_url(state_dir: Path):
    with patch("herd.events.Redis.from_url") as from_url:
        EventLog(state_dir).emit("x")
    from_url.assert_not_called()
