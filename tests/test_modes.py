"""Tests for the exclusive mode registry."""

from __future__ import annotations

import logging
import os

import pytest

from herd.events import EventLog
from herd.modes import ModeRegistry, mode_config
from herd.state import StateStore


@pytest.fixture()
def registry(store: StateStore, event_log, clock) -> ModeRegistry:
    return ModeRegistry(store, stale_seconds=3600, events=event_log, clock=clock)


def test_start_records_pid_and_metadata(registry: ModeRegistry, store: StateStore):
    assert registry.start_mode("planning", {"plan": 3}) is True
    record = store.read("planning-state")["data"]
    assert record["active"] is True
    assert record["pid"] == os.getpid()
    assert record["metadata"] == {"plan": 3}
    assert registry.is_mode_active("planning")


def test_exclusive_modes_block_each_other(registry: ModeRegistry):
    registry.start_mode("planning")
    check = registry.can_start("executing")
    assert check["allowed"] is False
    assert check["blocked_by"] == "planning"
    assert "planning" in check["message"]
    assert registry.start_mode("executing") is False
    assert not registry.is_mode_active("executing")


def test_non_exclusive_modes_always_allowed(registry: ModeRegistry):
    registry.start_mode("executing")
    assert registry.can_start("paused")["allowed"] is True
    assert registry.can_start("error")["allowed"] is True
    assert registry.start_mode("paused") is True


def test_end_mode_unblocks(registry: ModeRegistry):
    registry.start_mode("verifying")
    assert registry.end_mode("verifying") is True
    assert registry.can_start("planning")["allowed"] is True


def test_end_mode_without_record_is_ok(registry: ModeRegistry):
    assert registry.end_mode("planning") is True


def test_stale_record_is_inactive(registry: ModeRegistry, clock):
    registry.start_mode("executing")
    clock.advance(3601)
    assert registry.is_mode_active("executing") is False
    assert registry.can_start("planning")["allowed"] is True


def test_record_with_inactive_flag_is_ignored(registry: ModeRegistry, store: StateStore, clock):
    store.write(
        "planning-state",
        {"active": False, "startedAt": clock().isoformat(), "pid": 1, "metadata": {}},
    )
    assert registry.is_mode_active("planning") is False


def test_active_modes_and_idle(registry: ModeRegistry):
    assert registry.is_mode_active("idle") is True
    registry.start_mode("planning", {"k": "v"})
    registry.start_mode("paused")
    active = {m["mode"]: m for m in registry.active_modes()}
    assert set(active) == {"planning", "paused"}
    assert active["planning"]["metadata"] == {"k": "v"}
    assert registry.is_mode_active("idle") is False


def test_mode_events_logged(registry: ModeRegistry, event_log):
    registry.start_mode("planning")
    registry.end_mode("planning")
    assert [e["type"] for e in event_log.poll(0)["events"]] == ["mode_started", "mode_ended"]


def test_mode_changes_survive_event_log_failure(store: StateStore, state_dir, clock, caplog):
    (state_dir / "events.jsonl").mkdir(parents=True)
    registry = ModeRegistry(store, events=EventLog(state_dir), clock=clock)
    with caplog.at_level(logging.WARNING, logger="herd.modes"):
        assert registry.start_mode("planning") is True
        assert registry.is_mode_active("planning")
        assert registry.end_mode("planning") is True
    assert "Failed to log mode_started" in caplog.text


def test_mode_config():
    assert mode_config("executing").exclusive is True
    assert mode_config("executing").state_document == "execution-state"
    assert mode_config("paused").exclusive is False
    assert mode_config("idle").state_document is None
    with pytest.raises(ValueError):
        mode_config("dancing")
