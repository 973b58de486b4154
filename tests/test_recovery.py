"""Tests for the retry budget, cooldown and rollback on error."""

import shutil
import subprocess
from pathlib import Path

import pytest

from herd.checkpoint import CheckpointManager
from herd.events import EventLog
from herd.recovery import RecoveryManager
from herd.settings import Settings
from herd.state import StateStore


@pytest.fixture()
def checkpoints(tmp_path: Path, store: StateStore, clock) -> CheckpointManager:
    return CheckpointManager(tmp_path, store, clock=clock)


def _recovery(store, checkpoints, clock, events=None, **overrides) -> RecoveryManager:
    return RecoveryManager(
        store, checkpoints, settings=Settings(**overrides), events=events, clock=clock
    )


def test_fresh_state_can_retry(store, checkpoints, clock):
    rm = _recovery(store, checkpoints, clock)
    assert rm.state()["errorCount"] == 0
    assert rm.can_retry() is True


def test_error_without_checkpoint_sets_cooldown(store, checkpoints, clock, event_log):
    rm = _recovery(store, checkpoints, clock, events=event_log, recovery_cooldown=5.0)
    result = rm.handle_error("boom", phase="build", plan=2)

    assert result["success"] is True
    assert result["action"] == "cooldown_set"
    assert result["rolled_back_to"] is None
    assert result["retry_after"] == "2026-01-01T12:00:05+00:00"
    state = rm.state()
    assert state["errorCount"] == 1
    assert state["lastError"] == "boom"
    assert state["isRecovering"] is True

    assert rm.can_retry() is False
    clock.advance(5)
    assert rm.can_retry() is True

    events = event_log.poll(0)["events"]
    assert [e["type"] for e in events] == ["rollback_initiated"]
    assert events[0]["payload"]["action"] == "cooldown_set"


def test_max_retries_exceeded(store, checkpoints, clock, event_log):
    rm = _recovery(store, checkpoints, clock, events=event_log, recovery_max_retries=3)
    assert rm.handle_error("one")["success"] is True
    assert rm.handle_error("two")["success"] is True
    final = rm.handle_error("three")

    assert final["success"] is False
    assert final["can_retry"] is False
    assert final["action"] == "max_retries_exceeded"
    assert "3" in final["error"]
    assert rm.state()["errorCount"] == 3
    clock.advance(3600)
    assert rm.can_retry() is False
    assert event_log.poll(0)["events"][-1]["type"] == "recovery_failed"


def test_clear_resets_budget(store, checkpoints, clock):
    rm = _recovery(store, checkpoints, clock, recovery_max_retries=1)
    rm.handle_error("boom")
    assert rm.can_retry() is False
    assert rm.clear() is True
    assert rm.can_retry() is True


@pytest.fixture()
def git_project(tmp_path: Path, monkeypatch) -> Path:
    for name, value in (
        ("GIT_AUTHOR_NAME", "herd-tests"),
        ("GIT_AUTHOR_EMAIL", "herd-tests@example.com"),
        ("GIT_COMMITTER_NAME", "herd-tests"),
        ("GIT_COMMITTER_EMAIL", "herd-tests@example.com"),
    ):
        monkeypatch.setenv(name, value)
    project = tmp_path / "project"
    project.mkdir()
    subprocess.run(["git", "init", "-q"], cwd=project, check=True)
    (project / "README.md").write_text("hello\n")
    subprocess.run(["git", "add", "README.md"], cwd=project, check=True)
    subprocess.run(["git", "commit", "-q", "-m", "initial"], cwd=project, check=True)
    return project


@pytest.mark.slow
@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
def test_error_rolls_back_to_latest_checkpoint(git_project, tmp_path, clock):
    store = StateStore(git_project / ".herd" / "state", global_dir=tmp_path / "g")
    events = EventLog(store.state_dir)
    cps = CheckpointManager(git_project, store, events=events, clock=clock)
    store.write("notes", {"v": 1})
    cp = cps.create_checkpoint("build", 1, 1, "good")["checkpoint"]
    store.write("notes", {"v": 2})

    rm = _recovery(store, cps, clock, events=events)
    result = rm.handle_error("tests failed", phase="build", plan=1)

    assert result["action"] == "rolled_back"
    assert result["rolled_back_to"] == cp["id"]
    assert store.read("notes")["data"] == {"v": 1}
    # Recovery bookkeeping is written after the rollback and survives it
    state = rm.state()
    assert state["errorCount"] == 1
    assert state["rolledBackTo"] == cp["id"]


@pytest.mark.slow
@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
def test_rollback_disabled_only_sets_cooldown(git_project, tmp_path, clock):
    store = StateStore(git_project / ".herd" / "state", global_dir=tmp_path / "g")
    cps = CheckpointManager(git_project, store, clock=clock)
    store.write("notes", {"v": 1})
    cps.create_checkpoint("build", 1, 1, "good")
    store.write("notes", {"v": 2})

    rm = _recovery(store, cps, clock, recovery_rollback=False)
    assert rm.handle_error("boom")["action"] == "cooldown_set"
    assert store.read("notes")["data"] == {"v": 2}


def test_error_handling_survives_event_log_failure(store, checkpoints, clock, state_dir):
    (state_dir / "events.jsonl").mkdir(parents=True)
    rm = _recovery(store, checkpoints, clock, events=EventLog(state_dir))
    result = rm.handle_error("boom")
    assert result["success"] is True
    assert rm.state()["errorCount"] == 1
