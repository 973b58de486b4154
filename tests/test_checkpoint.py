"""Tests for git-backed state checkpoints and rollback."""

import shutil
import subprocess
from pathlib import Path

import pytest

from herd.checkpoint import (
    INDEX_DOCUMENT,
    NOT_A_REPO,
    CheckpointManager,
    checkpoint_message,
    is_git_repo,
)
from herd.events import EventLog
from herd.state import StateStore

pytestmark = [
    pytest.mark.slow,
    pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed"),
]


@pytest.fixture(autouse=True)
def git_identity_env(monkeypatch):
    """Ensure commits succeed without relying on global git config."""
    monkeypatch.setenv("GIT_AUTHOR_NAME", "herd-tests")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "herd-tests@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "herd-tests")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "herd-tests@example.com")


def _git(cwd: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True)
    return result.stdout.strip()


@pytest.fixture()
def project(tmp_path: Path) -> Path:
    project = tmp_path / "project"
    project.mkdir()
    _git(project, "init", "-q")
    (project / "README.md").write_text("hello\n")
    _git(project, "add", "README.md")
    _git(project, "commit", "-q", "-m", "initial")
    return project


@pytest.fixture()
def project_store(tmp_path: Path, project: Path) -> StateStore:
    return StateStore(project / ".herd" / "state", global_dir=tmp_path / "global-state")


@pytest.fixture()
def manager(project: Path, project_store: StateStore, clock) -> CheckpointManager:
    events = EventLog(project_store.state_dir)
    return CheckpointManager(project, project_store, events=events, clock=clock)


def test_checkpoint_message():
    assert checkpoint_message("build", 2, "api done") == "checkpoint(build/2): api done"


def test_is_git_repo(project: Path, tmp_path: Path, monkeypatch):
    monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path))
    plain = tmp_path / "plain"
    plain.mkdir()
    assert is_git_repo(project)
    assert not is_git_repo(plain)
    assert not is_git_repo(tmp_path / "missing")


def test_not_a_repo(tmp_path: Path, monkeypatch, clock):
    monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path))
    plain = tmp_path / "plain"
    plain.mkdir()
    store = StateStore(plain / ".herd" / "state", global_dir=tmp_path / "g")
    mgr = CheckpointManager(plain, store, clock=clock)

    created = mgr.create_checkpoint("build", 1, 1, "x")
    assert created == {"success": False, "checkpoint": None, "error": NOT_A_REPO}
    assert mgr.rollback_to_checkpoint("any")["error"] == NOT_A_REPO
    assert mgr.preview_rollback("any")["error"] == NOT_A_REPO


def test_create_checkpoint_commits_only_state(manager, project_store, project):
    project_store.write("notes", {"step": 1})
    (project / "other.txt").write_text("staged elsewhere\n")
    _git(project, "add", "other.txt")

    result = manager.create_checkpoint("build", 1, 2, "first")
    assert result["success"] is True
    cp = result["checkpoint"]
    assert cp["phase"] == "build"
    assert cp["plan"] == 1
    assert cp["wave"] == 2
    assert cp["stateSnapshot"] == {"notes": {"step": 1}}
    assert _git(project, "rev-parse", "HEAD") == cp["commitHash"]
    assert _git(project, "log", "-1", "--format=%s") == "checkpoint(build/1): first"

    committed = _git(project, "diff-tree", "--no-commit-id", "--name-only", "-r", cp["commitHash"])
    assert committed.splitlines() == [".herd/state/notes.json"]
    # The unrelated staged change is still staged and not committed
    assert _git(project, "diff", "--cached", "--name-only").splitlines() == ["other.txt"]


def test_snapshot_excludes_index_and_events(manager, project_store, project):
    project_store.write("notes", {"step": 1})
    manager.create_checkpoint("build", 1, 1, "first")
    second = manager.create_checkpoint("build", 1, 2, "second")["checkpoint"]

    assert INDEX_DOCUMENT not in second["stateSnapshot"]
    tree = _git(project, "ls-tree", "-r", "--name-only", second["commitHash"])
    assert ".herd/state/events.jsonl" not in tree.splitlines()
    assert (project_store.state_dir / "events.jsonl").exists()


def test_rollback_restores_state_only(manager, project_store, project):
    project_store.write("notes", {"step": 1})
    project_store.write("plans/alpha", {"tasks": ["a"]})
    notes_path = project_store.path_for("notes")
    alpha_path = project_store.path_for("plans/alpha")
    notes_bytes = notes_path.read_bytes()
    alpha_bytes = alpha_path.read_bytes()
    cp = manager.create_checkpoint("build", 1, 1, "before")["checkpoint"]
    head = _git(project, "rev-parse", "HEAD")

    project_store.write("notes", {"step": 2})
    project_store.write("plans/alpha", {"tasks": ["a", "b"]})
    project_store.write("extra", {"new": True})
    (project / "README.md").write_text("edited outside state\n")

    result = manager.rollback_to_checkpoint(cp["id"])
    assert result["success"] is True
    assert result["rolled_back_to"]["id"] == cp["id"]
    assert result["files_restored"] == 2

    assert notes_path.read_bytes() == notes_bytes
    assert alpha_path.read_bytes() == alpha_bytes
    assert not project_store.exists("extra")
    assert (project / "README.md").read_text() == "edited outside state\n"
    assert _git(project, "rev-parse", "HEAD") == head


def test_index_survives_rollback(manager, project_store):
    project_store.write("notes", {"step": 1})
    first = manager.create_checkpoint("build", 1, 1, "one")["checkpoint"]
    clock = manager.clock
    clock.advance(10)
    second = manager.create_checkpoint("build", 1, 2, "two")["checkpoint"]

    assert manager.rollback_to_checkpoint(first["id"])["success"] is True
    ids = [cp["id"] for cp in manager.list_checkpoints()]
    assert ids == [second["id"], first["id"]]


def test_rollback_unknown_checkpoint(manager):
    result = manager.rollback_to_checkpoint("nope")
    assert result["success"] is False
    assert "not found" in result["error"]


def test_rollback_emits_event(manager, project_store):
    project_store.write("notes", {"step": 1})
    cp = manager.create_checkpoint("build", 1, 1, "x")["checkpoint"]
    manager.rollback_to_checkpoint(cp["id"])
    types = [e["type"] for e in manager.events.poll(0)["events"]]
    assert types == ["checkpoint_created", "rollback_completed"]


def test_preview_rollback(manager, project_store):
    project_store.write("notes", {"step": 1})
    cp = manager.create_checkpoint("build", 1, 1, "x")["checkpoint"]
    project_store.write("notes", {"step": 2})
    project_store.write("extra", {"new": True})

    preview = manager.preview_rollback(cp["id"])
    assert preview["success"] is True
    assert preview["changed"] == [".herd/state/notes.json"]
    assert preview["removed"] == [".herd/state/extra.json"]
    # Nothing touched
    assert project_store.read("notes")["data"] == {"step": 2}
    assert project_store.exists("extra")


def test_list_and_prune(project, project_store, clock):
    mgr = CheckpointManager(project, project_store, retain=2, clock=clock)
    project_store.write("notes", {"step": 0})
    ids = []
    for wave in range(3):
        ids.append(mgr.create_checkpoint("build", 1, wave, f"wave {wave}")["checkpoint"]["id"])
        clock.advance(60)

    assert [cp["id"] for cp in mgr.list_checkpoints()] == ids[::-1]
    assert mgr.latest_checkpoint()["id"] == ids[2]
    assert mgr.prune_old_checkpoints() == 1
    assert [cp["id"] for cp in mgr.list_checkpoints()] == [ids[2], ids[1]]
    assert mgr.get_checkpoint(ids[0]) is None
    assert mgr.prune_old_checkpoints() == 0


def test_same_timestamp_orders_later_first(project, project_store, clock):
    mgr = CheckpointManager(project, project_store, clock=clock)
    a = mgr.create_checkpoint("build", 1, 1, "a")["checkpoint"]
    b = mgr.create_checkpoint("build", 1, 2, "b")["checkpoint"]
    assert [cp["id"] for cp in mgr.list_checkpoints()] == [b["id"], a["id"]]
