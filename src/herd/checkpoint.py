"""Git-backed checkpoints of the state directory.

A checkpoint commits only the state directory (built in a throwaway index
so other staged changes are left alone) and records the commit plus an
in-memory snapshot of every state document. Rollback restores only the
state directory from that commit: HEAD does not move and nothing outside
the state directory is touched.

Git helpers raise RuntimeError on failure; the public methods convert that
into result dicts carrying git's message.
"""

from __future__ import annotations

import logging
import os
import subprocess
import tempfile
import uuid
from pathlib import Path
from typing import Any, TypedDict

from herd import events as ev
from herd.events import EventLog
from herd.state import StateStore
from herd.timeutil import Clock, to_iso, utcnow

log = logging.getLogger(__name__)

INDEX_DOCUMENT = "checkpoints/index"
NOT_A_REPO = "Not a git repository"

# Paths inside the state directory never committed
_EXCLUDED_GLOBS = ("events*.jsonl", "*.tmp")


class CheckpointCreateResult(TypedDict):
    success: bool
    checkpoint: dict[str, Any] | None
    error: str | None


class RollbackResult(TypedDict):
    success: bool
    rolled_back_to: dict[str, Any] | None
    files_restored: int
    error: str | None


class RollbackPreview(TypedDict):
    success: bool
    checkpoint: dict[str, Any] | None
    changed: list[str]
    removed: list[str]
    error: str | None


def _rollback_failure(error: str) -> RollbackResult:
    return {"success": False, "rolled_back_to": None, "files_restored": 0, "error": error}


def _preview_failure(error: str) -> RollbackPreview:
    return {"success": False, "checkpoint": None, "changed": [], "removed": [], "error": error}


def checkpoint_message(phase: str, plan: int, description: str) -> str:
    return f"checkpoint({phase}/{plan}): {description}"


def _git(cwd: str | Path, *args: str, env: dict[str, str] | None = None) -> str:
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=cwd,
            check=True,
            capture_output=True,
            text=True,
            env=env,
        )
    except subprocess.CalledProcessError as e:
        raise RuntimeError(f"git {args[0]} failed: {e.stderr.strip()}") from None
    return result.stdout.strip()


def is_git_repo(path: str | Path) -> bool:
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--is-inside-work-tree"],
            cwd=path,
            capture_output=True,
            text=True,
        )
    except (FileNotFoundError, NotADirectoryError):
        return False
    return result.returncode == 0 and result.stdout.strip() == "true"


class CheckpointManager:
    def __init__(
        self,
        project_dir: str | Path,
        store: StateStore,
        *,
        events: EventLog | None = None,
        retain: int = 10,
        clock: Clock = utcnow,
    ):
        self.project_dir = Path(project_dir)
        self.store = store
        self.events = events
        self.retain = retain
        self.clock = clock

    @property
    def state_dir(self) -> Path:
        return self.store.state_dir

    # -- index --

    def _load_index(self) -> dict[str, Any]:
        data = self.store.read(INDEX_DOCUMENT, "local")["data"]
        return data if data else {"checkpoints": []}

    def _save_index(self, index: dict[str, Any]) -> bool:
        return self.store.write(INDEX_DOCUMENT, index)["success"]

    def _emit(self, event_type: str, payload: dict[str, Any]) -> None:
        if self.events is None:
            return
        try:
            self.events.emit(event_type, payload, source="checkpoint")
        except OSError as e:
            log.warning("Failed to log %s: %s", event_type, e)

    def list_checkpoints(self) -> list[dict[str, Any]]:
        """Checkpoints newest first; among equal timestamps, the later one first."""
        checkpoints = list(reversed(self._load_index()["checkpoints"]))
        return sorted(checkpoints, key=lambda cp: cp["createdAt"], reverse=True)

    def latest_checkpoint(self) -> dict[str, Any] | None:
        checkpoints = self.list_checkpoints()
        return checkpoints[0] if checkpoints else None

    def get_checkpoint(self, checkpoint_id: str) -> dict[str, Any] | None:
        return next(
            (cp for cp in self._load_index()["checkpoints"] if cp["id"] == checkpoint_id), None
        )

    def prune_old_checkpoints(self) -> int:
        """Keep only the most recent ``retain`` records. Returns the number pruned."""
        index = self._load_index()
        keep = {cp["id"] for cp in self.list_checkpoints()[: self.retain]}
        pruned = len(index["checkpoints"]) - len(keep)
        if pruned > 0:
            index["checkpoints"] = [cp for cp in index["checkpoints"] if cp["id"] in keep]
            self._save_index(index)
            log.info("Pruned %d old checkpoint(s)", pruned)
        return max(0, pruned)

    # -- git plumbing --

    def _repo_root(self) -> Path:
        return Path(_git(self.project_dir, "rev-parse", "--show-toplevel")).resolve()

    def _relative_state_dir(self, root: Path) -> str:
        try:
            return self.state_dir.resolve().relative_to(root).as_posix()
        except ValueError:
            raise RuntimeError(
                f"State directory {self.state_dir} is outside the repository {root}"
            ) from None

    def _pathspec(self, rel: str) -> list[str]:
        return [rel, *(f":(exclude){rel}/{pattern}" for pattern in _EXCLUDED_GLOBS)]

    def _head(self, root: Path) -> str | None:
        result = subprocess.run(
            ["git", "rev-parse", "--verify", "-q", "HEAD"],
            cwd=root,
            capture_output=True,
            text=True,
        )
        return result.stdout.strip() if result.returncode == 0 else None

    def _stage(self, root: Path, rel: str, env: dict[str, str] | None = None) -> None:
        try:
            _git(root, "add", "--force", "-A", "--", *self._pathspec(rel), env=env)
        except RuntimeError as e:
            # Nothing committable in the state directory yet
            if "did not match any files" not in str(e):
                raise

    def _commit_state_dir(self, message: str) -> str:
        """Commit the state directory on top of HEAD and return the new commit hash."""
        root = self._repo_root()
        rel = self._relative_state_dir(root)
        head = self._head(root)
        with tempfile.TemporaryDirectory(prefix="herd-index-") as tmp:
            env = {**os.environ, "GIT_INDEX_FILE": str(Path(tmp) / "index")}
            if head:
                _git(root, "read-tree", head, env=env)
            self._stage(root, rel, env)
            tree = _git(root, "write-tree", env=env)
        parents = ["-p", head] if head else []
        commit = _git(root, "commit-tree", tree, *parents, "-m", message)
        update = ["update-ref", "-m", message, "HEAD", commit]
        if head:
            update.append(head)
        _git(root, *update)
        # Keep the real index in step with the new HEAD for the state directory
        self._stage(root, rel)
        return commit

    # -- operations --

    def create_checkpoint(
        self, phase: str, plan: int, wave: int, description: str
    ) -> CheckpointCreateResult:
        if not is_git_repo(self.project_dir):
            return {"success": False, "checkpoint": None, "error": NOT_A_REPO}

        self.state_dir.mkdir(parents=True, exist_ok=True)
        snapshot = {
            name: data for name, data in self.store.snapshot().items() if name != INDEX_DOCUMENT
        }
        message = checkpoint_message(phase, plan, description)
        try:
            commit = self._commit_state_dir(message)
        except RuntimeError as e:
            log.warning("Checkpoint commit failed: %s", e)
            return {"success": False, "checkpoint": None, "error": f"Failed to create commit: {e}"}

        checkpoint = {
            "id": str(uuid.uuid4()),
            "commitHash": commit,
            "createdAt": to_iso(self.clock()),
            "phase": phase,
            "plan": plan,
            "wave": wave,
            "description": description,
            "stateSnapshot": snapshot,
        }
        index = self._load_index()
        index["checkpoints"].append(checkpoint)
        if not self._save_index(index):
            return {
                "success": False,
                "checkpoint": None,
                "error": "Failed to save checkpoint index",
            }
        log.info("Checkpoint %s at %s: %s", checkpoint["id"], commit[:12], message)
        self._emit(
            ev.CHECKPOINT_CREATED,
            {"checkpointId": checkpoint["id"], "commitHash": commit, "phase": phase},
        )
        return {"success": True, "checkpoint": checkpoint, "error": None}

    def _tracked_files(self, root: Path, commit: str, rel: str) -> list[str]:
        out = _git(root, "ls-tree", "-r", "--name-only", commit, "--", rel)
        return [line for line in out.splitlines() if line]

    def _untracked_documents(self, root: Path, tracked: list[str]) -> list[Path]:
        """State documents on disk that do not exist in the checkpoint commit."""
        keep = set(tracked)
        index_path = self.store.path_for(INDEX_DOCUMENT).resolve()
        out: list[Path] = []
        if not self.state_dir.is_dir():
            return out
        for path in sorted(self.state_dir.rglob("*.json")):
            resolved = path.resolve()
            if resolved == index_path:
                continue
            if resolved.relative_to(root).as_posix() not in keep:
                out.append(path)
        return out

    def rollback_to_checkpoint(self, checkpoint_id: str) -> RollbackResult:
        if not is_git_repo(self.project_dir):
            return _rollback_failure(NOT_A_REPO)
        checkpoint = self.get_checkpoint(checkpoint_id)
        if checkpoint is None:
            return _rollback_failure(f"Checkpoint not found: {checkpoint_id}")

        # The index lives inside the restored directory and must outlive the rollback
        index = self._load_index()
        commit = checkpoint["commitHash"]
        try:
            root = self._repo_root()
            rel = self._relative_state_dir(root)
            tracked = self._tracked_files(root, commit, rel)
            if tracked:
                _git(root, "checkout", commit, "--", rel)
            for path in self._untracked_documents(root, tracked):
                path.unlink()
        except (RuntimeError, OSError) as e:
            log.warning("Rollback to %s failed: %s", checkpoint_id, e)
            return _rollback_failure(str(e))
        finally:
            self._save_index(index)

        log.info("Rolled back state to checkpoint %s (%s)", checkpoint_id, commit[:12])
        self._emit(
            ev.ROLLBACK_COMPLETED,
            {"checkpointId": checkpoint_id, "commitHash": commit, "filesRestored": len(tracked)},
        )
        return {
            "success": True,
            "rolled_back_to": checkpoint,
            "files_restored": len(tracked),
            "error": None,
        }

    def preview_rollback(self, checkpoint_id: str) -> RollbackPreview:
        """List state files a rollback would rewrite or delete, without touching them."""
        if not is_git_repo(self.project_dir):
            return _preview_failure(NOT_A_REPO)
        checkpoint = self.get_checkpoint(checkpoint_id)
        if checkpoint is None:
            return _preview_failure(f"Checkpoint not found: {checkpoint_id}")
        commit = checkpoint["commitHash"]
        try:
            root = self._repo_root()
            rel = self._relative_state_dir(root)
            tracked = self._tracked_files(root, commit, rel)
            index_rel = self.store.path_for(INDEX_DOCUMENT).resolve().relative_to(root).as_posix()
            diff = _git(root, "diff", "--name-only", commit, "--", *self._pathspec(rel))
            changed = [p for p in diff.splitlines() if p and p != index_rel]
            removed = [
                p.resolve().relative_to(root).as_posix()
                for p in self._untracked_documents(root, tracked)
            ]
        except RuntimeError as e:
            return _preview_failure(str(e))
        return {
            "success": True,
            "checkpoint": checkpoint,
            "changed": changed,
            "removed": sorted(set(removed) - set(changed)),
            "error": None,
        }
