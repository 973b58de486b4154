"""Exclusive file ownership for concurrent workers.

A path belongs to at most one worker. Shared project files (manifests,
lockfiles, ``.env*`` and configured extras) belong to the coordinator and
can never be claimed. Patterns support ``*`` and are matched against both
the full path and its basename.
"""

from __future__ import annotations

import logging
import posixpath
from collections.abc import Iterable
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from typing import Any, TypedDict

from herd import events as ev
from herd.events import EventLog
from herd.settings import DEFAULT_SHARED_FILES

log = logging.getLogger(__name__)

COORDINATOR = "coordinator"


class AssignmentResult(TypedDict):
    success: bool
    conflict: str | None


def normalize_path(path: str) -> str:
    return posixpath.normpath(path.replace("\\", "/"))


@dataclass
class FileOwnership:
    coordinator: list[str] = field(default_factory=lambda: list(DEFAULT_SHARED_FILES))
    workers: dict[str, list[str]] = field(default_factory=dict)
    conflicts: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "coordinator": list(self.coordinator),
            "workers": {w: list(files) for w, files in self.workers.items()},
            "conflicts": list(self.conflicts),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileOwnership:
        return cls(
            coordinator=list(data.get("coordinator") or []),
            workers={w: list(files) for w, files in (data.get("workers") or {}).items()},
            conflicts=list(data.get("conflicts") or []),
        )


class OwnershipCoordinator:
    def __init__(
        self,
        shared: Iterable[str] | None = None,
        *,
        ownership: FileOwnership | None = None,
        events: EventLog | None = None,
    ):
        if ownership is None:
            ownership = FileOwnership(
                coordinator=list(shared) if shared is not None else list(DEFAULT_SHARED_FILES)
            )
        self.ownership = ownership
        self.events = events

    def _emit(self, event_type: str, payload: dict[str, Any]) -> None:
        if self.events is None:
            return
        try:
            self.events.emit(event_type, payload, source="ownership")
        except OSError as e:
            log.warning("Failed to log %s: %s", event_type, e)

    def shared_pattern_for(self, path: str) -> str | None:
        """Return the shared entry *path* matches, or None."""
        path = normalize_path(path)
        base = posixpath.basename(path)
        for pattern in self.ownership.coordinator:
            if path == pattern or fnmatchcase(path, pattern) or fnmatchcase(base, pattern):
                return pattern
        return None

    def is_shared(self, path: str) -> bool:
        return self.shared_pattern_for(path) is not None

    def get_owner_of(self, path: str) -> str | None:
        """``"coordinator"`` for shared paths, the owning worker id, or None."""
        if self.is_shared(path):
            return COORDINATOR
        path = normalize_path(path)
        for worker_id, files in self.ownership.workers.items():
            if path in files:
                return worker_id
        return None

    def assign_file(self, path: str, worker_id: str) -> AssignmentResult:
        pattern = self.shared_pattern_for(path)
        if pattern is not None:
            return {
                "success": False,
                "conflict": f"File '{path}' is coordinator-owned (matches '{pattern}')",
            }
        path = normalize_path(path)
        for other_id, files in self.ownership.workers.items():
            if other_id != worker_id and path in files:
                self.record_conflict(path)
                log.info(
                    "Ownership conflict on %s: %s holds it, %s asked", path, other_id, worker_id
                )
                self._emit(
                    ev.FILE_CONFLICT, {"path": path, "owner": other_id, "requestedBy": worker_id}
                )
                return {
                    "success": False,
                    "conflict": f"File '{path}' already owned by worker '{other_id}'",
                }
        files = self.ownership.workers.setdefault(worker_id, [])
        if path not in files:
            files.append(path)
        return {"success": True, "conflict": None}

    def assign_files(self, paths: Iterable[str], worker_id: str) -> AssignmentResult:
        """Claim every path or none; a failure rolls back this call's claims."""
        claimed: list[str] = []
        for path in paths:
            already = self.get_owner_of(path) == worker_id
            result = self.assign_file(path, worker_id)
            if not result["success"]:
                for done in claimed:
                    self.release_file(done, worker_id)
                return result
            if not already:
                claimed.append(path)
        return {"success": True, "conflict": None}

    def release_file(self, path: str, worker_id: str | None = None) -> bool:
        """Release *path* from *worker_id* (or from whichever worker owns it)."""
        path = normalize_path(path)
        for owner, files in self.ownership.workers.items():
            if worker_id is not None and owner != worker_id:
                continue
            if path in files:
                files.remove(path)
                return True
        return False

    def release_worker(self, worker_id: str) -> list[str]:
        return self.ownership.workers.pop(worker_id, [])

    def record_conflict(self, path: str) -> None:
        path = normalize_path(path)
        if path not in self.ownership.conflicts:
            self.ownership.conflicts.append(path)

    def has_conflicts(self) -> bool:
        return bool(self.ownership.conflicts)
