"""Parallel run: a set of workers splitting one task, each owning its files.

A run occupies the ``executing`` mode for its whole lifetime and persists
workers, counters and the file ownership table in the ``parallel-run``
document.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from typing import Any, NotRequired, TypedDict

from herd import events as ev
from herd.events import EventLog
from herd.modes import EXECUTING, ModeRegistry
from herd.ownership import (
    AssignmentResult,
    FileOwnership,
    OwnershipCoordinator,
    normalize_path,
)
from herd.settings import Settings
from herd.state import StateStore
from herd.timeutil import Clock, to_iso, utcnow

log = logging.getLogger(__name__)

STATE_DOCUMENT = "parallel-run"

WORKER_STATUSES = ("pending", "running", "completed", "failed")


class WorkerInfo(TypedDict):
    id: str
    status: str
    task: str
    files: list[str]
    startedAt: str
    completedAt: NotRequired[str]
    error: NotRequired[str]


class SpawnResult(TypedDict):
    worker: WorkerInfo | None
    error: str | None


class ParallelRun:
    def __init__(
        self,
        store: StateStore,
        modes: ModeRegistry,
        *,
        settings: Settings | None = None,
        events: EventLog | None = None,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.modes = modes
        self.settings = settings or Settings()
        self.events = events
        self.clock = clock

    def state(self) -> dict[str, Any] | None:
        data = self.store.read(STATE_DOCUMENT, "local")["data"]
        if not data or not data.get("active"):
            return None
        return data

    def _save(self, state: dict[str, Any]) -> bool:
        return self.store.write(STATE_DOCUMENT, state)["success"]

    def _coordinator(self, state: dict[str, Any]) -> OwnershipCoordinator:
        return OwnershipCoordinator(
            ownership=FileOwnership.from_dict(state["ownership"]), events=self.events
        )

    def _emit(self, event_type: str, payload: dict[str, Any]) -> None:
        if self.events is None:
            return
        try:
            self.events.emit(event_type, payload, source="workers")
        except OSError as e:
            log.warning("Failed to log %s: %s", event_type, e)

    def init_run(
        self,
        original_task: str,
        subtasks: Iterable[str] = (),
        *,
        max_workers: int | None = None,
        shared: Iterable[str] = (),
    ) -> dict[str, Any] | None:
        """Start a run. Returns None when a run is already active or another
        exclusive mode blocks it.
        """
        if self.state() is not None:
            log.warning("Parallel run already active; end it before starting another")
            return None
        check = self.modes.can_start(EXECUTING)
        if not check["allowed"]:
            log.warning("Parallel run blocked: %s", check["message"])
            return None
        subtasks = list(subtasks)
        ownership = FileOwnership(coordinator=[*self.settings.shared_files, *shared])
        state = {
            "active": True,
            "originalTask": original_task,
            "subtasks": subtasks,
            "maxWorkers": max_workers or self.settings.max_workers,
            "workers": [],
            "ownership": ownership.to_dict(),
            "startedAt": to_iso(self.clock()),
            "completedAt": None,
            "totalWorkersSpawned": 0,
            "successfulWorkers": 0,
            "failedWorkers": 0,
        }
        if not self._save(state):
            return None
        self.modes.start_mode(
            EXECUTING,
            {"mode": "parallel", "originalTask": original_task, "subtaskCount": len(subtasks)},
        )
        return state

    def active_workers(self) -> list[WorkerInfo]:
        state = self.state()
        if state is None:
            return []
        return [w for w in state["workers"] if w["status"] == "running"]

    def can_spawn_more(self) -> bool:
        state = self.state()
        if state is None:
            return False
        running = sum(1 for w in state["workers"] if w["status"] == "running")
        return running < state.get("maxWorkers", self.settings.max_workers)

    def spawn_worker(self, task: str, files: Iterable[str]) -> SpawnResult:
        """Register a worker and claim its files, all or nothing."""
        state = self.state()
        if state is None:
            return {"worker": None, "error": "No active parallel run"}
        if not self.can_spawn_more():
            return {"worker": None, "error": "Worker limit reached"}
        files = [normalize_path(p) for p in files]
        worker_id = str(uuid.uuid4())
        coordinator = self._coordinator(state)
        result = coordinator.assign_files(files, worker_id)
        if not result["success"]:
            # Conflicts are still worth persisting
            state["ownership"] = coordinator.ownership.to_dict()
            self._save(state)
            return {"worker": None, "error": result["conflict"]}
        worker: WorkerInfo = {
            "id": worker_id,
            "status": "running",
            "task": task,
            "files": files,
            "startedAt": to_iso(self.clock()) or "",
        }
        state["ownership"] = coordinator.ownership.to_dict()
        state["workers"].append(worker)
        state["totalWorkersSpawned"] += 1
        if not self._save(state):
            return {"worker": None, "error": "Failed to persist parallel run state"}
        self._emit(ev.WORKER_SPAWNED, {"workerId": worker_id, "task": task, "files": files})
        return {"worker": worker, "error": None}

    def assign(self, path: str, worker_id: str) -> AssignmentResult:
        state = self.state()
        if state is None:
            return {"success": False, "conflict": "No active parallel run"}
        coordinator = self._coordinator(state)
        result = coordinator.assign_file(path, worker_id)
        state["ownership"] = coordinator.ownership.to_dict()
        self._save(state)
        return result

    def release(self, path: str, worker_id: str | None = None) -> bool:
        state = self.state()
        if state is None:
            return False
        coordinator = self._coordinator(state)
        released = coordinator.release_file(path, worker_id)
        if released:
            state["ownership"] = coordinator.ownership.to_dict()
            return self._save(state)
        return False

    def owner_of(self, path: str) -> str | None:
        state = self.state()
        if state is None:
            return None
        return self._coordinator(state).get_owner_of(path)

    def release_worker_files(self, worker_id: str) -> bool:
        state = self.state()
        if state is None or not any(w["id"] == worker_id for w in state["workers"]):
            return False
        coordinator = self._coordinator(state)
        coordinator.release_worker(worker_id)
        state["ownership"] = coordinator.ownership.to_dict()
        return self._save(state)

    def _finish_worker(self, worker_id: str, status: str, error: str | None = None) -> bool:
        state = self.state()
        if state is None:
            return False
        worker = next((w for w in state["workers"] if w["id"] == worker_id), None)
        if worker is None or worker["status"] != "running":
            return False
        coordinator = self._coordinator(state)
        coordinator.release_worker(worker_id)
        state["ownership"] = coordinator.ownership.to_dict()
        worker["status"] = status
        worker["completedAt"] = to_iso(self.clock()) or ""
        if error is not None:
            worker["error"] = error
        counter = "successfulWorkers" if status == "completed" else "failedWorkers"
        state[counter] += 1
        if not self._save(state):
            return False
        event_type = ev.WORKER_COMPLETED if status == "completed" else ev.WORKER_FAILED
        self._emit(event_type, {"workerId": worker_id, "error": error})
        return True

    def complete_worker(self, worker_id: str) -> bool:
        return self._finish_worker(worker_id, "completed")

    def fail_worker(self, worker_id: str, error: str) -> bool:
        return self._finish_worker(worker_id, "failed", error)

    def end_run(self) -> bool:
        """Leave the executing mode and drop the run document."""
        self.modes.end_mode(EXECUTING)
        self.store.delete(STATE_DOCUMENT)
        return not self.store.exists(STATE_DOCUMENT)
