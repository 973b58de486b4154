"""Swarm: a shared pool of tasks that workers claim, execute and report on.

The pool lives in the ``swarm`` state document. Tasks with unfinished
dependencies wait in ``pending``; the rest are ``available`` to whichever
worker claims them first. A worker that stops sending heartbeats loses its
claims so another worker can pick the work up.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter, deque
from collections.abc import Iterable
from datetime import timedelta
from typing import Any, TypedDict

from herd import events as ev
from herd.events import EventLog
from herd.settings import Settings
from herd.state import StateStore
from herd.timeutil import Clock, from_iso, to_iso, utcnow

log = logging.getLogger(__name__)

STATE_DOCUMENT = "swarm"

PENDING = "pending"
AVAILABLE = "available"
CLAIMED = "claimed"
COMPLETED = "completed"
FAILED = "failed"

TASK_STATUSES = (PENDING, AVAILABLE, CLAIMED, COMPLETED, FAILED)
OPEN_STATUSES = frozenset({PENDING, AVAILABLE, CLAIMED})

IDLE = "idle"
EXECUTING = "executing"
TERMINATED = "terminated"

WORKER_STATUSES = (IDLE, EXECUTING, TERMINATED)

SWARM_RUNNING = "running"
SWARM_PAUSED = "paused"
SWARM_COMPLETED = "completed"

TIMEOUT_ERROR = "Worker timed out"


class SwarmTaskSpec(TypedDict, total=False):
    id: str
    subject: str
    description: str
    blockedBy: list[str]


class SwarmTask(TypedDict):
    id: str
    subject: str
    description: str
    blockedBy: list[str]
    status: str
    claimedBy: str | None
    claimedAt: str | None
    completedAt: str | None
    result: dict[str, Any] | None


class SwarmWorker(TypedDict):
    id: str
    status: str
    currentTaskId: str | None
    completedTasks: list[str]
    failedTasks: list[str]
    lastHeartbeat: str
    error: str | None


class SwarmStats(TypedDict):
    totalTasks: int
    completedTasks: int
    failedTasks: int
    inProgressTasks: int
    availableTasks: int
    blockedTasks: int
    activeWorkers: int
    totalExecutionSeconds: float


def calculate_stats(state: dict[str, Any]) -> SwarmStats:
    by_status = Counter(t["status"] for t in state["tasks"])
    return {
        "totalTasks": len(state["tasks"]),
        "completedTasks": by_status[COMPLETED],
        "failedTasks": by_status[FAILED],
        "inProgressTasks": by_status[CLAIMED],
        "availableTasks": by_status[AVAILABLE],
        "blockedTasks": by_status[PENDING],
        "activeWorkers": sum(1 for w in state["workers"] if w["status"] == EXECUTING),
        "totalExecutionSeconds": sum(
            (t["result"] or {}).get("executionSeconds", 0.0) for t in state["tasks"]
        ),
    }


def update_blocked_tasks(state: dict[str, Any]) -> list[str]:
    """Make pending tasks available once all their dependencies completed.

    Returns the ids that became available.
    """
    done = {t["id"] for t in state["tasks"] if t["status"] == COMPLETED}
    unblocked = []
    for task in state["tasks"]:
        if task["status"] == PENDING and all(dep in done for dep in task["blockedBy"]):
            task["status"] = AVAILABLE
            unblocked.append(task["id"])
    return unblocked


def fail_dependents(state: dict[str, Any], completed_at: str | None) -> list[str]:
    """Fail every pending task that (transitively) depends on a failed one."""
    failed = {t["id"] for t in state["tasks"] if t["status"] == FAILED}
    cascaded: list[str] = []
    changed = True
    while changed:
        changed = False
        for task in state["tasks"]:
            if task["status"] != PENDING:
                continue
            blocker = next((dep for dep in task["blockedBy"] if dep in failed), None)
            if blocker is None:
                continue
            task["status"] = FAILED
            task["completedAt"] = completed_at
            task["result"] = {"success": False, "error": f"Blocked by failed task {blocker}"}
            failed.add(task["id"])
            cascaded.append(task["id"])
            changed = True
    return cascaded


def build_tasks(specs: Iterable[SwarmTaskSpec]) -> list[SwarmTask]:
    """Turn task specs into pool entries.

    Raises ValueError on a missing or duplicate id, an unknown dependency,
    or a dependency cycle.
    """
    tasks: list[SwarmTask] = []
    seen: set[str] = set()
    for spec in specs:
        task_id = str(spec.get("id") or "")
        if not task_id:
            raise ValueError("Swarm task is missing an id")
        if task_id in seen:
            raise ValueError(f"Duplicate swarm task id: {task_id}")
        seen.add(task_id)
        blocked_by = [str(dep) for dep in spec.get("blockedBy") or []]
        tasks.append(
            {
                "id": task_id,
                "subject": str(spec.get("subject") or task_id),
                "description": str(spec.get("description") or ""),
                "blockedBy": blocked_by,
                "status": AVAILABLE if not blocked_by else PENDING,
                "claimedBy": None,
                "claimedAt": None,
                "completedAt": None,
                "result": None,
            }
        )
    for task in tasks:
        unknown = [dep for dep in task["blockedBy"] if dep not in seen]
        if unknown:
            raise ValueError(f"Task {task['id']} depends on unknown task(s): {', '.join(unknown)}")

    # Kahn's algorithm; whatever is left over is on or behind a cycle
    remaining = {t["id"]: len(set(t["blockedBy"])) for t in tasks}
    dependents: dict[str, list[str]] = {t["id"]: [] for t in tasks}
    for task in tasks:
        for dep in set(task["blockedBy"]):
            dependents[dep].append(task["id"])
    ready = deque(task_id for task_id, n in remaining.items() if n == 0)
    while ready:
        for child in dependents[ready.popleft()]:
            remaining[child] -= 1
            if remaining[child] == 0:
                ready.append(child)
    cyclic = sorted(task_id for task_id, n in remaining.items() if n > 0)
    if cyclic:
        raise ValueError(f"Dependency cycle among swarm tasks: {', '.join(cyclic)}")
    return tasks


class SwarmCoordinator:
    """Claimable task pool shared by any number of workers."""

    def __init__(
        self,
        store: StateStore,
        *,
        settings: Settings | None = None,
        events: EventLog | None = None,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.settings = settings or Settings()
        self.events = events
        self.clock = clock
        self._lock = threading.RLock()

    def state(self) -> dict[str, Any] | None:
        return self.store.read(STATE_DOCUMENT, "local")["data"]

    def _save(self, state: dict[str, Any]) -> bool:
        state["stats"] = calculate_stats(state)
        state["lastUpdated"] = to_iso(self.clock())
        result = self.store.write(STATE_DOCUMENT, state)
        if not result["success"]:
            log.warning("Failed to persist swarm state: %s", result["error"])
        return result["success"]

    def _emit(self, event_type: str, payload: dict[str, Any]) -> None:
        if self.events is None:
            return
        try:
            self.events.emit(event_type, payload, source="swarm")
        except OSError as e:
            log.warning("Failed to log %s: %s", event_type, e)

    def init_swarm(
        self, tasks: Iterable[SwarmTaskSpec], *, description: str = ""
    ) -> dict[str, Any] | None:
        """Create the task pool. Returns None while an unfinished swarm exists.

        Raises ValueError if the task list is malformed.
        """
        pool = build_tasks(tasks)
        with self._lock:
            current = self.state()
            if current is not None and current.get("status") != SWARM_COMPLETED:
                log.warning("Swarm already in progress; clear it before starting another")
                return None
            state: dict[str, Any] = {
                "description": description,
                "status": SWARM_RUNNING,
                "tasks": pool,
                "workers": [],
                "startedAt": to_iso(self.clock()),
                "completedAt": None,
            }
            if not self._save(state):
                return None
        log.info("Swarm started with %d task(s)", len(pool))
        return state

    # -- queries --

    def get_task(self, task_id: str) -> SwarmTask | None:
        state = self.state()
        if state is None:
            return None
        return next((t for t in state["tasks"] if t["id"] == task_id), None)

    def available_tasks(self) -> list[SwarmTask]:
        state = self.state()
        if state is None:
            return []
        return [t for t in state["tasks"] if t["status"] == AVAILABLE]

    def get_worker(self, worker_id: str) -> SwarmWorker | None:
        state = self.state()
        if state is None:
            return None
        return next((w for w in state["workers"] if w["id"] == worker_id), None)

    def stats(self) -> SwarmStats | None:
        state = self.state()
        return calculate_stats(state) if state is not None else None

    # -- claims --

    def _worker(self, state: dict[str, Any], worker_id: str) -> SwarmWorker:
        for existing in state["workers"]:
            if existing["id"] == worker_id:
                return existing
        worker: SwarmWorker = {
            "id": worker_id,
            "status": IDLE,
            "currentTaskId": None,
            "completedTasks": [],
            "failedTasks": [],
            "lastHeartbeat": to_iso(self.clock()) or "",
            "error": None,
        }
        state["workers"].append(worker)
        return worker

    def _claim(self, state: dict[str, Any], worker_id: str, task: SwarmTask) -> SwarmTask | None:
        now = to_iso(self.clock())
        task["status"] = CLAIMED
        task["claimedBy"] = worker_id
        task["claimedAt"] = now
        worker = self._worker(state, worker_id)
        worker["status"] = EXECUTING
        worker["currentTaskId"] = task["id"]
        worker["lastHeartbeat"] = now or ""
        worker["error"] = None
        if not self._save(state):
            return None
        log.info("Worker %s claimed %s", worker_id, task["id"])
        self._emit(ev.SWARM_TASK_CLAIMED, {"taskId": task["id"], "workerId": worker_id})
        return task

    def claim_task(self, worker_id: str, task_id: str) -> SwarmTask | None:
        """Claim one specific task. Returns None if it is not available."""
        with self._lock:
            state = self.state()
            if state is None or state["status"] != SWARM_RUNNING:
                return None
            task = next((t for t in state["tasks"] if t["id"] == task_id), None)
            if task is None or task["status"] != AVAILABLE:
                return None
            return self._claim(state, worker_id, task)

    def claim_any_task(self, worker_id: str) -> SwarmTask | None:
        """Claim the first available task in pool order, if any."""
        with self._lock:
            state = self.state()
            if state is None or state["status"] != SWARM_RUNNING:
                return None
            task = next((t for t in state["tasks"] if t["status"] == AVAILABLE), None)
            if task is None:
                return None
            return self._claim(state, worker_id, task)

    def release_task(self, worker_id: str, task_id: str) -> bool:
        """Give a claimed task back to the pool. Only its claimant may."""
        with self._lock:
            state = self.state()
            if state is None:
                return False
            task = next((t for t in state["tasks"] if t["id"] == task_id), None)
            if task is None or task["status"] != CLAIMED or task["claimedBy"] != worker_id:
                return False
            _unclaim(task)
            worker = self._worker(state, worker_id)
            worker["status"] = IDLE
            worker["currentTaskId"] = None
            if not self._save(state):
                return False
        self._emit(
            ev.SWARM_TASK_RELEASED,
            {"taskId": task_id, "workerId": worker_id, "reason": "released"},
        )
        return True

    def _finish(
        self,
        worker_id: str,
        task_id: str,
        result: dict[str, Any],
    ) -> bool:
        success = bool(result["success"])
        with self._lock:
            state = self.state()
            if state is None:
                return False
            task = next((t for t in state["tasks"] if t["id"] == task_id), None)
            if task is None or task["status"] != CLAIMED or task["claimedBy"] != worker_id:
                return False
            now = self.clock()
            claimed_at = from_iso(task["claimedAt"])
            if claimed_at is not None:
                result["executionSeconds"] = max(0.0, (now - claimed_at).total_seconds())
            task["status"] = COMPLETED if success else FAILED
            task["completedAt"] = to_iso(now)
            task["result"] = result
            worker = self._worker(state, worker_id)
            worker["status"] = IDLE
            worker["currentTaskId"] = None
            worker["lastHeartbeat"] = to_iso(now) or ""
            (worker["completedTasks"] if success else worker["failedTasks"]).append(task_id)
            if success:
                unblocked = update_blocked_tasks(state)
                cascaded: list[str] = []
            else:
                unblocked = []
                cascaded = fail_dependents(state, to_iso(now))
            finished = not any(t["status"] in OPEN_STATUSES for t in state["tasks"])
            if finished:
                state["status"] = SWARM_COMPLETED
                state["completedAt"] = to_iso(now)
            if not self._save(state):
                return False
            stats = state["stats"]

        event_type = ev.SWARM_TASK_COMPLETED if success else ev.SWARM_TASK_FAILED
        self._emit(
            event_type,
            {
                "taskId": task_id,
                "workerId": worker_id,
                "error": result.get("error"),
                "unblocked": unblocked,
                "cascadedFailures": cascaded,
            },
        )
        if finished:
            log.info(
                "Swarm finished: %d completed, %d failed",
                stats["completedTasks"],
                stats["failedTasks"],
            )
            self._emit(ev.SWARM_COMPLETED, dict(stats))
        return True

    def complete_task(
        self,
        worker_id: str,
        task_id: str,
        output: str | None = None,
        files_modified: Iterable[str] = (),
    ) -> bool:
        return self._finish(
            worker_id,
            task_id,
            {"success": True, "output": output, "filesModified": list(files_modified)},
        )

    def fail_task(self, worker_id: str, task_id: str, error: str) -> bool:
        return self._finish(worker_id, task_id, {"success": False, "error": error})

    # -- liveness --

    def heartbeat(self, worker_id: str) -> bool:
        """Record that *worker_id* is alive. Unknown workers are rejected."""
        with self._lock:
            state = self.state()
            if state is None:
                return False
            worker = next((w for w in state["workers"] if w["id"] == worker_id), None)
            if worker is None:
                return False
            worker["lastHeartbeat"] = to_iso(self.clock()) or ""
            if worker["status"] == TERMINATED:
                worker["status"] = IDLE
                worker["error"] = None
            return self._save(state)

    def cleanup_stale_workers(self, timeout: float | None = None) -> list[str]:
        """Terminate silent workers and return their claimed tasks to the pool.

        Returns the ids of the released tasks.
        """
        timeout = self.settings.swarm_worker_timeout if timeout is None else timeout
        with self._lock:
            state = self.state()
            if state is None or state["status"] == SWARM_COMPLETED:
                return []
            cutoff = self.clock() - timedelta(seconds=timeout)
            released: list[tuple[str, str]] = []
            for worker in state["workers"]:
                if worker["status"] == TERMINATED:
                    continue
                last = from_iso(worker["lastHeartbeat"])
                if last is not None and last >= cutoff:
                    continue
                for task in state["tasks"]:
                    if task["status"] == CLAIMED and task["claimedBy"] == worker["id"]:
                        _unclaim(task)
                        released.append((task["id"], worker["id"]))
                if worker["status"] == EXECUTING:
                    log.warning("Swarm worker %s timed out", worker["id"])
                    worker["status"] = TERMINATED
                    worker["currentTaskId"] = None
                    worker["error"] = TIMEOUT_ERROR
            if not released or not self._save(state):
                return []
        for task_id, worker_id in released:
            self._emit(
                ev.SWARM_TASK_RELEASED,
                {"taskId": task_id, "workerId": worker_id, "reason": "timeout"},
            )
        return [task_id for task_id, _ in released]

    # -- control --

    def _set_status(self, expected: str, status: str) -> bool:
        with self._lock:
            state = self.state()
            if state is None or state["status"] != expected:
                return False
            state["status"] = status
            return self._save(state)

    def pause(self) -> bool:
        """Stop handing out tasks. Claimed tasks may still be finished."""
        return self._set_status(SWARM_RUNNING, SWARM_PAUSED)

    def resume(self) -> bool:
        return self._set_status(SWARM_PAUSED, SWARM_RUNNING)

    def clear(self) -> bool:
        self.store.delete(STATE_DOCUMENT)
        return not self.store.exists(STATE_DOCUMENT)


def _unclaim(task: SwarmTask) -> None:
    task["status"] = AVAILABLE
    task["claimedBy"] = None
    task["claimedAt"] = None
