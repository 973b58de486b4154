"""Lifecycle of background work items: admission, progress, completion, sweeps.

Items are persisted in the ``background-manager`` state document. Every
mutation is a whole-document read-modify-write, so a restarted process picks
up exactly where the previous one stopped. Admission is FIFO per capacity
tier; nothing here executes agent logic.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from herd import events as ev
from herd.concurrency import ConcurrencyManager
from herd.events import EventLog
from herd.launcher import Launcher, LaunchRequest
from herd.notifications import CompletionPayload, NotificationManager
from herd.settings import Settings
from herd.stability import PollResult, StabilityDetector
from herd.state import StateStore
from herd.timeutil import Clock, from_iso, to_iso, utcnow

log = logging.getLogger(__name__)

STATE_DOCUMENT = "background-manager"
TASK_ID_PREFIX = "bg-"

PENDING = "pending"
RUNNING = "running"
COMPLETED = "completed"
ERROR = "error"
CANCELLED = "cancelled"

TASK_STATUSES = (PENDING, RUNNING, COMPLETED, ERROR, CANCELLED)
TERMINAL_STATUSES = frozenset({COMPLETED, ERROR, CANCELLED})

INTERRUPTED_ERROR = "Task interrupted by process restart"


@dataclass
class TaskProgress:
    tool_calls: int = 0
    last_tool: str | None = None
    last_update: datetime | None = None
    last_message: str | None = None
    last_message_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "toolCalls": self.tool_calls,
            "lastTool": self.last_tool,
            "lastUpdate": to_iso(self.last_update),
            "lastMessage": self.last_message,
            "lastMessageAt": to_iso(self.last_message_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskProgress:
        return cls(
            tool_calls=int(data.get("toolCalls") or 0),
            last_tool=data.get("lastTool"),
            last_update=from_iso(data.get("lastUpdate")),
            last_message=data.get("lastMessage"),
            last_message_at=from_iso(data.get("lastMessageAt")),
        )


@dataclass
class BackgroundTask:
    id: str
    description: str
    status: str
    queued_at: datetime
    concurrency_key: str
    prompt: str = ""
    agent: str = ""
    seq: int = 0
    session_id: str | None = None
    parent_session_id: str | None = None
    parent_message_id: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result: str | None = None
    error: str | None = None
    progress: TaskProgress | None = None
    last_activity_count: int | None = None
    stable_polls: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "parentSessionId": self.parent_session_id,
            "parentMessageId": self.parent_message_id,
            "description": self.description,
            "prompt": self.prompt,
            "agent": self.agent,
            "status": self.status,
            "queuedAt": to_iso(self.queued_at),
            "startedAt": to_iso(self.started_at),
            "completedAt": to_iso(self.completed_at),
            "result": self.result,
            "error": self.error,
            "progress": self.progress.to_dict() if self.progress else None,
            "concurrencyKey": self.concurrency_key,
            "lastActivityCount": self.last_activity_count,
            "stablePolls": self.stable_polls,
            "seq": self.seq,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackgroundTask:
        progress = data.get("progress")
        return cls(
            id=data["id"],
            description=data.get("description", ""),
            status=data["status"],
            queued_at=from_iso(data.get("queuedAt")) or utcnow(),
            concurrency_key=data.get("concurrencyKey") or "",
            prompt=data.get("prompt", ""),
            agent=data.get("agent", ""),
            seq=int(data.get("seq") or 0),
            session_id=data.get("sessionId"),
            parent_session_id=data.get("parentSessionId"),
            parent_message_id=data.get("parentMessageId"),
            started_at=from_iso(data.get("startedAt")),
            completed_at=from_iso(data.get("completedAt")),
            result=data.get("result"),
            error=data.get("error"),
            progress=TaskProgress.from_dict(progress) if progress else None,
            last_activity_count=data.get("lastActivityCount"),
            stable_polls=int(data.get("stablePolls") or 0),
        )


TaskCallback = Callable[[BackgroundTask], None]


def _set_session(task: BackgroundTask, session_id: str) -> None:
    task.session_id = session_id


def _fifo_key(task: BackgroundTask) -> tuple[datetime, int]:
    return (task.queued_at, task.seq)


class BackgroundTaskManager:
    """Tracks and limits background work items for one project.

    Collaborators are passed in; anything omitted is built from *settings*.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        settings: Settings | None = None,
        concurrency: ConcurrencyManager | None = None,
        stability: StabilityDetector | None = None,
        notifications: NotificationManager | None = None,
        events: EventLog | None = None,
        launcher: Launcher | None = None,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.settings = settings or Settings()
        self.clock = clock
        self.events = events
        self.launcher = launcher
        self.concurrency = concurrency or ConcurrencyManager(
            self.settings.tier_limits, self.settings.default_concurrency
        )
        self.stability = stability or StabilityDetector(
            self.settings.stability_threshold,
            self.settings.min_stability_seconds,
            clock=clock,
        )
        self.notifications = notifications or NotificationManager(
            events,
            window=self.settings.notification_window,
            max_batch=self.settings.notification_max_batch,
            clock=clock,
        )
        if self.notifications.outstanding is None:
            self.notifications.outstanding = self.outstanding_for_parent
        self.on_start: list[TaskCallback] = []
        self.on_complete: list[TaskCallback] = []
        # Serializes read-modify-write cycles within this process
        self._lock = threading.RLock()
        self._reseed()

    # -- persistence --

    def _load(self) -> dict[str, Any]:
        doc = self.store.read(STATE_DOCUMENT, "local")["data"]
        if doc is None:
            return {"tasks": {}, "activeCount": {}, "nextSeq": 0}
        doc.setdefault("tasks", {})
        return doc

    def _save(self, doc: dict[str, Any]) -> bool:
        running = Counter(
            t.get("concurrencyKey", "") for t in doc["tasks"].values() if t["status"] == RUNNING
        )
        doc["activeCount"] = dict(running)
        doc["lastUpdated"] = to_iso(self.clock())
        result = self.store.write(STATE_DOCUMENT, doc)
        if not result["success"]:
            log.warning("Failed to persist background state: %s", result["error"])
        return result["success"]

    def _tasks(self, doc: dict[str, Any]) -> list[BackgroundTask]:
        return [BackgroundTask.from_dict(raw) for raw in doc["tasks"].values()]

    def _reseed(self) -> None:
        running = [t for t in self._tasks(self._load()) if t.status == RUNNING]
        self.concurrency.reseed(Counter(t.concurrency_key for t in running))
        for task in running:
            self.stability.seed(
                task.id,
                started_at=task.started_at or self.clock(),
                last_count=task.last_activity_count,
                consecutive=task.stable_polls,
            )

    def _emit(self, event_type: str, task: BackgroundTask, **extra: Any) -> None:
        if self.events is None:
            return
        payload = {
            "taskId": task.id,
            "status": task.status,
            "description": task.description,
            "concurrencyKey": task.concurrency_key,
            "parentSessionId": task.parent_session_id,
        }
        payload.update(extra)
        try:
            self.events.emit(event_type, payload, source="background")
        except OSError as e:
            log.warning("Failed to log %s for %s: %s", event_type, task.id, e)

    def _run_callbacks(self, callbacks: Iterable[TaskCallback], task: BackgroundTask) -> None:
        for callback in callbacks:
            try:
                callback(task)
            except Exception:
                log.warning("Task callback failed for %s", task.id, exc_info=True)

    # -- queries --

    def get_task(self, task_id: str) -> BackgroundTask | None:
        raw = self._load()["tasks"].get(task_id)
        return BackgroundTask.from_dict(raw) if raw else None

    def list_tasks(self, status: str | None = None) -> list[BackgroundTask]:
        tasks = self._tasks(self._load())
        if status is not None:
            tasks = [t for t in tasks if t.status == status]
        return sorted(tasks, key=_fifo_key)

    def running_tasks(self) -> list[BackgroundTask]:
        return self.list_tasks(RUNNING)

    def pending_tasks(self) -> list[BackgroundTask]:
        return self.list_tasks(PENDING)

    def tasks_for_parent(self, parent_session_id: str) -> list[BackgroundTask]:
        return [t for t in self.list_tasks() if t.parent_session_id == parent_session_id]

    def outstanding_for_parent(self, parent_session_id: str | None) -> int:
        return sum(
            1
            for t in self.list_tasks()
            if t.parent_session_id == parent_session_id and not t.is_terminal
        )

    def stats(self) -> dict[str, Any]:
        tasks = self.list_tasks()
        by_status = Counter(t.status for t in tasks)
        return {
            "total": len(tasks),
            "byStatus": {s: by_status.get(s, 0) for s in TASK_STATUSES},
            "activeCount": dict(Counter(t.concurrency_key for t in tasks if t.status == RUNNING)),
        }

    # -- launch & admission --

    def launch(
        self,
        description: str,
        prompt: str = "",
        agent: str = "",
        *,
        model: str | None = None,
        parent_session_id: str | None = None,
        parent_message_id: str | None = None,
    ) -> BackgroundTask:
        """Queue a new work item and admit it if its tier has a free slot.

        Raises RuntimeError if the item cannot be persisted.
        """
        with self._lock:
            doc = self._load()
            seq = int(doc.get("nextSeq") or 0)
            doc["nextSeq"] = seq + 1
            task = BackgroundTask(
                id=f"{TASK_ID_PREFIX}{uuid.uuid4()}",
                description=description,
                prompt=prompt,
                agent=agent,
                status=PENDING,
                queued_at=self.clock(),
                concurrency_key=model or self.settings.default_tier,
                seq=seq,
                parent_session_id=parent_session_id,
                parent_message_id=parent_message_id,
            )
            doc["tasks"][task.id] = task.to_dict()
            if not self._save(doc):
                raise RuntimeError(f"Failed to persist background task {task.id}")
            log.info("Queued %s (%s) on tier %s", task.id, description, task.concurrency_key)
            self._emit(ev.TASK_LAUNCHED, task)
            self.requeue_sweep()
        return self.get_task(task.id) or task

    def _admit_pending(self) -> list[BackgroundTask]:
        doc = self._load()
        # Another process or a rollback may have changed the running set
        self.concurrency.reseed(
            Counter(t.concurrency_key for t in self._tasks(doc) if t.status == RUNNING)
        )
        now = self.clock()
        admitted: list[BackgroundTask] = []
        for task in sorted(self._tasks(doc), key=_fifo_key):
            if task.status != PENDING:
                continue
            if not self.concurrency.try_acquire(task.concurrency_key):
                continue
            task.status = RUNNING
            task.started_at = now
            task.progress = TaskProgress(last_update=now)
            task.last_activity_count = None
            task.stable_polls = 0
            doc["tasks"][task.id] = task.to_dict()
            admitted.append(task)
        if admitted and not self._save(doc):
            for task in admitted:
                self.concurrency.release(task.concurrency_key)
            return []
        return admitted

    def _start(self, task: BackgroundTask) -> bool:
        self.stability.start(task.id, task.started_at)
        self._emit(ev.TASK_STARTED, task)
        log.info("Started %s on tier %s", task.id, task.concurrency_key)
        if self.launcher is not None:
            request: LaunchRequest = {
                "task_id": task.id,
                "description": task.description,
                "prompt": task.prompt,
                "agent": task.agent,
                "model": task.concurrency_key,
            }
            try:
                session_id = self.launcher.launch(request)
            except RuntimeError as e:
                log.warning("Launch failed for %s: %s", task.id, e)
                self._finish(task.id, ERROR, error=str(e), event_type=ev.TASK_FAILED, sweep=False)
                return False
            if session_id:
                task = self._mutate(task.id, lambda t: _set_session(t, session_id)) or task
        self._run_callbacks(self.on_start, task)
        return True

    def requeue_sweep(self) -> list[BackgroundTask]:
        """Admit queued items, oldest first within each tier, while slots remain."""
        started: list[BackgroundTask] = []
        with self._lock:
            while True:
                admitted = self._admit_pending()
                if not admitted:
                    break
                launched = [task for task in admitted if self._start(task)]
                started.extend(launched)
                # A failed launch frees its slot; try again for the next in line
                if len(launched) == len(admitted):
                    break
        return started

    # -- transitions --

    def _mutate(
        self, task_id: str, fn: Callable[[BackgroundTask], None]
    ) -> BackgroundTask | None:
        with self._lock:
            doc = self._load()
            raw = doc["tasks"].get(task_id)
            if raw is None:
                return None
            task = BackgroundTask.from_dict(raw)
            fn(task)
            doc["tasks"][task_id] = task.to_dict()
            if not self._save(doc):
                return None
            return task

    def _finish(
        self,
        task_id: str,
        status: str,
        *,
        result: str | None = None,
        error: str | None = None,
        allowed_from: tuple[str, ...] = (RUNNING,),
        event_type: str,
        sweep: bool = True,
    ) -> BackgroundTask | None:
        with self._lock:
            doc = self._load()
            raw = doc["tasks"].get(task_id)
            if raw is None:
                log.warning("Unknown background task %s", task_id)
                return None
            task = BackgroundTask.from_dict(raw)
            if task.status not in allowed_from:
                log.info("Ignoring %s for %s in state %s", status, task_id, task.status)
                return None
            was_running = task.status == RUNNING
            task.status = status
            task.completed_at = self.clock()
            task.result = result
            task.error = error
            doc["tasks"][task_id] = task.to_dict()
            if not self._save(doc):
                return None
            if was_running:
                self.concurrency.release(task.concurrency_key)
            self.stability.forget(task_id)
            log.info("Task %s -> %s", task_id, status)
            self._emit(event_type, task, result=result, error=error)
            payload: CompletionPayload = {
                "task_id": task.id,
                "description": task.description,
                "status": task.status,
                "parent_session_id": task.parent_session_id,
                "result": result,
                "error": error,
            }
            self.notifications.record_completion(payload)
            self._run_callbacks(self.on_complete, task)
            if sweep:
                self.requeue_sweep()
            return task

    def complete_task(self, task_id: str, result: str | None = None) -> BackgroundTask | None:
        return self._finish(task_id, COMPLETED, result=result, event_type=ev.TASK_COMPLETED)

    def fail_task(self, task_id: str, error: str) -> BackgroundTask | None:
        return self._finish(task_id, ERROR, error=error, event_type=ev.TASK_FAILED)

    def cancel_task(self, task_id: str, reason: str | None = None) -> BackgroundTask | None:
        """Cancel a pending or running item.

        Cancellation is cooperative: the item is marked cancelled and its slot
        released. The external executor is not signalled.
        """
        return self._finish(
            task_id,
            CANCELLED,
            error=reason,
            allowed_from=(PENDING, RUNNING),
            event_type=ev.TASK_CANCELLED,
        )

    request_cancel = cancel_task

    def update_progress(
        self,
        task_id: str,
        *,
        tool_calls: int | None = None,
        last_tool: str | None = None,
        last_message: str | None = None,
    ) -> BackgroundTask | None:
        """Record progress for a running item and refresh its last-update time."""
        now = self.clock()

        def apply(task: BackgroundTask) -> None:
            progress = task.progress or TaskProgress()
            if tool_calls is not None:
                progress.tool_calls = tool_calls
            elif last_tool is not None:
                progress.tool_calls += 1
            if last_tool is not None:
                progress.last_tool = last_tool
            if last_message is not None:
                progress.last_message = last_message
                progress.last_message_at = now
            progress.last_update = now
            task.progress = progress

        with self._lock:
            current = self.get_task(task_id)
            if current is None or current.status != RUNNING:
                return None
            return self._mutate(task_id, apply)

    def poll_activity(self, task_id: str, activity_count: int) -> PollResult | None:
        """Feed an activity sample; auto-completes the item once it looks idle."""
        with self._lock:
            task = self.get_task(task_id)
            if task is None or task.status != RUNNING:
                return None
            result = self.stability.poll(task_id, activity_count)

            def apply(t: BackgroundTask) -> None:
                t.last_activity_count = activity_count
                t.stable_polls = result.consecutive_stable_polls

            self._mutate(task_id, apply)
            if result.stable:
                log.info(
                    "Task %s idle for %d polls; completing",
                    task_id,
                    result.consecutive_stable_polls,
                )
                self.complete_task(
                    task_id,
                    f"Auto-completed: no new activity for {result.consecutive_stable_polls} polls",
                )
            return result

    # -- sweeps --

    def stale_sweep(self) -> list[BackgroundTask]:
        """Cancel running items that stopped reporting progress; fail runaway ones."""
        now = self.clock()
        swept: list[BackgroundTask] = []
        with self._lock:
            for task in self.running_tasks():
                started = task.started_at or task.queued_at
                runtime = (now - started).total_seconds()
                if runtime > self.settings.max_runtime:
                    done = self._finish(
                        task.id,
                        ERROR,
                        error=f"Task expired after {int(runtime)}s",
                        event_type=ev.TASK_FAILED,
                        sweep=False,
                    )
                elif runtime >= self.settings.min_runtime_before_stale:
                    last = (task.progress.last_update if task.progress else None) or started
                    idle = (now - last).total_seconds()
                    if idle <= self.settings.stale_timeout:
                        continue
                    done = self._finish(
                        task.id,
                        CANCELLED,
                        error=f"Task stale: no progress for {int(idle)}s",
                        event_type=ev.TASK_STALE,
                        sweep=False,
                    )
                else:
                    continue
                if done is not None:
                    swept.append(done)
            if swept:
                self.requeue_sweep()
        return swept

    def ttl_sweep(self) -> list[str]:
        """Evict terminal items older than the retention window."""
        now = self.clock()
        with self._lock:
            doc = self._load()
            evicted = [
                task.id
                for task in self._tasks(doc)
                if task.is_terminal
                and task.completed_at is not None
                and (now - task.completed_at).total_seconds() > self.settings.retention_seconds
            ]
            if not evicted:
                return []
            for task_id in evicted:
                del doc["tasks"][task_id]
                self.stability.forget(task_id)
            if not self._save(doc):
                return []
        log.info("Evicted %d finished background task(s)", len(evicted))
        return evicted

    def recover_interrupted(self) -> list[BackgroundTask]:
        """Fail items left running by a process that no longer exists.

        Call once at startup of a long-lived orchestrator, never from a
        process that shares the state with a live one.
        """
        recovered: list[BackgroundTask] = []
        with self._lock:
            for task in self.running_tasks():
                done = self._finish(
                    task.id, ERROR, error=INTERRUPTED_ERROR, event_type=ev.TASK_FAILED, sweep=False
                )
                if done is not None:
                    recovered.append(done)
            if recovered:
                log.warning("Marked %d interrupted task(s) as failed", len(recovered))
                self.requeue_sweep()
        return recovered

    def clear(self) -> None:
        with self._lock:
            self.store.delete(STATE_DOCUMENT)
            self.concurrency.clear()
            self.notifications.clear()
            for task_id in self.stability.tracked():
                self.stability.forget(task_id)
