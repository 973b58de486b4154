"""Append-only JSON-lines event log with offset-based polling.

One JSON object per line in ``<state_dir>/events.jsonl``. Readers poll with
a 0-based line offset and resume from the returned ``last_line``; delivery
is at-least-once. When a Redis URL is configured every event is also
forwarded to a Redis Stream, best-effort.
"""

from __future__ import annotations

import json
import logging
import uuid
from contextlib import suppress
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypedDict

from redis import Redis
from redis.exceptions import RedisError

log = logging.getLogger(__name__)

EVENTS_FILE = "events.jsonl"
EVENTS_STREAM = "herd:events:stream"

# Well-known event types
TASK_LAUNCHED = "task_launched"
TASK_STARTED = "task_started"
TASK_COMPLETED = "task_completed"
TASK_FAILED = "task_failed"
TASK_CANCELLED = "task_cancelled"
TASK_STALE = "task_stale"
TASK_PROGRESS = "task_progress"
BATCH_NOTIFICATION = "background_tasks_notification"
MODE_STARTED = "mode_started"
MODE_ENDED = "mode_ended"
CHECKPOINT_CREATED = "checkpoint_created"
ROLLBACK_COMPLETED = "rollback_completed"
ROLLBACK_INITIATED = "rollback_initiated"
RECOVERY_FAILED = "recovery_failed"
FILE_CONFLICT = "file_conflict"
WORKER_SPAWNED = "worker_spawned"
WORKER_COMPLETED = "worker_completed"
WORKER_FAILED = "worker_failed"
SWARM_TASK_CLAIMED = "swarm_task_claimed"
SWARM_TASK_RELEASED = "swarm_task_released"
SWARM_TASK_COMPLETED = "swarm_task_completed"
SWARM_TASK_FAILED = "swarm_task_failed"
SWARM_COMPLETED = "swarm_completed"


class Event(TypedDict):
    id: str
    timestamp: str
    type: str
    payload: dict[str, Any]
    source: str


class EventPollResult(TypedDict):
    events: list[Event]
    last_line: int
    has_more: bool


class EventLog:
    def __init__(
        self,
        state_dir: str | Path,
        *,
        max_lines: int = 1000,
        redis_url: str | None = None,
        stream_maxlen: int = 1000,
    ):
        self.state_dir = Path(state_dir)
        self.path = self.state_dir / EVENTS_FILE
        self.max_lines = max_lines
        self.redis_url = redis_url
        self.stream_maxlen = stream_maxlen
        self._redis: Redis | None = None

    def emit(
        self, event_type: str, payload: dict[str, Any] | None = None, source: str = "herd"
    ) -> Event:
        """Append one event, creating the state directory if needed.

        Raises OSError if the log cannot be written.
        """
        event: Event = {
            "id": str(uuid.uuid4()),
            "timestamp": datetime.now(UTC).isoformat(),
            "type": event_type,
            "payload": payload or {},
            "source": source,
        }
        self.state_dir.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(event) + "\n")
        self._forward(event)
        return event

    def _forward(self, event: Event) -> None:
        if not self.redis_url:
            return
        try:
            if self._redis is None:
                self._redis = Redis.from_url(self.redis_url)
            self._redis.xadd(
                EVENTS_STREAM,
                {"data": json.dumps(event)},
                maxlen=self.stream_maxlen,
                approximate=True,
            )
        except RedisError:
            log.warning("Event forward failed (Redis unavailable): %s", event["type"])

    def poll(self, since_line: int = 0, limit: int | None = None) -> EventPollResult:
        """Return events from line *since_line* onward.

        Unparseable lines are skipped but still advance the offset.
        """
        try:
            with open(self.path, encoding="utf-8") as f:
                lines = f.read().splitlines()
        except FileNotFoundError:
            return {"events": [], "last_line": 0, "has_more": False}

        # An offset past EOF means the log was rotated underneath the reader
        since_line = min(max(0, since_line), len(lines))
        end = len(lines) if limit is None else min(len(lines), since_line + limit)
        events: list[Event] = []
        for line in lines[since_line:end]:
            if not line.strip():
                continue
            try:
                events.append(json.loads(line))
            except json.JSONDecodeError:
                log.debug("Skipping malformed event line in %s", self.path)
        return {
            "events": events,
            "last_line": end,
            "has_more": end < len(lines),
        }

    def line_count(self) -> int:
        try:
            with open(self.path, encoding="utf-8") as f:
                return sum(1 for _ in f)
        except FileNotFoundError:
            return 0

    def rotate_if_needed(self) -> bool:
        """Archive the log as ``events.<timestamp>.jsonl`` once it exceeds max_lines."""
        if self.line_count() <= self.max_lines:
            return False
        stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S%fZ")
        archive = self.state_dir / f"events.{stamp}.jsonl"
        try:
            self.path.rename(archive)
        except OSError as e:
            log.warning("Failed to rotate %s: %s", self.path, e)
            return False
        log.info("Rotated event log to %s", archive.name)
        return True

    def clear(self) -> None:
        with suppress(FileNotFoundError):
            self.path.unlink()

    def archives(self) -> list[Path]:
        if not self.state_dir.is_dir():
            return []
        return sorted(self.state_dir.glob("events.*.jsonl"))
