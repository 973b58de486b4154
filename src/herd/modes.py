"""Mutual exclusion between orchestration modes.

Each mode is recorded in its own state document (``{active, startedAt, pid,
metadata}``). Only one of the exclusive modes may be active at a time. A
record older than the staleness threshold counts as inactive, so a crashed
holder cannot block the project forever.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, TypedDict

from herd import events as ev
from herd.events import EventLog
from herd.state import StateStore
from herd.timeutil import Clock, from_iso, to_iso, utcnow

log = logging.getLogger(__name__)

IDLE = "idle"
PLANNING = "planning"
EXECUTING = "executing"
VERIFYING = "verifying"
PAUSED = "paused"
ERROR = "error"

MODES = (IDLE, PLANNING, EXECUTING, VERIFYING, PAUSED, ERROR)
EXCLUSIVE_MODES = (PLANNING, EXECUTING, VERIFYING)

MODE_STATE_DOCUMENTS: dict[str, str] = {
    PLANNING: "planning-state",
    EXECUTING: "execution-state",
    VERIFYING: "verification-state",
    PAUSED: "paused-state",
    ERROR: "error-state",
}


@dataclass(frozen=True)
class ModeConfig:
    name: str
    state_document: str | None
    exclusive: bool


class CanStartResult(TypedDict):
    allowed: bool
    blocked_by: str | None
    message: str | None


class ModeStatus(TypedDict):
    mode: str
    active: bool
    started_at: str | None
    pid: int | None
    metadata: dict[str, Any]


def mode_config(mode: str) -> ModeConfig:
    if mode not in MODES:
        raise ValueError(f"Unknown mode '{mode}'")
    return ModeConfig(
        name=mode,
        state_document=MODE_STATE_DOCUMENTS.get(mode),
        exclusive=mode in EXCLUSIVE_MODES,
    )


class ModeRegistry:
    def __init__(
        self,
        store: StateStore,
        *,
        stale_seconds: float = 3600.0,
        events: EventLog | None = None,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.stale_seconds = stale_seconds
        self.events = events
        self.clock = clock

    def _record(self, mode: str) -> dict[str, Any] | None:
        doc = mode_config(mode).state_document
        if doc is None:
            return None
        return self.store.read(doc, "local")["data"]

    def _is_stale(self, record: dict[str, Any]) -> bool:
        started = from_iso(record.get("startedAt"))
        if started is None:
            return True
        return (self.clock() - started).total_seconds() > self.stale_seconds

    def _emit(self, event_type: str, payload: dict[str, Any]) -> None:
        if self.events is None:
            return
        try:
            self.events.emit(event_type, payload, source="modes")
        except OSError as e:
            log.warning("Failed to log %s: %s", event_type, e)

    def is_mode_active(self, mode: str) -> bool:
        if mode == IDLE:
            return not any(self.is_mode_active(m) for m in MODE_STATE_DOCUMENTS)
        record = self._record(mode)
        if not record or not record.get("active"):
            return False
        if self._is_stale(record):
            log.info("Ignoring stale %s mode record (started %s)", mode, record.get("startedAt"))
            return False
        return True

    def can_start(self, mode: str) -> CanStartResult:
        config = mode_config(mode)
        if not config.exclusive:
            return {"allowed": True, "blocked_by": None, "message": None}
        for other in EXCLUSIVE_MODES:
            if other != mode and self.is_mode_active(other):
                return {
                    "allowed": False,
                    "blocked_by": other,
                    "message": f"Cannot start {mode} while {other} is active. "
                    f"End {other} first or wait for it to finish.",
                }
        return {"allowed": True, "blocked_by": None, "message": None}

    def start_mode(self, mode: str, metadata: dict[str, Any] | None = None) -> bool:
        """Record *mode* as active. Returns False if blocked or the write fails."""
        config = mode_config(mode)
        if config.state_document is None:
            return True
        check = self.can_start(mode)
        if not check["allowed"]:
            log.warning("%s", check["message"])
            return False
        record = {
            "active": True,
            "startedAt": to_iso(self.clock()),
            "pid": os.getpid(),
            "metadata": metadata or {},
        }
        ok = self.store.write(config.state_document, record)["success"]
        if ok:
            self._emit(ev.MODE_STARTED, {"mode": mode, "metadata": metadata or {}})
        return ok

    def end_mode(self, mode: str) -> bool:
        """Remove the mode record. Returns True once no record remains."""
        config = mode_config(mode)
        if config.state_document is None:
            return True
        existed = self.store.delete(config.state_document)
        if self.store.exists(config.state_document):
            return False
        if existed:
            self._emit(ev.MODE_ENDED, {"mode": mode})
        return True

    def active_modes(self) -> list[ModeStatus]:
        out: list[ModeStatus] = []
        for mode in MODE_STATE_DOCUMENTS:
            if not self.is_mode_active(mode):
                continue
            record = self._record(mode) or {}
            out.append(
                {
                    "mode": mode,
                    "active": True,
                    "started_at": record.get("startedAt"),
                    "pid": record.get("pid"),
                    "metadata": record.get("metadata") or {},
                }
            )
        return out
