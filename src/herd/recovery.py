"""Error recovery: retry budget, cooldown and rollback to the last checkpoint."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Literal, TypedDict

from herd import events as ev
from herd.checkpoint import CheckpointManager
from herd.events import EventLog
from herd.settings import Settings
from herd.state import StateStore
from herd.timeutil import Clock, from_iso, to_iso, utcnow

log = logging.getLogger(__name__)

STATE_DOCUMENT = "recovery"

RecoveryAction = Literal["rolled_back", "cooldown_set", "max_retries_exceeded"]


class RecoveryResult(TypedDict):
    success: bool
    can_retry: bool
    retry_after: str | None
    action: RecoveryAction
    rolled_back_to: str | None
    error: str | None


def _default_state() -> dict[str, Any]:
    return {
        "isRecovering": False,
        "errorCount": 0,
        "lastError": None,
        "lastErrorAt": None,
        "cooldownUntil": None,
        "rolledBackTo": None,
    }


class RecoveryManager:
    def __init__(
        self,
        store: StateStore,
        checkpoints: CheckpointManager,
        *,
        settings: Settings | None = None,
        events: EventLog | None = None,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.checkpoints = checkpoints
        self.settings = settings or Settings()
        self.events = events
        self.clock = clock

    def state(self) -> dict[str, Any]:
        data = self.store.read(STATE_DOCUMENT, "local")["data"]
        return {**_default_state(), **(data or {})}

    def _save(self, state: dict[str, Any]) -> bool:
        return self.store.write(STATE_DOCUMENT, state)["success"]

    def can_retry(self) -> bool:
        state = self.state()
        if state["errorCount"] >= self.settings.recovery_max_retries:
            return False
        cooldown = from_iso(state.get("cooldownUntil"))
        return cooldown is None or self.clock() >= cooldown

    def handle_error(self, error: str, *, phase: str = "", plan: int = 0) -> RecoveryResult:
        """Record a failure and decide what happens next.

        Past the retry budget this reports ``max_retries_exceeded``. Otherwise
        the state directory is rolled back to the latest checkpoint (when
        enabled and one exists) and a cooldown is set before the next retry.
        """
        now = self.clock()
        state = self.state()
        state.update(
            isRecovering=True,
            errorCount=state["errorCount"] + 1,
            lastError=error,
            lastErrorAt=to_iso(now),
        )
        max_retries = self.settings.recovery_max_retries

        if state["errorCount"] >= max_retries:
            self._save(state)
            log.warning("Giving up after %d errors: %s", state["errorCount"], error)
            self._emit(
                ev.RECOVERY_FAILED,
                {
                    "error": error,
                    "phase": phase,
                    "plan": plan,
                    "reason": "max_retries",
                    "errorCount": state["errorCount"],
                },
            )
            return {
                "success": False,
                "can_retry": False,
                "retry_after": None,
                "action": "max_retries_exceeded",
                "rolled_back_to": None,
                "error": f"Max retries ({max_retries}) exceeded",
            }

        action: RecoveryAction = "cooldown_set"
        rolled_back_to = None
        if self.settings.recovery_rollback:
            latest = self.checkpoints.latest_checkpoint()
            if latest is not None:
                result = self.checkpoints.rollback_to_checkpoint(latest["id"])
                if result["success"]:
                    action = "rolled_back"
                    rolled_back_to = latest["id"]
                else:
                    log.warning("Rollback during recovery failed: %s", result["error"])

        retry_after = to_iso(now + timedelta(seconds=self.settings.recovery_cooldown))
        state.update(cooldownUntil=retry_after, rolledBackTo=rolled_back_to)
        # Written after the rollback, which rewrites the state directory
        self._save(state)
        self._emit(
            ev.ROLLBACK_INITIATED,
            {
                "error": error,
                "phase": phase,
                "plan": plan,
                "action": action,
                "checkpointId": rolled_back_to,
                "retryAfter": retry_after,
            },
        )
        return {
            "success": True,
            "can_retry": True,
            "retry_after": retry_after,
            "action": action,
            "rolled_back_to": rolled_back_to,
            "error": None,
        }

    def clear(self) -> bool:
        self.store.delete(STATE_DOCUMENT)
        return not self.store.exists(STATE_DOCUMENT)

    def _emit(self, event_type: str, payload: dict[str, Any]) -> None:
        if self.events is None:
            return
        try:
            self.events.emit(event_type, payload, source="recovery")
        except OSError as e:
            log.warning("Failed to log %s: %s", event_type, e)
