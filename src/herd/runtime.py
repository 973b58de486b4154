"""Wiring of every herd component for one project, plus the watch loop."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path

from herd.background import BackgroundTaskManager
from herd.checkpoint import CheckpointManager
from herd.concurrency import ConcurrencyManager
from herd.events import EventLog
from herd.launcher import Launcher, launcher_from_settings
from herd.modes import ModeRegistry
from herd.notifications import NotificationManager
from herd.paths import local_state_dir
from herd.recovery import RecoveryManager
from herd.settings import Settings, load_settings
from herd.stability import StabilityDetector
from herd.state import StateStore
from herd.swarm import SwarmCoordinator
from herd.timeutil import Clock, utcnow
from herd.workers import ParallelRun

log = logging.getLogger(__name__)


@dataclass
class Runtime:
    project_dir: Path
    settings: Settings
    store: StateStore
    events: EventLog
    modes: ModeRegistry
    notifications: NotificationManager
    tasks: BackgroundTaskManager
    checkpoints: CheckpointManager
    recovery: RecoveryManager
    parallel: ParallelRun
    swarm: SwarmCoordinator

    def sweep(self) -> dict[str, int]:
        """One maintenance pass over tasks, swarm claims, notifications and the log."""
        stale = self.tasks.stale_sweep()
        started = self.tasks.requeue_sweep()
        evicted = self.tasks.ttl_sweep()
        flushed = self.notifications.flush_due()
        released = self.swarm.cleanup_stale_workers()
        rotated = self.events.rotate_if_needed()
        return {
            "stale": len(stale),
            "started": len(started),
            "evicted": len(evicted),
            "notified": len(flushed),
            "released": len(released),
            "rotated": int(rotated),
        }

    def close(self) -> None:
        """Deliver any buffered notifications before the process exits."""
        self.notifications.flush_all()


def build_runtime(
    project_dir: str | Path,
    *,
    settings: Settings | None = None,
    launcher: Launcher | None = None,
    auto_flush: bool = False,
    clock: Clock = utcnow,
) -> Runtime:
    project = Path(project_dir).resolve()
    settings = settings or load_settings(project)
    state_dir = local_state_dir(project)
    store = StateStore(state_dir)
    events = EventLog(
        state_dir,
        max_lines=settings.event_max_lines,
        redis_url=settings.redis_url,
        stream_maxlen=settings.events_stream_maxlen,
    )
    modes = ModeRegistry(
        store, stale_seconds=settings.mode_stale_seconds, events=events, clock=clock
    )
    notifications = NotificationManager(
        events,
        window=settings.notification_window,
        max_batch=settings.notification_max_batch,
        auto_flush=auto_flush,
        clock=clock,
    )
    tasks = BackgroundTaskManager(
        store,
        settings=settings,
        concurrency=ConcurrencyManager(settings.tier_limits, settings.default_concurrency),
        stability=StabilityDetector(
            settings.stability_threshold, settings.min_stability_seconds, clock=clock
        ),
        notifications=notifications,
        events=events,
        launcher=launcher if launcher is not None else launcher_from_settings(settings),
        clock=clock,
    )
    checkpoints = CheckpointManager(
        project, store, events=events, retain=settings.checkpoint_retain, clock=clock
    )
    recovery = RecoveryManager(store, checkpoints, settings=settings, events=events, clock=clock)
    parallel = ParallelRun(store, modes, settings=settings, events=events, clock=clock)
    swarm = SwarmCoordinator(store, settings=settings, events=events, clock=clock)
    return Runtime(
        project_dir=project,
        settings=settings,
        store=store,
        events=events,
        modes=modes,
        notifications=notifications,
        tasks=tasks,
        checkpoints=checkpoints,
        recovery=recovery,
        parallel=parallel,
        swarm=swarm,
    )


def run_watch(
    runtime: Runtime,
    *,
    stop: threading.Event | None = None,
    max_iterations: int | None = None,
) -> int:
    """Poll until *stop* is set (or *max_iterations* passes). Returns passes run.

    Items left running by a previous process are failed first.
    """
    stop = stop or threading.Event()
    recovered = runtime.tasks.recover_interrupted()
    if recovered:
        log.info("Recovered %d interrupted task(s)", len(recovered))
    iterations = 0
    try:
        while not stop.is_set():
            started = time.monotonic()
            counts = runtime.sweep()
            if any(counts.values()):
                log.info("Sweep: %s", counts)
            iterations += 1
            if max_iterations is not None and iterations >= max_iterations:
                break
            elapsed = time.monotonic() - started
            stop.wait(max(0.0, runtime.settings.polling_interval - elapsed))
    finally:
        runtime.close()
    return iterations
