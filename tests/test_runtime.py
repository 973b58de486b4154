"""Tests for component wiring and the watch loop."""

from __future__ import annotations

import threading

from herd.background import ERROR, RUNNING
from herd.runtime import build_runtime, run_watch
from herd.settings import Settings


def test_build_runtime_shares_state(tmp_path, clock):
    rt = build_runtime(tmp_path, settings=Settings(), clock=clock)
    assert rt.store.state_dir == tmp_path.resolve() / ".herd" / "state"
    assert rt.tasks.events is rt.events
    assert rt.checkpoints.store is rt.store
    assert rt.parallel.modes is rt.modes


def test_state_dir_env_override(tmp_path, monkeypatch, clock):
    monkeypatch.setenv("HERD_STATE_DIR", str(tmp_path / "custom"))
    rt = build_runtime(tmp_path, settings=Settings(), clock=clock)
    assert rt.store.state_dir == tmp_path / "custom"


def test_sweep_counts(tmp_path, clock):
    settings = Settings(tier_limits={"opus": 1}, stale_timeout=60, min_runtime_before_stale=0)
    rt = build_runtime(tmp_path, settings=settings, clock=clock)
    rt.tasks.launch("first", model="opus")
    rt.tasks.launch("second", model="opus")

    clock.advance(61)
    counts = rt.sweep()
    assert counts["stale"] == 1
    assert counts["rotated"] == 0
    assert [t.description for t in rt.tasks.running_tasks()] == ["second"]


def test_run_watch_recovers_then_sweeps(tmp_path, clock):
    first = build_runtime(tmp_path, settings=Settings(), clock=clock)
    task = first.tasks.launch("left over")
    assert task.status == RUNNING

    second = build_runtime(tmp_path, settings=Settings(), clock=clock)
    delivered = []
    second.notifications.subscribe(delivered.append)
    assert run_watch(second, max_iterations=1) == 1

    recovered = second.tasks.get_task(task.id)
    assert recovered.status == ERROR
    assert recovered.error == "Task interrupted by process restart"
    # close() flushes the buffered completion notice
    assert len(delivered) == 1
    assert delivered[0]["failed_count"] == 1


def test_run_watch_stops_on_event(tmp_path, clock):
    rt = build_runtime(tmp_path, settings=Settings(polling_interval=0.01), clock=clock)
    stop = threading.Event()
    stop.set()
    assert run_watch(rt, stop=stop) == 0


def test_sweep_releases_stale_swarm_claims(tmp_path, clock):
    rt = build_runtime(tmp_path, settings=Settings(swarm_worker_timeout=30), clock=clock)
    assert rt.swarm is not None
    rt.swarm.init_swarm([{"id": "only"}])
    rt.swarm.claim_task("w1", "only")

    clock.advance(31)
    assert rt.sweep()["released"] == 1
    assert rt.swarm.get_task("only")["status"] == "available"
