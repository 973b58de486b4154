"""Shared test fixtures: isolated state directories and a controllable clock."""

import os
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from herd.events import EventLog
from herd.state import StateStore


class FakeClock:
    """Callable clock returning a fixed UTC time until advanced."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    for name in [n for n in os.environ if n.startswith("HERD_")]:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / ".herd" / "state"


@pytest.fixture()
def store(tmp_path: Path, state_dir: Path) -> StateStore:
    return StateStore(state_dir, global_dir=tmp_path / "global-state")


@pytest.fixture()
def event_log(state_dir: Path) -> EventLog:
    return EventLog(state_dir)
