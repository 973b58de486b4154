"""Durable JSON document store for coordination state.

Each named document lives at ``<state_dir>/<name>.json``. Writes go to a
``.tmp`` sibling and are renamed into place, so a concurrent reader sees
either the old or the new document, never a partial one. Concurrent
writers of the same document are last-writer-wins.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable
from contextlib import suppress
from pathlib import Path
from typing import Any, Literal, TypedDict

from herd.paths import global_state_dir
from herd.schemas import validation_error

log = logging.getLogger(__name__)

Location = Literal["local", "global"]


class ReadResult(TypedDict):
    exists: bool
    data: dict[str, Any] | None
    found_at: str | None


class WriteResult(TypedDict):
    success: bool
    path: str
    error: str | None


class StateStore:
    """Read/write named JSON documents in a local and a global state directory."""

    def __init__(self, state_dir: str | Path, *, global_dir: str | Path | None = None):
        self.state_dir = Path(state_dir)
        self.global_dir = Path(global_dir) if global_dir is not None else global_state_dir()

    def path_for(self, name: str, location: Location = "local") -> Path:
        base = self.state_dir if location == "local" else self.global_dir
        return base / f"{name}.json"

    def read(self, name: str, location: Location | None = None) -> ReadResult:
        """Read document *name*.

        With no *location*, the local copy wins and the global copy is the
        fallback. A missing, unparseable or schema-invalid document reads as
        ``exists=False``.
        """
        locations: tuple[Location, ...] = (location,) if location else ("local", "global")
        for loc in locations:
            path = self.path_for(name, loc)
            data = self._load(name, path)
            if data is not None:
                return {"exists": True, "data": data, "found_at": str(path)}
        return {"exists": False, "data": None, "found_at": None}

    def _load(self, name: str, path: Path) -> dict[str, Any] | None:
        try:
            raw = path.read_text()
        except FileNotFoundError:
            return None
        except OSError as e:
            log.warning("Failed to read %s: %s", path, e)
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            log.warning("Ignoring unparseable state document %s", path)
            return None
        problem = validation_error(name, data)
        if problem:
            log.warning("Ignoring invalid state document %s (%s)", path, problem)
            return None
        return data

    def write(self, name: str, data: dict[str, Any], location: Location = "local") -> WriteResult:
        """Atomically replace document *name*. Never raises on I/O failure."""
        path = self.path_for(name, location)
        problem = validation_error(name, data)
        if problem:
            log.warning("Refusing to write invalid state document %s (%s)", path, problem)
            return {"success": False, "path": str(path), "error": problem}
        tmp = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(data, indent=2) + "\n")
            os.replace(tmp, path)
        except (OSError, TypeError, ValueError) as e:
            with suppress(OSError):
                tmp.unlink()
            log.warning("Failed to write %s: %s", path, e)
            return {"success": False, "path": str(path), "error": str(e)}
        return {"success": True, "path": str(path), "error": None}

    def update(
        self,
        name: str,
        fn: Callable[[dict[str, Any] | None], dict[str, Any]],
        location: Location = "local",
    ) -> WriteResult:
        """Read-modify-write of the whole document."""
        current = self.read(name, location)
        return self.write(name, fn(current["data"]), location)

    def exists(self, name: str, location: Location = "local") -> bool:
        return self.path_for(name, location).exists()

    def delete(self, name: str, location: Location = "local") -> bool:
        path = self.path_for(name, location)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            log.warning("Failed to delete %s: %s", path, e)
            return False
        return True

    def list_documents(self, location: Location = "local") -> list[str]:
        """Document names (relative, without ``.json``) under *location*."""
        base = self.state_dir if location == "local" else self.global_dir
        if not base.is_dir():
            return []
        return sorted(
            p.relative_to(base).with_suffix("").as_posix() for p in base.rglob("*.json")
        )

    def snapshot(self) -> dict[str, Any]:
        """Parsed contents of every local document, keyed by document name."""
        out: dict[str, Any] = {}
        for name in self.list_documents():
            path = self.path_for(name)
            try:
                out[name] = json.loads(path.read_text())
            except (OSError, json.JSONDecodeError):
                log.debug("Skipping unreadable document %s in snapshot", path)
        return out
