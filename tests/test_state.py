"""Tests for the durable JSON document store."""

from __future__ import annotations

import json
import os
from pathlib import Path
from unittest.mock import patch

from herd.state import StateStore


def test_write_then_read_round_trip(store: StateStore):
    result = store.write("notes", {"a": 1, "nested": {"b": [1, 2]}})
    assert result["success"] is True
    assert result["error"] is None

    read = store.read("notes")
    assert read["exists"] is True
    assert read["data"] == {"a": 1, "nested": {"b": [1, 2]}}
    assert read["found_at"] == str(store.path_for("notes"))


def test_write_creates_directory_and_leaves_no_tmp(store: StateStore, state_dir: Path):
    assert not state_dir.exists()
    store.write("notes", {"x": True})
    assert (state_dir / "notes.json").exists()
    assert list(state_dir.glob("*.tmp")) == []


def test_read_missing_document(store: StateStore):
    assert store.read("missing") == {"exists": False, "data": None, "found_at": None}


def test_unparseable_document_reads_as_missing(store: StateStore, state_dir: Path):
    state_dir.mkdir(parents=True)
    (state_dir / "broken.json").write_text("{not json")
    assert store.read("broken")["exists"] is False


def test_schema_invalid_document_reads_as_missing(store: StateStore, state_dir: Path):
    state_dir.mkdir(parents=True)
    (state_dir / "background-manager.json").write_text(json.dumps({"tasks": []}))
    assert store.read("background-manager")["exists"] is False


def test_write_rejects_schema_invalid_document(store: StateStore):
    result = store.write("execution-state", {"active": "yes"})
    assert result["success"] is False
    assert result["error"]
    assert not store.path_for("execution-state").exists()


def test_write_failure_is_reported_not_raised(store: StateStore):
    with patch("herd.state.os.replace", side_effect=OSError("disk full")):
        result = store.write("notes", {"a": 1})
    assert result["success"] is False
    assert "disk full" in result["error"]
    assert list(store.state_dir.glob("*.tmp")) == []


def test_interrupted_write_keeps_previous_document(store: StateStore):
    store.write("notes", {"v": 1})
    with patch("herd.state.os.replace", side_effect=OSError("crash")):
        store.write("notes", {"v": 2})
    assert store.read("notes")["data"] == {"v": 1}


def test_local_document_wins_over_global(store: StateStore):
    store.write("shared", {"where": "global"}, "global")
    assert store.read("shared")["data"] == {"where": "global"}
    store.write("shared", {"where": "local"})
    assert store.read("shared")["data"] == {"where": "local"}
    assert store.read("shared", "global")["data"] == {"where": "global"}


def test_update_is_read_modify_write(store: StateStore):
    store.write("counter", {"n": 1})
    store.update("counter", lambda doc: {"n": (doc or {"n": 0})["n"] + 1})
    assert store.read("counter")["data"] == {"n": 2}


def test_nested_names_and_listing(store: StateStore):
    store.write("checkpoints/index", {"checkpoints": []})
    store.write("alpha", {})
    assert store.list_documents() == ["alpha", "checkpoints/index"]
    assert set(store.snapshot()) == {"alpha", "checkpoints/index"}


def test_delete(store: StateStore):
    store.write("gone", {})
    assert store.delete("gone") is True
    assert store.delete("gone") is False
    assert not store.exists("gone")


def test_written_file_is_plain_json(store: StateStore):
    store.write("notes", {"k": "v"})
    raw = store.path_for("notes").read_text()
    assert json.loads(raw) == {"k": "v"}
    assert os.path.getsize(store.path_for("notes")) == len(raw.encode())
