"""Canonical filesystem paths for herd configuration and state."""

from __future__ import annotations

import os
from pathlib import Path

HERD_CONFIG_DIR = Path.home() / ".config" / "herd"

# Relative to a project directory
PROJECT_DIR_NAME = ".herd"
STATE_DIR_NAME = f"{PROJECT_DIR_NAME}/state"
CONFIG_FILE_NAME = f"{PROJECT_DIR_NAME}/config.toml"

_env_global = os.environ.get("HERD_GLOBAL_STATE_DIR")
GLOBAL_STATE_DIR = (
    Path(_env_global).expanduser() if _env_global else Path.home() / ".herd" / "state"
)


def local_state_dir(project_dir: str | Path) -> Path:
    """Return the per-project state directory (``HERD_STATE_DIR`` wins)."""
    override = os.environ.get("HERD_STATE_DIR")
    if override:
        return Path(override).expanduser()
    return Path(project_dir) / STATE_DIR_NAME


def global_state_dir() -> Path:
    return GLOBAL_STATE_DIR


def config_path(project_dir: str | Path) -> Path:
    return Path(project_dir) / CONFIG_FILE_NAME
