"""Runtime configuration for herd.

Projects may tune thresholds in ``.herd/config.toml``::

    [tiers]
    haiku = 5
    sonnet = 3
    opus = 2
    default = "sonnet"

    [background]
    polling_interval = 2.0
    stale_timeout = 180

    [ownership]
    shared = ["schema.sql", "docs/*.md"]

    [swarm]
    worker_timeout = 300

Environment variables (``HERD_*``) override the file. Invalid values are
logged and ignored.
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from herd.paths import config_path

log = logging.getLogger(__name__)

DEFAULT_TIER_LIMITS: dict[str, int] = {"haiku": 5, "sonnet": 3, "opus": 2}

DEFAULT_SHARED_FILES: tuple[str, ...] = (
    "pyproject.toml",
    "setup.cfg",
    "requirements*.txt",
    "uv.lock",
    "poetry.lock",
    "package.json",
    "package-lock.json",
    "tsconfig.json",
    "tsconfig.*.json",
    ".gitignore",
    "README.md",
    ".env",
    ".env.*",
)


@dataclass(frozen=True)
class Settings:
    # Concurrency tiers; a limit of 0 means unlimited
    tier_limits: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_TIER_LIMITS))
    default_tier: str = "sonnet"
    default_concurrency: int = 3

    # Background task manager (seconds unless noted)
    polling_interval: float = 2.0
    stability_threshold: int = 3
    min_stability_seconds: float = 10.0
    stale_timeout: float = 180.0
    min_runtime_before_stale: float = 30.0
    max_runtime: float = 30 * 60.0
    retention_seconds: float = 30 * 60.0

    # Notification batching
    notification_window: float = 1.0
    notification_max_batch: int = 5

    mode_stale_seconds: float = 3600.0
    event_max_lines: int = 1000
    checkpoint_retain: int = 10

    shared_files: tuple[str, ...] = DEFAULT_SHARED_FILES
    max_workers: int = 5

    # Swarm workers silent for this long lose their claims
    swarm_worker_timeout: float = 300.0

    # Error recovery
    recovery_max_retries: int = 3
    recovery_cooldown: float = 5.0
    recovery_rollback: bool = True

    # External collaborators
    redis_url: str | None = None
    events_stream_maxlen: int = 1000
    launcher_queue: str = "herd:tasks"
    launcher_func: str | None = None

    def limit_for(self, tier: str) -> int:
        return self.tier_limits.get(tier, self.default_concurrency)


def _int_env(name: str, default: int, *, min_value: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return max(min_value, int(raw))
    except ValueError:
        log.warning("Invalid %s=%r; falling back to %d", name, raw, default)
        return default


def _float_env(name: str, default: float, *, min_value: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return max(min_value, float(raw))
    except ValueError:
        log.warning("Invalid %s=%r; falling back to %s", name, raw, default)
        return default


def load_config_file(project_dir: str | Path | None) -> dict[str, Any]:
    """Load ``.herd/config.toml``. Returns ``{}`` when missing or unparseable."""
    if not project_dir:
        return {}
    path = config_path(project_dir)
    if not path.exists():
        return {}
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError):
        log.warning("Failed to parse %s", path, exc_info=True)
        return {}


def _coerce(section: dict[str, Any], key: str, default: Any, kind: type) -> Any:
    if key not in section:
        return default
    value = section[key]
    try:
        if kind is bool:
            if not isinstance(value, bool):
                raise ValueError(value)
            return value
        return kind(value)
    except (TypeError, ValueError):
        log.warning("Invalid config value %s=%r; using %r", key, value, default)
        return default


def _from_file(data: dict[str, Any]) -> Settings:
    base = Settings()
    tiers = dict(data.get("tiers") or {})
    bg = data.get("background") or {}
    notif = data.get("notifications") or {}
    modes = data.get("modes") or {}
    events = data.get("events") or {}
    checkpoints = data.get("checkpoints") or {}
    ownership = data.get("ownership") or {}
    recovery = data.get("recovery") or {}
    launcher = data.get("launcher") or {}
    redis = data.get("redis") or {}
    swarm = data.get("swarm") or {}

    default_tier = tiers.pop("default", base.default_tier)
    default_concurrency = _coerce(tiers, "default_concurrency", base.default_concurrency, int)
    tiers.pop("default_concurrency", None)
    limits = dict(base.tier_limits)
    for tier, value in tiers.items():
        try:
            limits[str(tier)] = max(0, int(value))
        except (TypeError, ValueError):
            log.warning("Invalid tier limit %s=%r; ignoring", tier, value)

    extra_shared = ownership.get("shared") or []
    shared = base.shared_files + tuple(str(p) for p in extra_shared if isinstance(p, str))

    return replace(
        base,
        tier_limits=limits,
        default_tier=str(default_tier),
        default_concurrency=max(0, default_concurrency),
        polling_interval=_coerce(bg, "polling_interval", base.polling_interval, float),
        stability_threshold=_coerce(bg, "stability_threshold", base.stability_threshold, int),
        min_stability_seconds=_coerce(
            bg, "min_stability_seconds", base.min_stability_seconds, float
        ),
        stale_timeout=_coerce(bg, "stale_timeout", base.stale_timeout, float),
        min_runtime_before_stale=_coerce(
            bg, "min_runtime_before_stale", base.min_runtime_before_stale, float
        ),
        max_runtime=_coerce(bg, "max_runtime", base.max_runtime, float),
        retention_seconds=_coerce(bg, "retention_seconds", base.retention_seconds, float),
        notification_window=_coerce(notif, "window", base.notification_window, float),
        notification_max_batch=_coerce(notif, "max_batch", base.notification_max_batch, int),
        mode_stale_seconds=_coerce(modes, "stale_seconds", base.mode_stale_seconds, float),
        event_max_lines=_coerce(events, "max_lines", base.event_max_lines, int),
        checkpoint_retain=max(1, _coerce(checkpoints, "retain", base.checkpoint_retain, int)),
        shared_files=shared,
        max_workers=_coerce(ownership, "max_workers", base.max_workers, int),
        swarm_worker_timeout=_coerce(
            swarm, "worker_timeout", base.swarm_worker_timeout, float
        ),
        recovery_max_retries=_coerce(recovery, "max_retries", base.recovery_max_retries, int),
        recovery_cooldown=_coerce(recovery, "cooldown", base.recovery_cooldown, float),
        recovery_rollback=_coerce(recovery, "rollback", base.recovery_rollback, bool),
        redis_url=redis.get("url") or base.redis_url,
        events_stream_maxlen=_coerce(redis, "stream_maxlen", base.events_stream_maxlen, int),
        launcher_queue=str(launcher.get("queue") or base.launcher_queue),
        launcher_func=launcher.get("func") or base.launcher_func,
    )


def _apply_env(settings: Settings) -> Settings:
    limits = dict(settings.tier_limits)
    for tier in list(limits):
        limits[tier] = _int_env(f"HERD_TIER_{tier.upper()}", limits[tier], min_value=0)
    return replace(
        settings,
        tier_limits=limits,
        default_tier=os.environ.get("HERD_DEFAULT_TIER") or settings.default_tier,
        polling_interval=_float_env(
            "HERD_POLLING_INTERVAL", settings.polling_interval, min_value=0.05
        ),
        stale_timeout=_float_env("HERD_STALE_TIMEOUT", settings.stale_timeout, min_value=1.0),
        max_runtime=_float_env("HERD_MAX_RUNTIME", settings.max_runtime, min_value=1.0),
        retention_seconds=_float_env(
            "HERD_RETENTION_SECONDS", settings.retention_seconds, min_value=0.0
        ),
        event_max_lines=_int_env("HERD_EVENT_MAX_LINES", settings.event_max_lines, min_value=1),
        checkpoint_retain=_int_env(
            "HERD_CHECKPOINT_RETAIN", settings.checkpoint_retain, min_value=1
        ),
        redis_url=os.environ.get("HERD_REDIS_URL") or settings.redis_url,
        launcher_queue=os.environ.get("HERD_LAUNCHER_QUEUE") or settings.launcher_queue,
        launcher_func=os.environ.get("HERD_LAUNCHER_FUNC") or settings.launcher_func,
    )


def load_settings(project_dir: str | Path | None = None) -> Settings:
    """Resolve settings from defaults, ``.herd/config.toml`` and ``HERD_*`` env."""
    return _apply_env(_from_file(load_config_file(project_dir)))
