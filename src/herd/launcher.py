"""Adapters that hand admitted work items to the external executor.

herd never runs agent logic itself. A launcher receives the item's
description, prompt, agent and model tier and returns an identifier for the
child execution context, which becomes the item's ``session_id``.

Launchers raise RuntimeError on failure; the task manager fails the item
with that message.
"""

from __future__ import annotations

import logging
from typing import Protocol, TypedDict

from redis import Redis
from redis.exceptions import RedisError
from rq import Queue

from herd.settings import Settings

log = logging.getLogger(__name__)

FAILURE_TTL = 7 * 24 * 3600  # 7 days


class LaunchRequest(TypedDict):
    task_id: str
    description: str
    prompt: str
    agent: str
    model: str


class Launcher(Protocol):
    def launch(self, request: LaunchRequest) -> str | None: ...


class NullLauncher:
    """Launcher for hosts that start work items themselves."""

    def launch(self, request: LaunchRequest) -> str | None:
        return None


class RqLauncher:
    """Enqueue each admitted item as an rq job running *func_path*.

    *func_path* is the dotted path of the host's job function; it is called
    with the :class:`LaunchRequest` dict. The rq job id is the session id.
    """

    def __init__(self, func_path: str, *, queue_name: str = "herd:tasks", redis_url: str):
        self.func_path = func_path
        self.queue_name = queue_name
        self.redis_url = redis_url
        self._queue: Queue | None = None

    def get_queue(self) -> Queue:
        if self._queue is None:
            # Executors own their own timeouts (-1 disables rq's).
            self._queue = Queue(
                self.queue_name, connection=Redis.from_url(self.redis_url), default_timeout=-1
            )
        return self._queue

    def launch(self, request: LaunchRequest) -> str | None:
        job_id = f"herd-{request['task_id']}"
        try:
            job = self.get_queue().enqueue(
                self.func_path,
                dict(request),
                job_id=job_id,
                failure_ttl=FAILURE_TTL,
                description=f"{request['agent']}: {request['description']}",
            )
        except RedisError as e:
            raise RuntimeError(f"Failed to enqueue {request['task_id']}: {e}") from None
        log.info("Enqueued %s on %s as %s", request["task_id"], self.queue_name, job.id)
        return job.id


def launcher_from_settings(settings: Settings) -> Launcher | None:
    """Build the configured launcher, or None when the host launches items itself."""
    if not settings.launcher_func:
        return None
    if not settings.redis_url:
        log.warning(
            "launcher func %s configured without a Redis URL; ignoring", settings.launcher_func
        )
        return None
    return RqLauncher(
        settings.launcher_func,
        queue_name=settings.launcher_queue,
        redis_url=settings.redis_url,
    )
