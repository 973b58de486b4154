from __future__ import annotations

import contextlib
import json
import logging
import signal
import threading
from collections.abc import Iterator
from dataclasses import replace
from typing import IO, Any

import click

from herd import __version__
from herd.background import TASK_STATUSES, BackgroundTask
from herd.modes import MODES
from herd.runtime import Runtime, build_runtime, run_watch


class _JsonAwareGroup(click.Group):
    """Group that always outputs JSON errors with command suggestions.

    Click normally writes plain-text usage errors to stderr.  Since all
    commands output JSON, this subclass intercepts Click exceptions and
    emits a JSON error object on stdout.  Unknown commands get fuzzy-matched
    suggestions via ``difflib.get_close_matches``.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if args:
                import difflib

                cmd_name = args[0]
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=2, cutoff=0.5
                )
                hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
                raise click.UsageError(f"No such command '{cmd_name}'.{hint}") from None
            raise

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
            if standalone_mode:
                raise SystemExit(rv or 0)
            return rv
        except click.ClickException as e:
            click.echo(json.dumps({"ok": False, "error": e.format_message()}))
            code = getattr(e, "exit_code", 1)
            if standalone_mode:
                raise SystemExit(code) from None
            return code
        except click.Abort:
            if standalone_mode:
                click.echo("Aborted!", err=True)
                raise SystemExit(1) from None
            raise


def _echo(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def _parse_json_option(raw: str | None, name: str) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise click.ClickException(f"{name} is not valid JSON: {e.msg}") from None
    if not isinstance(value, dict):
        raise click.ClickException(f"{name} must be a JSON object")
    return value


@contextlib.contextmanager
def _runtime(obj: dict[str, Any]) -> Iterator[Runtime]:
    runtime = build_runtime(obj["project"])
    try:
        yield runtime
    finally:
        runtime.close()


def _task_or_fail(task: BackgroundTask | None, task_id: str, action: str) -> dict[str, Any]:
    if task is None:
        raise click.ClickException(f"Cannot {action} task {task_id}: not found or wrong state")
    return task.to_dict()


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
@click.option(
    "--project",
    "-C",
    default=".",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    help="Project directory (default: current directory).",
)
@click.pass_context
def main(ctx: click.Context, project: str):
    """Coordinate background agent work items for a project.

    \b
    Quick start:
      herd task launch "Refactor auth" --model opus    Queue a work item
      herd task list                                   Inspect items
      herd watch                                       Run sweeps every poll interval
      herd checkpoint create --phase 1 --plan 2        Snapshot .herd/state into git
    """
    ctx.obj = {"project": project}


@main.command()
@click.pass_obj
def status(obj: dict[str, Any]):
    """Summarize tasks, modes, parallel work and the latest checkpoint."""
    with _runtime(obj) as rt:
        run = rt.parallel.state()
        swarm = rt.swarm.state()
        latest = rt.checkpoints.latest_checkpoint()
        _echo(
            {
                "project": str(rt.project_dir),
                "tasks": rt.tasks.stats(),
                "modes": rt.modes.active_modes(),
                "parallelRun": None
                if run is None
                else {
                    "originalTask": run.get("originalTask"),
                    "activeWorkers": len(rt.parallel.active_workers()),
                    "conflicts": run["ownership"]["conflicts"],
                },
                "swarm": None
                if swarm is None
                else {"status": swarm["status"], "stats": rt.swarm.stats()},
                "latestCheckpoint": latest["id"] if latest else None,
                "eventLines": rt.events.line_count(),
            }
        )


# -- task --


@main.group()
def task():
    """Launch and track background work items."""


@task.command("launch")
@click.argument("description")
@click.option("--prompt", default="", help="Instruction payload handed to the executor.")
@click.option("--agent", default="", help="Agent role name.")
@click.option("--model", default=None, help="Capacity tier (default from settings).")
@click.option("--parent", "parent_session_id", default=None, help="Initiating session id.")
@click.option("--parent-message", "parent_message_id", default=None)
@click.pass_obj
def task_launch(
    obj: dict[str, Any],
    description: str,
    prompt: str,
    agent: str,
    model: str | None,
    parent_session_id: str | None,
    parent_message_id: str | None,
):
    """Queue a work item; it starts immediately if its tier has a free slot."""
    with _runtime(obj) as rt:
        try:
            launched = rt.tasks.launch(
                description,
                prompt,
                agent,
                model=model,
                parent_session_id=parent_session_id,
                parent_message_id=parent_message_id,
            )
        except RuntimeError as e:
            raise click.ClickException(str(e)) from None
        _echo(launched.to_dict())


@task.command("list")
@click.option("--status", "status_filter", type=click.Choice(TASK_STATUSES), default=None)
@click.pass_obj
def task_list(obj: dict[str, Any], status_filter: str | None):
    """List work items, oldest first."""
    with _runtime(obj) as rt:
        _echo([t.to_dict() for t in rt.tasks.list_tasks(status_filter)])


@task.command("show")
@click.argument("task_id")
@click.pass_obj
def task_show(obj: dict[str, Any], task_id: str):
    with _runtime(obj) as rt:
        found = rt.tasks.get_task(task_id)
        if found is None:
            raise click.ClickException(f"Task {task_id} not found")
        _echo(found.to_dict())


@task.command("complete")
@click.argument("task_id")
@click.option("--result", default=None)
@click.pass_obj
def task_complete(obj: dict[str, Any], task_id: str, result: str | None):
    with _runtime(obj) as rt:
        _echo(_task_or_fail(rt.tasks.complete_task(task_id, result), task_id, "complete"))


@task.command("fail")
@click.argument("task_id")
@click.option("--error", "error", required=True)
@click.pass_obj
def task_fail(obj: dict[str, Any], task_id: str, error: str):
    with _runtime(obj) as rt:
        _echo(_task_or_fail(rt.tasks.fail_task(task_id, error), task_id, "fail"))


@task.command("cancel")
@click.argument("task_id")
@click.option("--reason", default=None)
@click.pass_obj
def task_cancel(obj: dict[str, Any], task_id: str, reason: str | None):
    """Cancel a pending or running item (bookkeeping only)."""
    with _runtime(obj) as rt:
        _echo(_task_or_fail(rt.tasks.request_cancel(task_id, reason), task_id, "cancel"))


@task.command("progress")
@click.argument("task_id")
@click.option("--tool-calls", type=int, default=None)
@click.option("--tool", "last_tool", default=None)
@click.option("--message", "last_message", default=None)
@click.pass_obj
def task_progress(
    obj: dict[str, Any],
    task_id: str,
    tool_calls: int | None,
    last_tool: str | None,
    last_message: str | None,
):
    with _runtime(obj) as rt:
        updated = rt.tasks.update_progress(
            task_id, tool_calls=tool_calls, last_tool=last_tool, last_message=last_message
        )
        _echo(_task_or_fail(updated, task_id, "update"))


@task.command("poll")
@click.argument("task_id")
@click.argument("activity_count", type=int)
@click.pass_obj
def task_poll(obj: dict[str, Any], task_id: str, activity_count: int):
    """Feed an activity count; completes the item once it has been idle long enough."""
    with _runtime(obj) as rt:
        result = rt.tasks.poll_activity(task_id, activity_count)
        if result is None:
            raise click.ClickException(f"Task {task_id} is not running")
        _echo({"stable": result.stable, "consecutiveStablePolls": result.consecutive_stable_polls})


@task.command("sweep")
@click.pass_obj
def task_sweep(obj: dict[str, Any]):
    """Run the staleness, requeue and eviction sweeps once."""
    with _runtime(obj) as rt:
        _echo(rt.sweep())


@task.command("recover")
@click.pass_obj
def task_recover(obj: dict[str, Any]):
    """Fail items left running by a dead process."""
    with _runtime(obj) as rt:
        _echo([t.to_dict() for t in rt.tasks.recover_interrupted()])


# -- events --


@main.group()
def events():
    """Read and write the project event log."""


@events.command("poll")
@click.option("--since", "since_line", type=int, default=0, help="0-based line offset.")
@click.option("--limit", type=int, default=None)
@click.pass_obj
def events_poll(obj: dict[str, Any], since_line: int, limit: int | None):
    with _runtime(obj) as rt:
        _echo(rt.events.poll(since_line, limit))


@events.command("emit")
@click.argument("event_type")
@click.option("--payload", default=None, help="JSON object.")
@click.option("--source", default="cli")
@click.pass_obj
def events_emit(obj: dict[str, Any], event_type: str, payload: str | None, source: str):
    data = _parse_json_option(payload, "--payload")
    with _runtime(obj) as rt:
        _echo(rt.events.emit(event_type, data, source))


@events.command("rotate")
@click.pass_obj
def events_rotate(obj: dict[str, Any]):
    with _runtime(obj) as rt:
        _echo({"rotated": rt.events.rotate_if_needed()})


# -- mode --


@main.group()
def mode():
    """Inspect and toggle exclusive orchestration modes."""


@mode.command("list")
@click.pass_obj
def mode_list(obj: dict[str, Any]):
    with _runtime(obj) as rt:
        _echo(rt.modes.active_modes())


@mode.command("check")
@click.argument("name", type=click.Choice(MODES))
@click.pass_obj
def mode_check(obj: dict[str, Any], name: str):
    with _runtime(obj) as rt:
        _echo({**rt.modes.can_start(name), "active": rt.modes.is_mode_active(name)})


@mode.command("start")
@click.argument("name", type=click.Choice(MODES))
@click.option("--meta", default=None, help="JSON object stored with the mode record.")
@click.pass_obj
def mode_start(obj: dict[str, Any], name: str, meta: str | None):
    metadata = _parse_json_option(meta, "--meta")
    with _runtime(obj) as rt:
        check = rt.modes.can_start(name)
        if not check["allowed"]:
            raise click.ClickException(check["message"] or f"Cannot start {name}")
        if not rt.modes.start_mode(name, metadata):
            raise click.ClickException(f"Failed to start {name}")
        _echo({"ok": True, "mode": name})


@mode.command("end")
@click.argument("name", type=click.Choice(MODES))
@click.pass_obj
def mode_end(obj: dict[str, Any], name: str):
    with _runtime(obj) as rt:
        _echo({"ok": rt.modes.end_mode(name), "mode": name})


# -- checkpoint --


@main.group()
def checkpoint():
    """Snapshot and roll back .herd/state with git."""


@checkpoint.command("create")
@click.option("--phase", required=True)
@click.option("--plan", type=int, required=True)
@click.option("--wave", type=int, default=1)
@click.option("--description", "-m", default="checkpoint")
@click.pass_obj
def checkpoint_create(obj: dict[str, Any], phase: str, plan: int, wave: int, description: str):
    with _runtime(obj) as rt:
        result = rt.checkpoints.create_checkpoint(phase, plan, wave, description)
        if not result["success"]:
            raise click.ClickException(result["error"] or "Checkpoint failed")
        rt.checkpoints.prune_old_checkpoints()
        _echo(result["checkpoint"])


@checkpoint.command("list")
@click.pass_obj
def checkpoint_list(obj: dict[str, Any]):
    with _runtime(obj) as rt:
        _echo(
            [
                {k: v for k, v in cp.items() if k != "stateSnapshot"}
                for cp in rt.checkpoints.list_checkpoints()
            ]
        )


@checkpoint.command("rollback")
@click.argument("checkpoint_id")
@click.pass_obj
def checkpoint_rollback(obj: dict[str, Any], checkpoint_id: str):
    """Restore .herd/state from a checkpoint. HEAD and source files are untouched."""
    with _runtime(obj) as rt:
        result = rt.checkpoints.rollback_to_checkpoint(checkpoint_id)
        if not result["success"]:
            raise click.ClickException(result["error"] or "Rollback failed")
        _echo({"ok": True, "checkpoint": checkpoint_id, "filesRestored": result["files_restored"]})


@checkpoint.command("preview")
@click.argument("checkpoint_id")
@click.pass_obj
def checkpoint_preview(obj: dict[str, Any], checkpoint_id: str):
    with _runtime(obj) as rt:
        result = rt.checkpoints.preview_rollback(checkpoint_id)
        if not result["success"]:
            raise click.ClickException(result["error"] or "Preview failed")
        _echo({"changed": result["changed"], "removed": result["removed"]})


@checkpoint.command("prune")
@click.pass_obj
def checkpoint_prune(obj: dict[str, Any]):
    with _runtime(obj) as rt:
        _echo({"pruned": rt.checkpoints.prune_old_checkpoints()})


# -- run --


@main.group()
def run():
    """Parallel run: workers with exclusive file ownership."""


@run.command("init")
@click.argument("original_task")
@click.option("--subtask", "subtasks", multiple=True)
@click.option("--max-workers", type=int, default=None)
@click.option("--shared", multiple=True, help="Extra coordinator-owned path or pattern.")
@click.pass_obj
def run_init(
    obj: dict[str, Any],
    original_task: str,
    subtasks: tuple[str, ...],
    max_workers: int | None,
    shared: tuple[str, ...],
):
    with _runtime(obj) as rt:
        state = rt.parallel.init_run(
            original_task, subtasks, max_workers=max_workers, shared=shared
        )
        if state is None:
            if rt.parallel.state() is not None:
                raise click.ClickException("A parallel run is already active")
            blocked = rt.modes.can_start("executing")
            raise click.ClickException(blocked["message"] or "Failed to start parallel run")
        _echo(state)


@run.command("status")
@click.pass_obj
def run_status(obj: dict[str, Any]):
    with _runtime(obj) as rt:
        _echo(rt.parallel.state())


@run.command("spawn")
@click.argument("task_text")
@click.option("--file", "files", multiple=True)
@click.pass_obj
def run_spawn(obj: dict[str, Any], task_text: str, files: tuple[str, ...]):
    with _runtime(obj) as rt:
        result = rt.parallel.spawn_worker(task_text, files)
        if result["worker"] is None:
            raise click.ClickException(result["error"] or "Failed to spawn worker")
        _echo(result["worker"])


@run.command("complete")
@click.argument("worker_id")
@click.pass_obj
def run_complete(obj: dict[str, Any], worker_id: str):
    with _runtime(obj) as rt:
        _echo({"ok": rt.parallel.complete_worker(worker_id), "worker": worker_id})


@run.command("fail")
@click.argument("worker_id")
@click.option("--error", "error", required=True)
@click.pass_obj
def run_fail(obj: dict[str, Any], worker_id: str, error: str):
    with _runtime(obj) as rt:
        _echo({"ok": rt.parallel.fail_worker(worker_id, error), "worker": worker_id})


@run.command("assign")
@click.argument("path")
@click.argument("worker_id")
@click.pass_obj
def run_assign(obj: dict[str, Any], path: str, worker_id: str):
    with _runtime(obj) as rt:
        _echo(rt.parallel.assign(path, worker_id))


@run.command("release")
@click.argument("path")
@click.option("--worker", "worker_id", default=None)
@click.pass_obj
def run_release(obj: dict[str, Any], path: str, worker_id: str | None):
    with _runtime(obj) as rt:
        _echo({"released": rt.parallel.release(path, worker_id)})


@run.command("owner")
@click.argument("path")
@click.pass_obj
def run_owner(obj: dict[str, Any], path: str):
    with _runtime(obj) as rt:
        _echo({"path": path, "owner": rt.parallel.owner_of(path)})


@run.command("end")
@click.pass_obj
def run_end(obj: dict[str, Any]):
    with _runtime(obj) as rt:
        _echo({"ok": rt.parallel.end_run()})


# -- swarm --


@main.group()
def swarm():
    """Swarm: workers claiming tasks from a shared pool."""


@swarm.command("init")
@click.argument("tasks_file", type=click.File("r"))
@click.option("--description", default="")
@click.pass_obj
def swarm_init(obj: dict[str, Any], tasks_file: IO[str], description: str):
    """Create the pool from a JSON list of {id, subject, description, blockedBy}."""
    try:
        specs = json.load(tasks_file)
    except json.JSONDecodeError as e:
        raise click.ClickException(f"Tasks file is not valid JSON: {e.msg}") from None
    if not isinstance(specs, list) or not all(isinstance(s, dict) for s in specs):
        raise click.ClickException("Tasks file must hold a JSON list of objects")
    with _runtime(obj) as rt:
        try:
            state = rt.swarm.init_swarm(specs, description=description)
        except ValueError as e:
            raise click.ClickException(str(e)) from None
        if state is None:
            raise click.ClickException("A swarm is already in progress")
        _echo(state)


@swarm.command("status")
@click.pass_obj
def swarm_status(obj: dict[str, Any]):
    with _runtime(obj) as rt:
        _echo(rt.swarm.state())


@swarm.command("claim")
@click.argument("worker_id")
@click.option("--task", "task_id", default=None, help="Claim this task instead of the next one.")
@click.pass_obj
def swarm_claim(obj: dict[str, Any], worker_id: str, task_id: str | None):
    with _runtime(obj) as rt:
        if task_id is None:
            claimed = rt.swarm.claim_any_task(worker_id)
        else:
            claimed = rt.swarm.claim_task(worker_id, task_id)
        _echo(claimed)


@swarm.command("release")
@click.argument("worker_id")
@click.argument("task_id")
@click.pass_obj
def swarm_release(obj: dict[str, Any], worker_id: str, task_id: str):
    with _runtime(obj) as rt:
        _echo({"ok": rt.swarm.release_task(worker_id, task_id), "task": task_id})


@swarm.command("complete")
@click.argument("worker_id")
@click.argument("task_id")
@click.option("--output", default=None)
@click.option("--file", "files", multiple=True, help="File the task modified.")
@click.pass_obj
def swarm_complete(
    obj: dict[str, Any], worker_id: str, task_id: str, output: str | None, files: tuple[str, ...]
):
    with _runtime(obj) as rt:
        ok = rt.swarm.complete_task(worker_id, task_id, output, files)
        _echo({"ok": ok, "task": task_id})


@swarm.command("fail")
@click.argument("worker_id")
@click.argument("task_id")
@click.option("--error", "error", required=True)
@click.pass_obj
def swarm_fail(obj: dict[str, Any], worker_id: str, task_id: str, error: str):
    with _runtime(obj) as rt:
        _echo({"ok": rt.swarm.fail_task(worker_id, task_id, error), "task": task_id})


@swarm.command("heartbeat")
@click.argument("worker_id")
@click.pass_obj
def swarm_heartbeat(obj: dict[str, Any], worker_id: str):
    with _runtime(obj) as rt:
        _echo({"ok": rt.swarm.heartbeat(worker_id), "worker": worker_id})


@swarm.command("cleanup")
@click.option("--timeout", type=float, default=None, help="Seconds of silence (default: config).")
@click.pass_obj
def swarm_cleanup(obj: dict[str, Any], timeout: float | None):
    with _runtime(obj) as rt:
        _echo({"released": rt.swarm.cleanup_stale_workers(timeout)})


@swarm.command("pause")
@click.pass_obj
def swarm_pause(obj: dict[str, Any]):
    with _runtime(obj) as rt:
        _echo({"ok": rt.swarm.pause()})


@swarm.command("resume")
@click.pass_obj
def swarm_resume(obj: dict[str, Any]):
    with _runtime(obj) as rt:
        _echo({"ok": rt.swarm.resume()})


@swarm.command("clear")
@click.pass_obj
def swarm_clear(obj: dict[str, Any]):
    with _runtime(obj) as rt:
        _echo({"ok": rt.swarm.clear()})


# -- recovery --


@main.group()
def recovery():
    """Retry budget and rollback after orchestration errors."""


@recovery.command("status")
@click.pass_obj
def recovery_status(obj: dict[str, Any]):
    with _runtime(obj) as rt:
        _echo({**rt.recovery.state(), "canRetry": rt.recovery.can_retry()})


@recovery.command("error")
@click.argument("message")
@click.option("--phase", default="")
@click.option("--plan", type=int, default=0)
@click.pass_obj
def recovery_error(obj: dict[str, Any], message: str, phase: str, plan: int):
    """Record an error; rolls back to the latest checkpoint unless retries are spent."""
    with _runtime(obj) as rt:
        _echo(rt.recovery.handle_error(message, phase=phase, plan=plan))


@recovery.command("clear")
@click.pass_obj
def recovery_clear(obj: dict[str, Any]):
    with _runtime(obj) as rt:
        _echo({"ok": rt.recovery.clear()})


# -- watch --


@main.command()
@click.option("--interval", type=float, default=None, help="Polling interval in seconds.")
@click.option("--once", is_flag=True, help="Run a single pass and exit.")
@click.pass_obj
def watch(obj: dict[str, Any], interval: float | None, once: bool):
    """Run sweeps and notification flushing until interrupted."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    runtime = build_runtime(obj["project"], auto_flush=True)
    if interval is not None:
        runtime.settings = replace(runtime.settings, polling_interval=interval)
    stop = threading.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, lambda *_: stop.set())
    passes = run_watch(runtime, stop=stop, max_iterations=1 if once else None)
    _echo({"ok": True, "passes": passes})
