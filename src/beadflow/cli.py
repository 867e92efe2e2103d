from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any

import click

from beadflow import __version__
from beadflow.config import (
    config_as_dict,
    global_config_path,
    load_config,
    project_config_path,
    render_config,
)
from beadflow.fileio import now_iso
from beadflow.gateway import BeadGateway, BeadGatewayError
from beadflow.models import TASK_ARTIFACT_KINDS, VALID_FEATURE_STATUSES, VALID_TASK_STATUSES
from beadflow.repository import RepositoryError
from beadflow.workspace import Workspace, open_workspace

log = logging.getLogger(__name__)

# Errors raised by services and stores that become a JSON error object.
_DOMAIN_ERRORS = (
    ValueError,
    LookupError,
    TimeoutError,
    RuntimeError,
    BeadGatewayError,
    RepositoryError,
)


class _JsonAwareGroup(click.Group):
    """Group that prints every error as ``{"ok": false, "error": ...}`` on stdout.

    Domain errors raised anywhere below the root group are converted to
    ``click.ClickException`` first. Unknown commands get fuzzy-matched
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

    def invoke(self, ctx):  # type: ignore[override]
        try:
            return super().invoke(ctx)
        except (click.exceptions.Exit, click.Abort):
            # Both subclass RuntimeError.
            raise
        except _DOMAIN_ERRORS as e:
            log.debug("Command failed", exc_info=True)
            raise click.ClickException(str(e)) from e

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


def _emit(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def _workspace(ctx: click.Context) -> Workspace:
    obj = ctx.ensure_object(dict)
    if obj.get("workspace") is None:
        obj["workspace"] = open_workspace(obj["root"])
    return obj["workspace"]


def _read_content(source: str | None) -> str:
    if source in (None, "-"):
        return sys.stdin.read()
    try:
        return Path(source).read_text(encoding="utf-8")
    except OSError as e:
        raise click.ClickException(f"Cannot read {source}: {e.strerror}") from None


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
@click.option(
    "--root",
    default=".",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    help="Project root (default: current directory).",
)
@click.option("--verbose", "-v", is_flag=True, help="Log debug output to stderr.")
@click.pass_context
def main(ctx: click.Context, root: str, verbose: bool) -> None:
    """Track features, plans and dependent tasks in the beads ledger or local files.

    \b
    Quick start:
      beadflow feature create my-feature         Create a feature
      beadflow plan write my-feature -f plan.md  Store the plan
      beadflow plan approve my-feature           Approve it
      beadflow task sync my-feature              Create tasks from the plan
      beadflow task runnable my-feature          What can run now
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        stream=sys.stderr,
    )
    ctx.ensure_object(dict)["root"] = root


# -- feature --


@main.group()
def feature() -> None:
    """Create and inspect features."""


@feature.command("create")
@click.argument("name")
@click.option("--ticket", default=None, help="External ticket reference.")
@click.option("--priority", "-p", default=3, show_default=True, type=int, help="Priority 1-5.")
@click.pass_context
def feature_create(ctx: click.Context, name: str, ticket: str | None, priority: int) -> None:
    """Create a feature in planning status."""
    _emit(_workspace(ctx).features.create(name, ticket, priority))


@feature.command("list")
@click.pass_context
def feature_list(ctx: click.Context) -> None:
    """List feature names."""
    _emit({"features": _workspace(ctx).features.list()})


@feature.command("show")
@click.argument("name")
@click.pass_context
def feature_show(ctx: click.Context, name: str) -> None:
    """Show a feature with its tasks and plan summary."""
    ws = _workspace(ctx)
    data = ws.features.get(name)
    if data is None:
        raise click.ClickException(f"Feature '{name}' not found")
    _emit({"feature": data, "info": ws.features.get_info(name)})


@feature.command("status")
@click.argument("name")
@click.argument("status", type=click.Choice(sorted(VALID_FEATURE_STATUSES)))
@click.pass_context
def feature_status(ctx: click.Context, name: str, status: str) -> None:
    """Set a feature's status."""
    _emit(_workspace(ctx).features.update_status(name, status))  # type: ignore[arg-type]


@feature.command("complete")
@click.argument("name")
@click.pass_context
def feature_complete(ctx: click.Context, name: str) -> None:
    """Mark a feature completed."""
    _emit(_workspace(ctx).features.complete(name))


@feature.command("active")
@click.pass_context
def feature_active(ctx: click.Context) -> None:
    """Show the first feature that is not completed."""
    _emit({"feature": _workspace(ctx).features.get_active()})


@feature.command("session")
@click.argument("name")
@click.option("--set", "session_id", default=None, help="Session id to record.")
@click.pass_context
def feature_session(ctx: click.Context, name: str, session_id: str | None) -> None:
    """Show or record the session working on a feature."""
    features = _workspace(ctx).features
    if session_id:
        features.set_session(name, session_id)
    _emit({"name": name, "sessionId": features.get_session(name)})


# -- plan --


@main.group()
def plan() -> None:
    """Write, review and approve feature plans."""


@plan.command("write")
@click.argument("feature_name")
@click.option("--file", "-f", "source", default=None, help="Plan file (default: stdin).")
@click.pass_context
def plan_write(ctx: click.Context, feature_name: str, source: str | None) -> None:
    """Store plan.md for a feature."""
    path = _workspace(ctx).plans.write(feature_name, _read_content(source))
    _emit({"ok": True, "path": path})


@plan.command("read")
@click.argument("feature_name")
@click.pass_context
def plan_read(ctx: click.Context, feature_name: str) -> None:
    """Show the plan, its approval status and comments."""
    result = _workspace(ctx).plans.read(feature_name)
    if result is None:
        raise click.ClickException(f"No plan.md found for feature '{feature_name}'")
    _emit(result)


@plan.command("approve")
@click.argument("feature_name")
@click.option("--session", "session_id", default=None, help="Approving session id.")
@click.pass_context
def plan_approve(ctx: click.Context, feature_name: str, session_id: str | None) -> None:
    """Approve the current plan content."""
    plan_hash = _workspace(ctx).plans.approve(feature_name, session_id)
    _emit({"ok": True, "hash": plan_hash})


@plan.command("revoke")
@click.argument("feature_name")
@click.pass_context
def plan_revoke(ctx: click.Context, feature_name: str) -> None:
    """Revoke plan approval."""
    _workspace(ctx).plans.revoke_approval(feature_name)
    _emit({"ok": True})


@plan.command("comment")
@click.argument("feature_name")
@click.option("--line", type=int, required=True, help="Plan line the comment refers to.")
@click.option("--body", required=True)
@click.option("--author", default="reviewer", show_default=True)
@click.pass_context
def plan_comment(ctx: click.Context, feature_name: str, line: int, body: str, author: str) -> None:
    """Add a review comment to the plan."""
    _emit(_workspace(ctx).plans.add_comment(feature_name, line, body, author))


# -- task --


@main.group()
def task() -> None:
    """Sync, update and schedule tasks."""


@task.command("sync")
@click.argument("feature_name")
@click.pass_context
def task_sync(ctx: click.Context, feature_name: str) -> None:
    """Create and remove tasks to match plan.md."""
    _emit(_workspace(ctx).tasks.sync(feature_name))


@task.command("create")
@click.argument("feature_name")
@click.argument("name")
@click.option("--order", type=int, default=None, help="Folder number (default: next free).")
@click.option("--priority", "-p", default=3, show_default=True, type=int, help="Priority 1-5.")
@click.pass_context
def task_create(
    ctx: click.Context, feature_name: str, name: str, order: int | None, priority: int
) -> None:
    """Create a manual task."""
    folder = _workspace(ctx).tasks.create(feature_name, name, order, priority)
    _emit({"ok": True, "folder": folder})


@task.command("list")
@click.argument("feature_name")
@click.pass_context
def task_list(ctx: click.Context, feature_name: str) -> None:
    """List tasks in folder order."""
    _emit({"tasks": _workspace(ctx).tasks.list(feature_name)})


@task.command("show")
@click.argument("feature_name")
@click.argument("folder")
@click.pass_context
def task_show(ctx: click.Context, feature_name: str, folder: str) -> None:
    """Show the full task status record."""
    status = _workspace(ctx).tasks.get_raw_status(feature_name, folder)
    if status is None:
        raise click.ClickException(f"Task '{folder}' not found")
    _emit(status)


@task.command("update")
@click.argument("feature_name")
@click.argument("folder")
@click.option("--status", type=click.Choice(sorted(VALID_TASK_STATUSES)), default=None)
@click.option("--summary", default=None)
@click.option("--base-commit", default=None)
@click.option("--blocker", default=None, help="Blocker reason.")
@click.option("--blocker-detail", default=None)
@click.pass_context
def task_update(
    ctx: click.Context,
    feature_name: str,
    folder: str,
    status: str | None,
    summary: str | None,
    base_commit: str | None,
    blocker: str | None,
    blocker_detail: str | None,
) -> None:
    """Update completion-owned task fields."""
    updates: dict[str, Any] = {}
    if status is not None:
        updates["status"] = status
    if summary is not None:
        updates["summary"] = summary
    if base_commit is not None:
        updates["baseCommit"] = base_commit
    if blocker is not None:
        updates["blocker"] = {"reason": blocker}
        if blocker_detail:
            updates["blocker"]["detail"] = blocker_detail
    if not updates:
        raise click.UsageError("Nothing to update.")
    _emit(_workspace(ctx).tasks.update(feature_name, folder, updates))


@task.command("heartbeat")
@click.argument("feature_name")
@click.argument("folder")
@click.option("--session-id", default=None)
@click.option("--worker-id", default=None)
@click.option("--agent", default=None)
@click.option("--idempotency-key", default=None)
@click.pass_context
def task_heartbeat(
    ctx: click.Context,
    feature_name: str,
    folder: str,
    session_id: str | None,
    worker_id: str | None,
    agent: str | None,
    idempotency_key: str | None,
) -> None:
    """Record worker liveness without touching completion fields."""
    session: dict[str, Any] = {"lastHeartbeatAt": now_iso()}
    for key, value in (("sessionId", session_id), ("workerId", worker_id), ("agent", agent)):
        if value is not None:
            session[key] = value
    patch: dict[str, Any] = {"workerSession": session}
    if idempotency_key is not None:
        patch["idempotencyKey"] = idempotency_key
    _emit(_workspace(ctx).tasks.patch_background_fields(feature_name, folder, patch))  # type: ignore[arg-type]


@task.command("runnable")
@click.argument("feature_name")
@click.pass_context
def task_runnable(ctx: click.Context, feature_name: str) -> None:
    """Partition tasks into runnable, blocked, completed and in progress."""
    _emit(_workspace(ctx).tasks.get_runnable_tasks(feature_name))


@task.command("artifact")
@click.argument("feature_name")
@click.argument("folder")
@click.argument("kind", type=click.Choice(TASK_ARTIFACT_KINDS))
@click.option("--file", "-f", "source", default=None, help="Write from file ('-' for stdin).")
@click.pass_context
def task_artifact(
    ctx: click.Context, feature_name: str, folder: str, kind: str, source: str | None
) -> None:
    """Read a task artifact, or write it with --file."""
    tasks = _workspace(ctx).tasks
    if source is None:
        _emit({"kind": kind, "content": tasks.read_task_artifact(feature_name, folder, kind)})  # type: ignore[arg-type]
        return
    content = _read_content(source)
    if kind == "spec":
        location = tasks.write_spec(feature_name, folder, content)
    elif kind == "worker_prompt":
        location = tasks.write_worker_prompt(feature_name, folder, content)
    else:
        location = tasks.write_report(feature_name, folder, content)
    _emit({"ok": True, "kind": kind, "location": location})


# -- config --


@main.group("config")
def config_group() -> None:
    """Show or scaffold configuration."""


@config_group.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Show the effective configuration."""
    root = ctx.ensure_object(dict)["root"]
    _emit(
        {
            "config": config_as_dict(load_config(root)),
            "global_path": str(global_config_path()),
            "project_path": str(project_config_path(root)),
        }
    )


@config_group.command("init")
@click.option("--global", "global_scope", is_flag=True, help="Write the global config.")
@click.option("--beads-mode", type=click.Choice(["on", "off"]), default=None)
@click.pass_context
def config_init(ctx: click.Context, global_scope: bool, beads_mode: str | None) -> None:
    """Write a config.toml with the effective settings."""
    root = ctx.ensure_object(dict)["root"]
    target = global_config_path() if global_scope else project_config_path(root)
    if target.exists():
        raise click.ClickException(f"config.toml already exists at '{target}'.")
    config = load_config(root)
    if beads_mode:
        config.beads_mode = beads_mode  # type: ignore[assignment]
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(render_config(config))
    _emit({"ok": True, "path": str(target)})


# -- doctor --


@main.command()
@click.pass_context
def doctor(ctx: click.Context) -> None:
    """Check that the ledger CLI is installed when beads mode is on."""
    root = ctx.ensure_object(dict)["root"]
    config = load_config(root)
    report: dict[str, Any] = {"beads_mode": config.beads_mode, "ok": True}
    if config.beads_mode == "on":
        try:
            report["br_version"] = BeadGateway(root).check_available()
        except BeadGatewayError as e:
            report.update(ok=False, error=str(e))
    _emit(report)
    if not report["ok"]:
        ctx.exit(1)
