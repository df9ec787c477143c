"""CLI entrypoint for attoteam."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import click

from attoteam.adapters.panes import PaneHandle
from attoteam.adapters.tmux import TmuxPaneSpawner, is_tmux_available
from attoteam.api import TeamOps
from attoteam.config.loader import load_config
from attoteam.coordinator.dispatch import DispatchOutcome, HookDispatchConsumer, Transport
from attoteam.logger import get_logger, setup_logging
from attoteam.protocol.models import DispatchRequest

log = get_logger(__name__)


def _ops(ctx: click.Context) -> TeamOps:
    obj = ctx.ensure_object(dict)
    ops = obj.get("ops")
    if ops is None:
        ops = TeamOps(obj.get("cwd", "."))
        obj["ops"] = ops
    return ops


def _emit(ctx: click.Context, call: Callable[[TeamOps], Awaitable[dict[str, Any]]]) -> None:
    result = asyncio.run(call(_ops(ctx)))
    click.echo(json.dumps(result, indent=2, default=str))
    if not result.get("ok", False):
        ctx.exit(1)


@click.group()
@click.option("--cwd", default=".", type=click.Path(file_okay=False), help="Project working directory.")
@click.option("--debug", is_flag=True, help="Enable debug logging.")
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON lines.")
@click.pass_context
def main(ctx: click.Context, cwd: str, debug: bool, json_logs: bool) -> None:
    """Attoteam filesystem-coordinated worker teams."""
    settings = load_config(cwd)
    setup_logging(
        debug=debug or settings.logging.debug,
        json_output=json_logs or settings.logging.json_output,
    )
    ctx.ensure_object(dict)
    ctx.obj.setdefault("cwd", cwd)


@main.command("init")
@click.argument("team")
@click.option("--task", "task_text", required=True, help="Team objective.")
@click.option("--workers", "worker_count", type=int, required=True)
@click.option("--max-workers", type=int, default=None)
@click.option("--agent-type", default=None)
@click.option("--leader-pane", default=None, help="Pane id of the leader (never terminated).")
@click.option("--hud-pane", default=None, help="Pane id of the HUD (never terminated).")
@click.pass_context
def init_cmd(
    ctx: click.Context,
    team: str,
    task_text: str,
    worker_count: int,
    max_workers: int | None,
    agent_type: str | None,
    leader_pane: str | None,
    hud_pane: str | None,
) -> None:
    """Create a team and its initial workers."""
    _emit(ctx, lambda ops: ops.init_team(
        team,
        task=task_text,
        worker_count=worker_count,
        max_workers=max_workers,
        agent_type=agent_type,
        leader_pane_id=leader_pane,
        hud_pane_id=hud_pane,
    ))


@main.command("summary")
@click.argument("team")
@click.pass_context
def summary_cmd(ctx: click.Context, team: str) -> None:
    """Show task counts and worker states."""
    _emit(ctx, lambda ops: ops.team_summary(team))


@main.command("heartbeat")
@click.argument("team")
@click.argument("worker")
@click.option("--turn-count", type=int, default=None, help="Defaults to the previous count plus one.")
@click.option("--pid", type=int, default=None)
@click.pass_context
def heartbeat_cmd(
    ctx: click.Context, team: str, worker: str, turn_count: int | None, pid: int | None,
) -> None:
    """Record that a worker finished a turn."""
    _emit(ctx, lambda ops: ops.update_worker_heartbeat(team, worker, turn_count=turn_count, pid=pid))


@main.command("cleanup")
@click.argument("team")
@click.confirmation_option(prompt="Delete all state for this team?")
@click.pass_context
def cleanup_cmd(ctx: click.Context, team: str) -> None:
    """Delete a team's state directory."""
    _emit(ctx, lambda ops: ops.cleanup_team(team))


# ── Tasks ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group() -> None:
    """Create, claim and finish tasks."""


@task_group.command("create")
@click.argument("team")
@click.option("--subject", required=True)
@click.option("--description", default="")
@click.option("--owner", default=None)
@click.option("--blocked-by", multiple=True)
@click.pass_context
def task_create(
    ctx: click.Context, team: str, subject: str, description: str,
    owner: str | None, blocked_by: tuple[str, ...],
) -> None:
    _emit(ctx, lambda ops: ops.create_task(
        team, subject, description, owner=owner, blocked_by=list(blocked_by),
    ))


@task_group.command("list")
@click.argument("team")
@click.option("--status", default=None)
@click.option("--owner", default=None)
@click.pass_context
def task_list(ctx: click.Context, team: str, status: str | None, owner: str | None) -> None:
    _emit(ctx, lambda ops: ops.list_tasks(team, status=status, owner=owner))


@task_group.command("read")
@click.argument("team")
@click.argument("task_id")
@click.pass_context
def task_read(ctx: click.Context, team: str, task_id: str) -> None:
    _emit(ctx, lambda ops: ops.read_task(team, task_id))


@task_group.command("claim")
@click.argument("team")
@click.argument("task_id")
@click.option("--worker", required=True)
@click.option("--expected-version", type=int, default=None)
@click.pass_context
def task_claim(
    ctx: click.Context, team: str, task_id: str, worker: str, expected_version: int | None,
) -> None:
    _emit(ctx, lambda ops: ops.claim_task(team, task_id, worker, expected_version=expected_version))


@task_group.command("transition")
@click.argument("team")
@click.argument("task_id")
@click.option("--from", "from_status", required=True)
@click.option("--to", "to_status", required=True)
@click.option("--token", "claim_token", required=True)
@click.option("--result", default=None)
@click.option("--error", default=None)
@click.pass_context
def task_transition(
    ctx: click.Context, team: str, task_id: str, from_status: str, to_status: str,
    claim_token: str, result: str | None, error: str | None,
) -> None:
    _emit(ctx, lambda ops: ops.transition_task_status(
        team, task_id, from_status, to_status, claim_token, result=result, error=error,
    ))


@task_group.command("release")
@click.argument("team")
@click.argument("task_id")
@click.option("--token", "claim_token", required=True)
@click.option("--worker", required=True)
@click.pass_context
def task_release(ctx: click.Context, team: str, task_id: str, claim_token: str, worker: str) -> None:
    _emit(ctx, lambda ops: ops.release_task_claim(team, task_id, claim_token, worker))


@task_group.command("update")
@click.argument("team")
@click.argument("task_id")
@click.option("--set", "assignments", multiple=True, required=True, help="field=value (JSON or text)")
@click.pass_context
def task_update(ctx: click.Context, team: str, task_id: str, assignments: tuple[str, ...]) -> None:
    fields: dict[str, Any] = {}
    for item in assignments:
        key, sep, raw = item.partition("=")
        if not sep:
            raise click.BadParameter(f"expected field=value, got {item!r}", param_hint="--set")
        try:
            fields[key] = json.loads(raw)
        except json.JSONDecodeError:
            fields[key] = raw
    _emit(ctx, lambda ops: ops.update_task(team, task_id, fields))


# ── Mailbox ───────────────────────────────────────────────────────────


@main.command("send")
@click.argument("team")
@click.option("--from", "from_worker", required=True)
@click.option("--to", "to_worker", required=True)
@click.option("--body", required=True)
@click.pass_context
def send_cmd(ctx: click.Context, team: str, from_worker: str, to_worker: str, body: str) -> None:
    """Send a direct message."""
    _emit(ctx, lambda ops: ops.send_message(team, from_worker, to_worker, body))


@main.command("broadcast")
@click.argument("team")
@click.option("--from", "from_worker", required=True)
@click.option("--body", required=True)
@click.pass_context
def broadcast_cmd(ctx: click.Context, team: str, from_worker: str, body: str) -> None:
    """Message every worker except the sender."""
    _emit(ctx, lambda ops: ops.broadcast(team, from_worker, body))


@main.command("mailbox")
@click.argument("team")
@click.argument("worker")
@click.option("--include-delivered", is_flag=True)
@click.option("--mark-notified", "notified_id", default=None, help="Mark a message notified.")
@click.option("--mark-delivered", "delivered_id", default=None, help="Mark a message delivered.")
@click.pass_context
def mailbox_cmd(
    ctx: click.Context, team: str, worker: str, include_delivered: bool,
    notified_id: str | None, delivered_id: str | None,
) -> None:
    """List a worker's mailbox, or mark one of its messages."""
    if notified_id:
        _emit(ctx, lambda ops: ops.mailbox_mark_notified(team, worker, notified_id))
    elif delivered_id:
        _emit(ctx, lambda ops: ops.mailbox_mark_delivered(team, worker, delivered_id))
    else:
        _emit(ctx, lambda ops: ops.mailbox_list(team, worker, include_delivered=include_delivered))


# ── Dispatch ──────────────────────────────────────────────────────────


@main.group("dispatch")
def dispatch_group() -> None:
    """Inspect and drain dispatch requests."""


@dispatch_group.command("list")
@click.argument("team")
@click.option("--status", default=None)
@click.pass_context
def dispatch_list(ctx: click.Context, team: str, status: str | None) -> None:
    _emit(ctx, lambda ops: ops.dispatch_list(team, status=status))


@dispatch_group.command("drain")
@click.argument("team")
@click.option("--max", "max_per_tick", type=int, default=5)
@click.pass_context
def dispatch_drain(ctx: click.Context, team: str, max_per_tick: int) -> None:
    """Deliver pending hook dispatches by typing into worker panes."""
    spawner = TmuxPaneSpawner()

    async def _inject(request: DispatchRequest) -> DispatchOutcome:
        if not request.pane_id:
            return DispatchOutcome(ok=False, transport=Transport.TMUX_SEND_KEYS, reason="pane_unavailable")
        sent = await spawner.send_text(PaneHandle(pane_id=request.pane_id), request.trigger_message)
        return DispatchOutcome(
            ok=sent,
            transport=Transport.TMUX_SEND_KEYS,
            reason="sent" if sent else "send_text_failed",
        )

    async def _drain(ops: TeamOps) -> dict[str, Any]:
        if not is_tmux_available(spawner.binary):
            return {"ok": False, "error": "tmux_unavailable", "message": "tmux binary not found on PATH"}
        team_state = ops.team(team)
        await team_state.require_config()
        summary = await HookDispatchConsumer(team_state).drain(_inject, max_per_tick=max_per_tick)
        log.info(
            "dispatch_drained",
            team=team,
            processed=summary.processed,
            notified=summary.notified,
            failed=summary.failed,
        )
        return {
            "ok": True,
            "processed": summary.processed,
            "notified": summary.notified,
            "failed": summary.failed,
            "retried": summary.retried,
        }

    _emit(ctx, _drain)


# ── Scaling ───────────────────────────────────────────────────────────


@main.command("scale-up")
@click.argument("team")
@click.argument("count", type=int)
@click.option("--role", default=None)
@click.option("--tasks-file", type=click.Path(exists=True, dir_okay=False), default=None,
              help="JSON list of {subject, description, owner} bootstrap tasks.")
@click.pass_context
def scale_up_cmd(
    ctx: click.Context, team: str, count: int, role: str | None, tasks_file: str | None,
) -> None:
    """Add workers to a running team."""
    tasks = json.loads(Path(tasks_file).read_text(encoding="utf-8")) if tasks_file else None
    if tasks is not None and not isinstance(tasks, list):
        raise click.BadParameter("tasks file must hold a JSON list", param_hint="--tasks-file")
    _emit(ctx, lambda ops: ops.scale_up(team, count, role=role, tasks=tasks))


@main.command("scale-down")
@click.argument("team")
@click.option("--worker", "worker_names", multiple=True)
@click.option("--count", type=int, default=None)
@click.option("--force", is_flag=True)
@click.option("--drain-timeout-ms", type=int, default=None)
@click.pass_context
def scale_down_cmd(
    ctx: click.Context, team: str, worker_names: tuple[str, ...], count: int | None,
    force: bool, drain_timeout_ms: int | None,
) -> None:
    """Drain and remove workers."""
    _emit(ctx, lambda ops: ops.scale_down(
        team,
        worker_names=list(worker_names) or None,
        count=count,
        force=force,
        drain_timeout_ms=drain_timeout_ms,
    ))


if __name__ == "__main__":
    main()
