"""Team operations exposed to leaders, workers and tool servers.

Each operation resolves the team's state root from a working directory,
runs the matching coordinator call and returns a plain dict:
``{"ok": True, ...}`` on success or ``{"ok": False, "error": <code>, ...}``
for validation and conflict failures.  State store failures propagate.
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Awaitable, Callable, Mapping
from pathlib import Path
from typing import Any, ParamSpec

from attoteam.adapters.panes import PaneSpawner
from attoteam.adapters.tmux import TmuxPaneSpawner
from attoteam.config.loader import load_config
from attoteam.config.schema import TeamYamlConfig
from attoteam.coordinator.dispatch import (
    HOOK_PREFERRED,
    DispatchCoordinator,
    DispatchRequestStore,
    Notifier,
    hook_notifier,
    null_notifier,
)
from attoteam.coordinator.mailbox import Mailbox
from attoteam.coordinator.scaling import WorkerScaler
from attoteam.coordinator.tasks import TaskRegistry
from attoteam.coordinator.team import TeamState, init_team, resolve_state_root, sanitize_team_name
from attoteam.errors import ConflictError, LockTimeoutError, ValidationError, WorkerNotFoundError
from attoteam.protocol.models import TASK_STATUSES, WorkerHeartbeat
from attoteam.protocol.store import FileStateStore, StateStore

logger = logging.getLogger(__name__)

P = ParamSpec("P")

Result = dict[str, Any]


def structured(fn: Callable[P, Awaitable[Result]]) -> Callable[P, Awaitable[Result]]:
    """Turn validation/conflict errors into ``{"ok": False}`` results."""

    @functools.wraps(fn)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> Result:
        try:
            return await fn(*args, **kwargs)
        except (ValidationError, ConflictError, LockTimeoutError) as exc:
            logger.debug("%s rejected: %s", fn.__name__, exc)
            return exc.to_result()

    return wrapper


class TeamOps:
    """Entry point for every team operation.

    Args:
        working_directory: Any directory inside the project; the team's
            state root is found by walking up from here.
        store: State store (filesystem by default).
        settings: Loaded config; read from ``.attoteam/team.yaml`` and the
            environment when omitted.
        state_root: Explicit state root, bypassing resolution.
        spawner: Pane spawner used by scaling (tmux by default).
        notifier: Primary notifier for mailbox dispatch.  Defaults to the
            hook queue in hook-preferred mode and to no transport otherwise.
        fallback_notifier: Direct transport used when a hook receipt is late.
    """

    def __init__(
        self,
        working_directory: str | Path = ".",
        *,
        store: StateStore | None = None,
        settings: TeamYamlConfig | None = None,
        state_root: str | Path | None = None,
        spawner: PaneSpawner | None = None,
        notifier: Notifier | None = None,
        fallback_notifier: Notifier | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.working_directory = Path(working_directory)
        self.store = store or FileStateStore()
        self.settings = settings or load_config(self.working_directory, env=env)
        self._state_root = Path(state_root) if state_root else None
        self._spawner = spawner
        if notifier is None:
            notifier = hook_notifier() if self.settings.dispatch.mode == HOOK_PREFERRED else null_notifier()
        self.notifier = notifier
        self.fallback_notifier = fallback_notifier

    # ── Wiring ────────────────────────────────────────────────────────

    def team(self, team_name: str) -> TeamState:
        name = sanitize_team_name(team_name)
        root = self._state_root or resolve_state_root(
            self.working_directory,
            name,
            state_dir=self.settings.state.root_dir,
            override=self.settings.state.team_state_root,
        )
        return TeamState(
            self.store, root, name, self.settings, working_directory=self.working_directory,
        )

    def _dispatch(self, team: TeamState) -> DispatchCoordinator:
        return DispatchCoordinator(
            team, notifier=self.notifier, fallback_notifier=self.fallback_notifier,
        )

    async def _scaler(self, team: TeamState) -> WorkerScaler:
        spawner = self._spawner
        if spawner is None:
            cfg = await team.require_config()
            spawner = TmuxPaneSpawner(leader_pane_id=cfg.leader_pane_id)
        return WorkerScaler(team, spawner, cwd=str(self.working_directory.resolve()))

    # ── Team ──────────────────────────────────────────────────────────

    @structured
    async def init_team(
        self,
        team_name: str,
        *,
        task: str,
        worker_count: int,
        agent_type: str | None = None,
        max_workers: int | None = None,
        leader_pane_id: str | None = None,
        hud_pane_id: str | None = None,
    ) -> Result:
        name = sanitize_team_name(team_name)
        root = self._state_root or (
            Path(self.settings.state.team_state_root)
            if self.settings.state.team_state_root
            else self.working_directory.resolve() / self.settings.state.root_dir
        )
        team = await init_team(
            self.store,
            root,
            name,
            task=task,
            worker_count=worker_count,
            agent_type=agent_type,
            max_workers=max_workers,
            leader_pane_id=leader_pane_id,
            hud_pane_id=hud_pane_id,
            settings=self.settings,
        )
        cfg = await team.require_config()
        return {"ok": True, "team": cfg.to_dict(), "state_root": str(root)}

    @structured
    async def team_summary(self, team_name: str) -> Result:
        team = self.team(team_name)
        cfg = await team.require_config()
        tasks = await TaskRegistry(team).list_tasks()
        counts = {status: 0 for status in TASK_STATUSES}
        for task in tasks:
            counts[task.status] += 1
        workers = []
        for worker in cfg.workers:
            status = await team.read_worker_status(worker.name)
            heartbeat = await team.read_worker_heartbeat(worker.name)
            workers.append({
                "name": worker.name,
                "index": worker.index,
                "state": status.state,
                "heartbeat": heartbeat.to_dict() if heartbeat else None,
            })
        return {
            "ok": True,
            "team": team.team_name,
            "worker_count": len(cfg.workers),
            "next_worker_index": cfg.next_worker_index,
            "tasks": {"total": len(tasks), **counts},
            "workers": workers,
        }

    # ── Tasks ─────────────────────────────────────────────────────────

    @structured
    async def create_task(
        self,
        team_name: str,
        subject: str,
        description: str,
        *,
        owner: str | None = None,
        blocked_by: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Result:
        team = self.team(team_name)
        await team.require_config()
        task = await TaskRegistry(team).create_task(
            subject, description, owner=owner, blocked_by=blocked_by, metadata=metadata,
        )
        return {"ok": True, "task": task.to_dict()}

    @structured
    async def read_task(self, team_name: str, task_id: str) -> Result:
        task = await TaskRegistry(self.team(team_name)).read_task(task_id)
        if task is None:
            return {"ok": False, "error": "task_not_found", "task_id": task_id}
        return {"ok": True, "task": task.to_dict()}

    @structured
    async def list_tasks(
        self, team_name: str, *, status: str | None = None, owner: str | None = None,
    ) -> Result:
        tasks = await TaskRegistry(self.team(team_name)).list_tasks(status=status, owner=owner)
        return {"ok": True, "count": len(tasks), "tasks": [t.to_dict() for t in tasks]}

    @structured
    async def claim_task(
        self, team_name: str, task_id: str, worker: str, *, expected_version: int | None = None,
    ) -> Result:
        claimed = await TaskRegistry(self.team(team_name)).claim_task(
            task_id, worker, expected_version=expected_version,
        )
        return {"ok": True, "task": claimed.task.to_dict(), "claim_token": claimed.claim_token}

    @structured
    async def transition_task_status(
        self,
        team_name: str,
        task_id: str,
        from_status: str,
        to_status: str,
        claim_token: str,
        *,
        result: str | None = None,
        error: str | None = None,
    ) -> Result:
        task = await TaskRegistry(self.team(team_name)).transition_task_status(
            task_id, from_status, to_status, claim_token, result=result, error=error,
        )
        return {"ok": True, "task": task.to_dict()}

    @structured
    async def release_task_claim(
        self, team_name: str, task_id: str, claim_token: str, worker: str,
    ) -> Result:
        task = await TaskRegistry(self.team(team_name)).release_task_claim(
            task_id, claim_token, worker,
        )
        return {"ok": True, "task": task.to_dict()}

    @structured
    async def update_task(self, team_name: str, task_id: str, fields: dict[str, Any]) -> Result:
        task = await TaskRegistry(self.team(team_name)).update_task(task_id, fields)
        return {"ok": True, "task": task.to_dict()}

    # ── Mailbox ───────────────────────────────────────────────────────

    @structured
    async def send_message(
        self, team_name: str, from_worker: str, to_worker: str, body: str,
    ) -> Result:
        team = self.team(team_name)
        outcome = await self._dispatch(team).queue_direct_message(from_worker, to_worker, body)
        message = await Mailbox(team).find_message(to_worker, outcome.message_id or "")
        return {
            "ok": True,
            "message": message.to_dict() if message else None,
            "dispatch": outcome.to_dict(),
        }

    @structured
    async def broadcast(self, team_name: str, from_worker: str, body: str) -> Result:
        team = self.team(team_name)
        outcomes = await self._dispatch(team).queue_broadcast_message(from_worker, body)
        mailbox = Mailbox(team)
        messages = []
        for outcome in outcomes:
            message = await mailbox.find_message(outcome.to_worker or "", outcome.message_id or "")
            if message is not None:
                messages.append(message.to_dict())
        return {
            "ok": True,
            "count": len(messages),
            "messages": messages,
            "dispatch": [o.to_dict() for o in outcomes],
        }

    @structured
    async def mailbox_list(
        self, team_name: str, worker: str, *, include_delivered: bool = False,
    ) -> Result:
        messages = await Mailbox(self.team(team_name)).list_mailbox(
            worker, include_delivered=include_delivered,
        )
        return {"ok": True, "worker": worker, "count": len(messages),
                "messages": [m.to_dict() for m in messages]}

    @structured
    async def mailbox_mark_notified(self, team_name: str, worker: str, message_id: str) -> Result:
        found = await Mailbox(self.team(team_name)).mark_notified(worker, message_id)
        if not found:
            return {"ok": False, "error": "message_not_found", "message_id": message_id}
        return {"ok": True, "worker": worker, "message_id": message_id}

    @structured
    async def mailbox_mark_delivered(self, team_name: str, worker: str, message_id: str) -> Result:
        found = await Mailbox(self.team(team_name)).mark_delivered(worker, message_id)
        if not found:
            return {"ok": False, "error": "message_not_found", "message_id": message_id}
        return {"ok": True, "worker": worker, "message_id": message_id}

    @structured
    async def dispatch_list(
        self, team_name: str, *, status: str | None = None, to_worker: str | None = None,
    ) -> Result:
        requests = await DispatchRequestStore(self.team(team_name)).list(
            status=status, to_worker=to_worker,
        )
        return {"ok": True, "count": len(requests), "requests": [r.to_dict() for r in requests]}

    # ── Workers ───────────────────────────────────────────────────────

    async def _require_worker(self, team: TeamState, worker: str) -> None:
        cfg = await team.require_config()
        if cfg.worker(worker) is None:
            raise WorkerNotFoundError(worker, team.team_name)

    @structured
    async def update_worker_heartbeat(
        self, team_name: str, worker: str, *, turn_count: int | None = None, pid: int | None = None,
    ) -> Result:
        """Record that *worker* finished a turn; the turn count advances by one by default."""
        team = self.team(team_name)
        await self._require_worker(team, worker)
        previous = await team.read_worker_heartbeat(worker)
        if turn_count is None:
            turn_count = (previous.turn_count if previous else 0) + 1
        if pid is None and previous is not None:
            pid = previous.pid
        heartbeat = WorkerHeartbeat(pid=pid, turn_count=turn_count)
        await team.update_worker_heartbeat(worker, heartbeat)
        return {"ok": True, "worker": worker, "heartbeat": heartbeat.to_dict()}

    @structured
    async def read_worker_heartbeat(self, team_name: str, worker: str) -> Result:
        team = self.team(team_name)
        await self._require_worker(team, worker)
        heartbeat = await team.read_worker_heartbeat(worker)
        return {"ok": True, "worker": worker, "heartbeat": heartbeat.to_dict() if heartbeat else None}

    @structured
    async def cleanup_team(self, team_name: str) -> Result:
        """Remove the team's state directory."""
        team = self.team(team_name)
        await team.require_config()
        await team.cleanup()
        return {"ok": True, "team": team.team_name, "removed": str(team.team_dir)}

    # ── Scaling ───────────────────────────────────────────────────────

    @structured
    async def scale_up(
        self,
        team_name: str,
        count: int,
        *,
        role: str | None = None,
        tasks: list[dict[str, Any]] | None = None,
    ) -> Result:
        team = self.team(team_name)
        scaler = await self._scaler(team)
        return (await scaler.scale_up(count, role=role, tasks=tasks)).to_dict()

    @structured
    async def scale_down(
        self,
        team_name: str,
        *,
        worker_names: list[str] | None = None,
        count: int | None = None,
        force: bool = False,
        drain_timeout_ms: int | None = None,
    ) -> Result:
        team = self.team(team_name)
        scaler = await self._scaler(team)
        result = await scaler.scale_down(
            worker_names=worker_names, count=count, force=force, drain_timeout_ms=drain_timeout_ms,
        )
        return result.to_dict()
