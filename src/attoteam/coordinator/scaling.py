"""Dynamic worker scaling for a live team.

``scale_up`` adds workers with fresh, never-reused indices and bootstraps
each one through the dispatch coordinator.  ``scale_down`` drains and
removes workers, keeping at least one and never touching the leader or
HUD panes.  Both run under the team's scaling lock and are disabled unless
scaling is switched on explicitly.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from attoteam.adapters.panes import PaneHandle, PaneSpawner, pane_notifier
from attoteam.config.loader import ENV_SCALING_ENABLED, is_truthy_flag
from attoteam.coordinator.bootstrap import (
    generate_initial_inbox,
    generate_shutdown_inbox,
    generate_trigger_message,
)
from attoteam.coordinator.dispatch import (
    HOOK_PREFERRED,
    DispatchCoordinator,
    Transport,
    hook_notifier,
)
from attoteam.coordinator.tasks import TaskRegistry
from attoteam.coordinator.team import TeamState
from attoteam.errors import ScalingDisabledError, ValidationError, WorkerNotFoundError
from attoteam.protocol.locks import exclusion_lock
from attoteam.protocol.models import (
    LEADER_NAME,
    ShutdownAck,
    TeamConfig,
    WorkerInfo,
    WorkerStatus,
    validate_worker_name,
    worker_name_for,
)

logger = logging.getLogger(__name__)

DRAINED_STATES = frozenset({"idle", "done", "draining"})
IDLE_STATES = frozenset({"idle", "done", "unknown"})


def is_scaling_enabled(env: Mapping[str, str] | None = None) -> bool:
    env = os.environ if env is None else env
    return is_truthy_flag(env.get(ENV_SCALING_ENABLED))


@dataclass(slots=True)
class ScaleUpResult:
    ok: bool
    added_workers: list[WorkerInfo] = field(default_factory=list)
    new_worker_count: int = 0
    next_worker_index: int = 0
    warnings: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "ok": self.ok,
            "added_workers": [w.to_dict() for w in self.added_workers],
            "new_worker_count": self.new_worker_count,
            "next_worker_index": self.next_worker_index,
            "warnings": list(self.warnings),
        }
        if self.error:
            result["error"] = self.error
        return result


@dataclass(slots=True)
class ScaleDownResult:
    ok: bool
    removed_workers: list[str] = field(default_factory=list)
    skipped_workers: list[str] = field(default_factory=list)
    released_tasks: list[str] = field(default_factory=list)
    new_worker_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "removed_workers": list(self.removed_workers),
            "skipped_workers": list(self.skipped_workers),
            "released_tasks": list(self.released_tasks),
            "new_worker_count": self.new_worker_count,
        }


class WorkerScaler:
    """Adds and removes workers of one team."""

    def __init__(
        self,
        team: TeamState,
        spawner: PaneSpawner,
        *,
        dispatch: DispatchCoordinator | None = None,
        registry: TaskRegistry | None = None,
        enabled: bool | None = None,
        cwd: str | None = None,
        worker_env: Mapping[str, str] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.team = team
        self.spawner = spawner
        self.settings = team.settings.scaling
        self.enabled = self.settings.enabled if enabled is None else enabled
        self.registry = registry or TaskRegistry(team)
        self.dispatch = dispatch or DispatchCoordinator(
            team,
            notifier=self._primary_notifier(),
            fallback_notifier=pane_notifier(spawner, Transport.TMUX_SEND_KEYS),
        )
        self.cwd = cwd or os.getcwd()
        self.worker_env = dict(worker_env or {})
        self._sleep = sleep
        self._clock = clock

    def _primary_notifier(self) -> Any:
        mode = self.team.settings.dispatch.mode
        if mode == HOOK_PREFERRED:
            return hook_notifier()
        transport = Transport.PROMPT_STDIN if mode == "prompt_stdin" else Transport.TMUX_SEND_KEYS
        return pane_notifier(self.spawner, transport)

    @contextlib.asynccontextmanager
    async def scaling_lock(self) -> AsyncIterator[str]:
        """Team-wide lock serializing every scaling operation."""
        async with exclusion_lock(
            self.team.store,
            self.team.layout["scaling_lock"],
            owner=f"scaling:{os.getpid()}",
            poll_interval=self.settings.lock_poll_ms / 1000,
            stale_after=self.settings.lock_stale_seconds,
        ) as owner:
            yield owner

    def _ensure_enabled(self) -> None:
        if not self.enabled:
            raise ScalingDisabledError(ENV_SCALING_ENABLED)

    # ------------------------------------------------------------------
    # Scale up
    # ------------------------------------------------------------------

    async def scale_up(
        self,
        count: int,
        *,
        role: str | None = None,
        tasks: list[dict[str, Any]] | None = None,
        launch_args: list[str] | None = None,
    ) -> ScaleUpResult:
        self._ensure_enabled()
        if not isinstance(count, int) or isinstance(count, bool) or count < 1:
            raise ValidationError(
                f"count must be a positive integer (got {count})", code="invalid_count",
            )

        async with self.scaling_lock():
            cfg = await self.team.require_config()
            current = len(cfg.workers)
            if current + count > cfg.max_workers:
                raise ValidationError(
                    f"Cannot add {count} workers: would exceed max_workers "
                    f"({current} + {count} > {cfg.max_workers})",
                    code="max_workers_exceeded",
                )
            worker_role = role or cfg.agent_type
            args = list(launch_args if launch_args is not None else self.settings.launch_args)

            next_index = cfg.next_worker_index
            added: list[WorkerInfo] = []
            spawned: list[tuple[str, PaneHandle]] = []
            warnings: list[str] = []
            failure: str | None = None

            for _ in range(count):
                index = next_index
                next_index += 1
                name = worker_name_for(index)
                env = self.worker_env | {
                    "ATTOTEAM_WORKER": f"{self.team.team_name}/{name}",
                    "ATTOTEAM_TEAM_STATE_ROOT": str(self.team.state_root),
                }
                try:
                    handle = await self.spawner.spawn(self.team.team_name, index, args, self.cwd, env)
                except Exception as exc:  # noqa: BLE001
                    failure = f"spawn_failed:{exc}"
                    logger.warning("Spawning %s failed: %s", name, exc)
                    break
                spawned.append((name, handle))

                worker_tasks = _tasks_for(name, tasks or [])
                worker = WorkerInfo(
                    name=name,
                    index=index,
                    role=worker_role,
                    assigned_tasks=[str(t["id"]) for t in worker_tasks],
                    pid=handle.pid,
                    pane_id=handle.pane_id,
                    working_dir=self.cwd,
                )
                await self.team.write_worker_identity(worker)
                await self.team.write_worker_status(name, WorkerStatus(state="idle"))

                if not await self._wait_ready(handle):
                    warnings.append(f"worker_ready_timeout:{name}")

                team_dir = self.team.display_dir(self.cwd)
                outcome = await self.dispatch.queue_inbox_instruction(
                    name,
                    generate_initial_inbox(
                        name, self.team.team_name, worker_role, worker_tasks, team_dir=team_dir,
                    ),
                    trigger_message=generate_trigger_message(name, self.team.team_name, team_dir=team_dir),
                    worker_index=index,
                    pane_id=handle.pane_id,
                    correlation_key=f"scale_up:{name}",
                    fallback_allowed=True,
                )
                if not outcome.ok:
                    failure = f"scale_up_dispatch_failed:{name}:{outcome.reason}"
                    break
                added.append(worker)

            if failure is not None:
                await self._roll_back(cfg, spawned)
                final_index = next_index

                def _advance(cfg: TeamConfig) -> None:
                    cfg.next_worker_index = max(cfg.next_worker_index, final_index)

                await self.team.update_config(_advance)
                return ScaleUpResult(
                    ok=False,
                    error=failure,
                    new_worker_count=current,
                    next_worker_index=final_index,
                    warnings=warnings,
                )

            final_index = next_index

            def _commit(cfg: TeamConfig) -> int:
                cfg.workers.extend(added)
                cfg.worker_count = len(cfg.workers)
                cfg.next_worker_index = max(cfg.next_worker_index, final_index)
                return cfg.worker_count

            new_count = await self.team.update_config(_commit)
            names = ", ".join(w.name for w in added)
            await self.team.append_event(
                "team_scaled_up", LEADER_NAME,
                reason=f"added {len(added)} worker(s) [{names}], new count={new_count}",
            )
            logger.info("Scaled team %s up by %d to %d", self.team.team_name, len(added), new_count)
            return ScaleUpResult(
                ok=True,
                added_workers=added,
                new_worker_count=new_count,
                next_worker_index=final_index,
                warnings=warnings,
            )

    async def _wait_ready(self, handle: PaneHandle) -> bool:
        if self.settings.skip_ready_wait:
            return True
        try:
            ready = await self.spawner.wait_ready(handle, self.settings.ready_timeout_ms)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Readiness check for pane %s failed: %s", handle.pane_id, exc)
            return False
        if not ready:
            logger.warning(
                "Pane %s not ready after %dms; continuing",
                handle.pane_id, self.settings.ready_timeout_ms,
            )
        return ready

    async def _roll_back(self, cfg: TeamConfig, spawned: list[tuple[str, PaneHandle]]) -> None:
        for name, handle in spawned:
            if not cfg.is_protected_pane(handle.pane_id):
                await self._terminate(handle)
            await self.team.store.remove(self.team.worker_dir(name))

    # ------------------------------------------------------------------
    # Scale down
    # ------------------------------------------------------------------

    async def scale_down(
        self,
        *,
        worker_names: list[str] | None = None,
        count: int | None = None,
        force: bool = False,
        drain_timeout_ms: int | None = None,
    ) -> ScaleDownResult:
        self._ensure_enabled()
        for name in worker_names or []:
            validate_worker_name(name)
        if not worker_names:
            count = 1 if count is None else count
            if not isinstance(count, int) or isinstance(count, bool) or count < 1:
                raise ValidationError(
                    f"count must be a positive integer (got {count})", code="invalid_count",
                )
        timeout_ms = self.settings.drain_timeout_ms if drain_timeout_ms is None else drain_timeout_ms

        async with self.scaling_lock():
            cfg = await self.team.require_config()
            targets = await self._select_targets(cfg, worker_names, count or 1, force)
            if not targets:
                raise ValidationError("No workers selected for removal", code="no_workers_selected")
            if len(cfg.workers) - len(targets) < 1:
                raise ValidationError(
                    "Cannot remove all workers: at least 1 must remain", code="min_workers",
                )

            skipped = [w for w in targets if cfg.is_protected_pane(w.pane_id)]
            for w in skipped:
                logger.warning("Not removing %s: pane %s is the leader or HUD pane", w.name, w.pane_id)
            draining = [w for w in targets if w not in skipped]

            requested: dict[str, str] = {}
            for w in draining:
                await self.team.set_worker_state(w.name, "draining", reason="scale_down requested by leader")
                requested[w.name] = await self.team.write_shutdown_request(w.name, LEADER_NAME)
                await self.team.write_worker_inbox(
                    w.name,
                    generate_shutdown_inbox(
                        self.team.team_name, w.name, team_dir=self.team.display_dir(self.cwd),
                    ),
                )
            if not force:
                await self._wait_for_drain(cfg, draining, timeout_ms, requested)

            removed: list[str] = []
            for w in draining:
                if w.pane_id:
                    handle = PaneHandle(
                        pane_id=w.pane_id, pid=w.pid, worker_index=w.index, session=cfg.tmux_session,
                    )
                    if await self._is_alive(handle):
                        await self._terminate(handle)
                removed.append(w.name)

            released: list[str] = []
            for name in removed:
                released.extend(await self.registry.release_claims_owned_by(name, reason="scale_down"))
                await self.team.clear_worker_status(name)

            removed_set = set(removed)

            def _commit(cfg: TeamConfig) -> int:
                cfg.workers = [w for w in cfg.workers if w.name not in removed_set]
                cfg.worker_count = len(cfg.workers)
                return cfg.worker_count

            new_count = await self.team.update_config(_commit)
            await self.team.append_event(
                "team_scaled_down", LEADER_NAME,
                reason=f"removed {len(removed)} worker(s) [{', '.join(removed)}], new count={new_count}",
            )
            logger.info("Scaled team %s down to %d", self.team.team_name, new_count)
            return ScaleDownResult(
                ok=True,
                removed_workers=removed,
                skipped_workers=[w.name for w in skipped],
                released_tasks=released,
                new_worker_count=new_count,
            )

    async def _select_targets(
        self, cfg: TeamConfig, worker_names: list[str] | None, count: int, force: bool,
    ) -> list[WorkerInfo]:
        if worker_names:
            targets: list[WorkerInfo] = []
            for name in worker_names:
                worker = cfg.worker(name)
                if worker is None:
                    raise WorkerNotFoundError(name, self.team.team_name)
                if worker not in targets:
                    targets.append(worker)
            return targets

        idle: list[WorkerInfo] = []
        for worker in cfg.workers:
            status = await self.team.read_worker_status(worker.name)
            if status.state in IDLE_STATES:
                idle.append(worker)
        if len(idle) < count and not force:
            raise ValidationError(
                f"Not enough idle workers to remove: found {len(idle)}, requested {count}. "
                "Use force=true to remove busy workers.",
                code="not_enough_idle_workers",
            )
        targets = idle[:count]
        if force and len(targets) < count:
            busy = [w for w in cfg.workers if w not in targets]
            targets.extend(busy[: count - len(targets)])
        return targets

    async def _wait_for_drain(
        self,
        cfg: TeamConfig,
        workers: list[WorkerInfo],
        timeout_ms: int,
        requested: dict[str, str] | None = None,
    ) -> None:
        deadline = self._clock() + timeout_ms / 1000
        poll_s = self.settings.drain_poll_ms / 1000
        answered: set[str] = set()
        while True:
            pending: list[str] = []
            for w in workers:
                ack = await self.team.read_shutdown_ack(w.name, since=(requested or {}).get(w.name))
                if ack is not None and w.name not in answered:
                    answered.add(w.name)
                    reason = "accept" if ack.accepted else f"reject:{ack.reason or 'unspecified'}"
                    await self.team.append_event("shutdown_ack", w.name, reason=reason)
                    if not ack.accepted:
                        logger.warning("%s rejected shutdown: %s", w.name, ack.reason)
                if not await self._is_drained(cfg, w, ack):
                    pending.append(w.name)
            if not pending:
                return
            if self._clock() >= deadline:
                logger.warning("Drain timed out for %s; terminating anyway", ", ".join(pending))
                return
            await self._sleep(poll_s)

    async def _is_drained(
        self, cfg: TeamConfig, worker: WorkerInfo, ack: ShutdownAck | None = None,
    ) -> bool:
        if ack is not None and ack.accepted:
            return True
        if ack is None:
            status = await self.team.read_worker_status(worker.name)
            if status.state in DRAINED_STATES:
                return True
        # A rejecting worker holds the drain until its pane exits or time runs out.
        if not worker.pane_id:
            return ack is None
        return not await self._is_alive(
            PaneHandle(pane_id=worker.pane_id, pid=worker.pid, worker_index=worker.index,
                       session=cfg.tmux_session),
        )

    async def _is_alive(self, handle: PaneHandle) -> bool:
        try:
            return await self.spawner.is_alive(handle)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Liveness check for pane %s failed: %s", handle.pane_id, exc)
            return False

    async def _terminate(self, handle: PaneHandle) -> None:
        try:
            await self.spawner.terminate(handle)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Terminating pane %s failed: %s", handle.pane_id, exc)


def _tasks_for(worker_name: str, tasks: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Bootstrap tasks owned by *worker_name*, each given an id."""
    selected: list[dict[str, Any]] = []
    for position, task in enumerate(tasks, start=1):
        if not isinstance(task, dict) or task.get("owner") != worker_name:
            continue
        selected.append({
            "id": str(task.get("id", position)),
            "subject": str(task.get("subject", "")),
            "description": str(task.get("description", "")),
            "status": str(task.get("status", "pending")),
            "blocked_by": list(task.get("blocked_by") or []),
        })
    return selected
