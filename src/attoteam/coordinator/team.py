"""Team state: config, worker status/identity/inbox and the event log."""

from __future__ import annotations

import contextlib
import logging
import os
import re
import uuid
from collections.abc import AsyncIterator, Callable
from datetime import UTC
from pathlib import Path
from typing import Any, TypeVar

from attoteam.config.schema import TeamYamlConfig
from attoteam.errors import InvalidNameError, TeamNotFoundError, ValidationError
from attoteam.protocol.locks import exclusion_lock
from attoteam.protocol.models import (
    TEAM_EVENT_TYPES,
    ShutdownAck,
    TeamConfig,
    TeamEvent,
    WorkerHeartbeat,
    WorkerInfo,
    WorkerStatus,
    default_team_layout,
    parse_iso,
    utc_now_iso,
    validate_team_name,
    validate_worker_name,
    worker_name_for,
)
from attoteam.protocol.store import StateStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

ABSOLUTE_MAX_WORKERS = 20
DEFAULT_STATE_DIR = ".attoteam/state"


def sanitize_team_name(name: str) -> str:
    """Normalise a free-form name into a team slug (max 30 chars)."""
    slug = re.sub(r"[^a-z0-9]+", "-", str(name).lower()).strip("-")[:30].rstrip("-")
    if not slug:
        raise InvalidNameError("team_name", str(name))
    return slug


def resolve_state_root(
    working_directory: str | Path,
    team_name: str | None = None,
    *,
    state_dir: str = DEFAULT_STATE_DIR,
    override: str | None = None,
) -> Path:
    """Find the state root for *team_name* from any nested working directory.

    Walks from *working_directory* up through its parents and returns the
    first ``<ancestor>/<state_dir>`` holding the team.  Falls back to
    ``<working_directory>/<state_dir>`` when nothing is found.
    """
    if override:
        return Path(override)
    start = Path(working_directory).resolve()
    for candidate in (start, *start.parents):
        root = candidate / state_dir
        marker = root / "team" / team_name if team_name else root / "team"
        if marker.is_dir():
            return root
    return start / state_dir


class TeamState:
    """Paths and document access for one team's state tree."""

    def __init__(
        self,
        store: StateStore,
        state_root: Path,
        team_name: str,
        config: TeamYamlConfig | None = None,
        *,
        working_directory: str | Path | None = None,
    ) -> None:
        self.store = store
        self.working_directory = Path(working_directory) if working_directory else None
        self.state_root = Path(state_root)
        self.team_name = validate_team_name(team_name)
        self.settings = config or TeamYamlConfig()
        self.layout = default_team_layout(self.state_root / "team" / self.team_name)

    # ── Paths ─────────────────────────────────────────────────────────

    @property
    def team_dir(self) -> Path:
        return self.layout["root"]

    @property
    def config_path(self) -> Path:
        return self.layout["config"]

    def worker_dir(self, worker: str) -> Path:
        return self.layout["workers"] / validate_worker_name(worker)

    def status_path(self, worker: str) -> Path:
        return self.worker_dir(worker) / "status.json"

    def identity_path(self, worker: str) -> Path:
        return self.worker_dir(worker) / "identity.json"

    def inbox_path(self, worker: str) -> Path:
        return self.worker_dir(worker) / "inbox.md"

    def heartbeat_path(self, worker: str) -> Path:
        return self.worker_dir(worker) / "heartbeat.json"

    def shutdown_request_path(self, worker: str) -> Path:
        return self.worker_dir(worker) / "shutdown-request.json"

    def shutdown_ack_path(self, worker: str) -> Path:
        return self.worker_dir(worker) / "shutdown-ack.json"

    def display_dir(self, cwd: str | Path | None = None) -> str:
        """Team directory as a worker started in *cwd* should refer to it.

        Relative to *cwd* (or the team's working directory) when the state
        tree lives below it, absolute otherwise.
        """
        base = Path(cwd or self.working_directory or os.getcwd()).resolve()
        team_dir = self.team_dir.resolve()
        try:
            return str(team_dir.relative_to(base))
        except ValueError:
            return str(team_dir)

    def task_path(self, task_id: str) -> Path:
        return self.layout["tasks"] / f"task-{task_id}.json"

    def claim_lock_path(self, task_id: str) -> Path:
        return self.layout["claims"] / f"task-{task_id}.lock"

    def mailbox_path(self, worker: str) -> Path:
        return self.layout["mailbox"] / f"{validate_worker_name(worker)}.json"

    def mailbox_lock_path(self, worker: str) -> Path:
        return self.layout["mailbox"] / f".lock-{validate_worker_name(worker)}"

    # ── Config ────────────────────────────────────────────────────────

    async def read_config(self) -> TeamConfig | None:
        raw = await self.store.read(self.config_path)
        if not isinstance(raw, dict):
            return None
        return TeamConfig.from_dict(raw)

    async def require_config(self) -> TeamConfig:
        cfg = await self.read_config()
        if cfg is None:
            raise TeamNotFoundError(self.team_name)
        return cfg

    async def save_config(self, cfg: TeamConfig) -> None:
        await self.store.write_atomic(self.config_path, cfg.to_dict())

    @contextlib.asynccontextmanager
    async def config_guard(self) -> AsyncIterator[None]:
        """Hold the team's config lock, in this process and across processes."""
        settings = self.settings.state
        async with self.store.serialized(self.config_path):
            async with exclusion_lock(
                self.store,
                self.layout["config_lock"],
                poll_interval=0.01,
                timeout=settings.config_lock_timeout_ms / 1000,
                stale_after=settings.config_lock_stale_seconds,
            ):
                yield

    async def update_config(self, mutate: Callable[[TeamConfig], T]) -> T:
        """Apply *mutate* to the config under the config lock and persist it."""
        async with self.config_guard():
            cfg = await self.require_config()
            result = mutate(cfg)
            await self.save_config(cfg)
            return result

    # ── Workers ───────────────────────────────────────────────────────

    async def read_worker_status(self, worker: str) -> WorkerStatus:
        raw = await self.store.read(self.status_path(worker))
        if not isinstance(raw, dict):
            return WorkerStatus()
        return WorkerStatus.from_dict(raw)

    async def write_worker_status(self, worker: str, status: WorkerStatus) -> None:
        await self.store.write_atomic(self.status_path(worker), status.to_dict())

    async def set_worker_state(self, worker: str, state: str, *, reason: str | None = None) -> None:
        current = await self.read_worker_status(worker)
        current.state = state  # type: ignore[assignment]
        current.reason = reason
        current.updated_at = utc_now_iso()
        await self.write_worker_status(worker, current)

    async def clear_worker_status(self, worker: str) -> None:
        await self.store.remove(self.status_path(worker))

    async def write_worker_identity(self, worker: WorkerInfo) -> None:
        identity = worker.to_dict() | {
            "team_name": self.team_name,
            "team_state_root": str(self.state_root),
        }
        await self.store.write_atomic(self.identity_path(worker.name), identity)

    async def write_worker_inbox(self, worker: str, content: str) -> None:
        await self.store.write_text(self.inbox_path(worker), content)

    async def read_worker_inbox(self, worker: str) -> str | None:
        return await self.store.read_text(self.inbox_path(worker))

    async def update_worker_heartbeat(self, worker: str, heartbeat: WorkerHeartbeat) -> None:
        await self.store.write_atomic(self.heartbeat_path(worker), heartbeat.to_dict())

    async def read_worker_heartbeat(self, worker: str) -> WorkerHeartbeat | None:
        raw = await self.store.read(self.heartbeat_path(worker))
        if not isinstance(raw, dict):
            return None
        return WorkerHeartbeat.from_dict(raw)

    # ── Shutdown handshake ────────────────────────────────────────────

    async def write_shutdown_request(self, worker: str, requested_by: str) -> str:
        """Ask *worker* to shut down; returns the request timestamp."""
        requested_at = utc_now_iso()
        await self.store.write_atomic(self.shutdown_request_path(worker), {
            "requested_at": requested_at,
            "requested_by": requested_by,
        })
        return requested_at

    async def read_shutdown_ack(self, worker: str, *, since: str | None = None) -> ShutdownAck | None:
        """The worker's shutdown answer, ignoring acks older than *since*."""
        raw = await self.store.read(self.shutdown_ack_path(worker))
        if not isinstance(raw, dict):
            return None
        ack = ShutdownAck.from_dict(raw)
        if ack is None:
            return None
        requested = parse_iso(since)
        if requested is not None:
            answered = parse_iso(ack.updated_at)
            if answered is None:
                return None
            if answered.tzinfo is None:
                answered = answered.replace(tzinfo=UTC)
            if answered < requested:
                return None
        return ack

    # ── Teardown ──────────────────────────────────────────────────────

    async def cleanup(self) -> None:
        """Delete the team's whole state directory."""
        await self.store.remove(self.team_dir)
        logger.info("Removed state for team %s", self.team_name)

    # ── Events ────────────────────────────────────────────────────────

    async def append_event(
        self,
        event_type: str,
        worker: str,
        *,
        task_id: str | None = None,
        reason: str | None = None,
    ) -> TeamEvent:
        if event_type not in TEAM_EVENT_TYPES:
            raise ValidationError(f"Unknown team event type: {event_type}", code="invalid_event_type")
        event = TeamEvent(
            event_id=uuid.uuid4().hex,
            team=self.team_name,
            type=event_type,
            worker=worker,
            task_id=task_id,
            reason=reason,
        )
        await self.store.append_line(self.layout["events"], event.to_dict())
        return event

    async def read_events(self, *, event_type: str | None = None) -> list[dict[str, Any]]:
        events = await self.store.read_lines(self.layout["events"])
        if event_type:
            events = [e for e in events if e.get("type") == event_type]
        return events


async def init_team(
    store: StateStore,
    state_root: Path,
    team_name: str,
    *,
    task: str,
    worker_count: int,
    agent_type: str | None = None,
    max_workers: int | None = None,
    leader_pane_id: str | None = None,
    hud_pane_id: str | None = None,
    settings: TeamYamlConfig | None = None,
) -> TeamState:
    """Create a team's config and worker status files.

    Workers ``worker-1`` .. ``worker-K`` are registered as idle and
    ``next_worker_index`` starts at ``K + 1``.
    """
    settings = settings or TeamYamlConfig()
    team = TeamState(store, state_root, sanitize_team_name(team_name), settings)
    limit = settings.team.max_workers if max_workers is None else max_workers
    if not isinstance(worker_count, int) or isinstance(worker_count, bool) or worker_count < 1:
        raise ValidationError(
            f"worker_count must be a positive integer (got {worker_count})", code="invalid_count",
        )
    if limit > ABSOLUTE_MAX_WORKERS:
        raise ValidationError(
            f"max_workers {limit} exceeds the absolute limit of {ABSOLUTE_MAX_WORKERS}",
            code="invalid_max_workers",
        )
    if worker_count > limit:
        raise ValidationError(
            f"worker_count {worker_count} exceeds max_workers {limit}", code="invalid_count",
        )

    workers = [
        WorkerInfo(
            name=worker_name_for(i),
            index=i,
            role=agent_type or settings.team.agent_type,
        )
        for i in range(1, worker_count + 1)
    ]
    cfg = TeamConfig(
        name=team.team_name,
        task=task,
        agent_type=agent_type or settings.team.agent_type,
        tmux_session=f"{settings.team.session_prefix}-{team.team_name}",
        workers=workers,
        worker_count=worker_count,
        max_workers=limit,
        next_worker_index=worker_count + 1,
        leader_pane_id=leader_pane_id,
        hud_pane_id=hud_pane_id,
    )
    await team.save_config(cfg)
    for worker in workers:
        await team.write_worker_identity(worker)
        await team.write_worker_status(worker.name, WorkerStatus(state="idle"))
    logger.info("Initialized team %s with %d workers", team.team_name, worker_count)
    return team
