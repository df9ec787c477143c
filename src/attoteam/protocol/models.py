"""Filesystem protocol types for attoteam."""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from attoteam.errors import InvalidNameError

TaskStatus = Literal["pending", "in_progress", "completed", "failed"]
WorkerState = Literal["idle", "working", "draining", "done", "unknown"]
DispatchKind = Literal["inbox", "mailbox"]
DispatchStatus = Literal["pending", "notified", "delivered", "failed"]
TransportPreference = Literal["hook_preferred_with_fallback", "transport_direct", "prompt_stdin"]

TASK_STATUSES: tuple[str, ...] = ("pending", "in_progress", "completed", "failed")
TERMINAL_TASK_STATUSES = frozenset({"completed", "failed"})
WORKER_STATES: tuple[str, ...] = ("idle", "working", "draining", "done", "unknown")
DISPATCH_STATUSES: tuple[str, ...] = ("pending", "notified", "delivered", "failed")
TRANSPORT_PREFERENCES: tuple[str, ...] = (
    "hook_preferred_with_fallback",
    "transport_direct",
    "prompt_stdin",
)

# Only in_progress may move, and only into a terminal state.
TASK_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset(),
    "in_progress": frozenset({"completed", "failed"}),
    "completed": frozenset(),
    "failed": frozenset(),
}

TEAM_EVENT_TYPES = frozenset({
    "task_claimed",
    "task_completed",
    "task_failed",
    "task_released",
    "worker_idle",
    "worker_stopped",
    "message_received",
    "team_scaled_up",
    "team_scaled_down",
    "team_leader_nudge",
    "shutdown_ack",
})

TEAM_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]{0,29}$")
WORKER_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]{0,63}$")
TASK_ID_PATTERN = re.compile(r"^\d{1,20}$")

LEADER_NAME = "leader-fixed"


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def validate_team_name(name: str) -> str:
    if not isinstance(name, str) or not TEAM_NAME_PATTERN.match(name):
        raise InvalidNameError("team_name", str(name))
    return name


def validate_worker_name(name: str) -> str:
    if not isinstance(name, str) or not WORKER_NAME_PATTERN.match(name):
        raise InvalidNameError("worker_name", str(name))
    return name


def validate_task_id(task_id: str) -> str:
    if not isinstance(task_id, str) or not TASK_ID_PATTERN.match(task_id):
        raise InvalidNameError("task_id", str(task_id))
    return task_id


def worker_name_for(index: int) -> str:
    return f"worker-{index}"


# ---------------------------------------------------------------------------
# Team
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class WorkerInfo:
    name: str
    index: int
    role: str = "executor"
    assigned_tasks: list[str] = field(default_factory=list)
    pid: int | None = None
    pane_id: str | None = None
    working_dir: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkerInfo:
        return cls(
            name=str(data.get("name", "")),
            index=int(data.get("index", 0) or 0),
            role=str(data.get("role", "executor") or "executor"),
            assigned_tasks=[str(t) for t in data.get("assigned_tasks", []) or []],
            pid=data.get("pid") if isinstance(data.get("pid"), int) else None,
            pane_id=data.get("pane_id") or None,
            working_dir=data.get("working_dir") or None,
        )


@dataclass(slots=True)
class TeamConfig:
    name: str
    task: str = ""
    agent_type: str = "executor"
    tmux_session: str = ""
    workers: list[WorkerInfo] = field(default_factory=list)
    worker_count: int = 0
    max_workers: int = 6
    next_worker_index: int = 1
    next_task_id: int = 1
    leader_pane_id: str | None = None
    hud_pane_id: str | None = None
    created_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TeamConfig:
        workers = [
            WorkerInfo.from_dict(w) for w in data.get("workers", []) or []
            if isinstance(w, dict)
        ]
        return cls(
            name=str(data.get("name", "")),
            task=str(data.get("task", "") or ""),
            agent_type=str(data.get("agent_type", "executor") or "executor"),
            tmux_session=str(data.get("tmux_session", "") or ""),
            workers=workers,
            worker_count=int(data.get("worker_count", len(workers)) or 0),
            max_workers=int(data.get("max_workers", 6) or 6),
            next_worker_index=_coerce_next_index(data.get("next_worker_index"), workers),
            next_task_id=int(data.get("next_task_id", 1) or 1),
            leader_pane_id=data.get("leader_pane_id") or None,
            hud_pane_id=data.get("hud_pane_id") or None,
            created_at=str(data.get("created_at") or utc_now_iso()),
        )

    def worker(self, name: str) -> WorkerInfo | None:
        for w in self.workers:
            if w.name == name:
                return w
        return None

    def is_protected_pane(self, pane_id: str | None) -> bool:
        """True for the leader and HUD panes, which are never terminated."""
        if not pane_id:
            return False
        return pane_id in {p for p in (self.leader_pane_id, self.hud_pane_id) if p}


def _coerce_next_index(raw: Any, workers: list[WorkerInfo]) -> int:
    # Configs written before the counter existed fall back to max(index)+1.
    floor = max((w.index for w in workers), default=0) + 1
    if isinstance(raw, int) and raw > 0:
        return max(raw, floor)
    return floor


@dataclass(slots=True)
class WorkerStatus:
    state: WorkerState = "unknown"
    current_task_id: str | None = None
    reason: str | None = None
    updated_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkerStatus:
        state = data.get("state")
        return cls(
            state=state if state in WORKER_STATES else "unknown",
            current_task_id=data.get("current_task_id") or None,
            reason=data.get("reason") or None,
            updated_at=str(data.get("updated_at") or utc_now_iso()),
        )


@dataclass(slots=True)
class WorkerHeartbeat:
    """Liveness record a worker refreshes once per turn."""

    pid: int | None = None
    last_turn_at: str = field(default_factory=utc_now_iso)
    turn_count: int = 0
    alive: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkerHeartbeat:
        pid = data.get("pid")
        turns = data.get("turn_count")
        return cls(
            pid=pid if isinstance(pid, int) and not isinstance(pid, bool) else None,
            last_turn_at=str(data.get("last_turn_at") or utc_now_iso()),
            turn_count=turns if isinstance(turns, int) and not isinstance(turns, bool) else 0,
            alive=data.get("alive") is not False,
        )


@dataclass(slots=True)
class ShutdownAck:
    status: Literal["accept", "reject"]
    reason: str | None = None
    updated_at: str = field(default_factory=utc_now_iso)

    @property
    def accepted(self) -> bool:
        return self.status == "accept"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ShutdownAck | None:
        status = data.get("status")
        if status not in ("accept", "reject"):
            return None
        return cls(
            status=status,
            reason=data.get("reason") or None,
            updated_at=str(data.get("updated_at") or ""),
        )


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class TaskClaim:
    owner: str
    token: str
    leased_until: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class Task:
    id: str
    subject: str
    description: str
    status: TaskStatus = "pending"
    owner: str | None = None
    version: int = 1
    claim: TaskClaim | None = None
    blocked_by: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    result: str | None = None
    error: str | None = None
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str | None = None
    completed_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task | None:
        """Parse a stored task, returning ``None`` for malformed documents."""
        if not isinstance(data, dict):
            return None
        task_id = data.get("id")
        status = data.get("status")
        if not isinstance(task_id, str) or not TASK_ID_PATTERN.match(task_id):
            return None
        if status not in TASK_STATUSES:
            return None
        if not isinstance(data.get("subject"), str) or not isinstance(data.get("description"), str):
            return None
        claim_raw = data.get("claim")
        claim = None
        if isinstance(claim_raw, dict) and claim_raw.get("token"):
            claim = TaskClaim(
                owner=str(claim_raw.get("owner", "")),
                token=str(claim_raw["token"]),
                leased_until=str(claim_raw.get("leased_until", "")),
            )
        version = data.get("version")
        metadata = data.get("metadata")
        return cls(
            id=task_id,
            subject=data["subject"],
            description=data["description"],
            status=status,
            owner=data.get("owner") or None,
            version=version if isinstance(version, int) and version > 0 else 1,
            claim=claim,
            blocked_by=[str(b) for b in data.get("blocked_by", []) or []],
            metadata=metadata if isinstance(metadata, dict) else {},
            result=data.get("result"),
            error=data.get("error"),
            created_at=str(data.get("created_at") or utc_now_iso()),
            updated_at=data.get("updated_at"),
            completed_at=data.get("completed_at"),
        )


# ---------------------------------------------------------------------------
# Mailbox
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class MailboxMessage:
    message_id: str
    from_worker: str
    to_worker: str
    body: str
    created_at: str = field(default_factory=utc_now_iso)
    notified_at: str | None = None
    delivered_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MailboxMessage:
        return cls(
            message_id=str(data.get("message_id", "")),
            from_worker=str(data.get("from_worker", "")),
            to_worker=str(data.get("to_worker", "")),
            body=str(data.get("body", "")),
            created_at=str(data.get("created_at") or utc_now_iso()),
            notified_at=data.get("notified_at"),
            delivered_at=data.get("delivered_at"),
        )


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class DispatchRequest:
    request_id: str
    kind: DispatchKind
    team_name: str
    to_worker: str
    trigger_message: str
    worker_index: int | None = None
    pane_id: str | None = None
    message_id: str | None = None
    inbox_correlation_key: str | None = None
    transport_preference: TransportPreference = "hook_preferred_with_fallback"
    fallback_allowed: bool = True
    status: DispatchStatus = "pending"
    attempt_count: int = 0
    last_reason: str | None = None
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)
    notified_at: str | None = None
    delivered_at: str | None = None
    failed_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DispatchRequest | None:
        if not isinstance(data, dict) or not data.get("request_id"):
            return None
        if data.get("kind") not in ("inbox", "mailbox"):
            return None
        status = data.get("status")
        preference = data.get("transport_preference")
        return cls(
            request_id=str(data["request_id"]),
            kind=data["kind"],
            team_name=str(data.get("team_name", "")),
            to_worker=str(data.get("to_worker", "")),
            trigger_message=str(data.get("trigger_message", "")),
            worker_index=data.get("worker_index") if isinstance(data.get("worker_index"), int) else None,
            pane_id=data.get("pane_id") or None,
            message_id=data.get("message_id") or None,
            inbox_correlation_key=data.get("inbox_correlation_key") or None,
            transport_preference=(
                preference if preference in TRANSPORT_PREFERENCES else "hook_preferred_with_fallback"
            ),
            fallback_allowed=data.get("fallback_allowed") is not False,
            status=status if status in DISPATCH_STATUSES else "pending",
            attempt_count=int(data.get("attempt_count", 0) or 0),
            last_reason=data.get("last_reason"),
            created_at=str(data.get("created_at") or utc_now_iso()),
            updated_at=str(data.get("updated_at") or utc_now_iso()),
            notified_at=data.get("notified_at"),
            delivered_at=data.get("delivered_at"),
            failed_at=data.get("failed_at"),
        )


@dataclass(slots=True)
class TeamEvent:
    event_id: str
    team: str
    type: str
    worker: str
    task_id: str | None = None
    reason: str | None = None
    created_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Layout
# ---------------------------------------------------------------------------


def default_team_layout(team_dir: Path) -> dict[str, Path]:
    return {
        "root": team_dir,
        "config": team_dir / "config.json",
        "config_lock": team_dir / ".lock.config",
        "workers": team_dir / "workers",
        "tasks": team_dir / "tasks",
        "claims": team_dir / "claims",
        "mailbox": team_dir / "mailbox",
        "dispatch": team_dir / "dispatch" / "requests.json",
        "dispatch_lock": team_dir / "dispatch" / ".lock",
        "dispatch_log": team_dir / "dispatch" / "log.ndjson",
        "events": team_dir / "events" / "events.ndjson",
        "scaling_lock": team_dir / ".lock.scaling",
    }
