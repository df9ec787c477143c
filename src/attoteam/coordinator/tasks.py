"""Task registry with optimistic claiming and a one-way lifecycle.

Three operations touch a task, each guarded differently:

* ``claim_task`` acquires working rights.  It is checked against the
  stored ``version`` and issues a fresh opaque claim token.
* ``transition_task_status`` finishes a claim.  It is checked against the
  claim token and may only move ``in_progress`` into a terminal state.
* ``update_task`` edits metadata only and never touches lifecycle fields.

Read-check-write cycles for a single task run under that task's claim
lock (a short marker lock under ``claims/``) plus the in-process per-file
queue, so tasks never serialize on a team-wide lock.
"""

from __future__ import annotations

import contextlib
import logging
import uuid
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from attoteam.coordinator.team import TeamState
from attoteam.errors import ConflictError, LifecycleFieldError, ValidationError
from attoteam.protocol.locks import exclusion_lock
from attoteam.protocol.models import (
    TASK_ID_PATTERN,
    TASK_TRANSITIONS,
    Task,
    TaskClaim,
    parse_iso,
    utc_now_iso,
    validate_task_id,
    validate_worker_name,
)

logger = logging.getLogger(__name__)

LIFECYCLE_FIELDS = ("status", "owner", "result", "error")
UPDATABLE_FIELDS = frozenset({"subject", "description", "blocked_by", "metadata"})


@dataclass(slots=True)
class ClaimResult:
    task: Task
    claim_token: str


@dataclass(slots=True)
class TaskReadiness:
    ready: bool
    reason: str | None = None
    dependencies: list[str] = field(default_factory=list)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class TaskRegistry:
    """CRUD plus the claim/transition state machine for one team's tasks."""

    def __init__(self, team: TeamState, *, clock: Callable[[], datetime] = _utc_now) -> None:
        self.team = team
        self.store = team.store
        self._clock = clock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def read_task(self, task_id: str) -> Task | None:
        validate_task_id(task_id)
        raw = await self.store.read(self.team.task_path(task_id))
        task = Task.from_dict(raw) if raw is not None else None
        if task is None or task.id != task_id:
            return None
        return task

    async def list_tasks(
        self, *, status: str | None = None, owner: str | None = None,
    ) -> list[Task]:
        tasks: list[Task] = []
        for name in await self.store.list_names(self.team.layout["tasks"]):
            if not (name.startswith("task-") and name.endswith(".json")):
                continue
            task_id = name[len("task-"):-len(".json")]
            if not TASK_ID_PATTERN.match(task_id):
                continue
            task = await self.read_task(task_id)
            if task is None:
                logger.debug("Skipping unreadable task file %s", name)
                continue
            if status and task.status != status:
                continue
            if owner and task.owner != owner:
                continue
            tasks.append(task)
        tasks.sort(key=lambda t: int(t.id))
        return tasks

    async def compute_task_readiness(self, task_id: str) -> TaskReadiness:
        task = await self._require(task_id)
        return await self._readiness(task)

    # ------------------------------------------------------------------
    # Create / update
    # ------------------------------------------------------------------

    async def create_task(
        self,
        subject: str,
        description: str,
        *,
        owner: str | None = None,
        blocked_by: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Task:
        if not isinstance(subject, str) or not subject.strip():
            raise ValidationError("subject must be a non-empty string", code="invalid_subject")
        if not isinstance(description, str):
            raise ValidationError("description must be a string", code="invalid_description")
        if owner is not None:
            validate_worker_name(owner)
        deps = [validate_task_id(str(d)) for d in blocked_by or []]

        async with self.team.config_guard():
            cfg = await self.team.require_config()
            existing = await self.store.list_names(self.team.layout["tasks"])
            next_id = max(cfg.next_task_id, max(
                (int(n[5:-5]) for n in existing
                 if n.startswith("task-") and n.endswith(".json") and TASK_ID_PATTERN.match(n[5:-5])),
                default=0,
            ) + 1)
            task = Task(
                id=str(next_id),
                subject=subject,
                description=description,
                owner=owner,
                blocked_by=deps,
                metadata=dict(metadata or {}),
            )
            # A task file is never overwritten, even by a writer outside the lock.
            while not await self.store.create_exclusive(self.team.task_path(task.id), task.to_dict()):
                next_id += 1
                task.id = str(next_id)
            cfg.next_task_id = next_id + 1
            await self.team.save_config(cfg)
        logger.debug("Created task %s in team %s", task.id, self.team.team_name)
        return task

    async def update_task(self, task_id: str, fields: dict[str, Any]) -> Task:
        """Update metadata fields; lifecycle fields are rejected by name."""
        for name in fields:
            if name in LIFECYCLE_FIELDS:
                raise LifecycleFieldError(name)
        for name in fields:
            if name not in UPDATABLE_FIELDS:
                raise ValidationError(
                    f"Field '{name}' cannot be updated",
                    code="unsupported_field",
                    details={"field": name},
                )
        if "subject" in fields and (
            not isinstance(fields["subject"], str) or not fields["subject"].strip()
        ):
            raise ValidationError("subject must be a non-empty string", code="invalid_subject")
        if "description" in fields and not isinstance(fields["description"], str):
            raise ValidationError("description must be a string", code="invalid_description")
        if "metadata" in fields and not isinstance(fields["metadata"], dict):
            raise ValidationError("metadata must be a mapping", code="invalid_metadata")
        if "blocked_by" in fields:
            fields = dict(fields)
            fields["blocked_by"] = [validate_task_id(str(d)) for d in fields["blocked_by"] or []]

        async with self._task_guard(task_id):
            task = await self._require(task_id)
            for name, value in fields.items():
                if name == "metadata":
                    task.metadata = {**task.metadata, **value}
                else:
                    setattr(task, name, value)
            task.version += 1
            task.updated_at = utc_now_iso()
            await self._save(task)
        return task

    # ------------------------------------------------------------------
    # Claim / transition / release
    # ------------------------------------------------------------------

    async def claim_task(
        self, task_id: str, worker: str, expected_version: int | None = None,
    ) -> ClaimResult:
        validate_worker_name(worker)
        async with self._task_guard(task_id):
            task = await self._require(task_id)
            if task.is_terminal:
                raise ConflictError("already_terminal", f"Task {task_id} is already {task.status}")

            if task.status == "in_progress":
                # Takeover only through an explicit, matching version.
                if expected_version is None:
                    raise ConflictError(
                        "claim_conflict", f"Task {task_id} is already claimed by {task.owner}",
                    )
                if expected_version != task.version:
                    raise ConflictError(
                        "claim_conflict",
                        f"Task {task_id} version is {task.version}, expected {expected_version}",
                    )
            else:
                if expected_version is not None and expected_version != task.version:
                    raise ConflictError(
                        "claim_conflict",
                        f"Task {task_id} version is {task.version}, expected {expected_version}",
                    )
                if task.owner and task.owner != worker:
                    raise ConflictError(
                        "claim_conflict", f"Task {task_id} is assigned to {task.owner}",
                    )
                readiness = await self._readiness(task)
                if not readiness.ready:
                    raise ConflictError(
                        "blocked_dependency",
                        f"Task {task_id} is blocked by {', '.join(readiness.dependencies)}",
                        details={"dependencies": readiness.dependencies},
                    )

            previous_owner = task.owner if task.status == "in_progress" else None
            token = uuid.uuid4().hex
            lease = self._clock() + timedelta(milliseconds=self.team.settings.tasks.claim_lease_ms)
            task.status = "in_progress"
            task.owner = worker
            task.claim = TaskClaim(owner=worker, token=token, leased_until=lease.isoformat())
            task.version += 1
            task.updated_at = utc_now_iso()
            await self._save(task)

        if previous_owner and previous_owner != worker:
            logger.warning(
                "Task %s taken over from %s by %s at version %s",
                task_id, previous_owner, worker, expected_version,
            )
        await self.team.append_event("task_claimed", worker, task_id=task_id)
        return ClaimResult(task=task, claim_token=token)

    async def transition_task_status(
        self,
        task_id: str,
        from_status: str,
        to_status: str,
        claim_token: str,
        *,
        result: str | None = None,
        error: str | None = None,
    ) -> Task:
        async with self._task_guard(task_id):
            task = await self._require(task_id)
            if task.is_terminal:
                raise ConflictError("already_terminal", f"Task {task_id} is already {task.status}")
            if to_status not in TASK_TRANSITIONS.get(from_status, frozenset()):
                raise ConflictError(
                    "invalid_transition", f"Cannot transition {from_status} -> {to_status}",
                )
            if task.status != from_status:
                raise ConflictError(
                    "invalid_transition",
                    f"Task {task_id} is {task.status}, not {from_status}",
                )
            self._check_claim(task, claim_token)

            now = utc_now_iso()
            task.status = to_status  # type: ignore[assignment]
            task.claim = None
            task.version += 1
            task.updated_at = now
            task.completed_at = now
            if result is not None:
                task.result = result
            if error is not None:
                task.error = error
            await self._save(task)

        event_type = "task_completed" if to_status == "completed" else "task_failed"
        await self.team.append_event(event_type, task.owner or "", task_id=task_id, reason=error)
        return task

    async def release_task_claim(self, task_id: str, claim_token: str, worker: str) -> Task:
        """Return an in-progress task to ``pending`` and drop its claim."""
        async with self._task_guard(task_id):
            task = await self._require(task_id)
            if task.is_terminal:
                raise ConflictError("already_terminal", f"Task {task_id} is already {task.status}")
            if task.status != "in_progress":
                raise ConflictError("claim_conflict", f"Task {task_id} is not claimed")
            self._check_claim(task, claim_token, worker=worker)
            self._reset_to_pending(task)
            await self._save(task)
        await self.team.append_event("task_released", worker, task_id=task_id)
        return task

    async def release_claims_owned_by(self, worker: str, *, reason: str) -> list[str]:
        """Put every in-progress task owned by *worker* back to ``pending``."""
        released: list[str] = []
        for task in await self.list_tasks(status="in_progress", owner=worker):
            async with self._task_guard(task.id):
                current = await self._require(task.id)
                if current.status != "in_progress" or current.owner != worker:
                    continue
                self._reset_to_pending(current)
                await self._save(current)
            released.append(task.id)
            await self.team.append_event("task_released", worker, task_id=task.id, reason=reason)
        if released:
            logger.info("Released %d task(s) held by %s: %s", len(released), worker, released)
        return released

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @contextlib.asynccontextmanager
    async def _task_guard(self, task_id: str) -> AsyncIterator[None]:
        validate_task_id(task_id)
        settings = self.team.settings.tasks
        async with self.store.serialized(self.team.task_path(task_id)):
            async with exclusion_lock(
                self.store,
                self.team.claim_lock_path(task_id),
                poll_interval=0.01,
                timeout=settings.claim_lock_timeout_ms / 1000,
                stale_after=settings.claim_lock_stale_seconds,
            ):
                yield

    async def _require(self, task_id: str) -> Task:
        task = await self.read_task(task_id)
        if task is None:
            raise ConflictError("task_not_found", f"Task {task_id} not found")
        return task

    async def _save(self, task: Task) -> None:
        await self.store.write_atomic(self.team.task_path(task.id), task.to_dict())

    async def _readiness(self, task: Task) -> TaskReadiness:
        incomplete: list[str] = []
        for dep_id in task.blocked_by:
            dep = await self.read_task(dep_id)
            if dep is None or dep.status != "completed":
                incomplete.append(dep_id)
        if incomplete:
            return TaskReadiness(ready=False, reason="blocked_dependency", dependencies=incomplete)
        return TaskReadiness(ready=True)

    def _check_claim(self, task: Task, claim_token: str, *, worker: str | None = None) -> None:
        claim = task.claim
        if claim is None or not claim_token or claim.token != claim_token:
            raise ConflictError("claim_conflict", f"Claim token does not match task {task.id}")
        if claim.owner != task.owner or (worker is not None and claim.owner != worker):
            raise ConflictError("claim_conflict", f"Task {task.id} is owned by {task.owner}")
        leased_until = parse_iso(claim.leased_until)
        if leased_until is not None and leased_until < self._clock():
            raise ConflictError("lease_expired", f"Claim on task {task.id} expired at {claim.leased_until}")

    @staticmethod
    def _reset_to_pending(task: Task) -> None:
        task.status = "pending"
        task.owner = None
        task.claim = None
        task.version += 1
        task.updated_at = utc_now_iso()
