"""Tracked delivery of inbox and mailbox notifications.

Every inbox write or mailbox send is recorded as a :class:`DispatchRequest`
before any notifier runs, so a crash mid-dispatch leaves a resumable record.
The flow for one delivery:

1. persist the payload (inbox markdown or mailbox message),
2. enqueue a request, deduplicated by correlation key while pending,
3. call the injected notifier,
4. for ``hook_preferred_with_fallback`` with a fallback notifier, wait for a
   receipt and fall back to a direct transport once,
5. record the outcome on the request (and on the message).

Notifier exceptions never escape; they become failed outcomes.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any

from attoteam.config.loader import ENV_DISPATCH_LOCK_TIMEOUT_MS
from attoteam.coordinator.bootstrap import (
    generate_mailbox_trigger_message,
    generate_trigger_message,
)
from attoteam.coordinator.mailbox import Mailbox
from attoteam.coordinator.team import TeamState
from attoteam.errors import ValidationError
from attoteam.protocol.locks import exclusion_lock
from attoteam.protocol.models import (
    TRANSPORT_PREFERENCES,
    DispatchRequest,
    MailboxMessage,
    utc_now_iso,
    validate_worker_name,
)

logger = logging.getLogger(__name__)

HOOK_PREFERRED = "hook_preferred_with_fallback"
QUEUED_FOR_HOOK = "queued_for_hook_dispatch"
UNCONFIRMED_SEND = "tmux_send_keys_unconfirmed"
DUPLICATE_PENDING = "duplicate_pending_dispatch_request"

MIN_RECEIPT_POLL_MS = 25


class Transport(StrEnum):
    """How a notification reached (or was queued for) a worker."""

    HOOK = "hook"
    PROMPT_STDIN = "prompt_stdin"
    TMUX_SEND_KEYS = "tmux_send_keys"
    NONE = "none"


@dataclass(slots=True)
class DispatchOutcome:
    ok: bool
    transport: Transport
    reason: str
    request_id: str | None = None
    message_id: str | None = None
    to_worker: str | None = None

    @property
    def confirmed(self) -> bool:
        """True when the worker was actually reached, not merely queued."""
        if not self.ok or self.reason == UNCONFIRMED_SEND:
            return False
        return not (self.transport == Transport.HOOK and self.reason == QUEUED_FOR_HOOK)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "transport": str(self.transport),
            "reason": self.reason,
            "request_id": self.request_id,
            "message_id": self.message_id,
            "to_worker": self.to_worker,
        }


@dataclass(slots=True)
class NotifyTarget:
    team_name: str
    worker_name: str
    worker_index: int | None = None
    pane_id: str | None = None


@dataclass(slots=True)
class DispatchContext:
    request: DispatchRequest
    message_id: str | None = None
    attempt: str = "primary"  # primary | fallback


Notifier = Callable[[NotifyTarget, str, DispatchContext], DispatchOutcome | Awaitable[DispatchOutcome]]


def fallback_transport_for(preference: str | None) -> Transport:
    if preference == "prompt_stdin":
        return Transport.PROMPT_STDIN
    if preference == "transport_direct":
        return Transport.TMUX_SEND_KEYS
    return Transport.HOOK


def hook_notifier() -> Notifier:
    """Notifier that defers delivery to the out-of-band hook consumer."""

    def _notify(target: NotifyTarget, message: str, context: DispatchContext) -> DispatchOutcome:
        return DispatchOutcome(ok=True, transport=Transport.HOOK, reason=QUEUED_FOR_HOOK)

    return _notify


def null_notifier() -> Notifier:
    """Notifier for teams without any live transport."""

    def _notify(target: NotifyTarget, message: str, context: DispatchContext) -> DispatchOutcome:
        return DispatchOutcome(ok=False, transport=Transport.NONE, reason="no_transport")

    return _notify


async def safe_notify(
    notifier: Notifier, target: NotifyTarget, message: str, context: DispatchContext,
) -> DispatchOutcome:
    """Invoke *notifier*, converting any exception into a failed outcome."""
    try:
        outcome = notifier(target, message, context)
        if inspect.isawaitable(outcome):
            outcome = await outcome
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "Notifier raised for %s (%s): %s", target.worker_name, context.attempt, exc,
        )
        return DispatchOutcome(
            ok=False,
            transport=fallback_transport_for(context.request.transport_preference),
            reason=f"notify_exception:{exc}",
        )
    if not isinstance(outcome, DispatchOutcome):
        return DispatchOutcome(
            ok=False, transport=Transport.NONE, reason="notify_invalid_outcome",
        )
    return outcome


# ---------------------------------------------------------------------------
# Request collection
# ---------------------------------------------------------------------------


# Same-status moves patch the reason; anything else not listed is refused.
_DISPATCH_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"pending", "notified", "delivered", "failed"}),
    "notified": frozenset({"notified", "delivered", "failed"}),
    "delivered": frozenset({"delivered"}),
    "failed": frozenset({"failed"}),
}


@dataclass(slots=True)
class EnqueueResult:
    request: DispatchRequest
    deduped: bool = False


class DispatchRequestStore:
    """The team's ``dispatch/requests.json`` collection."""

    def __init__(self, team: TeamState) -> None:
        self.team = team
        self.store = team.store
        self.path = team.layout["dispatch"]

    @contextlib.asynccontextmanager
    async def _locked(self) -> AsyncIterator[list[DispatchRequest]]:
        settings = self.team.settings.dispatch
        timeout_s = settings.lock_timeout_ms / 1000
        async with self.store.serialized(self.path):
            async with exclusion_lock(
                self.store,
                self.team.layout["dispatch_lock"],
                poll_interval=0.01,
                timeout=timeout_s,
                stale_after=settings.lock_stale_seconds,
                timeout_hint=f"Set {ENV_DISPATCH_LOCK_TIMEOUT_MS} to raise it",
            ):
                requests = await self._load()
                snapshot = [r.to_dict() for r in requests]
                yield requests
                if [r.to_dict() for r in requests] != snapshot:
                    await self.store.write_atomic(self.path, [r.to_dict() for r in requests])

    async def _load(self) -> list[DispatchRequest]:
        raw = await self.store.read(self.path)
        if not isinstance(raw, list):
            return []
        parsed = (DispatchRequest.from_dict(item) for item in raw)
        return [r for r in parsed if r is not None]

    async def enqueue(
        self,
        *,
        kind: str,
        to_worker: str,
        trigger_message: str,
        worker_index: int | None = None,
        pane_id: str | None = None,
        message_id: str | None = None,
        inbox_correlation_key: str | None = None,
        transport_preference: str = HOOK_PREFERRED,
        fallback_allowed: bool = True,
    ) -> EnqueueResult:
        if kind not in ("inbox", "mailbox"):
            raise ValidationError(f"Unknown dispatch kind: {kind}", code="invalid_dispatch_kind")
        validate_worker_name(to_worker)
        if kind == "mailbox" and not message_id:
            raise ValidationError("mailbox dispatch requires message_id", code="invalid_dispatch")
        if transport_preference not in TRANSPORT_PREFERENCES:
            raise ValidationError(
                f"Unknown transport preference: {transport_preference}",
                code="invalid_transport_preference",
            )
        if not trigger_message.strip():
            raise ValidationError("trigger_message must not be empty", code="invalid_dispatch")

        async with self._locked() as requests:
            for existing in requests:
                if existing.status != "pending" or existing.kind != kind:
                    continue
                if existing.to_worker != to_worker:
                    continue
                if kind == "mailbox" and existing.message_id == message_id:
                    return EnqueueResult(request=existing, deduped=True)
                if kind == "inbox":
                    key = inbox_correlation_key or trigger_message
                    if (existing.inbox_correlation_key or existing.trigger_message) == key:
                        return EnqueueResult(request=existing, deduped=True)

            request = DispatchRequest(
                request_id=uuid.uuid4().hex,
                kind=kind,  # type: ignore[arg-type]
                team_name=self.team.team_name,
                to_worker=to_worker,
                trigger_message=trigger_message,
                worker_index=worker_index,
                pane_id=pane_id,
                message_id=message_id,
                inbox_correlation_key=inbox_correlation_key,
                transport_preference=transport_preference,  # type: ignore[arg-type]
                fallback_allowed=fallback_allowed,
            )
            requests.append(request)
        return EnqueueResult(request=request)

    async def list(
        self,
        *,
        status: str | None = None,
        kind: str | None = None,
        to_worker: str | None = None,
    ) -> list[DispatchRequest]:
        requests = await self._load()
        return [
            r for r in requests
            if (status is None or r.status == status)
            and (kind is None or r.kind == kind)
            and (to_worker is None or r.to_worker == to_worker)
        ]

    async def read(self, request_id: str) -> DispatchRequest | None:
        for request in await self._load():
            if request.request_id == request_id:
                return request
        return None

    async def transition(
        self,
        request_id: str,
        from_status: str,
        to_status: str,
        *,
        reason: str | None = None,
    ) -> DispatchRequest | None:
        """Move a request between statuses; returns ``None`` when refused."""
        if to_status not in _DISPATCH_TRANSITIONS.get(from_status, frozenset()):
            return None
        async with self._locked() as requests:
            for request in requests:
                if request.request_id != request_id:
                    continue
                if request.status != from_status:
                    return None
                _apply_status(request, to_status, reason)
                return request
        return None

    async def mark_notified(self, request_id: str, *, reason: str | None = None) -> DispatchRequest | None:
        """Idempotent; ``None`` when the request is missing or failed."""
        async with self._locked() as requests:
            for request in requests:
                if request.request_id != request_id:
                    continue
                if request.status in ("notified", "delivered"):
                    return request
                if request.status == "failed":
                    return None
                _apply_status(request, "notified", reason)
                return request
        return None

    async def mark_delivered(self, request_id: str, *, reason: str | None = None) -> DispatchRequest | None:
        async with self._locked() as requests:
            for request in requests:
                if request.request_id != request_id:
                    continue
                if request.status == "delivered":
                    return request
                if request.status == "failed":
                    return None
                if not request.notified_at:
                    request.notified_at = utc_now_iso()
                _apply_status(request, "delivered", reason)
                return request
        return None

    async def record_attempt(
        self, request_id: str, *, reason: str, max_attempts: int,
    ) -> DispatchRequest | None:
        """Count an unconfirmed attempt; fail the request once *max_attempts* is hit."""
        async with self._locked() as requests:
            for request in requests:
                if request.request_id != request_id or request.status != "pending":
                    continue
                request.attempt_count += 1
                request.updated_at = utc_now_iso()
                request.last_reason = reason
                if request.attempt_count >= max_attempts:
                    _apply_status(request, "failed", "unconfirmed_after_max_retries")
                return request
        return None


def _apply_status(request: DispatchRequest, status: str, reason: str | None) -> None:
    now = utc_now_iso()
    request.status = status  # type: ignore[assignment]
    request.updated_at = now
    if reason is not None:
        request.last_reason = reason
    if status == "notified" and not request.notified_at:
        request.notified_at = now
    elif status == "delivered" and not request.delivered_at:
        request.delivered_at = now
    elif status == "failed" and not request.failed_at:
        request.failed_at = now


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class DispatchCoordinator:
    """Wraps inbox/mailbox writes in tracked dispatch requests.

    Args:
        team: Team state the requests belong to.
        mailbox: Mailbox used for direct and broadcast messages.
        notifier: Primary notifier (defaults to the hook queue).
        fallback_notifier: Direct transport tried once when a hook receipt
            does not arrive. Without one, no receipt wait happens.
    """

    def __init__(
        self,
        team: TeamState,
        mailbox: Mailbox | None = None,
        *,
        notifier: Notifier | None = None,
        fallback_notifier: Notifier | None = None,
        requests: DispatchRequestStore | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.team = team
        self.mailbox = mailbox or Mailbox(team)
        self.requests = requests or DispatchRequestStore(team)
        self.notifier = notifier or hook_notifier()
        self.fallback_notifier = fallback_notifier
        self._sleep = sleep
        self._clock = clock

    @property
    def default_preference(self) -> str:
        return self.team.settings.dispatch.mode

    # ── Entry points ──────────────────────────────────────────────────

    async def queue_inbox_instruction(
        self,
        worker_name: str,
        inbox: str,
        *,
        trigger_message: str | None = None,
        worker_index: int | None = None,
        pane_id: str | None = None,
        correlation_key: str | None = None,
        transport_preference: str | None = None,
        fallback_allowed: bool = True,
        notifier: Notifier | None = None,
    ) -> DispatchOutcome:
        await self.team.write_worker_inbox(worker_name, inbox)
        trigger = trigger_message or generate_trigger_message(
            worker_name, self.team.team_name, team_dir=self.team.display_dir(),
        )
        queued = await self.requests.enqueue(
            kind="inbox",
            to_worker=worker_name,
            trigger_message=trigger,
            worker_index=worker_index,
            pane_id=pane_id,
            inbox_correlation_key=correlation_key,
            transport_preference=transport_preference or self.default_preference,
            fallback_allowed=fallback_allowed,
        )
        if queued.deduped:
            return self._duplicate(queued.request)
        target = NotifyTarget(self.team.team_name, worker_name, worker_index, pane_id)
        return await self._deliver(queued.request, target, trigger, notifier or self.notifier)

    async def queue_direct_message(
        self,
        from_worker: str,
        to_worker: str,
        body: str,
        *,
        trigger_message: str | None = None,
        transport_preference: str | None = None,
        fallback_allowed: bool = True,
        notifier: Notifier | None = None,
    ) -> DispatchOutcome:
        message = await self.mailbox.send_message(from_worker, to_worker, body)
        return await self._dispatch_message(
            message,
            trigger_message=trigger_message,
            transport_preference=transport_preference,
            fallback_allowed=fallback_allowed,
            notifier=notifier,
        )

    async def queue_broadcast_message(
        self,
        from_worker: str,
        body: str,
        *,
        trigger_for: Callable[[str], str] | None = None,
        transport_preference: str | None = None,
        fallback_allowed: bool = True,
        notifier: Notifier | None = None,
    ) -> list[DispatchOutcome]:
        messages = await self.mailbox.broadcast(from_worker, body)
        outcomes: list[DispatchOutcome] = []
        for message in messages:
            outcomes.append(await self._dispatch_message(
                message,
                trigger_message=trigger_for(message.to_worker) if trigger_for else None,
                transport_preference=transport_preference,
                fallback_allowed=fallback_allowed,
                notifier=notifier,
            ))
        return outcomes

    async def wait_for_receipt(
        self, request_id: str, *, timeout_ms: int | None = None, poll_ms: int | None = None,
    ) -> DispatchRequest | None:
        """Poll until the request leaves ``pending`` or the timeout elapses."""
        settings = self.team.settings.dispatch
        timeout_s = (settings.ack_timeout_ms if timeout_ms is None else timeout_ms) / 1000
        poll_s = max(MIN_RECEIPT_POLL_MS, settings.poll_ms if poll_ms is None else poll_ms) / 1000
        deadline = self._clock() + timeout_s
        while self._clock() < deadline:
            request = await self.requests.read(request_id)
            if request is None:
                return None
            if request.status in ("notified", "delivered", "failed"):
                return request
            await self._sleep(poll_s)
        return await self.requests.read(request_id)

    # ── Internals ─────────────────────────────────────────────────────

    async def _dispatch_message(
        self,
        message: MailboxMessage,
        *,
        trigger_message: str | None,
        transport_preference: str | None,
        fallback_allowed: bool,
        notifier: Notifier | None,
    ) -> DispatchOutcome:
        cfg = await self.team.require_config()
        worker = cfg.worker(message.to_worker)
        worker_index = worker.index if worker else None
        pane_id = worker.pane_id if worker else None
        trigger = trigger_message or generate_mailbox_trigger_message(
            message.to_worker, self.team.team_name, team_dir=self.team.display_dir(),
        )
        queued = await self.requests.enqueue(
            kind="mailbox",
            to_worker=message.to_worker,
            trigger_message=trigger,
            worker_index=worker_index,
            pane_id=pane_id,
            message_id=message.message_id,
            transport_preference=transport_preference or self.default_preference,
            fallback_allowed=fallback_allowed,
        )
        if queued.deduped:
            return self._duplicate(queued.request, message.message_id)
        target = NotifyTarget(self.team.team_name, message.to_worker, worker_index, pane_id)
        return await self._deliver(
            queued.request, target, trigger, notifier or self.notifier,
            message_id=message.message_id,
        )

    async def _deliver(
        self,
        request: DispatchRequest,
        target: NotifyTarget,
        trigger: str,
        notifier: Notifier,
        *,
        message_id: str | None = None,
    ) -> DispatchOutcome:
        context = DispatchContext(request=request, message_id=message_id)
        outcome = await safe_notify(notifier, target, trigger, context)
        outcome = replace(
            outcome,
            request_id=request.request_id,
            message_id=message_id,
            to_worker=target.worker_name,
        )
        if outcome.confirmed:
            await self._confirm(request, outcome.reason, message_id)
            return outcome

        if request.transport_preference != HOOK_PREFERRED:
            await self._fail(request.request_id, outcome.reason)
            return outcome

        fallback_notifier = self.fallback_notifier
        if not (request.fallback_allowed and fallback_notifier):
            # Stays pending for the hook consumer.
            logger.debug("Dispatch %s left pending: %s", request.request_id, outcome.reason)
            return outcome
        return await self._receipt_or_fallback(
            request, target, trigger, message_id, fallback_notifier, await_receipt=outcome.ok,
        )

    async def _receipt_or_fallback(
        self,
        request: DispatchRequest,
        target: NotifyTarget,
        trigger: str,
        message_id: str | None,
        fallback_notifier: Notifier,
        *,
        await_receipt: bool = True,
    ) -> DispatchOutcome:
        request_id = request.request_id
        receipt = await self.wait_for_receipt(request_id) if await_receipt else None
        if receipt is not None and receipt.status in ("notified", "delivered"):
            return DispatchOutcome(
                ok=True,
                transport=Transport.HOOK,
                reason=f"hook_receipt_{receipt.status}",
                request_id=request_id,
                message_id=message_id,
                to_worker=target.worker_name,
            )

        fallback = await safe_notify(
            fallback_notifier,
            target,
            trigger,
            DispatchContext(request=request, message_id=message_id, attempt="fallback"),
        )
        receipt_failed = receipt is not None and receipt.status == "failed"

        if fallback.confirmed:
            if receipt_failed:
                reason = f"fallback_confirmed_after_failed_receipt:{fallback.reason}"
                await self.requests.transition(request_id, "failed", "failed", reason=reason)
            else:
                reason = f"hook_timeout_fallback_confirmed:{fallback.reason}"
                marked = await self.requests.mark_notified(
                    request_id, reason=f"fallback_confirmed:{fallback.reason}",
                )
                if marked is None:
                    # A failed receipt landed after the timeout.
                    await self.requests.transition(
                        request_id, "failed", "failed",
                        reason=f"fallback_confirmed_after_failed_receipt:{fallback.reason}",
                    )
            if message_id:
                await self.mailbox.mark_notified(target.worker_name, message_id)
            logger.info("Dispatch %s confirmed by fallback: %s", request_id, reason)
            return DispatchOutcome(
                ok=True,
                transport=fallback.transport,
                reason=reason,
                request_id=request_id,
                message_id=message_id,
                to_worker=target.worker_name,
            )

        reason = f"fallback_attempted_but_unconfirmed:{fallback.reason}"
        await self._fail(request_id, reason)
        logger.warning("Dispatch %s to %s failed: %s", request_id, target.worker_name, reason)
        return DispatchOutcome(
            ok=False,
            transport=fallback.transport,
            reason=reason,
            request_id=request_id,
            message_id=message_id,
            to_worker=target.worker_name,
        )

    async def _confirm(self, request: DispatchRequest, reason: str, message_id: str | None) -> None:
        if message_id:
            await self.mailbox.mark_notified(request.to_worker, message_id)
        await self.requests.mark_notified(request.request_id, reason=reason)

    async def _fail(self, request_id: str, reason: str) -> None:
        current = await self.requests.read(request_id)
        if current is None or current.status in ("notified", "delivered"):
            return
        await self.requests.transition(request_id, current.status, "failed", reason=reason)

    @staticmethod
    def _duplicate(request: DispatchRequest, message_id: str | None = None) -> DispatchOutcome:
        return DispatchOutcome(
            ok=False,
            transport=Transport.NONE,
            reason=DUPLICATE_PENDING,
            request_id=request.request_id,
            message_id=message_id or request.message_id,
            to_worker=request.to_worker,
        )


# ---------------------------------------------------------------------------
# Hook-side consumer
# ---------------------------------------------------------------------------


Injector = Callable[[DispatchRequest], DispatchOutcome | Awaitable[DispatchOutcome]]


@dataclass(slots=True)
class DrainSummary:
    processed: int = 0
    notified: int = 0
    failed: int = 0
    retried: int = 0
    request_ids: list[str] = field(default_factory=list)


class HookDispatchConsumer:
    """Out-of-band side of the hook transport.

    Picks up pending ``hook_preferred_with_fallback`` requests, hands each to
    an injector, and writes the receipt the coordinator is waiting for.
    """

    def __init__(self, team: TeamState, mailbox: Mailbox | None = None) -> None:
        self.team = team
        self.mailbox = mailbox or Mailbox(team)
        self.requests = DispatchRequestStore(team)

    async def drain(self, injector: Injector, *, max_per_tick: int = 5) -> DrainSummary:
        summary = DrainSummary()
        max_attempts = self.team.settings.dispatch.max_unconfirmed_attempts
        pending = await self.requests.list(status="pending")
        for request in pending:
            if summary.processed >= max_per_tick:
                break
            if request.transport_preference != HOOK_PREFERRED:
                continue
            target = NotifyTarget(
                self.team.team_name, request.to_worker, request.worker_index, request.pane_id,
            )
            outcome = await safe_notify(
                lambda _t, _m, ctx: injector(ctx.request),
                target,
                request.trigger_message,
                DispatchContext(request=request, message_id=request.message_id, attempt="hook"),
            )
            summary.processed += 1
            summary.request_ids.append(request.request_id)

            if outcome.confirmed:
                if await self.requests.mark_notified(request.request_id, reason=outcome.reason):
                    if request.kind == "mailbox" and request.message_id:
                        await self.mailbox.mark_notified(request.to_worker, request.message_id)
                    summary.notified += 1
                    await self._log("dispatch_notified", request, outcome.reason)
            elif outcome.ok:
                updated = await self.requests.record_attempt(
                    request.request_id, reason=outcome.reason, max_attempts=max_attempts,
                )
                if updated is not None and updated.status == "failed":
                    summary.failed += 1
                    await self._log("dispatch_failed", request, "unconfirmed_after_max_retries")
                else:
                    summary.retried += 1
                    await self._log("dispatch_unconfirmed_retry", request, outcome.reason)
            else:
                await self.requests.transition(
                    request.request_id, "pending", "failed", reason=outcome.reason,
                )
                summary.failed += 1
                await self._log("dispatch_failed", request, outcome.reason)
        return summary

    async def _log(self, event_type: str, request: DispatchRequest, reason: str) -> None:
        await self.team.store.append_line(self.team.layout["dispatch_log"], {
            "timestamp": utc_now_iso(),
            "type": event_type,
            "team": self.team.team_name,
            "request_id": request.request_id,
            "worker": request.to_worker,
            "message_id": request.message_id,
            "reason": reason,
        })
