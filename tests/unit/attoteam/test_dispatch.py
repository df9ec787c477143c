"""Tests for dispatch requests, the coordinator and the hook consumer."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from attoteam.coordinator.dispatch import (
    DUPLICATE_PENDING,
    QUEUED_FOR_HOOK,
    UNCONFIRMED_SEND,
    DispatchContext,
    DispatchCoordinator,
    DispatchOutcome,
    DispatchRequestStore,
    HookDispatchConsumer,
    NotifyTarget,
    Transport,
    fallback_transport_for,
    hook_notifier,
)
from attoteam.coordinator.mailbox import Mailbox
from attoteam.errors import ValidationError
from attoteam.protocol.models import DispatchRequest
from tests.helpers import RecordingNotifier, new_team


class TestOutcome:
    def test_confirmed(self) -> None:
        assert DispatchOutcome(ok=True, transport=Transport.TMUX_SEND_KEYS, reason="sent").confirmed
        assert not DispatchOutcome(ok=False, transport=Transport.TMUX_SEND_KEYS, reason="x").confirmed
        assert not DispatchOutcome(ok=True, transport=Transport.HOOK, reason=QUEUED_FOR_HOOK).confirmed
        assert not DispatchOutcome(
            ok=True, transport=Transport.TMUX_SEND_KEYS, reason=UNCONFIRMED_SEND,
        ).confirmed

    def test_fallback_transport(self) -> None:
        assert fallback_transport_for("prompt_stdin") == Transport.PROMPT_STDIN
        assert fallback_transport_for("transport_direct") == Transport.TMUX_SEND_KEYS
        assert fallback_transport_for("hook_preferred_with_fallback") == Transport.HOOK
        assert fallback_transport_for(None) == Transport.HOOK


class TestRequestStore:
    @pytest.mark.asyncio
    async def test_enqueue_validates(self, tmp_path: Path) -> None:
        requests = DispatchRequestStore(await new_team(tmp_path))
        with pytest.raises(ValidationError):
            await requests.enqueue(kind="mailbox", to_worker="worker-1", trigger_message="hi")
        with pytest.raises(ValidationError):
            await requests.enqueue(
                kind="inbox", to_worker="worker-1", trigger_message="hi",
                transport_preference="carrier_pigeon",
            )
        with pytest.raises(ValidationError):
            await requests.enqueue(kind="inbox", to_worker="worker-1", trigger_message="  ")

    @pytest.mark.asyncio
    async def test_dedupes_pending_by_correlation_key(self, tmp_path: Path) -> None:
        requests = DispatchRequestStore(await new_team(tmp_path))
        first = await requests.enqueue(
            kind="inbox", to_worker="worker-1", trigger_message="go", inbox_correlation_key="k1",
        )
        second = await requests.enqueue(
            kind="inbox", to_worker="worker-1", trigger_message="go again", inbox_correlation_key="k1",
        )
        assert not first.deduped
        assert second.deduped
        assert second.request.request_id == first.request.request_id

        await requests.mark_notified(first.request.request_id)
        third = await requests.enqueue(
            kind="inbox", to_worker="worker-1", trigger_message="go", inbox_correlation_key="k1",
        )
        assert not third.deduped
        assert len(await requests.list()) == 2

    @pytest.mark.asyncio
    async def test_status_moves(self, tmp_path: Path) -> None:
        requests = DispatchRequestStore(await new_team(tmp_path))
        queued = await requests.enqueue(kind="inbox", to_worker="worker-1", trigger_message="go")
        request_id = queued.request.request_id

        delivered = await requests.mark_delivered(request_id, reason="hook_ack")
        assert delivered is not None
        assert delivered.status == "delivered"
        assert delivered.notified_at and delivered.delivered_at
        # Delivered never moves back.
        assert await requests.transition(request_id, "delivered", "pending") is None
        assert (await requests.mark_notified(request_id)).status == "delivered"

        other = await requests.enqueue(kind="inbox", to_worker="worker-2", trigger_message="go")
        failed = await requests.transition(other.request.request_id, "pending", "failed", reason="dead")
        assert failed is not None and failed.failed_at and failed.last_reason == "dead"
        assert await requests.mark_notified(other.request.request_id) is None

    @pytest.mark.asyncio
    async def test_malformed_entries_are_dropped(self, tmp_path: Path) -> None:
        team = await new_team(tmp_path)
        requests = DispatchRequestStore(team)
        await team.store.write_atomic(team.layout["dispatch"], [{"kind": "inbox"}, "junk", {
            "request_id": "r1", "kind": "inbox", "team_name": "alpha",
            "to_worker": "worker-1", "trigger_message": "go",
        }])
        assert [r.request_id for r in await requests.list()] == ["r1"]


class TestCoordinator:
    @pytest.mark.asyncio
    async def test_direct_transport_confirms(self, tmp_path: Path) -> None:
        team = await new_team(tmp_path)
        notifier = RecordingNotifier()
        coordinator = DispatchCoordinator(team, notifier=notifier)
        outcome = await coordinator.queue_direct_message(
            "worker-1", "worker-2", "review please", transport_preference="transport_direct",
        )
        assert outcome.ok and outcome.confirmed
        assert outcome.to_worker == "worker-2"
        request = await coordinator.requests.read(outcome.request_id)
        assert request is not None and request.status == "notified"
        message = await Mailbox(team).find_message("worker-2", outcome.message_id)
        assert message is not None and message.notified_at
        target, trigger, context = notifier.calls[0]
        assert target.worker_name == "worker-2"
        assert "mailbox/worker-2.json" in trigger
        assert context.attempt == "primary"

    @pytest.mark.asyncio
    async def test_direct_transport_failure_marks_failed(self, tmp_path: Path) -> None:
        team = await new_team(tmp_path)
        coordinator = DispatchCoordinator(
            team, notifier=RecordingNotifier(ok=False, reason="pane_dead"),
        )
        outcome = await coordinator.queue_inbox_instruction(
            "worker-1", "# Do things\n", transport_preference="transport_direct",
        )
        assert not outcome.ok
        request = await coordinator.requests.read(outcome.request_id)
        assert request is not None
        assert request.status == "failed"
        assert request.last_reason == "pane_dead"
        assert await team.read_worker_inbox("worker-1") == "# Do things\n"

    @pytest.mark.asyncio
    async def test_notifier_exception_becomes_outcome(self, tmp_path: Path) -> None:
        team = await new_team(tmp_path)
        coordinator = DispatchCoordinator(
            team, notifier=RecordingNotifier(error=RuntimeError("tmux exploded")),
        )
        outcome = await coordinator.queue_inbox_instruction(
            "worker-1", "inbox", transport_preference="transport_direct",
        )
        assert not outcome.ok
        assert outcome.reason == "notify_exception:tmux exploded"
        assert outcome.transport == Transport.TMUX_SEND_KEYS
        request = await coordinator.requests.read(outcome.request_id)
        assert request is not None and request.status == "failed"

    @pytest.mark.asyncio
    async def test_hook_without_fallback_stays_pending(self, tmp_path: Path) -> None:
        team = await new_team(tmp_path)
        coordinator = DispatchCoordinator(team)
        first = await coordinator.queue_inbox_instruction("worker-1", "inbox", correlation_key="boot")
        assert first.ok and not first.confirmed
        assert first.reason == QUEUED_FOR_HOOK
        request = await coordinator.requests.read(first.request_id)
        assert request is not None and request.status == "pending"

        duplicate = await coordinator.queue_inbox_instruction("worker-1", "inbox", correlation_key="boot")
        assert not duplicate.ok
        assert duplicate.reason == DUPLICATE_PENDING
        assert duplicate.request_id == first.request_id

    @pytest.mark.asyncio
    async def test_hook_timeout_then_fallback_confirms(self, tmp_path: Path) -> None:
        team = await new_team(tmp_path)
        fallback = RecordingNotifier()
        coordinator = DispatchCoordinator(team, notifier=hook_notifier(), fallback_notifier=fallback)
        outcome = await coordinator.queue_direct_message("worker-1", "worker-3", "ping")
        assert outcome.ok
        assert outcome.reason == "hook_timeout_fallback_confirmed:sent"
        assert outcome.transport == Transport.TMUX_SEND_KEYS
        assert fallback.attempts == ["fallback"]
        request = await coordinator.requests.read(outcome.request_id)
        assert request is not None
        assert request.status == "notified"
        assert request.last_reason == "fallback_confirmed:sent"
        message = await Mailbox(team).find_message("worker-3", outcome.message_id)
        assert message is not None and message.notified_at

    @pytest.mark.asyncio
    async def test_fallback_is_fixed_when_the_request_starts(self, tmp_path: Path) -> None:
        team = await new_team(tmp_path)
        fallback = RecordingNotifier()
        coordinator: DispatchCoordinator

        async def _sleep_and_detach(delay: float) -> None:
            coordinator.fallback_notifier = None
            await asyncio.sleep(delay)

        coordinator = DispatchCoordinator(
            team, notifier=hook_notifier(), fallback_notifier=fallback, sleep=_sleep_and_detach,
        )
        outcome = await coordinator.queue_direct_message("worker-1", "worker-2", "ping")
        assert outcome.ok
        assert outcome.reason == "hook_timeout_fallback_confirmed:sent"
        assert fallback.attempts == ["fallback"]

    @pytest.mark.asyncio
    async def test_hook_receipt_skips_fallback(self, tmp_path: Path) -> None:
        team = await new_team(tmp_path)
        team.settings.dispatch.ack_timeout_ms = 2_000
        acks = DispatchRequestStore(team)
        background: list[asyncio.Task] = []

        async def _primary(
            target: NotifyTarget, message: str, context: DispatchContext,
        ) -> DispatchOutcome:
            async def _ack() -> None:
                await asyncio.sleep(0.01)
                await acks.mark_notified(context.request.request_id, reason="hook_ack")

            background.append(asyncio.create_task(_ack()))
            return DispatchOutcome(ok=True, transport=Transport.HOOK, reason=QUEUED_FOR_HOOK)

        fallback = RecordingNotifier()
        coordinator = DispatchCoordinator(team, notifier=_primary, fallback_notifier=fallback)
        outcome = await coordinator.queue_inbox_instruction("worker-2", "inbox")
        await asyncio.gather(*background)
        assert outcome.ok
        assert outcome.reason == "hook_receipt_notified"
        assert outcome.transport == Transport.HOOK
        assert fallback.calls == []

    @pytest.mark.asyncio
    async def test_failed_receipt_then_fallback(self, tmp_path: Path) -> None:
        team = await new_team(tmp_path)
        acks = DispatchRequestStore(team)

        async def _primary(
            target: NotifyTarget, message: str, context: DispatchContext,
        ) -> DispatchOutcome:
            await acks.transition(context.request.request_id, "pending", "failed", reason="hook_error")
            return DispatchOutcome(ok=True, transport=Transport.HOOK, reason=QUEUED_FOR_HOOK)

        coordinator = DispatchCoordinator(team, notifier=_primary, fallback_notifier=RecordingNotifier())
        outcome = await coordinator.queue_inbox_instruction("worker-2", "inbox")
        assert outcome.ok
        assert outcome.reason == "fallback_confirmed_after_failed_receipt:sent"
        request = await coordinator.requests.read(outcome.request_id)
        assert request is not None
        assert request.status == "failed"
        assert request.last_reason == "fallback_confirmed_after_failed_receipt:sent"

    @pytest.mark.asyncio
    async def test_unconfirmed_fallback_fails(self, tmp_path: Path) -> None:
        team = await new_team(tmp_path)
        coordinator = DispatchCoordinator(
            team,
            notifier=hook_notifier(),
            fallback_notifier=RecordingNotifier(ok=False, reason="send_text_failed"),
        )
        outcome = await coordinator.queue_inbox_instruction("worker-2", "inbox")
        assert not outcome.ok
        assert outcome.reason == "fallback_attempted_but_unconfirmed:send_text_failed"
        request = await coordinator.requests.read(outcome.request_id)
        assert request is not None and request.status == "failed"

    @pytest.mark.asyncio
    async def test_failed_primary_falls_back_without_waiting(self, tmp_path: Path) -> None:
        team = await new_team(tmp_path)
        team.settings.dispatch.ack_timeout_ms = 60_000
        fallback = RecordingNotifier()
        coordinator = DispatchCoordinator(
            team,
            notifier=RecordingNotifier(ok=False, transport=Transport.HOOK, reason="hook_unavailable"),
            fallback_notifier=fallback,
        )
        outcome = await asyncio.wait_for(
            coordinator.queue_inbox_instruction("worker-2", "inbox"), timeout=5,
        )
        assert outcome.ok
        assert outcome.reason == "hook_timeout_fallback_confirmed:sent"
        assert fallback.attempts == ["fallback"]

    @pytest.mark.asyncio
    async def test_fallback_not_allowed(self, tmp_path: Path) -> None:
        team = await new_team(tmp_path)
        fallback = RecordingNotifier()
        coordinator = DispatchCoordinator(team, fallback_notifier=fallback)
        outcome = await coordinator.queue_inbox_instruction("worker-2", "inbox", fallback_allowed=False)
        assert outcome.reason == QUEUED_FOR_HOOK
        assert fallback.calls == []

    @pytest.mark.asyncio
    async def test_broadcast_dispatches_each_message(self, tmp_path: Path) -> None:
        team = await new_team(tmp_path, workers=3)
        notifier = RecordingNotifier()
        coordinator = DispatchCoordinator(team, notifier=notifier)
        outcomes = await coordinator.queue_broadcast_message(
            "worker-1", "heads up", transport_preference="transport_direct",
            trigger_for=lambda worker: f"check mail {worker}",
        )
        assert sorted(o.to_worker for o in outcomes) == ["worker-2", "worker-3"]
        assert all(o.confirmed for o in outcomes)
        assert sorted(notifier.messages()) == ["check mail worker-2", "check mail worker-3"]

    @pytest.mark.asyncio
    async def test_wait_for_receipt_times_out_pending(self, tmp_path: Path) -> None:
        team = await new_team(tmp_path)
        coordinator = DispatchCoordinator(team)
        queued = await coordinator.requests.enqueue(kind="inbox", to_worker="worker-1", trigger_message="go")
        receipt = await coordinator.wait_for_receipt(queued.request.request_id, timeout_ms=30, poll_ms=1)
        assert receipt is not None and receipt.status == "pending"
        assert await coordinator.wait_for_receipt("missing", timeout_ms=30) is None


class TestHookConsumer:
    @pytest.mark.asyncio
    async def test_drain_notifies_and_logs(self, tmp_path: Path) -> None:
        team = await new_team(tmp_path)
        coordinator = DispatchCoordinator(team)
        outcome = await coordinator.queue_direct_message("worker-1", "worker-2", "hi")
        injected: list[DispatchRequest] = []

        def _inject(request: DispatchRequest) -> DispatchOutcome:
            injected.append(request)
            return DispatchOutcome(ok=True, transport=Transport.HOOK, reason="injected")

        summary = await HookDispatchConsumer(team).drain(_inject)
        assert summary.processed == 1
        assert summary.notified == 1
        assert injected[0].request_id == outcome.request_id
        request = await coordinator.requests.read(outcome.request_id)
        assert request is not None and request.status == "notified"
        message = await Mailbox(team).find_message("worker-2", outcome.message_id)
        assert message is not None and message.notified_at
        log = await team.store.read_lines(team.layout["dispatch_log"])
        assert log[-1]["type"] == "dispatch_notified"

        again = await HookDispatchConsumer(team).drain(_inject)
        assert again.processed == 0

    @pytest.mark.asyncio
    async def test_unconfirmed_sends_fail_after_max_attempts(self, tmp_path: Path) -> None:
        team = await new_team(tmp_path)
        coordinator = DispatchCoordinator(team)
        outcome = await coordinator.queue_inbox_instruction("worker-1", "inbox")
        consumer = HookDispatchConsumer(team)

        def _inject(request: DispatchRequest) -> DispatchOutcome:
            return DispatchOutcome(ok=True, transport=Transport.TMUX_SEND_KEYS, reason=UNCONFIRMED_SEND)

        first = await consumer.drain(_inject)
        second = await consumer.drain(_inject)
        third = await consumer.drain(_inject)
        assert (first.retried, second.retried, third.failed) == (1, 1, 1)
        request = await coordinator.requests.read(outcome.request_id)
        assert request is not None
        assert request.status == "failed"
        assert request.attempt_count == 3
        assert request.last_reason == "unconfirmed_after_max_retries"

    @pytest.mark.asyncio
    async def test_failed_injection_fails_request(self, tmp_path: Path) -> None:
        team = await new_team(tmp_path)
        coordinator = DispatchCoordinator(team)
        outcome = await coordinator.queue_inbox_instruction("worker-1", "inbox")

        def _inject(request: DispatchRequest) -> DispatchOutcome:
            raise OSError("pane gone")

        summary = await HookDispatchConsumer(team).drain(_inject)
        assert summary.failed == 1
        request = await coordinator.requests.read(outcome.request_id)
        assert request is not None
        assert request.status == "failed"
        assert request.last_reason == "notify_exception:pane gone"

    @pytest.mark.asyncio
    async def test_max_per_tick(self, tmp_path: Path) -> None:
        team = await new_team(tmp_path, workers=3)
        coordinator = DispatchCoordinator(team)
        for name in ("worker-1", "worker-2", "worker-3"):
            await coordinator.queue_inbox_instruction(name, "inbox")

        def _inject(request: DispatchRequest) -> DispatchOutcome:
            return DispatchOutcome(ok=True, transport=Transport.HOOK, reason="injected")

        summary = await HookDispatchConsumer(team).drain(_inject, max_per_tick=2)
        assert summary.processed == 2
        assert len(await coordinator.requests.list(status="pending")) == 1
