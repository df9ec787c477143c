"""Per-worker mailboxes with direct send and broadcast."""

from __future__ import annotations

import contextlib
import logging
import uuid
from collections.abc import AsyncIterator
from typing import Any

from attoteam.coordinator.team import TeamState
from attoteam.errors import ValidationError, WorkerNotFoundError
from attoteam.protocol.locks import exclusion_lock
from attoteam.protocol.models import (
    LEADER_NAME,
    MailboxMessage,
    TeamConfig,
    utc_now_iso,
    validate_worker_name,
)

logger = logging.getLogger(__name__)


class Mailbox:
    """Append-only message queues, one JSON document per recipient."""

    def __init__(self, team: TeamState) -> None:
        self.team = team
        self.store = team.store

    async def send_message(self, from_worker: str, to_worker: str, body: str) -> MailboxMessage:
        validate_worker_name(from_worker)
        validate_worker_name(to_worker)
        self._check_body(body)
        cfg = await self.team.require_config()
        self._check_recipient(cfg, to_worker)
        message = MailboxMessage(
            message_id=uuid.uuid4().hex,
            from_worker=from_worker,
            to_worker=to_worker,
            body=body,
        )
        await self._append(message)
        return message

    async def broadcast(self, from_worker: str, body: str) -> list[MailboxMessage]:
        """Send *body* to every worker except *from_worker*."""
        validate_worker_name(from_worker)
        self._check_body(body)
        cfg = await self.team.require_config()
        messages: list[MailboxMessage] = []
        for worker in cfg.workers:
            if worker.name == from_worker:
                continue
            message = MailboxMessage(
                message_id=uuid.uuid4().hex,
                from_worker=from_worker,
                to_worker=worker.name,
                body=body,
            )
            await self._append(message)
            messages.append(message)
        logger.debug("Broadcast from %s reached %d worker(s)", from_worker, len(messages))
        return messages

    async def list_mailbox(
        self, worker: str, *, include_delivered: bool = False,
    ) -> list[MailboxMessage]:
        doc = await self.store.read(self.team.mailbox_path(worker))
        messages = [MailboxMessage.from_dict(m) for m in _messages(doc)]
        if not include_delivered:
            messages = [m for m in messages if not m.delivered_at]
        return messages

    async def find_message(self, worker: str, message_id: str) -> MailboxMessage | None:
        for message in await self.list_mailbox(worker, include_delivered=True):
            if message.message_id == message_id:
                return message
        return None

    async def mark_notified(self, worker: str, message_id: str) -> bool:
        return await self._stamp(worker, message_id, "notified_at")

    async def mark_delivered(self, worker: str, message_id: str) -> bool:
        return await self._stamp(worker, message_id, "delivered_at")

    # ------------------------------------------------------------------

    @contextlib.asynccontextmanager
    async def _guard(self, worker: str) -> AsyncIterator[None]:
        settings = self.team.settings.dispatch
        async with self.store.serialized(self.team.mailbox_path(worker)):
            async with exclusion_lock(
                self.store,
                self.team.mailbox_lock_path(worker),
                poll_interval=0.01,
                timeout=settings.lock_timeout_ms / 1000,
                stale_after=settings.lock_stale_seconds,
            ):
                yield

    async def _append(self, message: MailboxMessage) -> None:
        path = self.team.mailbox_path(message.to_worker)
        async with self._guard(message.to_worker):
            doc = await self.store.read(path)
            messages = _messages(doc)
            messages.append(message.to_dict())
            await self.store.write_atomic(path, {"worker": message.to_worker, "messages": messages})
        await self.team.append_event("message_received", message.to_worker, reason=message.message_id)

    async def _stamp(self, worker: str, message_id: str, field_name: str) -> bool:
        path = self.team.mailbox_path(worker)
        async with self._guard(worker):
            doc = await self.store.read(path)
            messages = _messages(doc)
            for item in messages:
                if item.get("message_id") != message_id:
                    continue
                if not item.get(field_name):
                    item[field_name] = utc_now_iso()
                    await self.store.write_atomic(path, {"worker": worker, "messages": messages})
                return True
        return False

    @staticmethod
    def _check_body(body: str) -> None:
        if not isinstance(body, str) or not body.strip():
            raise ValidationError("message body must be a non-empty string", code="invalid_body")

    def _check_recipient(self, cfg: TeamConfig, to_worker: str) -> None:
        if to_worker != LEADER_NAME and cfg.worker(to_worker) is None:
            raise WorkerNotFoundError(to_worker, self.team.team_name)


def _messages(doc: Any) -> list[dict[str, Any]]:
    if not isinstance(doc, dict) or not isinstance(doc.get("messages"), list):
        return []
    return [m for m in doc["messages"] if isinstance(m, dict) and m.get("message_id")]
