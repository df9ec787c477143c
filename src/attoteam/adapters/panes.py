"""Process/pane spawner interface and the notifier built on it."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from attoteam.coordinator.dispatch import (
    DispatchContext,
    DispatchOutcome,
    Notifier,
    NotifyTarget,
    Transport,
)


@dataclass(slots=True)
class PaneHandle:
    pane_id: str
    pid: int | None = None
    worker_index: int | None = None
    session: str | None = None


@runtime_checkable
class PaneSpawner(Protocol):
    """Starts worker processes and types into their input streams.

    ``send_text`` must deliver *text* literally and submit it with a
    separate key event, so text is never interpreted as control keys.
    """

    async def spawn(
        self,
        team: str,
        index: int,
        launch_args: list[str],
        cwd: str,
        env: dict[str, str],
    ) -> PaneHandle: ...

    async def is_alive(self, handle: PaneHandle) -> bool: ...

    async def send_text(self, handle: PaneHandle, text: str) -> bool: ...

    async def terminate(self, handle: PaneHandle) -> None: ...

    async def wait_ready(self, handle: PaneHandle, timeout_ms: int) -> bool: ...


def pane_notifier(spawner: PaneSpawner, transport: Transport = Transport.TMUX_SEND_KEYS) -> Notifier:
    """Notifier that types the trigger line straight into the worker's pane."""

    async def _notify(target: NotifyTarget, message: str, context: DispatchContext) -> DispatchOutcome:
        if not target.pane_id:
            return DispatchOutcome(ok=False, transport=transport, reason="pane_unavailable")
        handle = PaneHandle(pane_id=target.pane_id, worker_index=target.worker_index)
        if not await spawner.is_alive(handle):
            return DispatchOutcome(ok=False, transport=transport, reason="pane_dead")
        sent = await spawner.send_text(handle, message)
        if not sent:
            return DispatchOutcome(ok=False, transport=transport, reason="send_text_failed")
        return DispatchOutcome(ok=True, transport=transport, reason="sent")

    return _notify
