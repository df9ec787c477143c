"""tmux-backed pane spawner."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import shutil
import time

from attoteam.adapters.panes import PaneHandle
from attoteam.errors import TransportError, ValidationError

logger = logging.getLogger(__name__)

MAX_SEND_LENGTH = 200
READY_BACKOFF_START = 0.3
READY_BACKOFF_MAX = 8.0
DEFAULT_READY_MARKERS = ("›", "> ", "$ ", "% ")


def is_tmux_available(binary: str = "tmux") -> bool:
    return shutil.which(binary) is not None


class TmuxPaneSpawner:
    """Spawns workers as tmux panes and types into them.

    Args:
        split_target: Pane or window new workers are split from.
        leader_pane_id: Pane that is never terminated.
        ready_markers: Prompt fragments meaning the worker is ready.
        binary: tmux executable.
    """

    def __init__(
        self,
        *,
        split_target: str | None = None,
        leader_pane_id: str | None = None,
        ready_markers: tuple[str, ...] = DEFAULT_READY_MARKERS,
        binary: str = "tmux",
        key_delay: float = 0.5,
    ) -> None:
        self.split_target = split_target
        self.leader_pane_id = leader_pane_id
        self.ready_markers = ready_markers
        self.binary = binary
        self.key_delay = key_delay

    async def _run(self, *args: str) -> tuple[int, str, str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.binary,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise TransportError(f"{self.binary} not found", code="tmux_unavailable") from exc
        stdout, stderr = await proc.communicate()
        return (
            proc.returncode or 0,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    async def spawn(
        self,
        team: str,
        index: int,
        launch_args: list[str],
        cwd: str,
        env: dict[str, str],
    ) -> PaneHandle:
        args = ["split-window", "-d", "-P", "-F", "#{pane_id} #{pane_pid}", "-c", cwd]
        if self.split_target:
            args.extend(["-t", self.split_target])
        for key, value in sorted(env.items()):
            args.extend(["-e", f"{key}={value}"])
        if launch_args:
            args.append(shlex.join(launch_args))
        code, out, err = await self._run(*args)
        if code != 0:
            raise TransportError(
                f"tmux split-window failed for {team} worker {index}: {err.strip()}",
                code="spawn_failed",
            )
        parts = out.strip().split()
        if not parts:
            raise TransportError("tmux split-window returned no pane id", code="spawn_failed")
        pid = int(parts[1]) if len(parts) > 1 and parts[1].isdigit() else None
        logger.info("Spawned %s worker %d in pane %s (pid %s)", team, index, parts[0], pid)
        return PaneHandle(pane_id=parts[0], pid=pid, worker_index=index)

    async def is_alive(self, handle: PaneHandle) -> bool:
        code, out, _ = await self._run(
            "list-panes", "-t", handle.pane_id, "-F", "#{pane_dead} #{pane_pid}",
        )
        if code != 0:
            return False
        fields = out.strip().split()
        if not fields or fields[0] == "1":
            return False
        pid = int(fields[1]) if len(fields) > 1 and fields[1].isdigit() else handle.pid
        if pid is None:
            return True
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    async def send_text(self, handle: PaneHandle, text: str) -> bool:
        if not text or not text.strip():
            raise ValidationError("send_text requires non-empty text", code="invalid_text")
        if len(text) >= MAX_SEND_LENGTH:
            raise ValidationError(
                f"send_text text must be under {MAX_SEND_LENGTH} characters", code="invalid_text",
            )
        # Literal text and the submit key go in separate invocations.
        code, _, err = await self._run("send-keys", "-t", handle.pane_id, "-l", "--", text)
        if code != 0:
            logger.warning("send-keys to %s failed: %s", handle.pane_id, err.strip())
            return False
        code, _, err = await self._run("send-keys", "-t", handle.pane_id, "C-m")
        if code != 0:
            logger.warning("submit to %s failed: %s", handle.pane_id, err.strip())
            return False
        return True

    async def terminate(self, handle: PaneHandle) -> None:
        if self.leader_pane_id and handle.pane_id == self.leader_pane_id:
            logger.warning("Refusing to terminate leader pane %s", handle.pane_id)
            return
        await self._run("send-keys", "-t", handle.pane_id, "C-c")
        await asyncio.sleep(self.key_delay)
        await self._run("send-keys", "-t", handle.pane_id, "C-d")
        await asyncio.sleep(self.key_delay)
        await self._run("kill-pane", "-t", handle.pane_id)

    async def wait_ready(self, handle: PaneHandle, timeout_ms: int) -> bool:
        deadline = time.monotonic() + timeout_ms / 1000
        delay = READY_BACKOFF_START
        while True:
            code, out, _ = await self._run("capture-pane", "-p", "-t", handle.pane_id)
            if code == 0 and self._looks_ready(out):
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(delay, remaining))
            delay = min(delay * 2, READY_BACKOFF_MAX)

    def _looks_ready(self, captured: str) -> bool:
        lines = [line for line in captured.splitlines() if line.strip()]
        if not lines:
            return False
        tail = lines[-1]
        return any(marker.strip() and marker.strip() in tail for marker in self.ready_markers)
