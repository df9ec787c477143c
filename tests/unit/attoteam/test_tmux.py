"""Tests for the tmux pane spawner (subprocess calls are mocked)."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from attoteam.adapters.panes import PaneHandle, PaneSpawner, pane_notifier
from attoteam.adapters.tmux import TmuxPaneSpawner
from attoteam.coordinator.dispatch import DispatchContext, NotifyTarget
from attoteam.errors import TransportError, ValidationError
from attoteam.protocol.models import DispatchRequest

_EXEC = "attoteam.adapters.tmux.asyncio.create_subprocess_exec"


def _proc(stdout: str = "", returncode: int = 0, stderr: str = "") -> MagicMock:
    proc = MagicMock()
    proc.returncode = returncode
    proc.communicate = AsyncMock(return_value=(stdout.encode(), stderr.encode()))
    return proc


def _argv(mock: AsyncMock) -> list[tuple[str, ...]]:
    return [call.args[1:] for call in mock.call_args_list]


class TestSpawn:
    @pytest.mark.asyncio
    async def test_split_window(self) -> None:
        spawner = TmuxPaneSpawner(split_target="%0")
        assert isinstance(spawner, PaneSpawner)
        with patch(_EXEC, new=AsyncMock(return_value=_proc("%7 4242\n"))) as exec_mock:
            handle = await spawner.spawn(
                "alpha", 3, ["codex", "--model", "o3 mini"], "/repo", {"ATTOTEAM_WORKER": "alpha/worker-3"},
            )
        assert handle == PaneHandle(pane_id="%7", pid=4242, worker_index=3)
        (argv,) = _argv(exec_mock)
        assert argv[:7] == ("split-window", "-d", "-P", "-F", "#{pane_id} #{pane_pid}", "-c", "/repo")
        assert ("-t", "%0") == argv[7:9]
        assert "ATTOTEAM_WORKER=alpha/worker-3" in argv
        assert argv[-1] == "codex --model 'o3 mini'"

    @pytest.mark.asyncio
    async def test_split_failure(self) -> None:
        spawner = TmuxPaneSpawner()
        with patch(_EXEC, new=AsyncMock(return_value=_proc(returncode=1, stderr="no space"))):
            with pytest.raises(TransportError) as exc_info:
                await spawner.spawn("alpha", 2, [], "/repo", {})
        assert exc_info.value.code == "spawn_failed"

    @pytest.mark.asyncio
    async def test_missing_binary(self) -> None:
        spawner = TmuxPaneSpawner(binary="tmux-missing")
        with patch(_EXEC, new=AsyncMock(side_effect=FileNotFoundError())):
            with pytest.raises(TransportError) as exc_info:
                await spawner.spawn("alpha", 2, [], "/repo", {})
        assert exc_info.value.code == "tmux_unavailable"


class TestSendText:
    @pytest.mark.asyncio
    async def test_literal_text_then_submit(self) -> None:
        spawner = TmuxPaneSpawner()
        with patch(_EXEC, new=AsyncMock(return_value=_proc())) as exec_mock:
            assert await spawner.send_text(PaneHandle(pane_id="%5"), "Enter; C-c")
        assert _argv(exec_mock) == [
            ("send-keys", "-t", "%5", "-l", "--", "Enter; C-c"),
            ("send-keys", "-t", "%5", "C-m"),
        ]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["", "   ", "x" * 200])
    async def test_rejects_bad_text(self, text: str) -> None:
        spawner = TmuxPaneSpawner()
        with patch(_EXEC, new=AsyncMock(return_value=_proc())) as exec_mock:
            with pytest.raises(ValidationError):
                await spawner.send_text(PaneHandle(pane_id="%5"), text)
        exec_mock.assert_not_called()

    @pytest.mark.asyncio
    async def test_failed_send(self) -> None:
        spawner = TmuxPaneSpawner()
        with patch(_EXEC, new=AsyncMock(return_value=_proc(returncode=1, stderr="can't find pane"))):
            assert not await spawner.send_text(PaneHandle(pane_id="%5"), "hi")


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_never_terminates_leader(self) -> None:
        spawner = TmuxPaneSpawner(leader_pane_id="%0", key_delay=0)
        with patch(_EXEC, new=AsyncMock(return_value=_proc())) as exec_mock:
            await spawner.terminate(PaneHandle(pane_id="%0"))
        exec_mock.assert_not_called()

    @pytest.mark.asyncio
    async def test_terminate_sequence(self) -> None:
        spawner = TmuxPaneSpawner(leader_pane_id="%0", key_delay=0)
        with patch(_EXEC, new=AsyncMock(return_value=_proc())) as exec_mock:
            await spawner.terminate(PaneHandle(pane_id="%9"))
        assert _argv(exec_mock) == [
            ("send-keys", "-t", "%9", "C-c"),
            ("send-keys", "-t", "%9", "C-d"),
            ("kill-pane", "-t", "%9"),
        ]

    @pytest.mark.asyncio
    async def test_is_alive(self) -> None:
        spawner = TmuxPaneSpawner()
        with patch(_EXEC, new=AsyncMock(return_value=_proc("1 100\n"))):
            assert not await spawner.is_alive(PaneHandle(pane_id="%9"))
        with patch(_EXEC, new=AsyncMock(return_value=_proc("0 100\n"))), \
                patch("attoteam.adapters.tmux.os.kill") as kill:
            assert await spawner.is_alive(PaneHandle(pane_id="%9"))
        kill.assert_called_once_with(100, 0)
        with patch(_EXEC, new=AsyncMock(return_value=_proc("0 100\n"))), \
                patch("attoteam.adapters.tmux.os.kill", side_effect=ProcessLookupError):
            assert not await spawner.is_alive(PaneHandle(pane_id="%9"))
        with patch(_EXEC, new=AsyncMock(return_value=_proc(returncode=1))):
            assert not await spawner.is_alive(PaneHandle(pane_id="%9"))

    @pytest.mark.asyncio
    async def test_wait_ready(self) -> None:
        spawner = TmuxPaneSpawner()
        with patch(_EXEC, new=AsyncMock(return_value=_proc("booting...\n› \n\n"))):
            assert await spawner.wait_ready(PaneHandle(pane_id="%9"), 1_000)
        with patch(_EXEC, new=AsyncMock(return_value=_proc("still loading\n"))):
            assert not await spawner.wait_ready(PaneHandle(pane_id="%9"), 10)


class TestPaneNotifier:
    @pytest.mark.asyncio
    async def test_reasons(self) -> None:
        spawner = MagicMock()
        spawner.is_alive = AsyncMock(return_value=True)
        spawner.send_text = AsyncMock(return_value=True)
        notify = pane_notifier(spawner)
        request = DispatchRequest(
            request_id="r1", kind="inbox", team_name="alpha", to_worker="worker-1", trigger_message="go",
        )
        context = DispatchContext(request=request)

        no_pane = await notify(NotifyTarget("alpha", "worker-1"), "go", context)
        assert no_pane.reason == "pane_unavailable"

        sent = await notify(NotifyTarget("alpha", "worker-1", 1, "%3"), "go", context)
        assert sent.confirmed
        spawner.send_text.assert_awaited_once()

        spawner.is_alive.return_value = False
        dead = await notify(NotifyTarget("alpha", "worker-1", 1, "%3"), "go", context)
        assert dead.reason == "pane_dead"

        spawner.is_alive.return_value = True
        spawner.send_text.return_value = False
        failed = await notify(NotifyTarget("alpha", "worker-1", 1, "%3"), "go", context)
        assert failed.reason == "send_text_failed"
