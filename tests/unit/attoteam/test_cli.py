from __future__ import annotations

import json
import logging
import re
import shlex
from collections.abc import Iterator
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest
from click.testing import CliRunner, Result

from attoteam.cli import main
from attoteam.coordinator.bootstrap import generate_initial_inbox


@pytest.fixture(autouse=True)
def _restore_root_logging() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


def _run(tmp_path: Path, *args: str) -> Result:
    return CliRunner().invoke(main, ["--cwd", str(tmp_path), *args])


def _json(result: Result) -> dict[str, Any]:
    # Log lines may precede the JSON document on the captured stream.
    text = result.output
    return json.loads(text[text.index("{\n"):])


def _init(tmp_path: Path, workers: int = 2) -> None:
    result = _run(tmp_path, "init", "alpha", "--task", "ship it", "--workers", str(workers))
    assert result.exit_code == 0, result.output


def test_help_lists_commands() -> None:
    result = CliRunner().invoke(main, ["--help"])
    assert result.exit_code == 0
    for name in (
        "init", "task", "send", "broadcast", "mailbox", "dispatch", "scale-up", "scale-down",
        "heartbeat", "cleanup",
    ):
        assert name in result.output


def test_init_and_task_flow(tmp_path: Path) -> None:
    _init(tmp_path)
    assert (tmp_path / ".attoteam" / "state" / "team" / "alpha" / "config.json").exists()

    created = _json(_run(tmp_path, "task", "create", "alpha", "--subject", "Parser"))
    assert created["task"]["id"] == "1"

    claim = _run(tmp_path, "task", "claim", "alpha", "1", "--worker", "worker-1")
    assert claim.exit_code == 0, claim.output
    token = _json(claim)["claim_token"]

    done = _run(
        tmp_path, "task", "transition", "alpha", "1",
        "--from", "in_progress", "--to", "completed", "--token", token,
    )
    assert done.exit_code == 0, done.output
    assert _json(done)["task"]["status"] == "completed"

    listed = _json(_run(tmp_path, "task", "list", "alpha", "--status", "completed"))
    assert listed["count"] == 1
    summary = _json(_run(tmp_path, "summary", "alpha"))
    assert summary["tasks"]["completed"] == 1


def test_conflicts_exit_nonzero(tmp_path: Path) -> None:
    _init(tmp_path)
    _run(tmp_path, "task", "create", "alpha", "--subject", "Parser")
    _run(tmp_path, "task", "claim", "alpha", "1", "--worker", "worker-1")
    second = _run(tmp_path, "task", "claim", "alpha", "1", "--worker", "worker-2")
    assert second.exit_code == 1
    assert _json(second)["error"] == "claim_conflict"


def test_task_update(tmp_path: Path) -> None:
    _init(tmp_path)
    _run(tmp_path, "task", "create", "alpha", "--subject", "Parser")
    ok = _run(tmp_path, "task", "update", "alpha", "1", "--set", 'metadata={"area": "io"}')
    assert ok.exit_code == 0, ok.output
    assert _json(ok)["task"]["metadata"] == {"area": "io"}

    forbidden = _run(tmp_path, "task", "update", "alpha", "1", "--set", "status=completed")
    assert forbidden.exit_code == 1
    assert _json(forbidden)["error"] == "lifecycle_field_forbidden"

    malformed = _run(tmp_path, "task", "update", "alpha", "1", "--set", "nonsense")
    assert malformed.exit_code == 2


def test_messaging(tmp_path: Path) -> None:
    _init(tmp_path, workers=3)
    sent = _run(tmp_path, "send", "alpha", "--from", "worker-1", "--to", "worker-2", "--body", "hi")
    assert sent.exit_code == 0, sent.output
    message_id = _json(sent)["message"]["message_id"]

    broadcast = _json(_run(tmp_path, "broadcast", "alpha", "--from", "worker-1", "--body", "sync"))
    assert broadcast["count"] == 2

    inbox = _json(_run(tmp_path, "mailbox", "alpha", "worker-2"))
    assert inbox["count"] == 2
    marked = _run(tmp_path, "mailbox", "alpha", "worker-2", "--mark-delivered", message_id)
    assert marked.exit_code == 0, marked.output
    assert _json(_run(tmp_path, "mailbox", "alpha", "worker-2"))["count"] == 1

    pending = _json(_run(tmp_path, "dispatch", "list", "alpha", "--status", "pending"))
    assert pending["count"] == 3


def test_scaling_disabled_by_default(tmp_path: Path) -> None:
    _init(tmp_path)
    result = _run(tmp_path, "scale-up", "alpha", "1")
    assert result.exit_code == 1
    assert _json(result)["error"] == "scaling_disabled"


def test_dispatch_drain_requires_tmux(tmp_path: Path) -> None:
    _init(tmp_path)
    with patch("attoteam.cli.is_tmux_available", return_value=False):
        result = _run(tmp_path, "dispatch", "drain", "alpha")
    assert result.exit_code == 1
    assert _json(result)["error"] == "tmux_unavailable"


def test_dispatch_drain_with_nothing_pending(tmp_path: Path) -> None:
    _init(tmp_path)
    with patch("attoteam.cli.is_tmux_available", return_value=True):
        result = _run(tmp_path, "dispatch", "drain", "alpha")
    assert result.exit_code == 0, result.output
    assert _json(result)["processed"] == 0


def _inbox_commands(inbox: str) -> dict[str, list[str]]:
    """Commands quoted in a worker inbox, keyed by subcommand, without the program name."""
    commands: dict[str, list[str]] = {}
    for line in re.findall(r"`(attoteam [^`]+)`", inbox):
        argv = shlex.split(line)[1:]
        key = " ".join(argv[:2]) if argv[0] == "task" else argv[0]
        commands[key] = argv
    return commands


def test_inbox_commands_run_as_written(tmp_path: Path) -> None:
    _init(tmp_path)
    _json(_run(tmp_path, "task", "create", "alpha", "--subject", "Parser"))
    inbox = generate_initial_inbox("worker-1", "alpha", "executor", [])
    commands = _inbox_commands(inbox)
    assert set(commands) == {"send", "task claim", "task transition", "heartbeat"}

    sent = _run(tmp_path, *commands["send"])
    assert sent.exit_code == 0, sent.output
    assert _json(sent)["message"]["to_worker"] == "leader-fixed"

    claim = _run(tmp_path, *[arg.replace("<id>", "1") for arg in commands["task claim"]])
    assert claim.exit_code == 0, claim.output
    token = _json(claim)["claim_token"]

    transition = [
        arg.replace("<id>", "1").replace("<claim_token>", token)
        for arg in commands["task transition"]
    ]
    done = _run(tmp_path, *transition)
    assert done.exit_code == 0, done.output
    assert _json(done)["task"]["status"] == "completed"

    beat = _run(tmp_path, *commands["heartbeat"])
    assert beat.exit_code == 0, beat.output
    assert _json(beat)["heartbeat"]["turn_count"] == 1


def test_cleanup_asks_before_deleting(tmp_path: Path) -> None:
    _init(tmp_path)
    team_dir = tmp_path / ".attoteam" / "state" / "team" / "alpha"
    declined = CliRunner().invoke(main, ["--cwd", str(tmp_path), "cleanup", "alpha"], input="n\n")
    assert declined.exit_code != 0
    assert team_dir.is_dir()

    removed = _run(tmp_path, "cleanup", "alpha", "--yes")
    assert removed.exit_code == 0, removed.output
    assert not team_dir.exists()
