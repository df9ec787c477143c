"""Inbox documents and short trigger lines sent to worker panes."""

from __future__ import annotations

from typing import Any

from attoteam.protocol.models import LEADER_NAME

# Trigger lines are typed into a pane, keep them short and ASCII.
MAX_TRIGGER_LENGTH = 200

_STATE_PREFIX = ".attoteam/state/team"


def _team_dir(team_name: str, team_dir: str | None) -> str:
    return (team_dir or f"{_STATE_PREFIX}/{team_name}").rstrip("/")


def _task_entry(task: dict[str, Any]) -> str:
    lines = [
        f"- **Task {task.get('id', '?')}**: {task.get('subject', '')}",
        f"  Description: {task.get('description', '')}",
        f"  Status: {task.get('status', 'pending')}",
    ]
    blocked_by = task.get("blocked_by") or []
    if blocked_by:
        lines.append(f"  Blocked by: {', '.join(str(b) for b in blocked_by)}")
    return "\n".join(lines)


def generate_initial_inbox(
    worker_name: str,
    team_name: str,
    role: str,
    tasks: list[dict[str, Any]],
    *,
    team_dir: str | None = None,
) -> str:
    """Markdown assignment written to a new worker's ``inbox.md``."""
    task_list = "\n".join(_task_entry(t) for t in tasks) or "_No tasks assigned yet._"
    team_dir = _team_dir(team_name, team_dir)
    return (
        f"# Worker Assignment: {worker_name}\n"
        "\n"
        f"**Team:** {team_name}\n"
        f"**Role:** {role}\n"
        f"**Worker Name:** {worker_name}\n"
        "\n"
        "## Your Assigned Tasks\n"
        "\n"
        f"{task_list}\n"
        "\n"
        "## Instructions\n"
        "\n"
        f"1. Acknowledge startup by messaging `{LEADER_NAME}`: "
        f"`attoteam send {team_name} --from {worker_name} --to {LEADER_NAME} --body \"ready\"`\n"
        "2. Pick the first task that is not blocked.\n"
        f"3. Read `{team_dir}/tasks/task-<id>.json`; task ids are plain numbers (`\"1\"`).\n"
        "4. Claim it before starting and keep the returned `claim_token`: "
        f"`attoteam task claim {team_name} <id> --worker {worker_name}`\n"
        "5. Finish with the claim token (use `--to failed --error \"...\"` on failure): "
        f"`attoteam task transition {team_name} <id> --from in_progress --to completed "
        "--token <claim_token> --result \"...\"`\n"
        f"6. Set `{{\"state\": \"idle\"}}` in `{team_dir}/workers/{worker_name}/status.json`.\n"
        f"7. After each turn: `attoteam heartbeat {team_name} {worker_name}`\n"
        "8. Wait for the next instruction from the leader.\n"
        "\n"
        "## Scope Rules\n"
        "\n"
        "- Only edit files named in your task descriptions.\n"
        "- Never edit files owned by another worker.\n"
        "- If a shared file must change, set your status to `working` with a reason and ask the leader.\n"
    )


def generate_shutdown_inbox(team_name: str, worker_name: str, *, team_dir: str | None = None) -> str:
    """Inbox written to a worker that is being drained."""
    ack_path = f"{_team_dir(team_name, team_dir)}/workers/{worker_name}/shutdown-ack.json"
    return (
        "# Shutdown Request\n"
        "\n"
        f"Worker `{worker_name}` is being removed from team `{team_name}`.\n"
        "Do not claim new tasks.\n"
        "\n"
        "1. Finish or release your current task.\n"
        f"2. Write your answer to `{ack_path}`:\n"
        "   - accept: `{\"status\": \"accept\", \"updated_at\": \"<ISO timestamp>\"}`\n"
        "   - reject: `{\"status\": \"reject\", \"reason\": \"<why>\", \"updated_at\": \"<ISO timestamp>\"}`\n"
        "3. After accepting, set your status to `done`.\n"
    )


def generate_trigger_message(worker_name: str, team_name: str, *, team_dir: str | None = None) -> str:
    return (
        "Read and follow the instructions in "
        f"{_team_dir(team_name, team_dir)}/workers/{worker_name}/inbox.md"
    )


def generate_mailbox_trigger_message(
    worker_name: str, team_name: str, count: int = 1, *, team_dir: str | None = None,
) -> str:
    n = max(1, int(count))
    return f"You have {n} new message(s). Check {_team_dir(team_name, team_dir)}/mailbox/{worker_name}.json"
