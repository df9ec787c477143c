from __future__ import annotations

from attoteam.coordinator.bootstrap import (
    MAX_TRIGGER_LENGTH,
    generate_initial_inbox,
    generate_mailbox_trigger_message,
    generate_shutdown_inbox,
    generate_trigger_message,
)


def test_initial_inbox_lists_tasks() -> None:
    inbox = generate_initial_inbox(
        "worker-3",
        "alpha",
        "executor",
        [
            {"id": "4", "subject": "Parser", "description": "Write it", "status": "pending"},
            {"id": "5", "subject": "Docs", "description": "Explain it", "blocked_by": ["4"]},
        ],
    )
    assert inbox.startswith("# Worker Assignment: worker-3")
    assert "**Role:** executor" in inbox
    assert "- **Task 4**: Parser" in inbox
    assert "Blocked by: 4" in inbox
    assert ".attoteam/state/team/alpha/workers/worker-3/status.json" in inbox


def test_initial_inbox_without_tasks() -> None:
    assert "_No tasks assigned yet._" in generate_initial_inbox("worker-1", "alpha", "executor", [])


def test_shutdown_inbox() -> None:
    inbox = generate_shutdown_inbox("alpha", "worker-2")
    assert inbox.startswith("# Shutdown Request")
    assert "`worker-2`" in inbox
    assert "Do not claim new tasks." in inbox


def test_trigger_lines_fit_in_a_pane() -> None:
    trigger = generate_trigger_message("worker-12", "a" * 30)
    assert trigger.endswith("/workers/worker-12/inbox.md")
    assert len(trigger) < MAX_TRIGGER_LENGTH
    mail = generate_mailbox_trigger_message("worker-12", "alpha", count=3)
    assert mail.startswith("You have 3 new message(s).")
    assert len(mail) < MAX_TRIGGER_LENGTH
    assert generate_mailbox_trigger_message("worker-1", "alpha", count=0).startswith("You have 1 ")


def test_custom_team_dir_is_used_everywhere() -> None:
    team_dir = "/srv/state/team/alpha"
    inbox = generate_initial_inbox("worker-2", "alpha", "executor", [], team_dir=team_dir)
    assert f"{team_dir}/workers/worker-2/status.json" in inbox
    assert f"{team_dir}/tasks/task-<id>.json" in inbox
    assert ".attoteam/state" not in inbox
    assert generate_trigger_message("worker-2", "alpha", team_dir=team_dir + "/") == (
        f"Read and follow the instructions in {team_dir}/workers/worker-2/inbox.md"
    )
    mail = generate_mailbox_trigger_message("worker-2", "alpha", team_dir=team_dir)
    assert mail.endswith(f"{team_dir}/mailbox/worker-2.json")


def test_inbox_commands_name_the_team_positionally() -> None:
    inbox = generate_initial_inbox("worker-1", "alpha", "executor", [])
    assert "`attoteam send alpha --from worker-1 --to leader-fixed --body \"ready\"`" in inbox
    assert "`attoteam task claim alpha <id> --worker worker-1`" in inbox
    assert "--team" not in inbox


def test_shutdown_inbox_explains_the_ack() -> None:
    inbox = generate_shutdown_inbox("alpha", "worker-2", team_dir="state/team/alpha")
    assert "`state/team/alpha/workers/worker-2/shutdown-ack.json`" in inbox
    assert '{"status": "accept"' in inbox
    assert '{"status": "reject", "reason"' in inbox
