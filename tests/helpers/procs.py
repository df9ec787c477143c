"""Entry points run in separate processes by the cross-process tests.

Each function must stay importable at module level so a ``spawn``
multiprocessing context can pickle it.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

from attoteam.coordinator.tasks import TaskRegistry
from attoteam.coordinator.team import TeamState
from attoteam.protocol.store import FileStateStore
from tests.helpers.fakes import fast_settings


async def _create_tasks(state_root: Path, team_name: str, count: int, label: str) -> None:
    team = TeamState(FileStateStore(), state_root, team_name, fast_settings())
    registry = TaskRegistry(team)
    for n in range(count):
        await registry.create_task(f"{label} #{n}", "created from another process")


def create_tasks(state_root: str, team_name: str, count: int, label: str) -> None:
    asyncio.run(_create_tasks(Path(state_root), team_name, count, label))
