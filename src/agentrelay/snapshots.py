"""Snapshot files written into a group's IPC directory before each run.

The sandbox has no access to the database, so the orchestrator leaves it
read-only views of scheduled tasks and known groups.
"""

from __future__ import annotations

from typing import Any

from agentrelay import db
from agentrelay.config import get_settings
from agentrelay.utils import now_iso, write_json_atomic


def write_tasks_snapshot(folder: str, is_privileged: bool, tasks: list[dict[str, Any]]) -> None:
    """Write current_tasks.json. Only the privileged group sees other groups' tasks."""
    visible = tasks if is_privileged else [t for t in tasks if t.get("groupFolder") == folder]
    write_json_atomic(get_settings().ipc_dir / folder / "current_tasks.json", visible, indent=2)


def write_groups_snapshot(
    folder: str,
    is_privileged: bool,
    groups: list[dict[str, Any]],
) -> None:
    """Write available_groups.json. Non-privileged groups get an empty list."""
    payload = {
        "groups": groups if is_privileged else [],
        "lastSync": now_iso(),
    }
    write_json_atomic(get_settings().ipc_dir / folder / "available_groups.json", payload, indent=2)


async def refresh_task_snapshot(folder: str, is_privileged: bool) -> None:
    tasks = await db.get_all_tasks()
    write_tasks_snapshot(folder, is_privileged, [t.to_snapshot_dict() for t in tasks])
