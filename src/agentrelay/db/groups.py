"""Registered groups."""

from __future__ import annotations

import json

from agentrelay.db._connection import _get_db, atomic_write
from agentrelay.logger import logger
from agentrelay.types import GroupSandboxConfig, RegisteredGroup


def _row_to_group(row) -> RegisteredGroup:
    container_config = None
    if row["container_config"]:
        try:
            container_config = GroupSandboxConfig.from_dict(json.loads(row["container_config"]))
        except (ValueError, TypeError, AttributeError) as exc:
            logger.warning(
                "Ignoring unreadable container config",
                folder=row["folder"],
                err=str(exc),
            )
    return RegisteredGroup(
        name=row["name"],
        folder=row["folder"],
        trigger=row["trigger_pattern"],
        added_at=row["added_at"],
        container_config=container_config,
        requires_trigger=bool(row["requires_trigger"]),
    )


async def set_registered_group(address: str, group: RegisteredGroup) -> None:
    async with atomic_write() as db:
        await db.execute(
            """
            INSERT OR REPLACE INTO registered_groups
                (address, name, folder, trigger_pattern, added_at,
                 container_config, requires_trigger)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                address,
                group.name,
                group.folder,
                group.trigger,
                group.added_at,
                json.dumps(group.container_config.to_dict()) if group.container_config else None,
                1 if group.requires_trigger else 0,
            ),
        )


async def get_all_registered_groups() -> dict[str, RegisteredGroup]:
    """All registered groups as {address: group}."""
    db = _get_db()
    cursor = await db.execute("SELECT * FROM registered_groups")
    rows = await cursor.fetchall()
    return {row["address"]: _row_to_group(row) for row in rows}
