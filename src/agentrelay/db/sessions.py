"""Sessions, provider overrides, and router state (key-value store)."""

from __future__ import annotations

from agentrelay.db._connection import _get_db, atomic_write
from agentrelay.utils import now_iso

# --- Router state ---


async def get_router_state(key: str) -> str | None:
    """Get a router state value."""
    db = _get_db()
    cursor = await db.execute("SELECT value FROM router_state WHERE key = ?", (key,))
    row = await cursor.fetchone()
    return row["value"] if row else None


async def set_router_state(key: str, value: str) -> None:
    """Set a router state value."""
    async with atomic_write() as db:
        await db.execute(
            "INSERT OR REPLACE INTO router_state (key, value) VALUES (?, ?)",
            (key, value),
        )


# --- Sessions (one per group + provider) ---


async def set_session(group_folder: str, provider: str, session_id: str) -> None:
    async with atomic_write() as db:
        await db.execute(
            """
            INSERT OR REPLACE INTO sessions (group_folder, provider, session_id, updated_at)
            VALUES (?, ?, ?, ?)
            """,
            (group_folder, provider, session_id, now_iso()),
        )


async def clear_session(group_folder: str, provider: str | None = None) -> None:
    """Delete a group's session for one provider, or for all providers."""
    async with atomic_write() as db:
        if provider is None:
            await db.execute("DELETE FROM sessions WHERE group_folder = ?", (group_folder,))
        else:
            await db.execute(
                "DELETE FROM sessions WHERE group_folder = ? AND provider = ?",
                (group_folder, provider),
            )


async def get_all_sessions() -> dict[tuple[str, str], str]:
    """All sessions as {(group_folder, provider): session_id}."""
    db = _get_db()
    cursor = await db.execute("SELECT group_folder, provider, session_id FROM sessions")
    rows = await cursor.fetchall()
    return {(row["group_folder"], row["provider"]): row["session_id"] for row in rows}


# --- Provider overrides ---


async def get_provider_overrides() -> dict[str, str]:
    db = _get_db()
    cursor = await db.execute("SELECT group_folder, provider FROM provider_overrides")
    rows = await cursor.fetchall()
    return {row["group_folder"]: row["provider"] for row in rows}


async def set_provider_override(group_folder: str, provider: str) -> None:
    async with atomic_write() as db:
        await db.execute(
            """
            INSERT OR REPLACE INTO provider_overrides (group_folder, provider, updated_at)
            VALUES (?, ?, ?)
            """,
            (group_folder, provider, now_iso()),
        )


async def delete_provider_override(group_folder: str) -> None:
    async with atomic_write() as db:
        await db.execute(
            "DELETE FROM provider_overrides WHERE group_folder = ?", (group_folder,)
        )
