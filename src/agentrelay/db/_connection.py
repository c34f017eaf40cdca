"""Database connection, schema, and write serialization.

Single module-level connection, initialized by init_database().

``_SCHEMA`` is the source of truth for table definitions.
``CREATE TABLE IF NOT EXISTS`` makes initialization safe to repeat.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import aiosqlite

from agentrelay.config import get_settings
from agentrelay.logger import logger

_db: aiosqlite.Connection | None = None

# The IPC watcher, the scheduler and message handling share one connection,
# and sqlite3 transactions are per connection. Writes that span statements
# (task advance plus run log, cascading deletes) hold this lock.
_write_lock: asyncio.Lock | None = None


@asynccontextmanager
async def atomic_write() -> AsyncIterator[aiosqlite.Connection]:
    """Acquire the write lock, yield the connection, commit or roll back."""
    global _write_lock
    if _write_lock is None:
        _write_lock = asyncio.Lock()

    db = _get_db()
    async with _write_lock:
        try:
            yield db
            await db.commit()
        except Exception:
            await db.rollback()
            raise


_SCHEMA = """\
CREATE TABLE IF NOT EXISTS scheduled_tasks (
    id TEXT PRIMARY KEY,
    group_folder TEXT NOT NULL,
    target_address TEXT NOT NULL,
    prompt TEXT NOT NULL,
    schedule_type TEXT NOT NULL,
    schedule_value TEXT NOT NULL,
    next_run TEXT,
    last_run TEXT,
    last_result TEXT,
    status TEXT DEFAULT 'active',
    created_at TEXT NOT NULL,
    context_mode TEXT DEFAULT 'isolated'
);
CREATE INDEX IF NOT EXISTS idx_next_run ON scheduled_tasks(next_run);
CREATE INDEX IF NOT EXISTS idx_status ON scheduled_tasks(status);
CREATE INDEX IF NOT EXISTS idx_group_folder ON scheduled_tasks(group_folder);

CREATE TABLE IF NOT EXISTS task_run_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL,
    run_at TEXT NOT NULL,
    duration_ms INTEGER NOT NULL,
    status TEXT NOT NULL,
    result TEXT,
    error TEXT,
    FOREIGN KEY (task_id) REFERENCES scheduled_tasks(id)
);
CREATE INDEX IF NOT EXISTS idx_task_run_logs ON task_run_logs(task_id, run_at);

CREATE TABLE IF NOT EXISTS router_state (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS sessions (
    group_folder TEXT NOT NULL,
    provider TEXT NOT NULL,
    session_id TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (group_folder, provider)
);
CREATE TABLE IF NOT EXISTS provider_overrides (
    group_folder TEXT PRIMARY KEY,
    provider TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS registered_groups (
    address TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    folder TEXT NOT NULL UNIQUE,
    trigger_pattern TEXT NOT NULL,
    added_at TEXT NOT NULL,
    container_config TEXT,
    requires_trigger INTEGER DEFAULT 1
);
"""


def _get_db() -> aiosqlite.Connection:
    if _db is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return _db


async def _create_schema(database: aiosqlite.Connection) -> None:
    await database.executescript(_SCHEMA)


async def init_database() -> None:
    """Initialize the database connection and schema."""
    global _db
    db_path = get_settings().store_dir / "relay.db"
    db_path.parent.mkdir(parents=True, exist_ok=True)

    _db = await aiosqlite.connect(str(db_path))
    _db.row_factory = aiosqlite.Row
    await _create_schema(_db)
    logger.info("Database ready", path=str(db_path))


async def close_database() -> None:
    global _db
    if _db is not None:
        await _db.close()
        _db = None


async def _init_test_database() -> None:
    """Swap in a fresh in-memory database.

    Each test runs on its own event loop, so the previous connection is
    stopped and its worker thread joined rather than awaited.
    """
    global _db, _write_lock
    if _db is not None:
        _db.stop()
        if _db._thread is not None and _db._thread.is_alive():
            _db._thread.join(timeout=2)
    _write_lock = None
    _db = await aiosqlite.connect(":memory:")
    _db.row_factory = aiosqlite.Row
    await _create_schema(_db)
