"""Scheduled task CRUD and run logging."""

from __future__ import annotations

from datetime import UTC, datetime

from agentrelay.db._connection import _get_db, atomic_write
from agentrelay.types import ScheduledTask, TaskRunLog


def _row_to_task(row) -> ScheduledTask:
    return ScheduledTask(
        id=row["id"],
        group_folder=row["group_folder"],
        target_address=row["target_address"],
        prompt=row["prompt"],
        schedule_type=row["schedule_type"],
        schedule_value=row["schedule_value"],
        context_mode=row["context_mode"] or "isolated",
        next_run=row["next_run"],
        last_run=row["last_run"],
        last_result=row["last_result"],
        status=row["status"],
        created_at=row["created_at"],
    )


def _row_to_run_log(row) -> TaskRunLog:
    return TaskRunLog(
        task_id=row["task_id"],
        run_at=row["run_at"],
        duration_ms=row["duration_ms"],
        status=row["status"],
        result=row["result"],
        error=row["error"],
    )


async def create_task(task: ScheduledTask) -> None:
    """Create a new scheduled task."""
    async with atomic_write() as db:
        await db.execute(
            """
            INSERT INTO scheduled_tasks
                (id, group_folder, target_address, prompt, schedule_type,
                 schedule_value, context_mode, next_run, status, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                task.id,
                task.group_folder,
                task.target_address,
                task.prompt,
                task.schedule_type,
                task.schedule_value,
                task.context_mode,
                task.next_run,
                task.status,
                task.created_at,
            ),
        )


async def get_task_by_id(task_id: str) -> ScheduledTask | None:
    """Get a task by its ID."""
    db = _get_db()
    cursor = await db.execute("SELECT * FROM scheduled_tasks WHERE id = ?", (task_id,))
    row = await cursor.fetchone()
    if row is None:
        return None
    return _row_to_task(row)


async def get_tasks_for_group(group_folder: str) -> list[ScheduledTask]:
    """Get all tasks for a group, newest first."""
    db = _get_db()
    cursor = await db.execute(
        "SELECT * FROM scheduled_tasks WHERE group_folder = ? ORDER BY created_at DESC",
        (group_folder,),
    )
    rows = await cursor.fetchall()
    return [_row_to_task(row) for row in rows]


async def get_all_tasks() -> list[ScheduledTask]:
    """Get all tasks, newest first."""
    db = _get_db()
    cursor = await db.execute("SELECT * FROM scheduled_tasks ORDER BY created_at DESC")
    rows = await cursor.fetchall()
    return [_row_to_task(row) for row in rows]


async def set_task_status(
    task_id: str,
    status: str,
    *,
    only_from: str | None = None,
) -> bool:
    """Change a task's status, optionally only when it currently has *only_from*.

    Returns True when a row changed.
    """
    async with atomic_write() as db:
        if only_from is None:
            cursor = await db.execute(
                "UPDATE scheduled_tasks SET status = ? WHERE id = ?",
                (status, task_id),
            )
        else:
            cursor = await db.execute(
                "UPDATE scheduled_tasks SET status = ? WHERE id = ? AND status = ?",
                (status, task_id, only_from),
            )
        return cursor.rowcount > 0


async def delete_task(task_id: str) -> None:
    """Delete a task and its run logs (logs first, they reference the task)."""
    async with atomic_write() as db:
        await db.execute("DELETE FROM task_run_logs WHERE task_id = ?", (task_id,))
        await db.execute("DELETE FROM scheduled_tasks WHERE id = ?", (task_id,))


async def get_due_tasks() -> list[ScheduledTask]:
    """Get all active tasks that are due to run, earliest first."""
    db = _get_db()
    now = datetime.now(UTC).isoformat()
    cursor = await db.execute(
        """
        SELECT * FROM scheduled_tasks
        WHERE status = 'active' AND next_run IS NOT NULL AND next_run <= ?
        ORDER BY next_run
        """,
        (now,),
    )
    rows = await cursor.fetchall()
    return [_row_to_task(row) for row in rows]


async def record_task_run(
    task_id: str,
    next_run: str | None,
    last_result: str,
    log: TaskRunLog,
) -> bool:
    """Advance a task after a run and append its run log in one transaction.

    A null *next_run* retires the task as completed. The status column is
    otherwise left alone, so a pause that landed during the run survives.
    Returns False when the task was deleted while it ran (nothing written).
    """
    async with atomic_write() as db:
        cursor = await db.execute(
            """
            UPDATE scheduled_tasks
            SET next_run = ?, last_run = ?, last_result = ?,
                status = CASE WHEN ? IS NULL THEN 'completed' ELSE status END
            WHERE id = ?
            """,
            (next_run, log.run_at, last_result, next_run, task_id),
        )
        if cursor.rowcount == 0:
            return False
        await db.execute(
            """
            INSERT INTO task_run_logs (task_id, run_at, duration_ms, status, result, error)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (log.task_id, log.run_at, log.duration_ms, log.status, log.result, log.error),
        )
        return True


async def get_task_run_logs(task_id: str) -> list[TaskRunLog]:
    """Run history for a task, oldest first."""
    db = _get_db()
    cursor = await db.execute(
        "SELECT * FROM task_run_logs WHERE task_id = ? ORDER BY run_at, id",
        (task_id,),
    )
    rows = await cursor.fetchall()
    return [_row_to_run_log(row) for row in rows]
