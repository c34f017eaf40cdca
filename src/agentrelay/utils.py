"""Shared utility functions.

Small helpers used across multiple modules: schedule calculations, task id
generation, atomic JSON writes, and fire-and-forget background tasks.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import Coroutine
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo

from croniter import croniter

from agentrelay.logger import logger
from agentrelay.types import ScheduleType


def write_json_atomic(path: Path, data: Any, *, indent: int | None = None) -> None:
    """Write JSON data to a file using atomic rename (tmp → final).

    Readers either see the old content or the complete new content.
    Creates parent directories if they don't exist.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".json.tmp")
    tmp.write_text(json.dumps(data, indent=indent))
    tmp.rename(path)


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


def generate_task_id() -> str:
    ms = int(datetime.now(UTC).timestamp() * 1000)
    return f"task-{ms}-{uuid.uuid4().hex[:8]}"


def compute_next_run(
    schedule_type: ScheduleType,
    schedule_value: str,
    timezone: str,
) -> str | None:
    """Compute the next run ISO timestamp for a scheduled task after a run.

    Always returns UTC isoformat so SQLite lexicographic comparison
    against ``datetime.now(UTC).isoformat()`` works correctly in
    ``get_due_tasks()``.

    Returns None for 'once' tasks (no recurrence).
    Raises ValueError for invalid cron/interval values so callers can reject them.
    """
    if schedule_type == "cron":
        if not croniter.is_valid(schedule_value):
            raise ValueError(f"Invalid cron expression: {schedule_value!r}")
        tz = ZoneInfo(timezone)
        cron = croniter(schedule_value, datetime.now(tz))
        return cron.get_next(datetime).astimezone(UTC).isoformat()

    if schedule_type == "interval":
        ms = int(schedule_value)
        if ms <= 0:
            raise ValueError("Interval must be positive")
        return datetime.fromtimestamp(
            datetime.now(UTC).timestamp() + ms / 1000,
            tz=UTC,
        ).isoformat()

    # 'once' tasks: no next run after execution
    return None


def compute_first_run(
    schedule_type: ScheduleType,
    schedule_value: str,
    timezone: str,
) -> str:
    """Compute the initial next_run for a newly created task.

    Cron and interval behave as in compute_next_run. A 'once' value must be
    an ISO timestamp; naive timestamps are read in *timezone*.

    Raises ValueError for anything that would leave the task unscheduled.
    """
    if schedule_type == "once":
        scheduled = datetime.fromisoformat(schedule_value)
        if scheduled.tzinfo is None:
            scheduled = scheduled.replace(tzinfo=ZoneInfo(timezone))
        return scheduled.astimezone(UTC).isoformat()

    if schedule_type not in ("cron", "interval"):
        raise ValueError(f"Unknown schedule type: {schedule_type!r}")

    next_run = compute_next_run(schedule_type, schedule_value, timezone)
    if next_run is None:
        raise ValueError("Recurring schedule produced no next run")
    return next_run


def create_background_task(
    coro: Coroutine[Any, Any, Any],
    *,
    name: str | None = None,
) -> asyncio.Task[Any]:
    """Create an asyncio task that logs exceptions instead of swallowing them.

    A drop-in replacement for ``asyncio.create_task`` for fire-and-forget
    work (container stops after a timeout) where we don't await the result
    but still want failures to appear in logs.
    """
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    task.add_done_callback(_log_task_exception)
    return task


# Strong references so pending background tasks are not garbage collected
_background_tasks: set[asyncio.Task[Any]] = set()


def _log_task_exception(task: asyncio.Task[Any]) -> None:
    """Callback attached to background tasks. Logs unhandled exceptions."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Background task failed",
            task_name=task.get_name(),
            exc_info=exc,
        )
