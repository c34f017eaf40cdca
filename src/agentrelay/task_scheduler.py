"""Task scheduler: runs scheduled tasks on their due dates."""

from __future__ import annotations

import asyncio
import contextlib
import time
from datetime import UTC, datetime
from typing import Protocol

from agentrelay.config import get_settings
from agentrelay.db import get_due_tasks, get_task_by_id, record_task_run
from agentrelay.logger import logger
from agentrelay.types import AgentResponse, RegisteredGroup, ScheduledTask, TaskRunLog
from agentrelay.utils import compute_next_run

_RESULT_SUMMARY_CHARS = 200


class SchedulerDeps(Protocol):
    """Dependencies for the task scheduler."""

    def registered_groups(self) -> dict[str, RegisteredGroup]: ...

    async def run_agent(
        self,
        group: RegisteredGroup,
        prompt: str,
        address: str,
        *,
        unattended: bool = False,
        context_mode: str = "group",
    ) -> AgentResponse: ...

    async def send_message(self, address: str, text: str, source_group: str) -> None: ...


class TaskScheduler:
    """Poll loop over due tasks. Tasks in one tick run one at a time, earliest first."""

    def __init__(self, deps: SchedulerDeps, *, poll_interval: float | None = None) -> None:
        self._deps = deps
        self._poll_interval = (
            poll_interval if poll_interval is not None else get_settings().scheduler.poll_interval
        )
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            logger.debug("Scheduler loop already running, skipping duplicate start")
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name="task-scheduler")
        logger.info("Scheduler loop started", poll_interval=self._poll_interval)

    async def stop(self) -> None:
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("Scheduler loop stopped")

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.run_due_tasks()
            except Exception as exc:
                logger.error("Error in scheduler loop", err=str(exc))
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), timeout=self._poll_interval)

    async def run_due_tasks(self) -> int:
        """Run every task that is due now. Returns how many ran."""
        due_tasks = await get_due_tasks()
        if due_tasks:
            logger.info("Found due tasks", count=len(due_tasks))

        ran = 0
        for task in due_tasks:
            if self._stopping.is_set():
                break
            # Re-check task status (may have been paused/cancelled)
            current = await get_task_by_id(task.id)
            if current is None or current.status != "active":
                continue
            await self._run_task(current)
            ran += 1
        return ran

    async def _run_task(self, task: ScheduledTask) -> None:
        """Run one task, then advance its schedule and log the run atomically."""
        start = time.monotonic()
        run_at = datetime.now(UTC).isoformat()
        logger.info("Running scheduled task", task_id=task.id, group=task.group_folder)

        result: str | None = None
        error: str | None = None

        group = self._find_group(task)
        if group is None:
            error = f"Group not found: {task.group_folder}"
            logger.error("Group not found for task", task_id=task.id, group_folder=task.group_folder)
        else:
            try:
                response = await self._deps.run_agent(
                    group,
                    task.prompt,
                    task.target_address,
                    unattended=True,
                    context_mode=task.context_mode,
                )
                if response.status == "error":
                    error = response.error or "Agent returned error"
                else:
                    result = response.result
            except Exception as exc:
                error = str(exc)
                logger.error("Task failed", task_id=task.id, err=error)

        duration_ms = (time.monotonic() - start) * 1000
        if error is None:
            logger.info("Task completed", task_id=task.id, duration_ms=round(duration_ms))

        try:
            next_run = compute_next_run(
                task.schedule_type, task.schedule_value, get_settings().timezone
            )
        except ValueError as exc:
            # Unreachable for tasks created through IPC; retire rather than refire forever
            logger.error("Invalid stored schedule, retiring task", task_id=task.id, err=str(exc))
            next_run = None

        if error:
            summary = f"Error: {error}"
        else:
            summary = result[:_RESULT_SUMMARY_CHARS] if result else "Completed"
        recorded = await record_task_run(
            task.id,
            next_run,
            summary,
            TaskRunLog(
                task_id=task.id,
                run_at=run_at,
                duration_ms=round(duration_ms),
                status="error" if error else "success",
                result=result,
                error=error,
            ),
        )
        if not recorded:
            logger.info("Task deleted while running, run not recorded", task_id=task.id)
            return

        if result and group is not None:
            try:
                await self._deps.send_message(task.target_address, result, task.group_folder)
            except Exception as exc:
                logger.warning("Failed to deliver task result", task_id=task.id, err=str(exc))

    def _find_group(self, task: ScheduledTask) -> RegisteredGroup | None:
        groups = self._deps.registered_groups()
        group = groups.get(task.target_address)
        if group is not None and group.folder == task.group_folder:
            return group
        return next((g for g in groups.values() if g.folder == task.group_folder), None)
