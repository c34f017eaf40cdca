"""IPC handlers for task scheduling and lifecycle (pause/resume/cancel)."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from agentrelay.config import get_settings
from agentrelay.db import create_task, delete_task, get_task_by_id, set_task_status
from agentrelay.ipc._deps import IpcDeps
from agentrelay.ipc._protocol import (
    CancelTaskRequest,
    PauseTaskRequest,
    ResumeTaskRequest,
    ScheduleTaskRequest,
)
from agentrelay.ipc._registry import register
from agentrelay.logger import logger
from agentrelay.types import ScheduledTask
from agentrelay.utils import compute_first_run, generate_task_id, now_iso


def _resolve_target(
    request: ScheduleTaskRequest, deps: IpcDeps
) -> tuple[str, str] | None:
    """Return (folder, address) for the task's target group, or None."""
    groups = deps.registered_groups()

    if request.target_address is not None:
        group = groups.get(request.target_address)
        if group is None:
            logger.warning(
                "Cannot schedule task: target address not registered",
                target_address=request.target_address,
            )
            return None
        if request.group_folder is not None and request.group_folder != group.folder:
            logger.warning(
                "Cannot schedule task: groupFolder does not match targetAddress",
                group_folder=request.group_folder,
                target_address=request.target_address,
            )
            return None
        return group.folder, request.target_address

    address = next(
        (addr for addr, g in groups.items() if g.folder == request.group_folder),
        None,
    )
    if address is None:
        logger.warning(
            "Cannot schedule task: target group not registered",
            target_folder=request.group_folder,
        )
        return None
    assert request.group_folder is not None
    return request.group_folder, address


async def _handle_schedule_task(
    request: ScheduleTaskRequest,
    source_group: str,
    is_privileged: bool,
    deps: IpcDeps,
) -> None:
    # Check the declared folder before touching the registry so a
    # non-privileged group learns nothing about other groups.
    if (
        not is_privileged
        and request.group_folder is not None
        and request.group_folder != source_group
    ):
        logger.warning(
            "Unauthorized schedule_task attempt blocked",
            source_group=source_group,
            target_folder=request.group_folder,
        )
        return

    target = _resolve_target(request, deps)
    if target is None:
        return
    target_folder, target_address = target

    if not is_privileged and target_folder != source_group:
        logger.warning(
            "Unauthorized schedule_task attempt blocked",
            source_group=source_group,
            target_folder=target_folder,
        )
        return

    try:
        next_run = compute_first_run(
            request.schedule_type,  # type: ignore[arg-type]
            request.schedule_value,
            get_settings().timezone,
        )
    except (ValueError, TypeError, KeyError) as exc:
        logger.warning(
            f"Invalid {request.schedule_type} value",
            schedule_value=request.schedule_value,
            source_group=source_group,
            err=str(exc),
        )
        return

    task = ScheduledTask(
        id=generate_task_id(),
        group_folder=target_folder,
        target_address=target_address,
        prompt=request.prompt,
        schedule_type=request.schedule_type,  # type: ignore[arg-type]
        schedule_value=request.schedule_value,
        context_mode=request.context_mode,  # type: ignore[arg-type]
        next_run=next_run,
        status="active",
        created_at=now_iso(),
    )
    await create_task(task)
    logger.info(
        "Task created via IPC",
        task_id=task.id,
        source_group=source_group,
        target_folder=target_folder,
        schedule_type=task.schedule_type,
        next_run=next_run,
        context_mode=task.context_mode,
    )


async def _pause(task_id: str) -> None:
    await set_task_status(task_id, "paused", only_from="active")


async def _resume(task_id: str) -> None:
    # Completed one-shot tasks have no next_run and must stay completed
    await set_task_status(task_id, "active", only_from="paused")


async def _handle_pause_task(
    request: PauseTaskRequest,
    source_group: str,
    is_privileged: bool,
    deps: IpcDeps,
) -> None:
    await _authorized_task_action(request.task_id, source_group, is_privileged, "pause", _pause)


async def _handle_resume_task(
    request: ResumeTaskRequest,
    source_group: str,
    is_privileged: bool,
    deps: IpcDeps,
) -> None:
    await _authorized_task_action(request.task_id, source_group, is_privileged, "resume", _resume)


async def _handle_cancel_task(
    request: CancelTaskRequest,
    source_group: str,
    is_privileged: bool,
    deps: IpcDeps,
) -> None:
    await _authorized_task_action(
        request.task_id, source_group, is_privileged, "cancel", delete_task
    )


async def _authorized_task_action(
    task_id: str,
    source_group: str,
    is_privileged: bool,
    action_name: str,
    action: Callable[[str], Awaitable[Any]],
) -> None:
    """Fetch a task, verify the source group may touch it, then run *action*."""
    task = await get_task_by_id(task_id)
    if task is None:
        logger.warning("Task not found", task_id=task_id, action=action_name)
        return
    if not is_privileged and task.group_folder != source_group:
        logger.warning(
            f"Unauthorized task {action_name} attempt",
            task_id=task_id,
            source_group=source_group,
        )
        return
    await action(task_id)
    logger.info(
        f"Task {action_name} applied via IPC",
        task_id=task_id,
        source_group=source_group,
    )


register(ScheduleTaskRequest, _handle_schedule_task)
register(PauseTaskRequest, _handle_pause_task)
register(ResumeTaskRequest, _handle_resume_task)
register(CancelTaskRequest, _handle_cancel_task)
