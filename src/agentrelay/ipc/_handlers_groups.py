"""IPC handlers for group registration and group snapshot refresh."""

from __future__ import annotations

from agentrelay.ipc._deps import IpcDeps
from agentrelay.ipc._protocol import RefreshGroupsRequest, RegisterGroupRequest
from agentrelay.ipc._registry import register
from agentrelay.logger import logger
from agentrelay.state import GroupRegistrationError
from agentrelay.types import RegisteredGroup
from agentrelay.utils import now_iso


async def _handle_register_group(
    request: RegisterGroupRequest,
    source_group: str,
    is_privileged: bool,
    deps: IpcDeps,
) -> None:
    if not is_privileged:
        logger.warning(
            "Unauthorized register_group attempt blocked",
            source_group=source_group,
        )
        return

    try:
        await deps.register_group(
            request.address,
            RegisteredGroup(
                name=request.name,
                folder=request.folder,
                trigger=request.trigger,
                added_at=now_iso(),
                container_config=request.container_config,
                requires_trigger=request.requires_trigger,
            ),
        )
    except GroupRegistrationError as exc:
        logger.warning(
            "register_group rejected",
            source_group=source_group,
            address=request.address,
            err=str(exc),
        )


async def _handle_refresh_groups(
    request: RefreshGroupsRequest,
    source_group: str,
    is_privileged: bool,
    deps: IpcDeps,
) -> None:
    if not is_privileged:
        logger.warning(
            "Unauthorized refresh_groups attempt blocked",
            source_group=source_group,
        )
        return

    logger.info("Group snapshot refresh requested via IPC", source_group=source_group)
    available_groups = await deps.get_available_groups()
    deps.write_groups_snapshot(source_group, True, available_groups)


register(RegisterGroupRequest, _handle_register_group)
register(RefreshGroupsRequest, _handle_refresh_groups)
