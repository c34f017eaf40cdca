"""Handler registry for IPC task requests, keyed by request class."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from agentrelay.ipc._deps import IpcDeps
from agentrelay.ipc._protocol import TaskRequest, UnknownRequest
from agentrelay.logger import logger

Handler = Callable[[Any, str, bool, IpcDeps], Awaitable[None]]

# request class -> async handler(request, source_group, is_privileged, deps)
HANDLERS: dict[type, Handler] = {}


def register(request_type: type, handler: Handler) -> None:
    """Register a handler for one request class.

    Called at import time by each handler module. Duplicate registrations
    overwrite (last-write-wins).
    """
    HANDLERS[request_type] = handler


async def dispatch(
    request: TaskRequest,
    source_group: str,
    is_privileged: bool,
    deps: IpcDeps,
) -> None:
    """Run the handler for *request*. Unknown types are logged and dropped."""
    if isinstance(request, UnknownRequest):
        logger.warning("Unknown IPC task type", type=request.type, source_group=source_group)
        return
    handler = HANDLERS.get(type(request))
    if handler is None:
        logger.warning(
            "No handler for IPC request",
            request=type(request).__name__,
            source_group=source_group,
        )
        return
    await handler(request, source_group, is_privileged, deps)
