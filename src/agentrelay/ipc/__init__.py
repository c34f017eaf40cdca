"""File-based IPC between sandboxes and the orchestrator."""

# Import handler modules to trigger self-registration in the registry.
import agentrelay.ipc._handlers_groups  # noqa: F401
import agentrelay.ipc._handlers_tasks  # noqa: F401
from agentrelay.ipc._deps import IpcDeps
from agentrelay.ipc._protocol import IpcRequestError, parse_task_request
from agentrelay.ipc._registry import dispatch
from agentrelay.ipc._watcher import IpcWatcher

__all__ = [
    "IpcDeps",
    "IpcRequestError",
    "IpcWatcher",
    "dispatch",
    "parse_task_request",
]
