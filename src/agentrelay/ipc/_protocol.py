"""IPC file formats: a tagged union keyed by the ``type`` field.

A sandbox drops JSON files into ``<ipc>/<group>/messages`` or
``<ipc>/<group>/tasks``. Each file is parsed into one of the request
dataclasses below before anything acts on it.

Field names follow what the sandbox writes (camelCase addresses, snake_case
schedule fields), e.g.::

    {"type": "schedule_task", "prompt": "ping", "schedule_type": "interval",
     "schedule_value": "1000", "groupFolder": "alpha"}
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agentrelay.types import GroupSandboxConfig

SCHEDULE_TYPES = frozenset({"cron", "interval", "once"})


class IpcRequestError(ValueError):
    """The file is valid JSON but does not describe a well-formed request."""


# --- messages/ ---


@dataclass(frozen=True)
class OutboundMessage:
    target_address: str
    text: str


@dataclass(frozen=True)
class OutboundPhoto:
    target_address: str
    image_path: str
    caption: str | None = None


OutboundRequest = OutboundMessage | OutboundPhoto


# --- tasks/ ---


@dataclass(frozen=True)
class ScheduleTaskRequest:
    prompt: str
    schedule_type: str
    schedule_value: str
    group_folder: str | None = None
    target_address: str | None = None
    context_mode: str = "isolated"


@dataclass(frozen=True)
class PauseTaskRequest:
    task_id: str


@dataclass(frozen=True)
class ResumeTaskRequest:
    task_id: str


@dataclass(frozen=True)
class CancelTaskRequest:
    task_id: str


@dataclass(frozen=True)
class RegisterGroupRequest:
    address: str
    name: str
    folder: str
    trigger: str
    container_config: GroupSandboxConfig | None = None
    requires_trigger: bool = True


@dataclass(frozen=True)
class RefreshGroupsRequest:
    pass


@dataclass(frozen=True)
class UnknownRequest:
    type: str


TaskRequest = (
    ScheduleTaskRequest
    | PauseTaskRequest
    | ResumeTaskRequest
    | CancelTaskRequest
    | RegisterGroupRequest
    | RefreshGroupsRequest
    | UnknownRequest
)


def parse_ipc_file(file_path: Path) -> dict[str, Any]:
    """Read a JSON object from *file_path*. Raises ValueError otherwise."""
    data = json.loads(file_path.read_text())
    if not isinstance(data, dict):
        raise ValueError(f"IPC file must contain a JSON object, got {type(data).__name__}")
    return data


def _require_str(data: dict[str, Any], *keys: str) -> str:
    """First non-empty string among *keys* (later keys are legacy aliases)."""
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value:
            return value
    raise IpcRequestError(f"{data.get('type')}: missing required field {keys[0]!r}")


def _optional_str(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    return value if isinstance(value, str) and value else None


def parse_outbound_request(data: dict[str, Any]) -> OutboundRequest:
    msg_type = data.get("type")
    if msg_type == "message":
        return OutboundMessage(
            target_address=_require_str(data, "targetAddress", "chatJid"),
            text=_require_str(data, "text"),
        )
    if msg_type == "photo":
        return OutboundPhoto(
            target_address=_require_str(data, "targetAddress", "chatJid"),
            image_path=_require_str(data, "imagePath"),
            caption=_optional_str(data, "caption"),
        )
    raise IpcRequestError(f"Unknown message type: {msg_type!r}")


def parse_task_request(data: dict[str, Any]) -> TaskRequest:
    """Parse a tasks/ file. Unknown types become UnknownRequest."""
    task_type = data.get("type")
    match task_type:
        case "schedule_task":
            schedule_type = _require_str(data, "schedule_type")
            if schedule_type not in SCHEDULE_TYPES:
                raise IpcRequestError(f"Invalid schedule_type: {schedule_type!r}")
            raw_value = data.get("schedule_value")
            # Sandboxes sometimes write intervals as JSON numbers
            if isinstance(raw_value, int | float) and not isinstance(raw_value, bool):
                raw_value = str(int(raw_value))
            if not isinstance(raw_value, str) or not raw_value:
                raise IpcRequestError("schedule_task: missing required field 'schedule_value'")
            group_folder = _optional_str(data, "groupFolder")
            target_address = _optional_str(data, "targetAddress") or _optional_str(
                data, "targetJid"
            )
            if group_folder is None and target_address is None:
                raise IpcRequestError("schedule_task: needs 'groupFolder' or 'targetAddress'")
            context_mode = data.get("context_mode")
            return ScheduleTaskRequest(
                prompt=_require_str(data, "prompt"),
                schedule_type=schedule_type,
                schedule_value=raw_value,
                group_folder=group_folder,
                target_address=target_address,
                context_mode=context_mode if context_mode in ("group", "isolated") else "isolated",
            )
        case "pause_task":
            return PauseTaskRequest(task_id=_require_str(data, "taskId"))
        case "resume_task":
            return ResumeTaskRequest(task_id=_require_str(data, "taskId"))
        case "cancel_task":
            return CancelTaskRequest(task_id=_require_str(data, "taskId"))
        case "register_group":
            raw_config = data.get("containerConfig")
            return RegisterGroupRequest(
                address=_require_str(data, "address", "jid"),
                name=_require_str(data, "name"),
                folder=_require_str(data, "folder"),
                trigger=_require_str(data, "trigger"),
                container_config=GroupSandboxConfig.from_dict(raw_config)
                if isinstance(raw_config, dict)
                else None,
                requires_trigger=bool(data.get("requiresTrigger", True)),
            )
        case "refresh_groups":
            return RefreshGroupsRequest()
        case _:
            return UnknownRequest(type=str(task_type))
