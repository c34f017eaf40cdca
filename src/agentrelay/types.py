"""Data models for agentrelay."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Protocol, runtime_checkable

ScheduleType = Literal["cron", "interval", "once"]
ContextMode = Literal["group", "isolated"]
TaskStatus = Literal["active", "paused", "completed"]


@dataclass
class AdditionalMount:
    host_path: str  # Absolute path on host (supports ~ for home)
    container_path: str | None = None  # Defaults to basename of host_path
    readonly: bool = True


@dataclass
class AllowedRoot:
    path: str  # Absolute path or ~ for home
    allow_read_write: bool = False
    description: str | None = None


@dataclass
class MountAllowlist:
    allowed_roots: list[AllowedRoot] = field(default_factory=list)
    blocked_patterns: list[str] = field(default_factory=list)
    non_main_read_only: bool = True


@dataclass
class GroupSandboxConfig:
    """Per-group overrides applied on top of the provider's sandbox config."""

    additional_mounts: list[AdditionalMount] = field(default_factory=list)
    timeout_ms: int | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> GroupSandboxConfig:
        mounts = raw.get("additionalMounts", raw.get("additional_mounts", []))
        return cls(
            additional_mounts=[
                AdditionalMount(
                    host_path=m.get("hostPath", m.get("host_path", "")),
                    container_path=m.get("containerPath", m.get("container_path")),
                    readonly=m.get("readonly", True),
                )
                for m in mounts
            ],
            timeout_ms=raw.get("timeoutMs", raw.get("timeout_ms", raw.get("timeout"))),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "additionalMounts": [
                {
                    "hostPath": m.host_path,
                    "containerPath": m.container_path,
                    "readonly": m.readonly,
                }
                for m in self.additional_mounts
            ],
            "timeoutMs": self.timeout_ms,
        }


@dataclass
class RegisteredGroup:
    """One addressable chat context, keyed by its channel address elsewhere."""

    name: str
    folder: str  # unique, immutable, filesystem-safe
    trigger: str  # e.g. "@Relay"
    added_at: str
    container_config: GroupSandboxConfig | None = None
    requires_trigger: bool = True


@dataclass
class ScheduledTask:
    id: str
    group_folder: str
    target_address: str
    prompt: str
    schedule_type: ScheduleType
    schedule_value: str
    context_mode: ContextMode = "isolated"
    next_run: str | None = None
    last_run: str | None = None
    last_result: str | None = None
    status: TaskStatus = "active"
    created_at: str = ""

    def to_snapshot_dict(self) -> dict[str, Any]:
        """Shape written to current_tasks.json for the agent to read."""
        return {
            "id": self.id,
            "groupFolder": self.group_folder,
            "prompt": self.prompt,
            "schedule_type": self.schedule_type,
            "schedule_value": self.schedule_value,
            "context_mode": self.context_mode,
            "status": self.status,
            "next_run": self.next_run,
        }


@dataclass
class TaskRunLog:
    task_id: str
    run_at: str
    duration_ms: int
    status: Literal["success", "error"]
    result: str | None = None
    error: str | None = None


@dataclass
class VolumeMount:
    host_path: str
    container_path: str
    readonly: bool = False


@dataclass
class SandboxInvocation:
    """One request to the launcher. Serialized to the sandbox's stdin."""

    prompt: str
    group_folder: str
    target_address: str
    is_privileged: bool
    session_id: str | None = None
    is_unattended: bool = False
    extra_mounts: list[VolumeMount] = field(default_factory=list)
    timeout_ms: int | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "prompt": self.prompt,
            "groupFolder": self.group_folder,
            "targetAddress": self.target_address,
            "isPrivileged": self.is_privileged,
        }
        if self.session_id is not None:
            payload["sessionId"] = self.session_id
        if self.is_unattended:
            payload["isUnattended"] = True
        return payload


@dataclass
class AgentResponse:
    status: Literal["success", "error"]
    result: str | None = None
    new_session_id: str | None = None
    error: str | None = None

    @classmethod
    def from_payload(cls, data: Any) -> AgentResponse:
        """Map the sandbox's response JSON onto an AgentResponse.

        Raises ValueError when the payload does not have the expected shape.
        """
        if not isinstance(data, dict):
            raise ValueError(f"expected a JSON object, got {type(data).__name__}")
        status = data.get("status")
        if status not in ("success", "error"):
            raise ValueError(f"invalid status: {status!r}")
        result = data.get("result")
        if result is not None and not isinstance(result, str):
            raise ValueError("result must be a string or null")
        return cls(
            status=status,
            result=result,
            new_session_id=data.get("newSessionId"),
            error=data.get("error"),
        )


ResponseDecoder = Callable[[Any], AgentResponse]


@dataclass
class SandboxConfig:
    """Everything the launcher needs besides the request itself."""

    image: str
    mounts: list[VolumeMount]
    timeout_ms: int
    max_output_bytes: int
    max_stderr_bytes: int = 1048576
    runtime_name: Literal["docker", "apple"] = "docker"
    runtime_cli: str = "docker"
    provider: str = "claude"  # tag for logs and container names
    logs_dir: Path | None = None
    verbose: bool = False
    container_name_prefix: str = "agentrelay-"
    decoder: ResponseDecoder | None = None


@runtime_checkable
class Channel(Protocol):
    """External chat connector. The orchestrator only calls these methods."""

    name: str
    prefix_assistant_name: bool

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def send_message(self, address: str, text: str) -> None: ...

    async def send_photo(self, address: str, image_path: str, caption: str | None = None) -> None: ...

    def owns_address(self, address: str) -> bool: ...

    def owns_group(self, folder: str) -> bool: ...
