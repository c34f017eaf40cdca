"""What the IPC watcher needs from the rest of the orchestrator."""

from __future__ import annotations

from typing import Any, Protocol

from agentrelay.types import RegisteredGroup


class IpcDeps(Protocol):
    def registered_groups(self) -> dict[str, RegisteredGroup]: ...

    def is_privileged(self, folder: str) -> bool: ...

    async def send_message(self, address: str, text: str, source_group: str) -> None: ...

    async def send_photo(
        self, address: str, image_path: str, caption: str | None, source_group: str
    ) -> None: ...

    async def register_group(self, address: str, group: RegisteredGroup) -> None: ...

    async def get_available_groups(self) -> list[dict[str, Any]]: ...

    def write_groups_snapshot(
        self, folder: str, is_privileged: bool, groups: list[dict[str, Any]]
    ) -> None: ...
