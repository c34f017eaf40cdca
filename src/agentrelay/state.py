"""Group registry and session map with an injectable backing store.

``GroupState`` is the single writer for registered groups and agent
sessions. It keeps both in memory for fast lookups and writes every
mutation through to a ``StateStore`` before returning. Production uses
``SqliteStateStore``; tests swap in ``InMemoryStateStore``.
"""

from __future__ import annotations

import re
from typing import Protocol

from agentrelay import db
from agentrelay.config import get_settings
from agentrelay.logger import logger
from agentrelay.types import RegisteredGroup

GLOBAL_PROVIDER_KEY = "provider_global_default"

_FOLDER_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")


class GroupRegistrationError(ValueError):
    """Folder is malformed or already owned by another address."""


class StateStore(Protocol):
    """Durable storage for groups, sessions and provider selection."""

    async def load_groups(self) -> dict[str, RegisteredGroup]: ...

    async def save_group(self, address: str, group: RegisteredGroup) -> None: ...

    async def load_sessions(self) -> dict[tuple[str, str], str]: ...

    async def save_session(self, folder: str, provider: str, session_id: str) -> None: ...

    async def delete_sessions(self, folder: str, provider: str | None = None) -> None: ...

    async def load_provider_overrides(self) -> dict[str, str]: ...

    async def save_provider_override(self, folder: str, provider: str) -> None: ...

    async def delete_provider_override(self, folder: str) -> None: ...

    async def load_global_provider(self) -> str | None: ...

    async def save_global_provider(self, provider: str) -> None: ...


class SqliteStateStore:
    """StateStore backed by the shared aiosqlite connection."""

    async def load_groups(self) -> dict[str, RegisteredGroup]:
        return await db.get_all_registered_groups()

    async def save_group(self, address: str, group: RegisteredGroup) -> None:
        await db.set_registered_group(address, group)

    async def load_sessions(self) -> dict[tuple[str, str], str]:
        return await db.get_all_sessions()

    async def save_session(self, folder: str, provider: str, session_id: str) -> None:
        await db.set_session(folder, provider, session_id)

    async def delete_sessions(self, folder: str, provider: str | None = None) -> None:
        await db.clear_session(folder, provider)

    async def load_provider_overrides(self) -> dict[str, str]:
        return await db.get_provider_overrides()

    async def save_provider_override(self, folder: str, provider: str) -> None:
        await db.set_provider_override(folder, provider)

    async def delete_provider_override(self, folder: str) -> None:
        await db.delete_provider_override(folder)

    async def load_global_provider(self) -> str | None:
        return await db.get_router_state(GLOBAL_PROVIDER_KEY)

    async def save_global_provider(self, provider: str) -> None:
        await db.set_router_state(GLOBAL_PROVIDER_KEY, provider)


class InMemoryStateStore:
    """StateStore that lives in dicts. Used by tests."""

    def __init__(self) -> None:
        self.groups: dict[str, RegisteredGroup] = {}
        self.sessions: dict[tuple[str, str], str] = {}
        self.overrides: dict[str, str] = {}
        self.global_provider: str | None = None

    async def load_groups(self) -> dict[str, RegisteredGroup]:
        return dict(self.groups)

    async def save_group(self, address: str, group: RegisteredGroup) -> None:
        self.groups[address] = group

    async def load_sessions(self) -> dict[tuple[str, str], str]:
        return dict(self.sessions)

    async def save_session(self, folder: str, provider: str, session_id: str) -> None:
        self.sessions[(folder, provider)] = session_id

    async def delete_sessions(self, folder: str, provider: str | None = None) -> None:
        for key in [k for k in self.sessions if k[0] == folder]:
            if provider is None or key[1] == provider:
                del self.sessions[key]

    async def load_provider_overrides(self) -> dict[str, str]:
        return dict(self.overrides)

    async def save_provider_override(self, folder: str, provider: str) -> None:
        self.overrides[folder] = provider

    async def delete_provider_override(self, folder: str) -> None:
        self.overrides.pop(folder, None)

    async def load_global_provider(self) -> str | None:
        return self.global_provider

    async def save_global_provider(self, provider: str) -> None:
        self.global_provider = provider


def is_valid_folder(folder: str) -> bool:
    return bool(_FOLDER_RE.match(folder)) and folder not in ("global", "errors")


class GroupState:
    """In-memory group registry and session map, written through to a store."""

    def __init__(self, store: StateStore) -> None:
        self.store = store
        self._groups: dict[str, RegisteredGroup] = {}
        self._sessions: dict[tuple[str, str], str] = {}

    async def load(self) -> None:
        self._groups = await self.store.load_groups()
        self._sessions = await self.store.load_sessions()
        logger.info(
            "State loaded",
            group_count=len(self._groups),
            session_count=len(self._sessions),
        )

    # --- Groups ---

    @property
    def groups(self) -> dict[str, RegisteredGroup]:
        """Registered groups keyed by address (a copy)."""
        return dict(self._groups)

    def group_for_address(self, address: str) -> RegisteredGroup | None:
        return self._groups.get(address)

    def group_for_folder(self, folder: str) -> RegisteredGroup | None:
        for group in self._groups.values():
            if group.folder == folder:
                return group
        return None

    def addresses_for_folder(self, folder: str) -> list[str]:
        return [addr for addr, g in self._groups.items() if g.folder == folder]

    def is_privileged(self, folder: str) -> bool:
        return folder == get_settings().agent.main_group_folder

    async def register_group(self, address: str, group: RegisteredGroup) -> None:
        """Register (or re-register) a group under *address*.

        A folder belongs to the first address registered with it and cannot be
        renamed afterwards. Raises GroupRegistrationError on conflicts.
        """
        if not is_valid_folder(group.folder):
            raise GroupRegistrationError(f"Invalid group folder: {group.folder!r}")

        existing = self._groups.get(address)
        if existing is not None and existing.folder != group.folder:
            raise GroupRegistrationError(
                f"Address {address} is already registered to folder {existing.folder!r}"
            )
        owner = self.group_for_folder(group.folder)
        if owner is not None and existing is None:
            raise GroupRegistrationError(f"Folder {group.folder!r} is already in use")

        await self.store.save_group(address, group)
        self._groups[address] = group

        (get_settings().groups_dir / group.folder / "logs").mkdir(parents=True, exist_ok=True)
        logger.info("Group registered", address=address, name=group.name, folder=group.folder)

    # --- Sessions ---

    def get_session(self, folder: str, provider: str) -> str | None:
        return self._sessions.get((folder, provider))

    async def set_session(self, folder: str, provider: str, session_id: str) -> None:
        await self.store.save_session(folder, provider, session_id)
        self._sessions[(folder, provider)] = session_id

    async def clear_session(self, folder: str, provider: str | None = None) -> None:
        await self.store.delete_sessions(folder, provider)
        for key in [k for k in self._sessions if k[0] == folder]:
            if provider is None or key[1] == provider:
                del self._sessions[key]
