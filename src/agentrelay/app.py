"""Main orchestrator: wires state, providers, channels and the poll loops together."""

from __future__ import annotations

import asyncio
import signal
from typing import Any

from agentrelay.agent_service import AgentService
from agentrelay.channels import ChannelRouter
from agentrelay.config import get_settings
from agentrelay.db import close_database, init_database
from agentrelay.ipc import IpcWatcher
from agentrelay.logger import logger
from agentrelay.message_handler import MessageHandler
from agentrelay.providers import ProviderRegistry
from agentrelay.runtime import get_runtime
from agentrelay.snapshots import write_groups_snapshot
from agentrelay.state import GroupState, SqliteStateStore, StateStore
from agentrelay.task_scheduler import TaskScheduler
from agentrelay.types import AgentResponse, Channel, RegisteredGroup


class RelayApp:
    """Owns all runtime state. Connectors are attached with ``add_channel``."""

    def __init__(self, store: StateStore | None = None) -> None:
        store = store or SqliteStateStore()
        self.state = GroupState(store)
        self.providers = ProviderRegistry(store, default=get_settings().providers.default)
        self.router = ChannelRouter()
        self.agent_service = AgentService(self.state, self.providers)
        self.message_handler = MessageHandler(
            self.state, self.providers, self.agent_service, self.router
        )
        self.ipc_watcher = IpcWatcher(self._make_ipc_deps())
        self.scheduler = TaskScheduler(self._make_scheduler_deps())
        self._stop_event = asyncio.Event()
        self._shutting_down = False

    def add_channel(self, channel: Channel) -> None:
        self.router.register(channel)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _ensure_container_system_running(self) -> None:
        """Verify the container runtime and stop containers left by a previous run."""
        runtime = get_runtime()
        runtime.ensure_running()
        runtime.cleanup_orphans(get_settings().container.name_prefix)

    async def start(self) -> None:
        """Startup sequence. Returns once every subsystem is running."""
        self._ensure_container_system_running()
        await init_database()
        logger.info("Database initialized")
        await self.state.load()
        await self.providers.load()

        await self.router.connect_all()

        self.ipc_watcher.start()
        self.scheduler.start()
        logger.info("Relay started", assistant=get_settings().agent.name)

    async def shutdown(self, sig_name: str | None = None) -> None:
        """Stop the loops, disconnect channels and close the database."""
        if self._shutting_down:
            return
        self._shutting_down = True
        logger.info("Shutdown requested", signal=sig_name)

        await self.ipc_watcher.stop()
        await self.scheduler.stop()
        await self.router.disconnect_all()
        await close_database()
        self._stop_event.set()

    async def run(self) -> None:
        """Start, then block until SIGINT/SIGTERM completes a graceful shutdown."""
        await self.start()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(
                sig,
                lambda s=sig: asyncio.ensure_future(self.shutdown(s.name)),
            )

        await self._stop_event.wait()

    # ------------------------------------------------------------------
    # Dependency adapters
    # ------------------------------------------------------------------

    def _make_scheduler_deps(self) -> Any:
        """Create the dependency object for the task scheduler."""
        app = self

        class _Deps:
            def registered_groups(self) -> dict[str, RegisteredGroup]:
                return app.state.groups

            async def run_agent(
                self,
                group: RegisteredGroup,
                prompt: str,
                address: str,
                *,
                unattended: bool = False,
                context_mode: str = "group",
            ) -> AgentResponse:
                return await app.agent_service.run_agent(
                    group,
                    prompt,
                    address,
                    unattended=unattended,
                    context_mode=context_mode,  # type: ignore[arg-type]
                )

            async def send_message(self, address: str, text: str, source_group: str) -> None:
                await app.router.send_message(address, text, source_group)

        return _Deps()

    def _make_ipc_deps(self) -> Any:
        """Create the dependency object for the IPC watcher."""
        app = self

        class _Deps:
            def registered_groups(self) -> dict[str, RegisteredGroup]:
                return app.state.groups

            def is_privileged(self, folder: str) -> bool:
                return app.state.is_privileged(folder)

            async def send_message(self, address: str, text: str, source_group: str) -> None:
                await app.router.send_message(address, text, source_group)

            async def send_photo(
                self, address: str, image_path: str, caption: str | None, source_group: str
            ) -> None:
                await app.router.send_photo(address, image_path, caption, source_group)

            async def register_group(self, address: str, group: RegisteredGroup) -> None:
                await app.state.register_group(address, group)

            async def get_available_groups(self) -> list[dict[str, Any]]:
                return app.agent_service.available_groups()

            def write_groups_snapshot(
                self, folder: str, is_privileged: bool, groups: list[dict[str, Any]]
            ) -> None:
                write_groups_snapshot(folder, is_privileged, groups)

        return _Deps()
