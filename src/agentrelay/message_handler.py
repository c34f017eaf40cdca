"""Inbound message pipeline: registration, trigger rule, commands, agent turn.

Connectors call ``MessageHandler.handle_message`` once per inbound message
and await it, which keeps messages for one group in arrival order.
"""

from __future__ import annotations

import re

from agentrelay.agent_service import AgentService
from agentrelay.channels import ChannelRouter
from agentrelay.commands import handle_command
from agentrelay.config import get_settings
from agentrelay.logger import logger
from agentrelay.providers import ProviderRegistry
from agentrelay.state import GroupRegistrationError, GroupState, is_valid_folder
from agentrelay.types import RegisteredGroup
from agentrelay.utils import now_iso

_UNSAFE_FOLDER_CHARS = re.compile(r"[^A-Za-z0-9_-]+")


def escape_xml(s: str) -> str:
    """Escape XML special characters."""
    return s.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;").replace('"', "&quot;")


def format_prompt(sender_name: str, content: str, timestamp: str, platform: str | None = None) -> str:
    platform_attr = f' platform="{escape_xml(platform)}"' if platform else ""
    return (
        f'<message from="{escape_xml(sender_name)}" timestamp="{timestamp}"{platform_attr}>\n'
        f"{escape_xml(content)}\n"
        "</message>"
    )


def folder_for_address(address: str, state: GroupState) -> str:
    """Derive an unused, valid folder name from an address."""
    base = _UNSAFE_FOLDER_CHARS.sub("-", address).strip("-_")[:48] or "group"
    candidate = base
    suffix = 2
    while not is_valid_folder(candidate) or state.group_for_folder(candidate) is not None:
        candidate = f"{base}-{suffix}"
        suffix += 1
    return candidate


class MessageHandler:
    def __init__(
        self,
        state: GroupState,
        providers: ProviderRegistry,
        agent_service: AgentService,
        router: ChannelRouter,
    ) -> None:
        self.state = state
        self.providers = providers
        self.agent_service = agent_service
        self.router = router

    async def _ensure_group(self, address: str, group_name: str | None) -> RegisteredGroup | None:
        group = self.state.group_for_address(address)
        if group is not None:
            return group

        group = RegisteredGroup(
            name=group_name or address,
            folder=folder_for_address(address, self.state),
            trigger=f"@{get_settings().agent.name}",
            added_at=now_iso(),
        )
        try:
            await self.state.register_group(address, group)
        except GroupRegistrationError as exc:
            logger.warning("Auto-registration failed", address=address, err=str(exc))
            return None
        logger.info("Auto-registered new conversation", address=address, folder=group.folder)
        return group

    async def handle_message(
        self,
        address: str,
        sender_name: str,
        content: str,
        timestamp: str,
        *,
        platform: str | None = None,
        group_name: str | None = None,
    ) -> None:
        """Process one inbound message. Failures are logged, never raised to the connector."""
        try:
            await self._process_message(
                address, sender_name, content, timestamp, platform=platform, group_name=group_name
            )
        except Exception as exc:
            logger.error("Error handling message", address=address, err=str(exc))

    async def _process_message(
        self,
        address: str,
        sender_name: str,
        content: str,
        timestamp: str,
        *,
        platform: str | None = None,
        group_name: str | None = None,
    ) -> None:
        group = await self._ensure_group(address, group_name)
        if group is None:
            return

        text = content.strip()
        is_privileged = self.state.is_privileged(group.folder)

        command = await handle_command(
            text, group.folder, is_privileged, self.providers, self.state
        )
        if command.handled:
            logger.info("Command handled", group=group.name, command=text.split()[0])
            if command.response:
                await self.router.send_message(address, command.response, group.folder)
            return

        # The privileged group and trigger-free groups answer every message
        if (
            not is_privileged
            and group.requires_trigger
            and not get_settings().trigger_pattern.match(text)
        ):
            logger.debug("Message ignored, no trigger", group=group.name)
            return

        logger.info("Processing message", group=group.name, platform=platform)
        prompt = format_prompt(sender_name, text, timestamp, platform)
        response = await self.agent_service.run_agent(group, prompt, address)

        if response.status == "success" and response.result:
            await self.router.send_message(address, response.result, group.folder)
