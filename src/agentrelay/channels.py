"""Outbound routing across registered chat connectors."""

from __future__ import annotations

from agentrelay.config import get_settings
from agentrelay.logger import logger
from agentrelay.types import Channel


class ChannelNotFoundError(LookupError):
    """No connected channel owns the address (or the sender's group)."""


def format_outbound(channel: Channel, raw_text: str) -> str:
    """Trim the text and prefix it with the assistant name unless the channel opts out."""
    text = raw_text.strip()
    if not text:
        return ""
    prefix_name = getattr(channel, "prefix_assistant_name", True)
    prefix = f"{get_settings().agent.name}: " if prefix_name is not False else ""
    return f"{prefix}{text}"


class ChannelRouter:
    """Holds the connectors and picks one per outbound send."""

    def __init__(self, channels: list[Channel] | None = None) -> None:
        self.channels: list[Channel] = list(channels or [])

    def register(self, channel: Channel) -> None:
        self.channels.append(channel)
        logger.info("Channel registered", channel=channel.name)

    def find_channel(self, address: str, source_group: str | None = None) -> Channel:
        """Channel owning *address*, else the one owning *source_group*."""
        for ch in self.channels:
            if ch.owns_address(address):
                return ch
        if source_group is not None:
            for ch in self.channels:
                if ch.owns_group(source_group):
                    return ch
        raise ChannelNotFoundError(f"No channel for address: {address}")

    async def send_message(
        self, address: str, text: str, source_group: str | None = None
    ) -> None:
        channel = self.find_channel(address, source_group)
        formatted = format_outbound(channel, text)
        if not formatted:
            logger.debug("Skipping empty outbound message", address=address)
            return
        await channel.send_message(address, formatted)

    async def send_photo(
        self,
        address: str,
        image_path: str,
        caption: str | None = None,
        source_group: str | None = None,
    ) -> None:
        channel = self.find_channel(address, source_group)
        await channel.send_photo(address, image_path, caption)

    async def connect_all(self) -> None:
        for ch in self.channels:
            await ch.connect()
            logger.info("Channel connected", channel=ch.name)

    async def disconnect_all(self) -> None:
        for ch in self.channels:
            try:
                await ch.disconnect()
            except Exception as exc:
                logger.warning("Channel disconnect failed", channel=ch.name, err=str(exc))
