"""Single entry point for running an agent on behalf of a group.

Resolves the group's provider, prepares the snapshot files the sandbox
reads, invokes the sandbox and persists a rotated session id.
"""

from __future__ import annotations

from typing import Any, Literal

from agentrelay.logger import logger
from agentrelay.providers import ProviderRegistry, UnknownProviderError
from agentrelay.snapshots import refresh_task_snapshot, write_groups_snapshot
from agentrelay.state import GroupState
from agentrelay.types import AgentResponse, RegisteredGroup, SandboxInvocation

UNATTENDED_PREFIX = (
    "[SCHEDULED TASK - You are running automatically. "
    "Use send_message tool to communicate with the user.]\n\n"
)


class AgentService:
    def __init__(self, state: GroupState, providers: ProviderRegistry) -> None:
        self.state = state
        self.providers = providers

    def available_groups(self) -> list[dict[str, Any]]:
        """Group list exposed to the privileged group's snapshot."""
        return [
            {
                "address": address,
                "name": group.name,
                "folder": group.folder,
                "isRegistered": True,
            }
            for address, group in sorted(self.state.groups.items())
        ]

    async def run_agent(
        self,
        group: RegisteredGroup,
        prompt: str,
        address: str,
        *,
        unattended: bool = False,
        context_mode: Literal["group", "isolated"] = "group",
    ) -> AgentResponse:
        """Run one agent turn for *group*.

        ``context_mode="group"`` resumes the group's session for the current
        provider; ``"isolated"`` starts fresh and leaves the stored session
        untouched. A new session id is only persisted on success.
        """
        is_privileged = self.state.is_privileged(group.folder)

        try:
            provider = self.providers.resolve(group.folder)
        except UnknownProviderError as exc:
            logger.error("Provider resolution failed", group=group.name, err=str(exc))
            return AgentResponse(status="error", error=str(exc))

        session_id = (
            self.state.get_session(group.folder, provider.name) if context_mode == "group" else None
        )

        await refresh_task_snapshot(group.folder, is_privileged)
        write_groups_snapshot(group.folder, is_privileged, self.available_groups())

        if unattended:
            prompt = UNATTENDED_PREFIX + prompt

        request = SandboxInvocation(
            prompt=prompt,
            group_folder=group.folder,
            target_address=address,
            is_privileged=is_privileged,
            session_id=session_id,
            is_unattended=unattended,
        )

        logger.info(
            "Running agent",
            group=group.name,
            provider=provider.name,
            unattended=unattended,
            context_mode=context_mode,
            resumed=session_id is not None,
        )
        response = await provider.run(group, request)

        if response.status == "error":
            logger.error("Agent error", group=group.name, provider=provider.name, err=response.error)
        elif response.new_session_id and context_mode == "group":
            await self.state.set_session(group.folder, provider.name, response.new_session_id)

        return response
