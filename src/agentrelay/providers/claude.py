"""Claude backend."""

from __future__ import annotations

from agentrelay.config import get_settings
from agentrelay.providers.base import ModelProvider


class ClaudeProvider(ModelProvider):
    name = "claude"
    credential_keys = ("CLAUDE_CODE_OAUTH_TOKEN", "ANTHROPIC_API_KEY")
    session_dir_name = ".claude"
    session_mount_target = "/home/node/.claude"

    @property
    def image(self) -> str:
        return get_settings().providers.claude_image
