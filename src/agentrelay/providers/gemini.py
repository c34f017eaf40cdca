"""Gemini backend.

The Gemini agent runner reports ``{"output": ..., "sessionId": ...}`` instead
of the standard response shape, so decoding accepts both.
"""

from __future__ import annotations

from typing import Any

from agentrelay.config import get_settings
from agentrelay.providers.base import ModelProvider
from agentrelay.types import AgentResponse


class GeminiProvider(ModelProvider):
    name = "gemini"
    credential_keys = ("GOOGLE_API_KEY", "GEMINI_API_KEY")
    session_dir_name = ".gemini"
    session_mount_target = "/home/node/.gemini"

    @property
    def image(self) -> str:
        return get_settings().providers.gemini_image

    def decode_response(self, payload: Any) -> AgentResponse:
        if isinstance(payload, dict) and "status" not in payload and "output" in payload:
            output = payload["output"]
            if output is not None and not isinstance(output, str):
                raise ValueError("output must be a string or null")
            return AgentResponse(
                status="success",
                result=output,
                new_session_id=payload.get("sessionId"),
            )
        return super().decode_response(payload)
