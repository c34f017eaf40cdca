"""Model providers: a closed set of backends selected per group."""

from agentrelay.providers.base import ModelProvider
from agentrelay.providers.claude import ClaudeProvider
from agentrelay.providers.gemini import GeminiProvider
from agentrelay.providers.registry import (
    PROVIDERS,
    ProviderRegistry,
    UnknownProviderError,
    available_providers,
)

__all__ = [
    "PROVIDERS",
    "ClaudeProvider",
    "GeminiProvider",
    "ModelProvider",
    "ProviderRegistry",
    "UnknownProviderError",
    "available_providers",
]
