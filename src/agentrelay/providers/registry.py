"""Provider selection per conversation group.

Resolution order: the group's explicit override, else the process-wide
default. Every mutation is written to the state store before the in-memory
view changes, so a crash never loses a provider switch.
"""

from __future__ import annotations

from agentrelay.logger import logger
from agentrelay.providers.base import ModelProvider
from agentrelay.providers.claude import ClaudeProvider
from agentrelay.providers.gemini import GeminiProvider
from agentrelay.state import StateStore

PROVIDERS: dict[str, type[ModelProvider]] = {
    ClaudeProvider.name: ClaudeProvider,
    GeminiProvider.name: GeminiProvider,
}


class UnknownProviderError(ValueError):
    """Raised for provider names outside PROVIDERS."""

    def __init__(self, name: str) -> None:
        super().__init__(
            f"Unknown provider: {name!r} (available: {', '.join(available_providers())})"
        )
        self.name = name


def available_providers() -> list[str]:
    return sorted(PROVIDERS)


def _require_known(name: str) -> str:
    if name not in PROVIDERS:
        raise UnknownProviderError(name)
    return name


class ProviderRegistry:
    def __init__(self, store: StateStore, default: str = "claude") -> None:
        self._store = store
        self._global_default = default
        self._overrides: dict[str, str] = {}
        self._instances: dict[str, ModelProvider] = {}

    async def load(self) -> None:
        """Read persisted overrides and the global default from the store."""
        self._overrides = await self._store.load_provider_overrides()
        stored_default = await self._store.load_global_provider()
        if stored_default:
            self._global_default = stored_default
        logger.info(
            "Provider settings loaded",
            global_default=self._global_default,
            override_count=len(self._overrides),
        )

    @property
    def global_default(self) -> str:
        return self._global_default

    @property
    def overrides(self) -> dict[str, str]:
        return dict(self._overrides)

    def has_override(self, folder: str) -> bool:
        return folder in self._overrides

    def provider_name_for(self, folder: str) -> str:
        return self._overrides.get(folder, self._global_default)

    def resolve(self, folder: str) -> ModelProvider:
        """Return the provider handle for *folder*.

        Raises UnknownProviderError rather than falling back when the stored
        name is not a known provider.
        """
        name = _require_known(self.provider_name_for(folder))
        if name not in self._instances:
            self._instances[name] = PROVIDERS[name]()
        return self._instances[name]

    def all_providers(self) -> list[ModelProvider]:
        for name in PROVIDERS:
            if name not in self._instances:
                self._instances[name] = PROVIDERS[name]()
        return [self._instances[name] for name in PROVIDERS]

    async def set_override(self, folder: str, name: str) -> None:
        _require_known(name)
        await self._store.save_provider_override(folder, name)
        self._overrides[folder] = name
        logger.info("Provider override set", group=folder, provider=name)

    async def clear_override(self, folder: str) -> None:
        await self._store.delete_provider_override(folder)
        self._overrides.pop(folder, None)
        logger.info("Provider override cleared", group=folder)

    async def set_global_default(self, name: str) -> None:
        _require_known(name)
        await self._store.save_global_provider(name)
        self._global_default = name
        logger.info("Global default provider set", provider=name)
