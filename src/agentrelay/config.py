"""Centralized configuration: Pydantic BaseSettings with TOML + dotenv sources.

Non-secret settings live in config.toml. Secrets (API keys, OAuth tokens)
live in .env. Environment variables override both using ``__`` as the nested
delimiter (e.g. ``SECRETS__ANTHROPIC_API_KEY``). Secrets use SecretStr for
masking in logs.

Priority (highest wins): init args > env vars > .env > config.toml

Usage::

    from agentrelay.config import get_settings

    s = get_settings()
    print(s.agent.name)
    print(s.providers.claude_image)
"""

from __future__ import annotations

import os
import re
from functools import cached_property
from pathlib import Path
from typing import ClassVar, Literal

from pydantic import BaseModel, SecretStr, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from agentrelay.logger import VERBOSE_LEVELS, is_verbose

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in config.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models. Rejects unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


class AgentConfig(_StrictModel):
    name: str = "Relay"
    trigger_aliases: list[str] = []
    main_group_folder: str = "main"


class ContainerConfig(_StrictModel):
    runtime: Literal["docker", "apple"] | None = None  # None = auto-detect
    timeout_ms: int = 300000  # 5 minutes
    max_output_bytes: int = 10485760  # 10MB
    max_stderr_bytes: int = 1048576  # 1MB
    name_prefix: str = "agentrelay-"

    @field_validator("timeout_ms", "max_output_bytes", "max_stderr_bytes")
    @classmethod
    def require_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v


class ProvidersConfig(_StrictModel):
    default: str = "claude"
    claude_image: str = "agentrelay-agent:latest"
    gemini_image: str = "agentrelay-agent-gemini:latest"


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


class SecretsConfig(_StrictModel):
    anthropic_api_key: SecretStr | None = None
    claude_code_oauth_token: SecretStr | None = None
    google_api_key: SecretStr | None = None
    gemini_api_key: SecretStr | None = None


class IpcConfig(_StrictModel):
    poll_interval: float = 1.0  # seconds
    quarantine_dir: str = "errors"  # under data/ipc/


class SchedulerConfig(_StrictModel):
    poll_interval: float = 60.0  # seconds
    timezone: str = ""  # empty = auto-detect


class SecurityConfig(_StrictModel):
    blocked_patterns: list[str] = [
        ".ssh",
        ".gnupg",
        ".gpg",
        ".aws",
        ".azure",
        ".gcloud",
        ".kube",
        ".docker",
        "credentials",
        ".env",
        ".netrc",
        ".npmrc",
        ".pypirc",
        "id_rsa",
        "id_ed25519",
        "private_key",
        ".secret",
    ]


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    agent: AgentConfig = AgentConfig()
    container: ContainerConfig = ContainerConfig()
    providers: ProvidersConfig = ProvidersConfig()
    logging: LoggingConfig = LoggingConfig()
    secrets: SecretsConfig = SecretsConfig()
    ipc: IpcConfig = IpcConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    security: SecurityConfig = SecurityConfig()

    # Sentinels (class-level, not fields)
    OUTPUT_START_MARKER: ClassVar[str] = "---OUTPUT_START---"
    OUTPUT_END_MARKER: ClassVar[str] = "---OUTPUT_END---"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > config.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    # --- Computed properties ---

    @cached_property
    def trigger_pattern(self) -> re.Pattern[str]:
        names = [re.escape(self.agent.name)] + [
            re.escape(a.strip()) for a in self.agent.trigger_aliases
        ]
        return re.compile(rf"^@({'|'.join(names)})\b", re.IGNORECASE)

    @cached_property
    def timezone(self) -> str:
        if self.scheduler.timezone:
            return self.scheduler.timezone
        return _detect_timezone()

    @cached_property
    def verbose(self) -> bool:
        return self.logging.level in VERBOSE_LEVELS or is_verbose()

    @cached_property
    def project_root(self) -> Path:
        return Path.cwd()

    @cached_property
    def home_dir(self) -> Path:
        return Path.home()

    @cached_property
    def groups_dir(self) -> Path:
        return (self.project_root / "groups").resolve()

    @cached_property
    def data_dir(self) -> Path:
        return (self.project_root / "data").resolve()

    @cached_property
    def store_dir(self) -> Path:
        return (self.project_root / "store").resolve()

    @cached_property
    def ipc_dir(self) -> Path:
        return self.data_dir / "ipc"

    @cached_property
    def sessions_dir(self) -> Path:
        return self.data_dir / "sessions"

    @cached_property
    def env_dir(self) -> Path:
        return self.data_dir / "env"

    @cached_property
    def mount_allowlist_path(self) -> Path:
        return self.home_dir / ".config" / "agentrelay" / "mount-allowlist.json"


# ---------------------------------------------------------------------------
# Timezone detection
# ---------------------------------------------------------------------------


def _detect_timezone() -> str:
    if tz := os.environ.get("TZ"):
        return tz
    try:
        link = os.readlink("/etc/localtime")
        parts = link.split("zoneinfo/")
        if len(parts) > 1:
            return parts[1]
    except OSError:
        pass  # /etc/localtime missing or not a symlink, fall back to UTC
    return "UTC"


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None
