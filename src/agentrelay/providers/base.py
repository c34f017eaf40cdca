"""Common provider behavior: mount layout, credential files, session state.

A provider turns a generic ``SandboxInvocation`` into a ``SandboxConfig`` for
its backend image and knows how to decode that backend's output. Everything
else (spawning, timeouts, parsing sentinels) lives in the launcher.
"""

from __future__ import annotations

import os
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, ClassVar

from agentrelay.config import get_settings
from agentrelay.container_runner import invoke
from agentrelay.logger import logger
from agentrelay.mount_security import validate_additional_mounts
from agentrelay.runtime import get_runtime
from agentrelay.types import (
    AgentResponse,
    RegisteredGroup,
    SandboxConfig,
    SandboxInvocation,
    VolumeMount,
)


def _shell_quote(value: str) -> str:
    """Quote a value for safe inclusion in a shell env file."""
    return "'" + value.replace("'", "'\\''") + "'"


class ModelProvider(ABC):
    """One backend. Subclasses set the class attributes and ``image``."""

    name: ClassVar[str]
    # Env vars copied into the sandbox's credential file
    credential_keys: ClassVar[tuple[str, ...]]
    # Per-group state directory name and where the backend expects it
    session_dir_name: ClassVar[str]
    session_mount_target: ClassVar[str]

    @property
    @abstractmethod
    def image(self) -> str: ...

    # --- Capability interface ---

    def translate_invocation(
        self, group: RegisteredGroup, request: SandboxInvocation
    ) -> SandboxConfig:
        """Build the launcher config (image, mounts, timeout) for *request*."""
        s = get_settings()
        runtime = get_runtime()
        timeout_ms = request.timeout_ms
        if timeout_ms is None and group.container_config and group.container_config.timeout_ms:
            timeout_ms = group.container_config.timeout_ms
        return SandboxConfig(
            image=self.image,
            mounts=self.build_mounts(group, request),
            timeout_ms=timeout_ms or s.container.timeout_ms,
            max_output_bytes=s.container.max_output_bytes,
            max_stderr_bytes=s.container.max_stderr_bytes,
            runtime_name=runtime.name,
            runtime_cli=runtime.cli,
            provider=self.name,
            logs_dir=s.groups_dir / group.folder / "logs",
            verbose=s.verbose,
            container_name_prefix=s.container.name_prefix,
            decoder=self.decode_response,
        )

    def decode_response(self, payload: Any) -> AgentResponse:
        return AgentResponse.from_payload(payload)

    async def run(self, group: RegisteredGroup, request: SandboxInvocation) -> AgentResponse:
        try:
            config = self.translate_invocation(group, request)
        except Exception as exc:
            logger.error(
                "Failed to prepare sandbox", group=group.folder, provider=self.name, err=str(exc)
            )
            return AgentResponse(status="error", error=f"Sandbox setup failed: {exc}")
        return await invoke(config, request)

    # --- Mounts ---

    def build_mounts(
        self, group: RegisteredGroup, request: SandboxInvocation
    ) -> list[VolumeMount]:
        """Mount list for one invocation.

        The privileged group sees the whole project read-write. Other groups
        only see their own folder plus the shared global folder read-only.
        """
        s = get_settings()
        mounts: list[VolumeMount] = []

        group_dir = s.groups_dir / group.folder
        group_dir.mkdir(parents=True, exist_ok=True)

        if request.is_privileged:
            mounts.append(VolumeMount(str(s.project_root), "/workspace/project", readonly=False))
            mounts.append(VolumeMount(str(group_dir), "/workspace/group", readonly=False))
        else:
            mounts.append(VolumeMount(str(group_dir), "/workspace/group", readonly=False))
            global_dir = s.groups_dir / "global"
            if global_dir.exists():
                mounts.append(VolumeMount(str(global_dir), "/workspace/global", readonly=True))

        session_dir = self.session_dir(group.folder)
        session_dir.mkdir(parents=True, exist_ok=True)
        mounts.append(VolumeMount(str(session_dir), self.session_mount_target, readonly=False))

        # Per-group IPC namespace (the sandbox's outbox)
        group_ipc_dir = s.ipc_dir / group.folder
        for sub in ("messages", "tasks"):
            (group_ipc_dir / sub).mkdir(parents=True, exist_ok=True)
        mounts.append(VolumeMount(str(group_ipc_dir), "/workspace/ipc", readonly=False))

        env_dir = self.write_env_file()
        if env_dir is not None:
            mounts.append(VolumeMount(str(env_dir), "/workspace/env-dir", readonly=True))

        if group.container_config and group.container_config.additional_mounts:
            mounts.extend(
                validate_additional_mounts(
                    group.container_config.additional_mounts,
                    group.name,
                    is_main=request.is_privileged,
                )
            )

        mounts.extend(request.extra_mounts)
        return mounts

    # --- Credentials ---

    def _credential_values(self) -> dict[str, str]:
        secrets = get_settings().secrets
        env_vars: dict[str, str] = {}
        for key in self.credential_keys:
            secret = getattr(secrets, key.lower(), None)
            if secret is not None:
                env_vars[key] = secret.get_secret_value()
            elif os.environ.get(key):
                env_vars[key] = os.environ[key]
        return env_vars

    def write_env_file(self) -> Path | None:
        """Write this provider's credential env file. Returns its directory or None."""
        env_vars = self._credential_values()
        if not env_vars:
            logger.warning(
                "No credentials found for provider, sandbox will fail to authenticate",
                provider=self.name,
                expected=list(self.credential_keys),
            )
            return None

        env_dir = get_settings().env_dir / self.name
        env_dir.mkdir(parents=True, exist_ok=True)
        lines = [f"{k}={_shell_quote(v)}" for k, v in env_vars.items()]
        (env_dir / "env").write_text("\n".join(lines) + "\n")
        logger.debug("Sandbox env prepared", provider=self.name, vars=list(env_vars))
        return env_dir

    # --- Session state ---

    def session_dir(self, folder: str) -> Path:
        return get_settings().sessions_dir / folder / self.session_dir_name

    def reset_session_state(self, folder: str) -> None:
        """Remove the backend's on-disk conversation state for *folder*."""
        session_dir = self.session_dir(folder)
        if session_dir.exists():
            shutil.rmtree(session_dir)
            logger.info("Session state cleared", provider=self.name, folder=folder)
