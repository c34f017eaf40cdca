"""Shared test fixtures for agentrelay."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from agentrelay.types import RegisteredGroup

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, not fixtures; importable by test files)
# ---------------------------------------------------------------------------

# Cached property names that must be set via __dict__ (not model_construct).
_CACHED_PROPERTY_NAMES = frozenset(
    {
        "trigger_pattern",
        "timezone",
        "verbose",
        "project_root",
        "home_dir",
        "groups_dir",
        "data_dir",
        "store_dir",
        "ipc_dir",
        "sessions_dir",
        "env_dir",
        "mount_allowlist_path",
    }
)


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Accepts both model fields (agent, container, etc.) and cached property
    overrides (project_root, ipc_dir, groups_dir, etc.).

    Usage::

        s = make_settings(ipc_dir=tmp_path / "ipc")
        s = make_settings(container=ContainerConfig(timeout_ms=100))
    """
    from agentrelay.config import (
        AgentConfig,
        ContainerConfig,
        IpcConfig,
        LoggingConfig,
        ProvidersConfig,
        SchedulerConfig,
        SecretsConfig,
        SecurityConfig,
        Settings,
    )

    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}

    defaults = {
        "agent": AgentConfig(),
        "container": ContainerConfig(runtime="docker"),
        "providers": ProvidersConfig(),
        "logging": LoggingConfig(),
        "secrets": SecretsConfig(),
        "ipc": IpcConfig(),
        "scheduler": SchedulerConfig(timezone="UTC"),
        "security": SecurityConfig(),
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


def tmp_settings(tmp_path: Path, **overrides):
    """make_settings() with every filesystem path rooted under *tmp_path*."""
    data_dir = tmp_path / "data"
    paths = {
        "project_root": tmp_path,
        "home_dir": tmp_path / "home",
        "groups_dir": tmp_path / "groups",
        "data_dir": data_dir,
        "store_dir": tmp_path / "store",
        "ipc_dir": data_dir / "ipc",
        "sessions_dir": data_dir / "sessions",
        "env_dir": data_dir / "env",
        "mount_allowlist_path": tmp_path / "mount-allowlist.json",
        "timezone": "UTC",
        "verbose": False,
    }
    paths.update(overrides)
    return make_settings(**paths)


def make_group(folder: str = "alpha", **kwargs) -> RegisteredGroup:
    return RegisteredGroup(
        name=kwargs.pop("name", folder.title()),
        folder=folder,
        trigger=kwargs.pop("trigger", "@Relay"),
        added_at=kwargs.pop("added_at", "2024-01-01T00:00:00+00:00"),
        **kwargs,
    )


class FakeChannel:
    """In-memory chat connector that owns addresses starting with *prefix*."""

    def __init__(
        self,
        name: str = "fake",
        *,
        prefix: str = "chat:",
        groups: tuple[str, ...] = (),
        prefix_assistant_name: bool = True,
        fail_disconnect: bool = False,
    ) -> None:
        self.name = name
        self.prefix = prefix
        self.groups = groups
        self.prefix_assistant_name = prefix_assistant_name
        self.fail_disconnect = fail_disconnect
        self.connected = False
        self.sent: list[tuple[str, str]] = []
        self.photos: list[tuple[str, str, str | None]] = []

    async def connect(self) -> None:
        self.connected = True

    async def disconnect(self) -> None:
        if self.fail_disconnect:
            raise ConnectionError("already gone")
        self.connected = False

    async def send_message(self, address: str, text: str) -> None:
        self.sent.append((address, text))

    async def send_photo(self, address: str, image_path: str, caption: str | None = None) -> None:
        self.photos.append((address, image_path, caption))

    def owns_address(self, address: str) -> bool:
        return address.startswith(self.prefix)

    def owns_group(self, folder: str) -> bool:
        return folder in self.groups


class FakeProcess:
    """Simulates asyncio.subprocess.Process for testing.

    stdout/stderr are real StreamReaders fed by the test; stdin records
    whatever the launcher writes.
    """

    class _Stdin:
        def __init__(self) -> None:
            self.data = bytearray()
            self.closed = False

        def write(self, data: bytes) -> None:
            self.data.extend(data)

        async def drain(self) -> None:
            return None

        def close(self) -> None:
            self.closed = True

    def __init__(self) -> None:
        self.stdin = self._Stdin()
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self._returncode: int | None = None
        self._wait_event = asyncio.Event()
        self.pid: int | None = None  # no real process group to signal
        self._killed = False

    def emit_stdout(self, data: bytes) -> None:
        self.stdout.feed_data(data)

    def emit_stderr(self, data: bytes) -> None:
        self.stderr.feed_data(data)

    def close(self, code: int = 0) -> None:
        """Simulate process exit."""
        self._returncode = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._wait_event.set()

    async def wait(self) -> int:
        await self._wait_event.wait()
        return self._returncode  # type: ignore[return-value]

    def kill(self) -> None:
        """A killed container exits with the SIGKILL code."""
        self._killed = True
        if self._returncode is None:
            self.close(137)

    @property
    def returncode(self) -> int | None:
        return self._returncode


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def settings(tmp_path, monkeypatch):
    """Ensure each test starts with a clean Settings singleton under tmp_path.

    No config.toml, no .env, no file I/O outside the test's directory.
    Tests that need different values patch ``agentrelay.config._settings``
    again with their own ``tmp_settings()``.
    """
    safe = tmp_settings(tmp_path)
    monkeypatch.setattr("agentrelay.config._settings", safe)
    return safe


@pytest.fixture(autouse=True)
def _reset_singletons():
    from agentrelay.mount_security import _reset_cache
    from agentrelay.runtime import reset_runtime

    reset_runtime()
    _reset_cache()
    yield
    reset_runtime()
    _reset_cache()


@pytest.fixture(autouse=True, scope="session")
def _close_test_database():
    """Close the aiosqlite connection after all tests complete.

    Uses ``stop()`` + thread join rather than ``await close()`` because
    the connection was created on a function-scoped event loop.
    """
    yield
    import agentrelay.db._connection as db_conn

    if db_conn._db is not None:
        db_conn._db.stop()
        if db_conn._db._thread is not None and db_conn._db._thread.is_alive():
            db_conn._db._thread.join(timeout=2)
        db_conn._db = None
