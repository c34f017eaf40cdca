"""Tests for RelayApp wiring: dependency adapters and shutdown."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

from conftest import FakeChannel, make_group

from agentrelay.app import RelayApp
from agentrelay.providers import ClaudeProvider
from agentrelay.state import InMemoryStateStore
from agentrelay.types import AgentResponse


async def _app() -> tuple[RelayApp, FakeChannel]:
    app = RelayApp(InMemoryStateStore())
    channel = FakeChannel("chat", groups=("alpha",))
    app.add_channel(channel)
    await app.state.register_group("chat:main", make_group("main"))
    await app.state.register_group("chat:alpha", make_group("alpha"))
    return app, channel


class TestIpcDeps:
    async def test_adapters_reach_state_and_router(self, settings):
        app, channel = await _app()
        deps = app._make_ipc_deps()

        assert set(deps.registered_groups()) == {"chat:main", "chat:alpha"}
        assert deps.is_privileged("main")
        assert not deps.is_privileged("alpha")

        await deps.send_message("chat:alpha", "hi", "alpha")
        await deps.send_photo("chat:alpha", "/tmp/x.png", None, "alpha")
        assert channel.sent == [("chat:alpha", "Relay: hi")]
        assert channel.photos == [("chat:alpha", "/tmp/x.png", None)]

        await deps.register_group("chat:beta", make_group("beta"))
        assert app.state.group_for_folder("beta") is not None

        groups = await deps.get_available_groups()
        assert [g["folder"] for g in groups] == ["alpha", "beta", "main"]

        deps.write_groups_snapshot("main", True, groups)
        assert (settings.ipc_dir / "main" / "available_groups.json").exists()


class TestSchedulerDeps:
    async def test_run_agent_goes_through_agent_service(self):
        app, _ = await _app()
        deps = app._make_scheduler_deps()
        expected = AgentResponse(status="success", result="done")

        with (
            patch("agentrelay.agent_service.refresh_task_snapshot", AsyncMock()),
            patch.object(ClaudeProvider, "run", AsyncMock(return_value=expected)) as run,
        ):
            result = await deps.run_agent(
                app.state.group_for_folder("alpha"),
                "ping",
                "chat:alpha",
                unattended=True,
                context_mode="isolated",
            )

        assert result is expected
        assert run.call_args.args[1].is_unattended is True


async def test_shutdown_is_idempotent():
    app, channel = await _app()
    channel.connected = True

    with patch("agentrelay.app.close_database", AsyncMock()) as close:
        await app.shutdown("SIGTERM")
        await app.shutdown("SIGINT")

    close.assert_awaited_once()
    assert not channel.connected
    assert app._stop_event.is_set()
