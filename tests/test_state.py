"""Tests for GroupState: registration rules and write-through sessions."""

from __future__ import annotations

import pytest
from conftest import make_group

from agentrelay.db import _init_test_database, get_all_registered_groups, get_all_sessions
from agentrelay.state import (
    GroupRegistrationError,
    GroupState,
    InMemoryStateStore,
    SqliteStateStore,
    is_valid_folder,
)


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def state(store) -> GroupState:
    return GroupState(store)


@pytest.mark.parametrize(
    ("folder", "valid"),
    [
        ("alpha", True),
        ("team_chat-2", True),
        ("A", True),
        ("", False),
        ("-leading", False),
        ("../escape", False),
        ("has space", False),
        ("global", False),
        ("errors", False),
        ("x" * 65, False),
    ],
)
def test_is_valid_folder(folder, valid):
    assert is_valid_folder(folder) is valid


class TestRegisterGroup:
    async def test_register_writes_through_and_creates_logs_dir(self, state, store, settings):
        group = make_group("alpha")
        await state.register_group("chat:alpha", group)

        assert store.groups == {"chat:alpha": group}
        assert state.group_for_address("chat:alpha") is group
        assert state.group_for_folder("alpha") is group
        assert (settings.groups_dir / "alpha" / "logs").is_dir()

    async def test_invalid_folder_rejected(self, state, store):
        with pytest.raises(GroupRegistrationError):
            await state.register_group("chat:x", make_group("../x"))
        assert store.groups == {}

    async def test_folder_owned_by_other_address(self, state):
        await state.register_group("chat:alpha", make_group("alpha"))
        with pytest.raises(GroupRegistrationError, match="already in use"):
            await state.register_group("chat:other", make_group("alpha"))

    async def test_folder_cannot_be_renamed(self, state):
        await state.register_group("chat:alpha", make_group("alpha"))
        with pytest.raises(GroupRegistrationError, match="already registered"):
            await state.register_group("chat:alpha", make_group("renamed"))

    async def test_reregister_same_folder_updates(self, state):
        await state.register_group("chat:alpha", make_group("alpha"))
        await state.register_group("chat:alpha", make_group("alpha", name="New Name"))
        assert state.group_for_address("chat:alpha").name == "New Name"

    async def test_groups_returns_copy(self, state):
        await state.register_group("chat:alpha", make_group("alpha"))
        state.groups.clear()
        assert "chat:alpha" in state.groups

    async def test_addresses_for_folder(self, state):
        await state.register_group("chat:alpha", make_group("alpha"))
        assert state.addresses_for_folder("alpha") == ["chat:alpha"]
        assert state.addresses_for_folder("beta") == []

    def test_is_privileged_uses_main_folder(self, state):
        assert state.is_privileged("main")
        assert not state.is_privileged("alpha")


class TestSessions:
    async def test_set_get_clear(self, state, store):
        await state.set_session("alpha", "claude", "s-1")
        await state.set_session("alpha", "gemini", "g-1")
        await state.set_session("beta", "claude", "s-2")

        assert state.get_session("alpha", "claude") == "s-1"

        await state.clear_session("alpha", "claude")
        assert state.get_session("alpha", "claude") is None
        assert state.get_session("alpha", "gemini") == "g-1"

        await state.clear_session("alpha")
        assert store.sessions == {("beta", "claude"): "s-2"}

    async def test_load_restores_from_store(self, store):
        store.groups["chat:alpha"] = make_group("alpha")
        store.sessions[("alpha", "claude")] = "s-9"

        state = GroupState(store)
        await state.load()

        assert state.group_for_folder("alpha") is not None
        assert state.get_session("alpha", "claude") == "s-9"


class TestSqliteStore:
    @pytest.fixture(autouse=True)
    async def _setup_db(self):
        await _init_test_database()

    async def test_state_survives_reload(self):
        state = GroupState(SqliteStateStore())
        await state.register_group("chat:alpha", make_group("alpha"))
        await state.set_session("alpha", "claude", "s-1")

        assert await get_all_registered_groups() == {"chat:alpha": make_group("alpha")}
        assert await get_all_sessions() == {("alpha", "claude"): "s-1"}

        reloaded = GroupState(SqliteStateStore())
        await reloaded.load()
        assert reloaded.get_session("alpha", "claude") == "s-1"
        assert reloaded.group_for_address("chat:alpha") == make_group("alpha")

    async def test_global_provider_round_trip(self):
        store = SqliteStateStore()
        assert await store.load_global_provider() is None
        await store.save_global_provider("gemini")
        assert await store.load_global_provider() == "gemini"
