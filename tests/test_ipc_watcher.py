"""Tests for the IPC watcher: outbox polling, authorization and quarantine."""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest
from conftest import make_group

from agentrelay.db import _init_test_database, create_task, get_all_tasks, get_task_by_id
from agentrelay.ipc import IpcWatcher
from agentrelay.state import GroupRegistrationError
from agentrelay.types import RegisteredGroup, ScheduledTask


class FakeDeps:
    """In-memory IpcDeps. Folder "main" is the privileged group."""

    def __init__(self) -> None:
        self.groups: dict[str, RegisteredGroup] = {
            "chat:main": make_group("main"),
            "chat:alpha": make_group("alpha"),
            "chat:beta": make_group("beta"),
        }
        self.sent: list[tuple[str, str, str]] = []
        self.photos: list[tuple[str, str, str | None, str]] = []
        self.snapshots: list[tuple[str, bool, list[dict[str, Any]]]] = []
        self.fail_sends = False

    def registered_groups(self) -> dict[str, RegisteredGroup]:
        return dict(self.groups)

    def is_privileged(self, folder: str) -> bool:
        return folder == "main"

    async def send_message(self, address: str, text: str, source_group: str) -> None:
        if self.fail_sends:
            raise ConnectionError("channel unreachable")
        self.sent.append((address, text, source_group))

    async def send_photo(
        self, address: str, image_path: str, caption: str | None, source_group: str
    ) -> None:
        self.photos.append((address, image_path, caption, source_group))

    async def register_group(self, address: str, group: RegisteredGroup) -> None:
        if any(g.folder == group.folder for g in self.groups.values()):
            raise GroupRegistrationError(f"Folder {group.folder!r} is already in use")
        self.groups[address] = group

    async def get_available_groups(self) -> list[dict[str, Any]]:
        return [{"address": a, "folder": g.folder} for a, g in self.groups.items()]

    def write_groups_snapshot(
        self, folder: str, is_privileged: bool, groups: list[dict[str, Any]]
    ) -> None:
        self.snapshots.append((folder, is_privileged, groups))


@pytest.fixture(autouse=True)
async def _setup_db():
    await _init_test_database()


@pytest.fixture
def deps() -> FakeDeps:
    return FakeDeps()


@pytest.fixture
def watcher(deps, settings) -> IpcWatcher:
    return IpcWatcher(deps)


def _drop(settings, group: str, area: str, name: str, payload: Any) -> Path:
    directory = settings.ipc_dir / group / area
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    path.write_text(payload if isinstance(payload, str) else json.dumps(payload))
    return path


def _quarantined(settings) -> list[str]:
    qdir = settings.ipc_dir / "errors"
    return sorted(p.name for p in qdir.iterdir()) if qdir.exists() else []


async def _seed_task(task_id: str, folder: str, status: str = "active") -> None:
    await create_task(
        ScheduledTask(
            id=task_id,
            group_folder=folder,
            target_address=f"chat:{folder}",
            prompt="do it",
            schedule_type="interval",
            schedule_value="60000",
            next_run="2099-01-01T00:00:00+00:00",
            status=status,
            created_at="2024-01-01T00:00:00+00:00",
        )
    )


# ---------------------------------------------------------------------------
# messages/
# ---------------------------------------------------------------------------


class TestMessages:
    async def test_own_group_message_sent_and_deleted(self, watcher, deps, settings):
        path = _drop(
            settings,
            "alpha",
            "messages",
            "001.json",
            {"type": "message", "targetAddress": "chat:alpha", "text": "hello"},
        )

        assert await watcher._poll_once() == 1

        assert deps.sent == [("chat:alpha", "hello", "alpha")]
        assert not path.exists()

    async def test_legacy_chat_jid_field(self, watcher, deps, settings):
        _drop(
            settings,
            "alpha",
            "messages",
            "001.json",
            {"type": "message", "chatJid": "chat:alpha", "text": "legacy"},
        )
        await watcher._poll_once()
        assert deps.sent == [("chat:alpha", "legacy", "alpha")]

    async def test_non_privileged_cannot_message_other_group(self, watcher, deps, settings):
        path = _drop(
            settings,
            "alpha",
            "messages",
            "001.json",
            {"type": "message", "targetAddress": "chat:beta", "text": "sneaky"},
        )

        await watcher._poll_once()

        assert deps.sent == []
        assert not path.exists()
        assert _quarantined(settings) == []

    async def test_privileged_can_message_anyone(self, watcher, deps, settings):
        _drop(
            settings,
            "main",
            "messages",
            "001.json",
            {"type": "message", "targetAddress": "chat:beta", "text": "hi beta"},
        )
        await watcher._poll_once()
        assert deps.sent == [("chat:beta", "hi beta", "main")]

    async def test_files_processed_in_name_order(self, watcher, deps, settings):
        for name, text in [("002.json", "second"), ("001.json", "first"), ("003.json", "third")]:
            _drop(
                settings,
                "alpha",
                "messages",
                name,
                {"type": "message", "targetAddress": "chat:alpha", "text": text},
            )
        _drop(settings, "alpha", "messages", "notes.txt", "ignored")

        await watcher._poll_once()

        assert [t for _, t, _ in deps.sent] == ["first", "second", "third"]
        assert (settings.ipc_dir / "alpha" / "messages" / "notes.txt").exists()

    async def test_malformed_json_quarantined(self, watcher, deps, settings):
        path = _drop(settings, "alpha", "messages", "bad.json", "{not json")

        await watcher._poll_once()

        assert not path.exists()
        assert _quarantined(settings) == ["alpha-bad.json"]

    async def test_unknown_message_type_quarantined(self, watcher, settings):
        _drop(settings, "alpha", "messages", "odd.json", {"type": "sticker"})
        await watcher._poll_once()
        assert _quarantined(settings) == ["alpha-odd.json"]

    async def test_dispatch_failure_quarantined_not_retried(self, watcher, deps, settings):
        deps.fail_sends = True
        _drop(
            settings,
            "alpha",
            "messages",
            "001.json",
            {"type": "message", "targetAddress": "chat:alpha", "text": "x"},
        )

        await watcher._poll_once()
        assert _quarantined(settings) == ["alpha-001.json"]

        deps.fail_sends = False
        assert await watcher._poll_once() == 0
        assert deps.sent == []

    async def test_photo_path_mapped_to_group_dir(self, watcher, deps, settings):
        image = settings.groups_dir / "alpha" / "out" / "chart.png"
        image.parent.mkdir(parents=True)
        image.write_bytes(b"png")
        _drop(
            settings,
            "alpha",
            "messages",
            "001.json",
            {
                "type": "photo",
                "targetAddress": "chat:alpha",
                "imagePath": "/workspace/group/out/chart.png",
                "caption": "weekly",
            },
        )

        await watcher._poll_once()

        assert deps.photos == [("chat:alpha", str(image.resolve()), "weekly", "alpha")]

    async def test_photo_outside_group_dirs_blocked(self, watcher, deps, settings):
        path = _drop(
            settings,
            "alpha",
            "messages",
            "001.json",
            {"type": "photo", "targetAddress": "chat:alpha", "imagePath": "/etc/passwd"},
        )

        await watcher._poll_once()

        assert deps.photos == []
        assert not path.exists()

    async def test_photo_traversal_blocked(self, watcher, deps, settings):
        _drop(
            settings,
            "alpha",
            "messages",
            "001.json",
            {
                "type": "photo",
                "targetAddress": "chat:alpha",
                "imagePath": "/workspace/group/../beta/secret.png",
            },
        )
        await watcher._poll_once()
        assert deps.photos == []

    async def test_quarantine_dir_is_not_scanned(self, watcher, deps, settings):
        qdir = settings.ipc_dir / "errors" / "messages"
        qdir.mkdir(parents=True)
        (qdir / "x.json").write_text(
            json.dumps({"type": "message", "targetAddress": "chat:main", "text": "no"})
        )

        assert await watcher._poll_once() == 0
        assert deps.sent == []


# ---------------------------------------------------------------------------
# tasks/
# ---------------------------------------------------------------------------


class TestScheduleTask:
    async def test_interval_task_created(self, watcher, settings):
        """A non-privileged group schedules a task for its own folder."""
        path = _drop(
            settings,
            "alpha",
            "tasks",
            "t1.json",
            {
                "type": "schedule_task",
                "prompt": "ping",
                "schedule_type": "interval",
                "schedule_value": "1000",
                "groupFolder": "alpha",
            },
        )
        before = datetime.now(UTC)

        await watcher._poll_once()

        tasks = await get_all_tasks()
        assert len(tasks) == 1
        task = tasks[0]
        assert task.status == "active"
        assert task.group_folder == "alpha"
        assert task.target_address == "chat:alpha"
        assert task.context_mode == "isolated"
        delta = (datetime.fromisoformat(task.next_run) - before).total_seconds()
        assert 0.9 <= delta <= 3.0
        assert not path.exists()

    async def test_cron_next_run_in_future(self, watcher, settings):
        _drop(
            settings,
            "alpha",
            "tasks",
            "t1.json",
            {
                "type": "schedule_task",
                "prompt": "daily",
                "schedule_type": "cron",
                "schedule_value": "0 9 * * *",
                "targetAddress": "chat:alpha",
                "context_mode": "group",
            },
        )
        created = datetime.now(UTC)

        await watcher._poll_once()

        (task,) = await get_all_tasks()
        assert datetime.fromisoformat(task.next_run) > created
        assert task.context_mode == "group"

    async def test_once_task_uses_literal_time(self, watcher, settings):
        _drop(
            settings,
            "alpha",
            "tasks",
            "t1.json",
            {
                "type": "schedule_task",
                "prompt": "remind",
                "schedule_type": "once",
                "schedule_value": "2030-05-01T10:00:00",
                "groupFolder": "alpha",
            },
        )
        await watcher._poll_once()
        (task,) = await get_all_tasks()
        assert task.next_run == "2030-05-01T10:00:00+00:00"

    @pytest.mark.parametrize(
        ("schedule_type", "value"),
        [("cron", "not a cron"), ("interval", "-5"), ("interval", "soon"), ("once", "tomorrow")],
    )
    async def test_invalid_schedule_dropped(self, watcher, settings, schedule_type, value):
        path = _drop(
            settings,
            "alpha",
            "tasks",
            "t1.json",
            {
                "type": "schedule_task",
                "prompt": "x",
                "schedule_type": schedule_type,
                "schedule_value": value,
                "groupFolder": "alpha",
            },
        )

        await watcher._poll_once()

        assert await get_all_tasks() == []
        assert not path.exists()
        assert _quarantined(settings) == []

    async def test_non_privileged_cannot_schedule_for_other_group(self, watcher, settings):
        path = _drop(
            settings,
            "alpha",
            "tasks",
            "t1.json",
            {
                "type": "schedule_task",
                "prompt": "x",
                "schedule_type": "interval",
                "schedule_value": "1000",
                "groupFolder": "beta",
            },
        )

        await watcher._poll_once()

        assert await get_all_tasks() == []
        assert not path.exists()

    async def test_non_privileged_cannot_target_other_address(self, watcher, settings):
        _drop(
            settings,
            "alpha",
            "tasks",
            "t1.json",
            {
                "type": "schedule_task",
                "prompt": "x",
                "schedule_type": "interval",
                "schedule_value": "1000",
                "targetAddress": "chat:beta",
            },
        )
        await watcher._poll_once()
        assert await get_all_tasks() == []

    async def test_privileged_can_schedule_for_any_group(self, watcher, settings):
        _drop(
            settings,
            "main",
            "tasks",
            "t1.json",
            {
                "type": "schedule_task",
                "prompt": "x",
                "schedule_type": "interval",
                "schedule_value": 1000,
                "groupFolder": "beta",
            },
        )
        await watcher._poll_once()
        (task,) = await get_all_tasks()
        assert task.group_folder == "beta"
        assert task.schedule_value == "1000"

    async def test_missing_fields_dropped_not_quarantined(self, watcher, settings):
        path = _drop(settings, "alpha", "tasks", "t1.json", {"type": "schedule_task"})
        await watcher._poll_once()
        assert not path.exists()
        assert _quarantined(settings) == []


class TestTaskLifecycle:
    async def test_pause_resume_cancel_own_task(self, watcher, settings):
        await _seed_task("task-a", "alpha")

        _drop(settings, "alpha", "tasks", "1.json", {"type": "pause_task", "taskId": "task-a"})
        await watcher._poll_once()
        assert (await get_task_by_id("task-a")).status == "paused"

        _drop(settings, "alpha", "tasks", "2.json", {"type": "resume_task", "taskId": "task-a"})
        await watcher._poll_once()
        assert (await get_task_by_id("task-a")).status == "active"

        _drop(settings, "alpha", "tasks", "3.json", {"type": "cancel_task", "taskId": "task-a"})
        await watcher._poll_once()
        assert await get_task_by_id("task-a") is None

    async def test_cannot_touch_other_groups_task(self, watcher, settings):
        await _seed_task("task-b", "beta")

        for i, kind in enumerate(["pause_task", "cancel_task"]):
            path = _drop(settings, "alpha", "tasks", f"{i}.json", {"type": kind, "taskId": "task-b"})
            await watcher._poll_once()
            assert not path.exists()

        task = await get_task_by_id("task-b")
        assert task is not None
        assert task.status == "active"
        assert _quarantined(settings) == []

    async def test_privileged_can_pause_any_task(self, watcher, settings):
        await _seed_task("task-b", "beta")
        _drop(settings, "main", "tasks", "1.json", {"type": "pause_task", "taskId": "task-b"})
        await watcher._poll_once()
        assert (await get_task_by_id("task-b")).status == "paused"

    async def test_resume_does_not_revive_completed_task(self, watcher, settings):
        await _seed_task("task-done", "alpha", status="completed")
        _drop(settings, "alpha", "tasks", "1.json", {"type": "resume_task", "taskId": "task-done"})
        await watcher._poll_once()
        assert (await get_task_by_id("task-done")).status == "completed"

    async def test_unknown_task_type_dropped(self, watcher, settings):
        path = _drop(settings, "alpha", "tasks", "1.json", {"type": "launch_rockets"})
        await watcher._poll_once()
        assert not path.exists()
        assert _quarantined(settings) == []

    async def test_malformed_task_file_quarantined(self, watcher, settings):
        _drop(settings, "alpha", "tasks", "1.json", "[1, 2")
        await watcher._poll_once()
        assert _quarantined(settings) == ["alpha-1.json"]


class TestGroupRequests:
    async def test_privileged_registers_group(self, watcher, deps, settings):
        _drop(
            settings,
            "main",
            "tasks",
            "1.json",
            {
                "type": "register_group",
                "address": "chat:gamma",
                "name": "Gamma",
                "folder": "gamma",
                "trigger": "@Relay",
                "containerConfig": {"timeoutMs": 1000},
                "requiresTrigger": False,
            },
        )

        await watcher._poll_once()

        group = deps.groups["chat:gamma"]
        assert group.folder == "gamma"
        assert group.container_config.timeout_ms == 1000
        assert group.requires_trigger is False

    async def test_non_privileged_cannot_register(self, watcher, deps, settings):
        _drop(
            settings,
            "alpha",
            "tasks",
            "1.json",
            {
                "type": "register_group",
                "jid": "chat:gamma",
                "name": "Gamma",
                "folder": "gamma",
                "trigger": "@Relay",
            },
        )
        await watcher._poll_once()
        assert "chat:gamma" not in deps.groups

    async def test_registration_conflict_dropped(self, watcher, deps, settings):
        path = _drop(
            settings,
            "main",
            "tasks",
            "1.json",
            {
                "type": "register_group",
                "address": "chat:other",
                "name": "Dup",
                "folder": "alpha",
                "trigger": "@Relay",
            },
        )
        await watcher._poll_once()
        assert "chat:other" not in deps.groups
        assert not path.exists()
        assert _quarantined(settings) == []

    async def test_refresh_groups(self, watcher, deps, settings):
        _drop(settings, "main", "tasks", "1.json", {"type": "refresh_groups"})
        _drop(settings, "alpha", "tasks", "1.json", {"type": "refresh_groups"})

        await watcher._poll_once()

        assert len(deps.snapshots) == 1
        folder, is_privileged, groups = deps.snapshots[0]
        assert (folder, is_privileged) == ("main", True)
        assert len(groups) == 3


# ---------------------------------------------------------------------------
# Loop lifecycle
# ---------------------------------------------------------------------------


class TestLoop:
    async def test_start_polls_until_stopped(self, deps, settings):
        watcher = IpcWatcher(deps, poll_interval=0.01)
        watcher.start()
        watcher.start()  # duplicate start is a no-op

        _drop(
            settings,
            "alpha",
            "messages",
            "001.json",
            {"type": "message", "targetAddress": "chat:alpha", "text": "async"},
        )
        for _ in range(100):
            if deps.sent:
                break
            await asyncio.sleep(0.01)

        await watcher.stop()
        assert deps.sent == [("chat:alpha", "async", "alpha")]

    async def test_custom_quarantine_dir(self, deps, settings):
        watcher = IpcWatcher(deps, quarantine_dir="poison")
        _drop(settings, "alpha", "messages", "bad.json", "nope")

        await watcher._poll_once()

        assert (settings.ipc_dir / "poison" / "alpha-bad.json").exists()
