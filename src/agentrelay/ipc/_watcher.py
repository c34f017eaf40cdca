"""File-based IPC watcher.

Polls ``<ipc_dir>/<group>/messages`` and ``<ipc_dir>/<group>/tasks`` for
JSON files written by running sandboxes. Each file is applied once and then
deleted. Files that cannot be parsed or dispatched are moved to the
quarantine directory as ``<group>-<filename>`` and never retried.
Authorization rejections are expected noise: they are logged and the file
is deleted.

Processing is at-least-once: a crash between applying a file and deleting
it applies the file again on restart.
"""

from __future__ import annotations

import asyncio
import contextlib
from pathlib import Path

from agentrelay.config import get_settings
from agentrelay.ipc._deps import IpcDeps
from agentrelay.ipc._protocol import (
    IpcRequestError,
    OutboundMessage,
    OutboundPhoto,
    OutboundRequest,
    parse_ipc_file,
    parse_outbound_request,
    parse_task_request,
)
from agentrelay.ipc._registry import dispatch
from agentrelay.logger import logger

# Container-side prefixes and the per-group host directories they map to
_GROUP_PREFIX = "/workspace/group/"
_IPC_PREFIX = "/workspace/ipc/"
_PROJECT_PREFIX = "/workspace/project/"


class IpcWatcher:
    """Poll loop over every group's outbox. Only start() and stop() are public."""

    def __init__(
        self,
        deps: IpcDeps,
        *,
        ipc_dir: Path | None = None,
        poll_interval: float | None = None,
        quarantine_dir: str | None = None,
    ) -> None:
        s = get_settings()
        self._deps = deps
        self._ipc_dir = ipc_dir or s.ipc_dir
        self._poll_interval = poll_interval if poll_interval is not None else s.ipc.poll_interval
        self._quarantine_name = quarantine_dir or s.ipc.quarantine_dir
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    @property
    def quarantine_path(self) -> Path:
        return self._ipc_dir / self._quarantine_name

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            logger.debug("IPC watcher already running, skipping duplicate start")
            return
        self._ipc_dir.mkdir(parents=True, exist_ok=True)
        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name="ipc-watcher")
        logger.info(
            "IPC watcher started",
            ipc_dir=str(self._ipc_dir),
            poll_interval=self._poll_interval,
        )

    async def stop(self) -> None:
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("IPC watcher stopped")

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self._poll_once()
            except Exception:
                logger.exception("IPC poll cycle failed")
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), timeout=self._poll_interval)

    # --- One poll cycle ---

    async def _poll_once(self) -> int:
        """Drain every group's outbox once. Returns the number of files handled."""
        try:
            group_folders = sorted(
                f.name
                for f in self._ipc_dir.iterdir()
                if f.is_dir() and f.name != self._quarantine_name
            )
        except OSError as exc:
            logger.error("Error reading IPC base directory", err=str(exc))
            return 0

        processed = 0
        for source_group in group_folders:
            is_privileged = self._deps.is_privileged(source_group)

            for file_path in self._pending_files(source_group, "messages"):
                await self._process_message_file(file_path, source_group, is_privileged)
                processed += 1

            for file_path in self._pending_files(source_group, "tasks"):
                await self._process_task_file(file_path, source_group, is_privileged)
                processed += 1

        return processed

    def _pending_files(self, source_group: str, area: str) -> list[Path]:
        directory = self._ipc_dir / source_group / area
        try:
            if not directory.exists():
                return []
            return sorted(f for f in directory.iterdir() if f.suffix == ".json")
        except OSError as exc:
            logger.error(
                f"Error reading IPC {area} directory",
                err=str(exc),
                source_group=source_group,
            )
            return []

    def _quarantine(self, source_group: str, file_path: Path) -> None:
        """Move a failed IPC file aside for later inspection."""
        error_dir = self.quarantine_path
        try:
            error_dir.mkdir(parents=True, exist_ok=True)
            file_path.rename(error_dir / f"{source_group}-{file_path.name}")
        except OSError as exc:
            # Never leave it in the outbox, or it would be retried every cycle
            logger.error("Failed to quarantine IPC file, deleting", file=file_path.name, err=str(exc))
            with contextlib.suppress(OSError):
                file_path.unlink()

    # --- messages/ ---

    async def _process_message_file(
        self, file_path: Path, source_group: str, is_privileged: bool
    ) -> None:
        try:
            request = parse_outbound_request(parse_ipc_file(file_path))
            await self._deliver(request, source_group, is_privileged)
            file_path.unlink()
        except Exception as exc:
            logger.error(
                "Error processing IPC message",
                file=file_path.name,
                source_group=source_group,
                err=str(exc),
            )
            self._quarantine(source_group, file_path)

    async def _deliver(
        self, request: OutboundRequest, source_group: str, is_privileged: bool
    ) -> None:
        target_group = self._deps.registered_groups().get(request.target_address)
        if not is_privileged and (target_group is None or target_group.folder != source_group):
            logger.warning(
                "Unauthorized IPC message attempt blocked",
                target_address=request.target_address,
                source_group=source_group,
            )
            return

        match request:
            case OutboundMessage(target_address=address, text=text):
                await self._deps.send_message(address, text, source_group)
                logger.info("IPC message sent", target_address=address, source_group=source_group)
            case OutboundPhoto(target_address=address, image_path=image_path, caption=caption):
                host_path = self._resolve_image_path(image_path, source_group, is_privileged)
                if host_path is None:
                    logger.warning(
                        "IPC photo path outside the group's directories blocked",
                        image_path=image_path,
                        source_group=source_group,
                    )
                    return
                await self._deps.send_photo(address, str(host_path), caption, source_group)
                logger.info("IPC photo sent", target_address=address, source_group=source_group)

    def _resolve_image_path(
        self, image_path: str, source_group: str, is_privileged: bool
    ) -> Path | None:
        """Translate a sandbox path to a host path the group is allowed to share."""
        s = get_settings()
        group_dir = (s.groups_dir / source_group).resolve()
        ipc_group_dir = (self._ipc_dir / source_group).resolve()

        if image_path.startswith(_GROUP_PREFIX):
            host = group_dir / image_path[len(_GROUP_PREFIX) :]
        elif image_path.startswith(_IPC_PREFIX):
            host = ipc_group_dir / image_path[len(_IPC_PREFIX) :]
        elif image_path.startswith(_PROJECT_PREFIX) and is_privileged:
            host = s.project_root / image_path[len(_PROJECT_PREFIX) :]
        else:
            host = Path(image_path)

        host = host.resolve()
        if is_privileged:
            return host
        if host.is_relative_to(group_dir) or host.is_relative_to(ipc_group_dir):
            return host
        return None

    # --- tasks/ ---

    async def _process_task_file(
        self, file_path: Path, source_group: str, is_privileged: bool
    ) -> None:
        try:
            data = parse_ipc_file(file_path)
            try:
                request = parse_task_request(data)
            except IpcRequestError as exc:
                logger.warning(
                    "Invalid IPC task request dropped",
                    file=file_path.name,
                    source_group=source_group,
                    err=str(exc),
                )
            else:
                await dispatch(request, source_group, is_privileged, self._deps)
            file_path.unlink()
        except Exception as exc:
            logger.error(
                "Error processing IPC task",
                file=file_path.name,
                source_group=source_group,
                err=str(exc),
            )
            self._quarantine(source_group, file_path)
