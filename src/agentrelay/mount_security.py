"""Mount policy for per-group additional mounts.

Groups may ask for extra host directories inside their sandbox. Nothing is
mounted unless it sits under a root listed in the allowlist file, which lives
outside the project (so an agent with the project mounted cannot edit it).

Allowlist format (JSON)::

    {
      "allowedRoots": [{"path": "~/projects", "allowReadWrite": true}],
      "blockedPatterns": ["secrets"],
      "nonMainReadOnly": true
    }
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from agentrelay.config import get_settings
from agentrelay.logger import logger
from agentrelay.types import AdditionalMount, AllowedRoot, MountAllowlist, VolumeMount

EXTRA_MOUNT_BASE = "/workspace/extra"

_cache: MountAllowlist | None = None
_load_failed = False


@dataclass
class MountValidation:
    allowed: bool
    reason: str
    real_host_path: str | None = None
    resolved_container_path: str | None = None
    effective_readonly: bool = True


def _reset_cache() -> None:
    global _cache, _load_failed
    _cache = None
    _load_failed = False


def _expand_path(p: str) -> str:
    if p == "~" or p.startswith("~/"):
        p = os.environ.get("HOME", str(Path.home())) + p[1:]
    return os.path.abspath(p)


def _real_path(p: str) -> str | None:
    try:
        return os.path.realpath(p, strict=True)
    except OSError:
        return None


def load_mount_allowlist() -> MountAllowlist | None:
    """Load and cache the allowlist. None means every extra mount is refused."""
    global _cache, _load_failed
    if _cache is not None:
        return _cache
    if _load_failed:
        return None

    path = get_settings().mount_allowlist_path
    try:
        raw = json.loads(path.read_text())
        roots = [
            AllowedRoot(
                path=r["path"],
                allow_read_write=bool(r.get("allowReadWrite", False)),
                description=r.get("description"),
            )
            for r in raw["allowedRoots"]
        ]
        custom = list(raw["blockedPatterns"])
        non_main_read_only = bool(raw["nonMainReadOnly"])
    except FileNotFoundError:
        logger.warning(
            "Mount allowlist not found, additional mounts are disabled",
            path=str(path),
        )
        _load_failed = True
        return None
    except (OSError, ValueError, KeyError, TypeError) as exc:
        logger.error("Failed to load mount allowlist", path=str(path), err=str(exc))
        _load_failed = True
        return None

    defaults = get_settings().security.blocked_patterns
    merged = list(dict.fromkeys([*defaults, *custom]))
    _cache = MountAllowlist(
        allowed_roots=roots,
        blocked_patterns=merged,
        non_main_read_only=non_main_read_only,
    )
    logger.info(
        "Mount allowlist loaded",
        roots=len(roots),
        blocked_patterns=len(merged),
    )
    return _cache


def _matches_blocked_pattern(real_path: str, patterns: list[str]) -> str | None:
    parts = Path(real_path).parts
    for pattern in patterns:
        if any(part == pattern or pattern in part for part in parts):
            return pattern
    return None


def _find_allowed_root(real_path: str, roots: list[AllowedRoot]) -> AllowedRoot | None:
    for root in roots:
        real_root = _real_path(_expand_path(root.path))
        if real_root is None:
            continue
        if real_path == real_root or real_path.startswith(real_root + os.sep):
            return root
    return None


def _is_valid_container_path(container_path: str) -> bool:
    if not container_path or not container_path.strip():
        return False
    if container_path.startswith("/"):
        return False
    return ".." not in Path(container_path).parts


def validate_mount(mount: AdditionalMount, *, is_main: bool) -> MountValidation:
    """Check one requested mount against the allowlist."""
    allowlist = load_mount_allowlist()
    if allowlist is None:
        return MountValidation(False, "No mount allowlist configured")

    container_path = mount.container_path or Path(mount.host_path).name
    if not _is_valid_container_path(container_path):
        return MountValidation(False, f"Invalid container path: {container_path!r}")

    real_path = _real_path(_expand_path(mount.host_path))
    if real_path is None:
        return MountValidation(False, f"Host path does not exist: {mount.host_path}")

    blocked = _matches_blocked_pattern(real_path, allowlist.blocked_patterns)
    if blocked is not None:
        return MountValidation(False, f"Path matches blocked pattern {blocked!r}: {real_path}")

    root = _find_allowed_root(real_path, allowlist.allowed_roots)
    if root is None:
        return MountValidation(False, f"Path {real_path} is not under any allowed root")

    readonly = True
    if not mount.readonly:
        if not root.allow_read_write:
            logger.info("Mount forced read-only, root disallows writes", path=real_path)
        elif not is_main and allowlist.non_main_read_only:
            logger.info("Mount forced read-only for non-main group", path=real_path)
        else:
            readonly = False

    return MountValidation(
        allowed=True,
        reason=f"Allowed under root {root.path}",
        real_host_path=real_path,
        resolved_container_path=container_path,
        effective_readonly=readonly,
    )


def validate_additional_mounts(
    mounts: list[AdditionalMount],
    group_name: str,
    *,
    is_main: bool,
) -> list[VolumeMount]:
    """Return the accepted mounts, placed under /workspace/extra/."""
    accepted: list[VolumeMount] = []
    for mount in mounts:
        result = validate_mount(mount, is_main=is_main)
        if not result.allowed:
            logger.warning(
                "Additional mount rejected",
                group=group_name,
                host_path=mount.host_path,
                reason=result.reason,
            )
            continue
        assert result.real_host_path is not None
        accepted.append(
            VolumeMount(
                host_path=result.real_host_path,
                container_path=f"{EXTRA_MOUNT_BASE}/{result.resolved_container_path}",
                readonly=result.effective_readonly,
            )
        )
    return accepted
