"""Execution sandbox launcher.

Spawns one container per agent invocation, writes the request JSON to its
stdin, drains stdout/stderr concurrently, enforces a wall-clock timeout and
an output byte cap, and decodes the sentinel-delimited result.

``invoke`` never raises. Spawn failures, timeouts, non-zero exits and
undecodable output all come back as ``AgentResponse(status="error")``.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
import signal
import time
from datetime import UTC, datetime
from pathlib import Path

from agentrelay.config import Settings
from agentrelay.logger import logger
from agentrelay.runtime import stop_container
from agentrelay.types import AgentResponse, SandboxConfig, SandboxInvocation, VolumeMount
from agentrelay.utils import create_background_task

_READ_CHUNK = 8192
_ERROR_SNIPPET_CHARS = 200
_STDERR_TAIL_CHARS = 500
# How long a killed sandbox gets to release its pipes and exit
_KILL_GRACE_S = 1.0

# ---------------------------------------------------------------------------
# CLI argument building
# ---------------------------------------------------------------------------


def _mount_args(mount: VolumeMount, runtime_name: str) -> list[str]:
    bind = f"type=bind,source={mount.host_path},target={mount.container_path}"
    if mount.readonly:
        return ["--mount", f"{bind},readonly"]
    if runtime_name == "apple":
        # Apple Container only accepts -v for writable bind mounts
        return ["-v", f"{mount.host_path}:{mount.container_path}"]
    return ["--mount", bind]


def _build_container_args(
    mounts: list[VolumeMount],
    container_name: str,
    image: str,
    runtime_name: str = "docker",
) -> list[str]:
    """Build CLI args for `<runtime> run`."""
    args = ["run", "-i", "--rm", "--name", container_name]
    for m in mounts:
        args.extend(_mount_args(m, runtime_name))
    args.append(image)
    return args


def _container_name(config: SandboxConfig, group_folder: str) -> str:
    safe_name = "".join(c if c.isalnum() or c == "-" else "-" for c in group_folder)
    return f"{config.container_name_prefix}{config.provider}-{safe_name}-{int(time.time() * 1000)}"


# ---------------------------------------------------------------------------
# Output parsing
# ---------------------------------------------------------------------------


def _extract_payload(stdout: str) -> str:
    """Return the JSON text between the sentinels, else the last non-empty line."""
    start_idx = stdout.find(Settings.OUTPUT_START_MARKER)
    if start_idx != -1:
        body_start = start_idx + len(Settings.OUTPUT_START_MARKER)
        end_idx = stdout.find(Settings.OUTPUT_END_MARKER, body_start)
        if end_idx != -1:
            return stdout[body_start:end_idx].strip()

    lines = [line for line in stdout.splitlines() if line.strip()]
    return lines[-1].strip() if lines else ""


def _parse_final_output(stdout: str, config: SandboxConfig, container_name: str) -> AgentResponse:
    json_str = _extract_payload(stdout)
    decode = config.decoder or AgentResponse.from_payload
    try:
        if not json_str:
            raise ValueError("no output")
        return decode(json.loads(json_str))
    except (ValueError, KeyError, TypeError) as exc:
        snippet = stdout.strip()[-_ERROR_SNIPPET_CHARS:]
        logger.error(
            "Failed to parse container output",
            container=container_name,
            err=str(exc),
        )
        return AgentResponse(
            status="error",
            error=f"Failed to parse container output: {exc}. Output: {snippet!r}",
        )


def _clamp_result(response: AgentResponse, max_bytes: int) -> AgentResponse:
    if response.result is None:
        return response
    encoded = response.result.encode()
    if len(encoded) > max_bytes:
        response.result = encoded[:max_bytes].decode(errors="ignore")
    return response


# ---------------------------------------------------------------------------
# Log writing
# ---------------------------------------------------------------------------


def _write_run_log(
    *,
    logs_dir: Path,
    config: SandboxConfig,
    request: SandboxInvocation,
    container_name: str,
    container_args: list[str],
    stdout: str,
    stderr: str,
    stdout_truncated: bool,
    stderr_truncated: bool,
    duration_ms: float,
    exit_code: int | None,
    timed_out: bool,
) -> Path:
    """Write a timestamped audit log file for one invocation."""
    logs_dir.mkdir(parents=True, exist_ok=True)
    ts = datetime.now(UTC).isoformat().replace(":", "-").replace(".", "-")
    log_file = logs_dir / f"{config.provider}-{ts}.log"

    is_error = timed_out or exit_code != 0
    lines = [
        f"=== Container Run Log{' (TIMEOUT)' if timed_out else ''} ===",
        f"Timestamp: {datetime.now(UTC).isoformat()}",
        f"Group: {request.group_folder}",
        f"Provider: {config.provider}",
        f"Container: {container_name}",
        f"IsPrivileged: {request.is_privileged}",
        f"IsUnattended: {request.is_unattended}",
        f"Duration: {duration_ms:.0f}ms",
        f"Exit Code: {exit_code}",
        f"Stdout Truncated: {stdout_truncated}",
        f"Stderr Truncated: {stderr_truncated}",
        "",
    ]

    if config.verbose:
        lines.extend(
            [
                "=== Input ===",
                json.dumps(request.to_payload(), indent=2),
                "",
                "=== Container Args ===",
                " ".join(container_args),
                "",
                "=== Mounts ===",
                "\n".join(
                    f"{m.host_path} -> {m.container_path}{' (ro)' if m.readonly else ''}"
                    for m in config.mounts
                ),
                "",
                f"=== Stderr{' (TRUNCATED)' if stderr_truncated else ''} ===",
                stderr,
                "",
                f"=== Stdout{' (TRUNCATED)' if stdout_truncated else ''} ===",
                stdout,
            ]
        )
    else:
        lines.extend(
            [
                "=== Input Summary ===",
                f"Prompt length: {len(request.prompt)} chars",
                f"Session ID: {request.session_id or 'new'}",
                "",
                "=== Mounts ===",
                "\n".join(f"{m.container_path}{' (ro)' if m.readonly else ''}" for m in config.mounts),
                "",
            ]
        )
        if is_error:
            lines.extend(["=== Stderr (tail) ===", stderr[-_STDERR_TAIL_CHARS:]])

    log_file.write_text("\n".join(lines))
    return log_file


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------


def _kill_process_group(proc: asyncio.subprocess.Process) -> None:
    """SIGKILL the runtime CLI and everything it spawned.

    The CLI runs as a session leader, so its pid is also its process group id.
    """
    if proc.pid is not None:
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(proc.pid, signal.SIGKILL)
    with contextlib.suppress(ProcessLookupError):
        proc.kill()


async def invoke(config: SandboxConfig, request: SandboxInvocation) -> AgentResponse:
    """Run one sandboxed agent invocation and return its normalized response."""
    try:
        return await _run(config, request)
    except Exception as exc:
        logger.exception("Sandbox invocation failed unexpectedly", group=request.group_folder)
        return AgentResponse(status="error", error=f"Sandbox invocation failed: {exc}")


async def _run(config: SandboxConfig, request: SandboxInvocation) -> AgentResponse:
    start_time = time.monotonic()
    loop = asyncio.get_running_loop()

    container_name = _container_name(config, request.group_folder)
    container_args = _build_container_args(
        config.mounts, container_name, config.image, config.runtime_name
    )

    logger.info(
        "Spawning sandbox",
        group=request.group_folder,
        provider=config.provider,
        container=container_name,
        mount_count=len(config.mounts),
        is_privileged=request.is_privileged,
        is_unattended=request.is_unattended,
    )

    try:
        proc = await asyncio.create_subprocess_exec(
            config.runtime_cli,
            *container_args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as exc:
        logger.error("Failed to spawn container", err=str(exc), container=container_name)
        return AgentResponse(status="error", error=f"Spawn failed: {exc}")

    # --- State ---
    stdout_buf = bytearray()
    stderr_buf = bytearray()
    stdout_truncated = False
    stderr_truncated = False
    timed_out = False
    timeout_fired = asyncio.Event()

    # --- Timeout management ---
    def kill_on_timeout() -> None:
        nonlocal timed_out
        timed_out = True
        logger.error(
            "Container timeout, killing",
            group=request.group_folder,
            container=container_name,
            timeout_ms=config.timeout_ms,
        )
        _kill_process_group(proc)
        timeout_fired.set()
        create_background_task(
            stop_container(config.runtime_cli, container_name),
            name=f"stop-{container_name}",
        )

    timeout_handle = loop.call_later(config.timeout_ms / 1000, kill_on_timeout)

    # Write input JSON and close stdin (the agent reads until EOF)
    assert proc.stdin is not None
    try:
        proc.stdin.write(json.dumps(request.to_payload()).encode())
        await proc.stdin.drain()
    except (BrokenPipeError, ConnectionResetError) as exc:
        logger.warning("Container closed stdin early", container=container_name, err=str(exc))
    finally:
        proc.stdin.close()

    # --- Stdout reader ---
    async def read_stdout() -> None:
        nonlocal stdout_truncated
        assert proc.stdout is not None
        while True:
            chunk = await proc.stdout.read(_READ_CHUNK)
            if not chunk:
                break
            if stdout_truncated:
                continue  # keep draining so the child never blocks on a full pipe
            remaining = config.max_output_bytes - len(stdout_buf)
            if len(chunk) > remaining:
                stdout_buf.extend(chunk[:remaining])
                stdout_truncated = True
                logger.warning(
                    "Container stdout truncated",
                    group=request.group_folder,
                    size=len(stdout_buf),
                )
            else:
                stdout_buf.extend(chunk)

    # --- Stderr reader ---
    async def read_stderr() -> None:
        nonlocal stderr_truncated
        assert proc.stderr is not None
        while True:
            chunk = await proc.stderr.read(_READ_CHUNK)
            if not chunk:
                break
            for line in chunk.decode(errors="replace").strip().splitlines():
                if line:
                    logger.debug(line, container=request.group_folder)

            if stderr_truncated:
                continue
            remaining = config.max_stderr_bytes - len(stderr_buf)
            if len(chunk) > remaining:
                stderr_buf.extend(chunk[:remaining])
                stderr_truncated = True
                logger.warning(
                    "Container stderr truncated",
                    group=request.group_folder,
                    size=len(stderr_buf),
                )
            else:
                stderr_buf.extend(chunk)

    # --- Run readers concurrently, then wait for process exit ---
    readers = asyncio.gather(read_stdout(), read_stderr())
    timeout_waiter = asyncio.ensure_future(timeout_fired.wait())
    exit_code: int | None = None
    try:
        await asyncio.wait({readers, timeout_waiter}, return_when=asyncio.FIRST_COMPLETED)
        if timed_out:
            # Grandchildren can hold the pipes open after the kill
            await asyncio.wait({readers}, timeout=_KILL_GRACE_S)
            if not readers.done():
                readers.cancel()
                await asyncio.wait({readers})
            try:
                exit_code = await asyncio.wait_for(proc.wait(), _KILL_GRACE_S)
            except TimeoutError:
                logger.warning("Killed container did not exit", container=container_name)
        else:
            readers.result()
            exit_code = await proc.wait()
    finally:
        timeout_handle.cancel()
        timeout_waiter.cancel()
        if not readers.done():
            readers.cancel()

    duration_ms = (time.monotonic() - start_time) * 1000
    stdout = stdout_buf.decode(errors="replace")
    stderr = stderr_buf.decode(errors="replace")

    if config.logs_dir is not None:
        try:
            _write_run_log(
                logs_dir=config.logs_dir,
                config=config,
                request=request,
                container_name=container_name,
                container_args=container_args,
                stdout=stdout,
                stderr=stderr,
                stdout_truncated=stdout_truncated,
                stderr_truncated=stderr_truncated,
                duration_ms=duration_ms,
                exit_code=exit_code,
                timed_out=timed_out,
            )
        except OSError as exc:
            logger.warning("Failed to write container run log", err=str(exc))

    # --- Determine result ---

    if timed_out:
        logger.error(
            "Container timed out",
            group=request.group_folder,
            container=container_name,
            duration_ms=duration_ms,
        )
        return AgentResponse(
            status="error",
            error=f"Container timed out after {config.timeout_ms}ms",
        )

    if exit_code != 0:
        logger.error(
            "Container exited with error",
            group=request.group_folder,
            code=exit_code,
            duration_ms=duration_ms,
        )
        return AgentResponse(
            status="error",
            error=f"Container exited with code {exit_code}: {stderr[-_ERROR_SNIPPET_CHARS:]}",
        )

    response = _parse_final_output(stdout, config, container_name)
    logger.info(
        "Container completed",
        group=request.group_folder,
        provider=config.provider,
        status=response.status,
        duration_ms=round(duration_ms),
        has_result=response.result is not None,
    )
    return _clamp_result(response, config.max_output_bytes)
