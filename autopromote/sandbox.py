"""
Sandboxed execution of generated scripts.

``SubprocessSandbox`` runs a script body with ``bash -c`` as an async
subprocess. Uses asyncio.create_subprocess_exec (not shell=True); the script
is passed as a single argument, never interpolated into a shell string.

With ``SandboxConfig.image`` set, the bash invocation is wrapped in a Docker
container with:
- Network isolation (default: none)
- Resource limits (CPU, memory)
- Read-only root filesystem
- Working directory bind mount
- An init process and an ``autopromote.operation`` label
"""

from __future__ import annotations

import asyncio
import os
import time
from pathlib import Path
from typing import Protocol, runtime_checkable

import structlog

from autopromote.config import SandboxConfig
from autopromote.models import SandboxResult, ScriptOperation

logger = structlog.get_logger()

# Grace period before escalating SIGTERM to SIGKILL.
_SIGTERM_GRACE_SECONDS = 5


@runtime_checkable
class SandboxExecutor(Protocol):
    """Anything that can run a ScriptOperation and report its output."""

    async def run(self, operation: ScriptOperation) -> SandboxResult:
        """Execute the operation and return captured stdout and exit code."""
        ...


def build_docker_cmd(
    config: SandboxConfig,
    operation: ScriptOperation,
    *,
    workspace_path: str,
) -> list[str]:
    """Wrap ``bash -c <script>`` for one operation in a locked-down container.

    The container runs under ``--init`` so a SIGTERM on timeout reaches the
    script's children, and carries the operation id as a label so a container
    left behind by a killed dry run can be found. The operation's ``env`` is
    passed with ``--env``; nothing from the host environment leaks in.

    Raises:
        ValueError: If no image is configured.
    """
    if not config.image:
        msg = "Sandbox image is not configured"
        raise ValueError(msg)

    isolation = [
        f"--network={config.network_mode}",
        f"--memory={config.memory_limit}",
        f"--cpus={config.cpu_limit}",
    ]
    if config.read_only_root:
        isolation += ["--read-only", "--tmpfs", "/tmp:rw,noexec,nosuid,size=64m"]  # noqa: S108

    mount = ["-v", f"{workspace_path}:{config.workspace_mount}", "-w", config.workspace_mount]
    env = [f"--env={key}={value}" for key, value in sorted(operation.env.items())]

    cmd = [
        "docker", "run", "--rm", "--init",
        "--label", f"autopromote.operation={operation.id}",
        *isolation,
        *mount,
        *env,
        config.image,
        "bash", "-c", operation.script,
    ]
    logger.debug("sandbox.docker_cmd", operation_id=operation.id, image=config.image)
    return cmd


class SubprocessSandbox:
    """Runs script operations with bash, optionally inside Docker.

    The effective timeout is the smaller of the operation's ``timeout_ms``
    and ``config.timeout_seconds``. A timed-out process is killed and
    reported with exit code -1 and ``timed_out=True``.
    """

    def __init__(self, config: SandboxConfig | None = None) -> None:
        self._config = config or SandboxConfig()

    @property
    def config(self) -> SandboxConfig:
        return self._config

    def build_command(self, operation: ScriptOperation) -> list[str]:
        if self._config.image is None:
            return ["bash", "-c", operation.script]
        workspace = str(Path(operation.working_dir).resolve())
        return build_docker_cmd(self._config, operation, workspace_path=workspace)

    async def run(self, operation: ScriptOperation) -> SandboxResult:
        cmd = self.build_command(operation)
        timeout = min(operation.timeout_ms / 1000, self._config.timeout_seconds)
        cwd = Path(operation.working_dir) if self._config.image is None else None
        env = {**os.environ, **operation.env}

        log = logger.bind(operation_id=operation.id)
        log.info("sandbox.start", timeout=timeout, docker=self._config.image is not None)

        start_ms = _now_ms()
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=cwd,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            return SandboxResult(
                stdout="",
                exit_code=-1,
                duration_ms=_now_ms() - start_ms,
                stderr=f"Command not found: {cmd[0]}",
            )

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(), timeout=timeout
            )
        except TimeoutError:
            await _terminate(proc)
            duration_ms = _now_ms() - start_ms
            log.warning("sandbox.timeout", duration_ms=duration_ms)
            return SandboxResult(
                stdout="",
                exit_code=-1,
                duration_ms=duration_ms,
                stderr="Process killed: timeout exceeded",
                timed_out=True,
            )

        duration_ms = _now_ms() - start_ms
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        exit_code = proc.returncode if proc.returncode is not None else -1

        log.info(
            "sandbox.done",
            exit_code=exit_code,
            duration_ms=duration_ms,
            stdout_len=len(stdout),
        )
        return SandboxResult(
            stdout=stdout,
            exit_code=exit_code,
            duration_ms=duration_ms,
            stderr=stderr,
        )


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    """SIGTERM, then SIGKILL after the grace period."""
    if proc.returncode is not None:
        return
    proc.terminate()
    try:
        await asyncio.wait_for(proc.wait(), timeout=_SIGTERM_GRACE_SECONDS)
    except TimeoutError:
        proc.kill()
        await proc.wait()


def _now_ms() -> int:
    return int(time.monotonic() * 1000)
