from __future__ import annotations

import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import Mapping, Optional, Protocol, Sequence

from .models import ContainerStatus, ExecResult

logger = logging.getLogger(__name__)

# Per-stream cap on captured output.
MAX_OUTPUT_BYTES = 10 * 1024 * 1024

PROBE_TIMEOUT = 10.0
LIFECYCLE_TIMEOUT = 120.0
# How long to wait for a killed process group to be reaped.
KILL_GRACE = 2.0


class ContainerEngine(Protocol):
    """What the environment manager needs from a container runtime."""

    async def available(self) -> bool: ...

    async def inspect(self, name: str) -> ContainerStatus: ...

    async def start(self, name: str) -> ExecResult: ...

    async def stop(self, name: str) -> ExecResult: ...

    async def exec(
        self,
        name: str,
        command: str,
        *,
        workdir: Optional[str] = None,
        timeout: float,
        env: Optional[Mapping[str, str]] = None,
    ) -> ExecResult: ...


async def run_host_command(
    argv: Sequence[str],
    timeout: float,
    cwd: Optional[str | Path] = None,
) -> ExecResult:
    """
    Run argv on the host and capture both streams.

    Never raises for process-level problems: a missing binary or a timeout
    comes back as success=False. On timeout the child is killed and reaped
    before returning, so nothing outlives the call. The child leads its own
    process group and the whole group is killed, so grandchildren holding the
    output pipes cannot stretch the call past the deadline.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd) if cwd is not None else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=os.name == "posix",
        )
    except (FileNotFoundError, PermissionError) as e:
        return ExecResult(success=False, stderr=f"{argv[0]}: {e}", exit_code=127)
    except OSError as e:
        return ExecResult(success=False, stderr=f"failed to launch {argv[0]}: {e}", exit_code=126)

    try:
        stdout_b, stderr_b = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        _kill_group(proc)
        try:
            await asyncio.wait_for(proc.wait(), timeout=KILL_GRACE)
        except asyncio.TimeoutError:
            logger.warning("process %s not reaped %ss after kill", proc.pid, KILL_GRACE)
        logger.warning("command timed out after %ss: %s", timeout, " ".join(argv[:3]))
        return ExecResult(
            success=False,
            stderr=f"Command timed out after {timeout:g}s",
            exit_code=-1,
            timed_out=True,
        )

    code = proc.returncode if proc.returncode is not None else -1
    return ExecResult(
        success=code == 0,
        stdout=_decode(stdout_b),
        stderr=_decode(stderr_b),
        exit_code=code,
    )


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass


def _decode(raw: Optional[bytes]) -> str:
    data = raw or b""
    if len(data) > MAX_OUTPUT_BYTES:
        data = data[:MAX_OUTPUT_BYTES]
    return data.decode("utf-8", errors="replace")


class DockerEngine:
    """ContainerEngine backed by the docker CLI."""

    def __init__(self, docker_bin: str = "docker", compose_file: Optional[Path] = None) -> None:
        self.docker_bin = docker_bin
        self.compose_file = compose_file

    async def available(self) -> bool:
        res = await run_host_command(
            [self.docker_bin, "info", "--format", "{{.ServerVersion}}"],
            timeout=PROBE_TIMEOUT,
        )
        if not res.success:
            logger.debug("container engine probe failed: %s", res.failure_text())
        return res.success

    async def inspect(self, name: str) -> ContainerStatus:
        res = await run_host_command(
            [
                self.docker_bin,
                "inspect",
                "--format",
                "{{.State.Running}},{{.Id}},{{.Config.Image}},{{.State.Status}}",
                name,
            ],
            timeout=PROBE_TIMEOUT,
        )
        if not res.success:
            return ContainerStatus(running=False, exists=False)
        return parse_inspect(res.stdout)

    async def start(self, name: str) -> ExecResult:
        if self.compose_file is not None:
            argv = [self.docker_bin, "compose", "-f", str(self.compose_file), "up", "-d"]
            cwd: Optional[Path] = self.compose_file.parent
        else:
            argv = [self.docker_bin, "start", name]
            cwd = None
        logger.info("starting container %s", name)
        return await run_host_command(argv, timeout=LIFECYCLE_TIMEOUT, cwd=cwd)

    async def stop(self, name: str) -> ExecResult:
        if self.compose_file is not None:
            argv = [self.docker_bin, "compose", "-f", str(self.compose_file), "down"]
            cwd: Optional[Path] = self.compose_file.parent
        else:
            argv = [self.docker_bin, "stop", name]
            cwd = None
        logger.info("stopping container %s", name)
        return await run_host_command(argv, timeout=LIFECYCLE_TIMEOUT, cwd=cwd)

    async def exec(
        self,
        name: str,
        command: str,
        *,
        workdir: Optional[str] = None,
        timeout: float,
        env: Optional[Mapping[str, str]] = None,
    ) -> ExecResult:
        return await run_host_command(build_exec_argv(self.docker_bin, name, command, workdir, timeout, env), timeout)


def build_exec_argv(
    docker_bin: str,
    name: str,
    command: str,
    workdir: Optional[str],
    timeout: float,
    env: Optional[Mapping[str, str]],
) -> list[str]:
    """
    docker exec argv for a shell command. The command is also wrapped in
    coreutils `timeout -s KILL` so it dies inside the container when the
    client gives up.
    """
    argv = [docker_bin, "exec"]
    if workdir:
        argv += ["-w", workdir]
    for key, value in (env or {}).items():
        argv += ["-e", f"{key}={value}"]
    argv += [name, "timeout", "-s", "KILL", f"{timeout:g}", "/bin/bash", "-c", command]
    return argv


def parse_inspect(output: str) -> ContainerStatus:
    parts = output.strip().split(",")
    if len(parts) < 4:
        return ContainerStatus(running=False, exists=bool(output.strip()))
    running, container_id, image, status = parts[0], parts[1], ",".join(parts[2:-1]), parts[-1]
    return ContainerStatus(
        running=running.strip().lower() == "true",
        exists=True,
        container_id=container_id.strip()[:12] or None,
        image=image.strip() or None,
        status=status.strip() or None,
    )
