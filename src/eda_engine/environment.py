from __future__ import annotations

import asyncio
import logging
import shlex
from typing import Mapping, Optional

from .container import ContainerEngine
from .errors import CommandFailure, CommandTimeout, EnvironmentStartFailed, EnvironmentUnreachable
from .models import ContainerStatus, EnsureResult, EnvironmentState, ExecResult, ToolVersion

logger = logging.getLogger(__name__)

# name -> probe command; the first non-empty output line is the version.
TOOL_PROBES: dict[str, str] = {
    "yosys": "yosys -V",
    "iverilog": "iverilog -V 2>&1 | head -1",
    "librelane": "librelane --version 2>&1 || python3 -m openlane --version 2>&1",
    "openroad": "openroad -version 2>&1 | head -1",
    "magic": "magic -dnull -noconsole --version 2>&1",
}

# Applied once after the container is (re)started. Failures are logged only.
FIXUPS: tuple[str, ...] = (
    "[ -e /foss/tools/bin/klayout ] || [ ! -x /foss/tools/klayout/klayout ] "
    "|| ln -sf /foss/tools/klayout/klayout /foss/tools/bin/klayout",
)

PROBE_COMMAND_TIMEOUT = 30.0


class EnvironmentManager:
    """
    Lifecycle of the single long-lived tool container.

    ensure_running() is single-flight: callers arriving while an attempt is in
    progress await that same attempt, so at most one start is issued and every
    caller sees the same outcome.
    """

    def __init__(
        self,
        engine: ContainerEngine,
        container_name: str,
        *,
        command_timeout: float = 120.0,
        ready_timeout: float = 30.0,
        poll_interval: float = 1.0,
    ) -> None:
        self.engine = engine
        self.container_name = container_name
        self.command_timeout = command_timeout
        self.ready_timeout = ready_timeout
        self.poll_interval = poll_interval
        self._state = EnvironmentState.ABSENT
        self._inflight: Optional[asyncio.Future[EnsureResult]] = None

    @property
    def state(self) -> EnvironmentState:
        return self._state

    async def probe(self) -> bool:
        ok = await self.engine.available()
        if not ok:
            self._state = EnvironmentState.UNREACHABLE
        elif self._state == EnvironmentState.UNREACHABLE:
            self._state = EnvironmentState.ABSENT
        return ok

    async def status(self) -> ContainerStatus:
        st = await self.engine.inspect(self.container_name)
        if st.running:
            self._state = EnvironmentState.READY
        elif self._state == EnvironmentState.READY:
            self._state = EnvironmentState.ABSENT
        return st

    async def start(self) -> ExecResult:
        """Idempotent start; shares the in-flight attempt with ensure_running()."""
        res = await self.ensure_running()
        if not res.ready:
            return ExecResult(success=False, stderr=res.error or "", exit_code=-1)
        if res.started:
            return ExecResult(success=True, stdout=f"Container {self.container_name} started")
        return ExecResult(success=True, stdout=f"Container {self.container_name} is already running")

    async def stop(self) -> ExecResult:
        res = await self.engine.stop(self.container_name)
        if res.success:
            self._state = EnvironmentState.ABSENT
        return res

    async def wait_until_ready(self, timeout: float) -> bool:
        """Poll status until running or the deadline passes; never waits past it."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            try:
                st = await asyncio.wait_for(self.status(), timeout=remaining)
            except asyncio.TimeoutError:
                return False
            if st.running:
                return True
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def ensure_running(self) -> EnsureResult:
        task = self._inflight
        if task is None or task.done():
            task = asyncio.ensure_future(self._ensure())
            self._inflight = task
        try:
            return await asyncio.shield(task)
        finally:
            if self._inflight is task and task.done():
                self._inflight = None

    async def require_running(self) -> EnsureResult:
        """ensure_running(), raising instead of returning a not-ready result."""
        res = await self.ensure_running()
        if res.ready:
            return res
        if res.state == EnvironmentState.UNREACHABLE:
            raise EnvironmentUnreachable(res.error or "Container engine is not reachable")
        raise EnvironmentStartFailed(res.error or f"Container {self.container_name} could not be started")

    async def _ensure(self) -> EnsureResult:
        if not await self.probe():
            return EnsureResult(
                ready=False,
                state=self._state,
                error="Container engine is not reachable. Is the docker daemon running?",
            )

        st = await self.status()
        if st.running:
            return EnsureResult(ready=True, state=self._state)

        logger.info("container %s is not running; starting it", self.container_name)
        self._state = EnvironmentState.STARTING
        res = await self.engine.start(self.container_name)
        if not res.success:
            self._state = EnvironmentState.ABSENT
            logger.error("failed to start container %s: %s", self.container_name, res.failure_text())
            return EnsureResult(
                ready=False,
                state=self._state,
                error=f"Failed to start container {self.container_name}: {res.failure_text()}",
            )

        if not await self.wait_until_ready(self.ready_timeout):
            self._state = EnvironmentState.ABSENT
            return EnsureResult(
                ready=False,
                state=self._state,
                error=f"Container {self.container_name} did not become ready within {self.ready_timeout:g}s",
            )

        await self._apply_fixups()
        return EnsureResult(ready=True, state=self._state, started=True)

    async def _apply_fixups(self) -> None:
        for command in FIXUPS:
            try:
                await self.run_checked(command, timeout=PROBE_COMMAND_TIMEOUT)
            except (CommandFailure, CommandTimeout) as e:
                logger.warning("environment fix-up failed: %s", e)

    async def exec(
        self,
        command: str,
        workdir: Optional[str] = None,
        timeout: Optional[float] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> ExecResult:
        """Run a shell command in the container. Never raises; failures come back in the result."""
        limit = timeout if timeout is not None else self.command_timeout
        try:
            return await self.engine.exec(
                self.container_name,
                command,
                workdir=workdir,
                timeout=limit,
                env=env,
            )
        except Exception as e:  # noqa: BLE001
            logger.exception("exec failed in %s", self.container_name)
            return ExecResult(success=False, stderr=f"exec failed: {e}", exit_code=-1)

    async def run_checked(self, command: str, workdir: Optional[str] = None, timeout: Optional[float] = None) -> ExecResult:
        """exec() that raises CommandTimeout / CommandFailure on an unsuccessful result."""
        res = await self.exec(command, workdir=workdir, timeout=timeout)
        if res.timed_out:
            raise CommandTimeout(res.failure_text())
        if not res.success:
            raise CommandFailure(res.failure_text())
        return res

    async def tool_versions(self) -> dict[str, ToolVersion]:
        versions: dict[str, ToolVersion] = {}
        for name, command in TOOL_PROBES.items():
            res = await self.exec(command, timeout=PROBE_COMMAND_TIMEOUT)
            line = _first_line(res.stdout) or _first_line(res.stderr)
            if res.success and line:
                versions[name] = ToolVersion(available=True, version=line)
            else:
                versions[name] = ToolVersion(available=False, detail=line or res.failure_text())
        return versions

    async def is_tool_available(self, name: str) -> bool:
        res = await self.exec(f"command -v {shlex.quote(name)}", timeout=PROBE_COMMAND_TIMEOUT)
        return res.success and bool(res.stdout.strip())


def _first_line(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return ""
