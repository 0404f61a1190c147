from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Callable, Iterator, Optional, Union

import pytest

from eda_engine.config import Settings
from eda_engine.models import ContainerStatus, ExecResult
from eda_engine.services import Services, build_services

Responder = Union[ExecResult, Callable[[str], ExecResult]]


class FakeEngine:
    """In-memory ContainerEngine. exec() answers from substring-matched scripts."""

    def __init__(
        self,
        *,
        reachable: bool = True,
        running: bool = True,
        start_ok: bool = True,
        becomes_running: bool = True,
        start_delay: float = 0.0,
    ) -> None:
        self.reachable = reachable
        self.running = running
        self.start_ok = start_ok
        self.becomes_running = becomes_running
        self.start_delay = start_delay
        self.start_calls = 0
        self.stop_calls = 0
        self.commands: list[str] = []
        self.timeouts: list[float] = []
        self._scripts: list[tuple[str, Responder]] = []

    def script(self, needle: str, response: Responder) -> None:
        self._scripts.append((needle, response))

    async def available(self) -> bool:
        return self.reachable

    async def inspect(self, name: str) -> ContainerStatus:
        return ContainerStatus(running=self.running, exists=self.start_ok, status="running" if self.running else "exited")

    async def start(self, name: str) -> ExecResult:
        self.start_calls += 1
        if self.start_delay:
            await asyncio.sleep(self.start_delay)
        if not self.start_ok:
            return ExecResult(success=False, stderr="Error: No such container: " + name, exit_code=1)
        if self.becomes_running:
            self.running = True
        return ExecResult(success=True, stdout=name)

    async def stop(self, name: str) -> ExecResult:
        self.stop_calls += 1
        self.running = False
        return ExecResult(success=True, stdout=name)

    async def exec(self, name: str, command: str, *, workdir: Optional[str] = None, timeout: float, env=None) -> ExecResult:
        self.commands.append(command)
        self.timeouts.append(timeout)
        for needle, response in self._scripts:
            if needle in command:
                return response(command) if callable(response) else response
        return ExecResult(success=True)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        projects_dir=tmp_path / "projects",
        db_path=tmp_path / "engine.db",
        ready_timeout=0.5,
        poll_interval=0.01,
        long_command_timeout=900.0,
    )


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def services(settings: Settings, engine: FakeEngine) -> Iterator[Services]:
    svc = build_services(settings, engine=engine)
    try:
        yield svc
    finally:
        svc.close()
