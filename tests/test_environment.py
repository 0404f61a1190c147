from __future__ import annotations

import asyncio
import time

from conftest import FakeEngine

from eda_engine.container import build_exec_argv, parse_inspect, run_host_command
from eda_engine.environment import EnvironmentManager
from eda_engine.models import EnvironmentState, ExecResult
from eda_engine.pipeline.admission import BoundedAdmission, UnboundedAdmission, admission_from_limit


def _manager(engine: FakeEngine, **kwargs) -> EnvironmentManager:  # noqa: ANN003
    kwargs.setdefault("ready_timeout", 0.5)
    kwargs.setdefault("poll_interval", 0.01)
    return EnvironmentManager(engine, "eda-tools", **kwargs)


def test_concurrent_ensure_running_starts_once() -> None:
    engine = FakeEngine(running=False, start_delay=0.05)
    env = _manager(engine)

    async def scenario():
        first = await asyncio.gather(*(env.ensure_running() for _ in range(5)))
        second = await env.ensure_running()
        return first, second

    first, second = asyncio.run(scenario())

    assert engine.start_calls == 1
    assert all(r.ready for r in first)
    assert all(r.started for r in first)
    assert second.ready and not second.started
    assert env.state == EnvironmentState.READY


def test_start_shares_the_in_flight_attempt() -> None:
    engine = FakeEngine(running=False, start_delay=0.05)
    env = _manager(engine)

    async def scenario():
        return await asyncio.gather(env.start(), env.ensure_running(), env.start())

    first, ensured, second = asyncio.run(scenario())

    assert engine.start_calls == 1
    assert first.success and second.success
    assert ensured.ready


def test_start_reports_failure_as_result() -> None:
    engine = FakeEngine(running=False, start_ok=False)
    env = _manager(engine)

    res = asyncio.run(env.start())

    assert not res.success
    assert "No such container" in res.stderr


def test_already_running_container_is_not_started() -> None:
    engine = FakeEngine(running=True)
    env = _manager(engine)

    res = asyncio.run(env.ensure_running())

    assert res.ready
    assert engine.start_calls == 0


def test_unreachable_engine_is_reported() -> None:
    engine = FakeEngine(reachable=False, running=False)
    env = _manager(engine)

    res = asyncio.run(env.ensure_running())

    assert not res.ready
    assert res.state == EnvironmentState.UNREACHABLE
    assert engine.start_calls == 0
    assert "not reachable" in (res.error or "")


def test_start_failure_is_reported() -> None:
    engine = FakeEngine(running=False, start_ok=False)
    env = _manager(engine)

    res = asyncio.run(env.ensure_running())

    assert not res.ready
    assert "Failed to start container eda-tools" in (res.error or "")
    assert "No such container" in (res.error or "")
    assert env.state == EnvironmentState.ABSENT


def test_readiness_wait_is_bounded() -> None:
    engine = FakeEngine(running=False, becomes_running=False)
    env = _manager(engine, ready_timeout=0.2)

    t0 = time.monotonic()
    res = asyncio.run(env.ensure_running())
    elapsed = time.monotonic() - t0

    assert not res.ready
    assert "did not become ready" in (res.error or "")
    assert elapsed < 2.0


def test_fixups_run_after_a_fresh_start() -> None:
    engine = FakeEngine(running=False)
    env = _manager(engine)

    asyncio.run(env.ensure_running())

    assert any("klayout" in c for c in engine.commands)


def test_exec_never_raises() -> None:
    class Exploding(FakeEngine):
        async def exec(self, name, command, *, workdir=None, timeout, env=None):  # noqa: ANN001
            raise RuntimeError("socket closed")

    env = _manager(Exploding())

    res = asyncio.run(env.exec("echo hi"))

    assert not res.success
    assert "socket closed" in res.stderr


def test_exec_uses_default_timeout() -> None:
    engine = FakeEngine()
    env = _manager(engine, command_timeout=42.0)

    asyncio.run(env.exec("true"))
    asyncio.run(env.exec("true", timeout=5.0))

    assert engine.timeouts == [42.0, 5.0]


def test_tool_versions_marks_missing_tools() -> None:
    engine = FakeEngine()
    engine.script("yosys -V", ExecResult(success=True, stdout="Yosys 0.38 (git sha1 abc)\n"))
    engine.script("iverilog", ExecResult(success=False, stderr="iverilog: command not found", exit_code=127))
    env = _manager(engine)

    versions = asyncio.run(env.tool_versions())

    assert versions["yosys"].available
    assert versions["yosys"].version == "Yosys 0.38 (git sha1 abc)"
    assert not versions["iverilog"].available
    assert "command not found" in (versions["iverilog"].detail or "")
    # Empty output is treated as missing.
    assert not versions["magic"].available


def test_is_tool_available() -> None:
    engine = FakeEngine()
    engine.script("command -v yosys", ExecResult(success=True, stdout="/foss/tools/bin/yosys\n"))
    engine.script("command -v klayout", ExecResult(success=False, exit_code=1))
    env = _manager(engine)

    assert asyncio.run(env.is_tool_available("yosys"))
    assert not asyncio.run(env.is_tool_available("klayout"))


def test_stop_marks_environment_absent() -> None:
    engine = FakeEngine(running=True)
    env = _manager(engine)
    asyncio.run(env.ensure_running())

    res = asyncio.run(env.stop())

    assert res.success
    assert engine.stop_calls == 1
    assert env.state == EnvironmentState.ABSENT


def test_host_command_timeout_kills_the_process() -> None:
    t0 = time.monotonic()
    res = asyncio.run(run_host_command(["sleep", "10"], timeout=0.3))
    elapsed = time.monotonic() - t0

    assert res.timed_out
    assert not res.success
    assert elapsed < 5.0


def test_host_command_timeout_kills_grandchildren() -> None:
    t0 = time.monotonic()
    res = asyncio.run(run_host_command(["sh", "-c", "sleep 5; true"], timeout=0.3))
    elapsed = time.monotonic() - t0

    assert res.timed_out
    assert elapsed < 3.0


def test_host_command_captures_output_and_exit_code() -> None:
    ok = asyncio.run(run_host_command(["sh", "-c", "echo out; echo err >&2; exit 3"], timeout=10))

    assert not ok.success
    assert ok.exit_code == 3
    assert ok.stdout.strip() == "out"
    assert ok.stderr.strip() == "err"


def test_missing_binary_is_a_failed_result() -> None:
    res = asyncio.run(run_host_command(["definitely-not-a-real-binary-xyz"], timeout=5))

    assert not res.success
    assert res.exit_code == 127


def test_exec_argv_wraps_command_in_timeout() -> None:
    argv = build_exec_argv("docker", "eda-tools", "yosys -V", "/workspace/projects/p1", 12.5, {"A": "1"})

    assert argv == [
        "docker", "exec", "-w", "/workspace/projects/p1", "-e", "A=1",
        "eda-tools", "timeout", "-s", "KILL", "12.5", "/bin/bash", "-c", "yosys -V",
    ]


def test_parse_inspect() -> None:
    st = parse_inspect("true,0123456789abcdef,hpretl/iic-osic-tools:latest,running\n")

    assert st.running and st.exists
    assert st.container_id == "0123456789ab"
    assert st.image == "hpretl/iic-osic-tools:latest"
    assert st.status == "running"
    assert not parse_inspect("false,abc,img,exited").running


def test_bounded_admission_limits_concurrency() -> None:
    gate = BoundedAdmission(2)
    peak = 0

    async def job() -> None:
        nonlocal peak
        async with gate.slot():
            peak = max(peak, gate.active)
            await asyncio.sleep(0.02)

    async def scenario() -> None:
        await asyncio.gather(*(job() for _ in range(6)))

    asyncio.run(scenario())

    assert peak == 2
    assert gate.active == 0


def test_admission_from_limit() -> None:
    assert isinstance(admission_from_limit(None), UnboundedAdmission)
    bounded = admission_from_limit(3)
    assert isinstance(bounded, BoundedAdmission) and bounded.limit == 3
