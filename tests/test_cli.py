from __future__ import annotations

import json
from pathlib import Path

import pandas as pd
import pytest
from conftest import FakeEngine
from typer.testing import CliRunner

from eda_engine import cli
from eda_engine.config import Settings
from eda_engine.models import RunKind, RunSpec
from eda_engine.services import build_services

runner = CliRunner()


@pytest.fixture(autouse=True)
def _wired(settings: Settings, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli, "_services", lambda: build_services(settings, engine=FakeEngine()))


def _init(name: str = "counter") -> str:
    res = runner.invoke(cli.app, ["init", name, "--top", "counter"])
    assert res.exit_code == 0, res.output
    first = res.output.splitlines()[0]
    assert first.startswith("Created project: proj_")
    return first.split(": ", 1)[1]


def test_init_and_list(settings: Settings) -> None:
    res = runner.invoke(cli.app, ["projects", "list"])
    assert res.exit_code == 0
    assert "No projects." in res.output

    pid = _init()

    res = runner.invoke(cli.app, ["projects", "list"])
    assert res.exit_code == 0
    assert pid in res.output
    assert (settings.projects_dir / pid / "src").is_dir()


def test_show_unknown_project_fails() -> None:
    res = runner.invoke(cli.app, ["projects", "show", "nope"])

    assert res.exit_code == 2
    assert "ERROR: Project nope not found" in res.output


def test_show_and_export_metrics(settings: Settings, tmp_path: Path) -> None:
    pid = _init()
    svc = build_services(settings, engine=FakeEngine())
    try:
        run = svc.registry.create_run(RunSpec(project_id=pid, kind=RunKind.SYNTHESIS))
        svc.registry.save_metrics(run.run_id, {"cell_count": 7})
    finally:
        svc.close()

    res = runner.invoke(cli.app, ["projects", "show", pid])
    assert res.exit_code == 0
    assert "Runs: 1" in res.output
    assert "cell_count: 7" in res.output

    out = tmp_path / "metrics.csv"
    res = runner.invoke(cli.app, ["projects", "export-metrics", pid, "--out", str(out)])
    assert res.exit_code == 0
    assert pd.read_csv(out)["cell_count"].tolist() == [7]


def test_delete_with_yes(settings: Settings) -> None:
    pid = _init()

    res = runner.invoke(cli.app, ["projects", "delete", pid, "--yes"])

    assert res.exit_code == 0, res.output
    assert f"Deleted {pid}" in res.output
    assert not (settings.projects_dir / pid).exists()


def test_cleanup_dry_run_keeps_everything() -> None:
    pid = _init()

    res = runner.invoke(cli.app, ["cleanup", "--days", "30", "--dry-run", "--keep", "0"])

    assert res.exit_code == 0
    assert "=== Cleanup Report ===" in res.output
    assert "Projects deleted: 0" in res.output
    res = runner.invoke(cli.app, ["projects", "list"])
    assert pid in res.output


def test_simulate_prints_json_result(tmp_path: Path) -> None:
    design = tmp_path / "counter.v"
    design.write_text("module counter; endmodule\n")
    tb = tmp_path / "tb.v"
    tb.write_text("module tb; counter c(); endmodule\n")

    res = runner.invoke(cli.app, ["simulate", "--design", str(design), "--testbench", str(tb), "--name", "sim"])

    assert res.exit_code == 0, res.output
    payload = json.loads(res.output)
    assert payload["success"] is True
    assert payload["project_id"].startswith("proj_")
    assert payload["run_id"]


def test_simulate_missing_file_fails(tmp_path: Path) -> None:
    res = runner.invoke(
        cli.app, ["simulate", "--design", str(tmp_path / "nope.v"), "--testbench", str(tmp_path / "tb.v")]
    )

    assert res.exit_code == 1
    assert res.output.startswith("ERROR:")


def test_env_status_reports_running_container() -> None:
    res = runner.invoke(cli.app, ["env", "status"])

    assert res.exit_code == 0
    payload = json.loads(res.output)
    assert payload["engine_reachable"] is True
    assert payload["container"] == "eda-tools"
    assert payload["status"]["running"] is True
