from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer

from .cleanup import cleanup_old_projects, format_cleanup_report, preview_cleanup
from .config import Settings
from .errors import EngineError
from .models import PipelineResult, ProjectSpec
from .pipeline import FlowRequest, SimulationRequest, SynthesisRequest, SynthTarget
from .pipeline.flow import Pdk
from .services import Services, build_services
from .utils import format_bytes

app = typer.Typer(add_completion=False, help="EDA job engine: projects, runs and the tool container")

projects_app = typer.Typer(help="Inspect and manage projects.")
app.add_typer(projects_app, name="projects")

env_app = typer.Typer(help="Control the tool container.")
app.add_typer(env_app, name="env")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at INFO level to stderr")) -> None:
    level = "INFO" if verbose else Settings.from_env().log_level
    logging.basicConfig(level=getattr(logging, level, logging.WARNING), format="%(levelname)s %(name)s: %(message)s")


def _services() -> Services:
    return build_services(Settings.from_env())


def _fail(e: Exception) -> None:
    typer.echo(f"ERROR: {e}")
    raise typer.Exit(code=2 if isinstance(e, EngineError) else 1)


def _emit(result: PipelineResult) -> None:
    typer.echo(result.model_dump_json(indent=2))
    if not result.success:
        raise typer.Exit(code=1)


@app.command()
def init(
    name: str = typer.Argument(..., help="Project name"),
    design: Optional[str] = typer.Option(None, "--design-name", help="Design name"),
    top: Optional[str] = typer.Option(None, "--top", help="Top module"),
):
    """
    Create an empty project and print its id and paths.
    """
    svc = _services()
    try:
        handle = svc.registry.create_project(ProjectSpec(name=name, design_name=design, top_module=top))
    except Exception as e:  # noqa: BLE001
        _fail(e)
    finally:
        svc.close()
    typer.echo(f"Created project: {handle.project.project_id}")
    typer.echo(f"Host path: {handle.host_path}")
    typer.echo(f"Container path: {handle.container_path}")


# ---- projects ----


@projects_app.command("list")
def list_projects() -> None:
    svc = _services()
    try:
        projects = svc.registry.list_all()
        if not projects:
            typer.echo("No projects.")
            return
        for p in projects:
            size = format_bytes(svc.store.size(p.project_id))
            typer.echo(f"{p.project_id}\t{p.name}\t{p.updated_at}\t{size}")
    finally:
        svc.close()


@projects_app.command("show")
def show_project(project_id: str = typer.Argument(..., help="Project id")) -> None:
    svc = _services()
    try:
        typer.echo(svc.registry.format_summary(project_id))
    except Exception as e:  # noqa: BLE001
        _fail(e)
    finally:
        svc.close()


@projects_app.command("delete")
def delete_project(
    project_id: str = typer.Argument(..., help="Project id"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Delete a project with all its runs, files, metrics and its directory."""
    if not yes:
        typer.confirm(f"Delete project {project_id} and all of its files?", abort=True)
    svc = _services()
    try:
        report = svc.registry.delete_project(project_id)
    except Exception as e:  # noqa: BLE001
        _fail(e)
    finally:
        svc.close()

    typer.echo(
        f"Deleted {project_id}: {report.runs_deleted} run(s), "
        f"{report.files_deleted} file(s), {report.metrics_deleted} metrics record(s)"
    )
    for w in report.warnings:
        typer.echo(f"WARNING: {w}")
    for err in report.errors:
        typer.echo(f"ERROR: {err}")
    if not report.ok:
        raise typer.Exit(code=1)


@projects_app.command("export-metrics")
def export_metrics(
    project_id: str = typer.Argument(..., help="Project id"),
    out: Path = typer.Option(..., "--out", help="CSV file to write"),
) -> None:
    svc = _services()
    try:
        path = svc.registry.export_metrics_csv(project_id, out)
    except Exception as e:  # noqa: BLE001
        _fail(e)
    finally:
        svc.close()
    typer.echo(f"Wrote {path}")


# ---- environment ----


@env_app.command("status")
def env_status() -> None:
    svc = _services()

    async def _status():
        reachable = await svc.environment.probe()
        st = await svc.environment.status() if reachable else None
        return reachable, st

    try:
        reachable, st = asyncio.run(_status())
    finally:
        svc.close()
    payload = {
        "engine_reachable": reachable,
        "container": svc.settings.container_name,
        "state": svc.environment.state.value,
        "status": st.model_dump() if st else None,
    }
    typer.echo(json.dumps(payload, indent=2, sort_keys=True))


@env_app.command("start")
def env_start() -> None:
    svc = _services()
    try:
        res = asyncio.run(svc.environment.require_running())
    except Exception as e:  # noqa: BLE001
        _fail(e)
    finally:
        svc.close()
    typer.echo("Container started." if res.started else "Container already running.")


@env_app.command("stop")
def env_stop() -> None:
    svc = _services()
    try:
        res = asyncio.run(svc.environment.stop())
    finally:
        svc.close()
    if not res.success:
        typer.echo(f"ERROR: {res.failure_text()}")
        raise typer.Exit(code=1)
    typer.echo("Container stopped.")


@env_app.command("versions")
def env_versions() -> None:
    svc = _services()
    try:
        versions = asyncio.run(svc.environment.tool_versions())
    finally:
        svc.close()
    typer.echo(json.dumps({k: v.model_dump() for k, v in versions.items()}, indent=2, sort_keys=True))


# ---- jobs ----


def _read(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        typer.echo(f"ERROR: {e}")
        raise typer.Exit(code=1)


@app.command()
def simulate(
    design: Path = typer.Option(..., "--design", help="Verilog design file"),
    testbench: Path = typer.Option(..., "--testbench", help="Verilog testbench file"),
    project: Optional[str] = typer.Option(None, "--project", help="Existing project id"),
    name: Optional[str] = typer.Option(None, "--name", help="Name for a new project"),
    waveform: Optional[str] = typer.Option(None, "--waveform", help="Expected waveform file name"),
):
    """Compile and run a testbench with Icarus Verilog."""
    request = SimulationRequest(
        verilog_code=_read(design),
        testbench_code=_read(testbench),
        project_id=project,
        project_name=name,
        waveform_filename=waveform,
    )
    svc = _services()
    try:
        result = asyncio.run(svc.simulate.run(request))
    finally:
        svc.close()
    _emit(result)


@app.command()
def synthesize(
    top: str = typer.Option(..., "--top", help="Top module"),
    design: list[Path] = typer.Option([], "--design", help="Verilog file (repeatable)"),
    target: SynthTarget = typer.Option(SynthTarget.GENERIC, "--target", help="Synthesis target"),
    project: Optional[str] = typer.Option(None, "--project", help="Existing project id"),
    name: Optional[str] = typer.Option(None, "--name", help="Name for a new project"),
):
    """Synthesize with Yosys."""
    request = SynthesisRequest(
        top_module=top,
        verilog_files=[str(p.absolute()) for p in design],
        target=target,
        project_id=project,
        project_name=name,
    )
    svc = _services()
    try:
        result = asyncio.run(svc.synthesize.run(request))
    finally:
        svc.close()
    _emit(result)


@app.command()
def flow(
    design_name: str = typer.Option(..., "--design-name", help="Top-level design name"),
    design: list[Path] = typer.Option([], "--design", help="Verilog file (repeatable)"),
    clock_port: str = typer.Option("clk", "--clock-port"),
    clock_period: float = typer.Option(10.0, "--clock-period", help="Clock period in ns"),
    pdk: Pdk = typer.Option(Pdk.SKY130A, "--pdk"),
    config: Optional[Path] = typer.Option(None, "--config", help="JSON file merged over the generated config"),
    sdc: Optional[Path] = typer.Option(None, "--sdc", help="Constraint file used instead of the generated one"),
    project: Optional[str] = typer.Option(None, "--project", help="Existing project id"),
    name: Optional[str] = typer.Option(None, "--name", help="Name for a new project"),
):
    """Run the RTL-to-GDS flow with LibreLane."""
    user_config = None
    if config is not None:
        try:
            user_config = json.loads(_read(config))
        except json.JSONDecodeError as e:
            typer.echo(f"ERROR: invalid config JSON: {e}")
            raise typer.Exit(code=2)

    request = FlowRequest(
        design_name=design_name,
        verilog_files=[str(p.absolute()) for p in design],
        clock_port=clock_port,
        clock_period=clock_period,
        pdk=pdk,
        user_config=user_config,
        user_sdc_content=_read(sdc) if sdc is not None else None,
        project_id=project,
        project_name=name,
    )
    svc = _services()
    try:
        result = asyncio.run(svc.flow.run(request))
    finally:
        svc.close()
    _emit(result)


@app.command()
def cleanup(
    days: float = typer.Option(..., "--days", help="Delete projects not updated in this many days"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Only report what would be deleted"),
    keep: int = typer.Option(5, "--keep", help="Always keep this many most recent projects"),
):
    """Remove old projects."""
    svc = _services()
    try:
        if dry_run:
            old, total = preview_cleanup(svc.registry, days)
            typer.echo(f"{len(old)} project(s) older than {days:g} day(s), {format_bytes(total)}")
        result = cleanup_old_projects(svc.registry, days, dry_run=dry_run, keep_min_projects=keep)
    finally:
        svc.close()
    typer.echo(format_cleanup_report(result))
    if result.errors:
        raise typer.Exit(code=1)
