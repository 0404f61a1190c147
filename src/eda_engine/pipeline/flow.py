from __future__ import annotations

import json
import math
import shlex
import time
from enum import Enum
from typing import Any, Optional

from pydantic import Field

from ..environment import EnvironmentManager
from ..errors import IOFailure
from ..models import FileCategory, ProjectSpec, RunKind, Subarea
from ..registry import ProjectRegistry
from .admission import AdmissionPolicy
from .base import CommandStep, Discovered, JobPipeline, JobRequest, StagedFile
from .context import PipelineContext

HDL_EXTENSIONS = (".v", ".sv")


class Pdk(str, Enum):
    SKY130A = "sky130A"
    GF180MCUD = "gf180mcuD"
    IHP_SG13G2 = "ihp-sg13g2"


class FlowRequest(JobRequest):
    design_name: str
    verilog_code: Optional[str] = None
    verilog_files: list[str] = Field(default_factory=list)
    clock_port: str = "clk"
    clock_period: float = 10.0
    pdk: Pdk = Pdk.SKY130A
    die_area: Optional[str] = None
    core_area: Optional[str] = None
    user_config: Optional[dict[str, Any]] = None
    user_config_json: Optional[str] = None
    user_sdc_content: Optional[str] = None
    user_sdc_file: Optional[str] = None


def is_testbench(filename: str) -> bool:
    lower = filename.lower()
    return (
        "testbench" in lower
        or "_tb." in lower
        or "_tb_" in lower
        or lower.startswith("tb_")
        or lower in ("tb.v", "tb.sv")
    )


def generate_flow_config(
    *,
    design_name: str,
    clock_port: str,
    clock_period: float,
    pdk: Pdk,
    sources: list[str],
    die_area: Optional[str] = None,
    core_area: Optional[str] = None,
) -> dict[str, Any]:
    """LibreLane config.json; source paths use the dir:: prefix relative to the project."""
    config: dict[str, Any] = {
        "DESIGN_NAME": design_name,
        "VERILOG_FILES": [f"dir::src/{name}" for name in sources] or [f"dir::src/{design_name}.v"],
        "CLOCK_PORT": clock_port,
        "CLOCK_PERIOD": clock_period,
        "PDK": pdk.value,
        "FP_SIZING": "relative",
        "FP_CORE_UTIL": 30,
        "PL_TARGET_DENSITY_PCT": 40,
        "ERROR_ON_MAGIC_DRC": False,
        "ERROR_ON_LVS_ERROR": False,
    }
    if die_area:
        config["FP_SIZING"] = "absolute"
        config["DIE_AREA"] = die_area
        if core_area:
            config["CORE_AREA"] = core_area
        config.pop("FP_CORE_UTIL")
        config.pop("PL_TARGET_DENSITY_PCT")
    return config


def generate_constraint_sdc(design_name: str, clock_port: str, clock_period: float, io_delay_pct: float = 0.2) -> str:
    return "\n".join(
        [
            f"# Timing constraints for {design_name}",
            "",
            f"current_design {design_name}",
            "",
            "set clk_name core_clock",
            f"set clk_port_name {clock_port}",
            f"set clk_period {clock_period:g}",
            f"set clk_io_pct {io_delay_pct:g}",
            "",
            "set clk_port [get_ports $clk_port_name]",
            "",
            "create_clock -name $clk_name -period $clk_period $clk_port",
            "",
            "set non_clock_inputs [all_inputs -no_clocks]",
            "",
            "set_input_delay [expr $clk_period * $clk_io_pct] -clock $clk_name $non_clock_inputs",
            "set_output_delay [expr $clk_period * $clk_io_pct] -clock $clk_name [all_outputs]",
            "",
        ]
    )


# metrics.json key -> (our key, scale)
_SIGNOFF_KEYS: dict[str, tuple[str, float]] = {
    "design__die__area": ("area_um2", 1.0),
    "design__core__area": ("core_area_um2", 1.0),
    "design__instance__utilization": ("utilization", 1.0),
    "design__instance__count": ("cell_count", 1.0),
    "timing__setup__wns": ("setup_wns", 1.0),
    "timing__setup__tns": ("setup_tns", 1.0),
    "timing__hold__wns": ("hold_wns", 1.0),
    "timing__hold__tns": ("hold_tns", 1.0),
    "timing__setup_vio__count": ("setup_violations", 1.0),
    "timing__hold_vio__count": ("hold_violations", 1.0),
    "power__total": ("total_power_mw", 1000.0),
    "power__leakage__total": ("leakage_power_mw", 1000.0),
    "power__switching__total": ("switching_power_mw", 1000.0),
    "power__internal__total": ("internal_power_mw", 1000.0),
    "magic__drc_error__count": ("magic_drc_errors", 1.0),
    "klayout__drc_error__count": ("klayout_drc_errors", 1.0),
    "design__lvs_error__count": ("lvs_errors", 1.0),
    "antenna__violating__pins": ("antenna_violations", 1.0),
    "route__wirelength": ("wirelength", 1.0),
    "route__drc_errors": ("routing_drc_errors", 1.0),
    "design__xor_difference__count": ("xor_difference", 1.0),
    "ir__drop__worst": ("ir_drop_worst", 1.0),
    "design__max_slew_violation__count": ("slew_violations", 1.0),
    "design__max_cap_violation__count": ("cap_violations", 1.0),
    "design__max_fanout_violation__count": ("fanout_violations", 1.0),
}


def parse_signoff_metrics(raw: dict[str, Any], clock_period: Optional[float] = None) -> tuple[dict[str, Any], dict[str, bool]]:
    """LibreLane final/metrics.json -> (ppa metrics, signoff status)."""
    metrics: dict[str, Any] = {}
    for src, (dst, scale) in _SIGNOFF_KEYS.items():
        value = raw.get(src)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            metrics[dst] = value * scale if scale != 1.0 else value

    worst_slack = raw.get("timing__setup__ws")
    if clock_period and isinstance(worst_slack, (int, float)) and math.isfinite(worst_slack):
        achievable = clock_period - worst_slack
        if achievable > 0:
            metrics["frequency_mhz"] = 1000.0 / achievable

    def zero(key: str) -> bool:
        return metrics.get(key, 0) == 0

    timing_clean = (
        zero("setup_violations")
        and zero("hold_violations")
        and metrics.get("setup_wns", 0) >= 0
        and metrics.get("hold_wns", 0) >= 0
    )
    drc_clean = all(
        zero(k)
        for k in (
            "magic_drc_errors",
            "klayout_drc_errors",
            "routing_drc_errors",
            "slew_violations",
            "cap_violations",
            "fanout_violations",
        )
    )
    lvs_clean = zero("lvs_errors")
    antenna_clean = zero("antenna_violations")
    status = {
        "timing_clean": timing_clean,
        "drc_clean": drc_clean,
        "lvs_clean": lvs_clean,
        "antenna_clean": antenna_clean,
        "tapeout_ready": timing_clean and drc_clean and lvs_clean and antenna_clean and zero("xor_difference"),
    }
    return metrics, status


# Stored per run for cross-run comparison.
_SAVED_METRICS: dict[str, str] = {
    "area_um2": "area_um2",
    "total_power_mw": "power_mw",
    "frequency_mhz": "frequency_mhz",
    "setup_wns": "wns_ns",
    "setup_tns": "tns_ns",
    "cell_count": "cell_count",
}


class FlowPipeline(JobPipeline[FlowRequest]):
    """RTL-to-GDS with LibreLane."""

    kind = RunKind.FLOW
    config_exclude = frozenset({"verilog_code", "user_sdc_content", "user_config_json"})

    def __init__(
        self,
        registry: ProjectRegistry,
        environment: EnvironmentManager,
        admission: Optional[AdmissionPolicy] = None,
        *,
        long_command_timeout: float = 600.0,
    ) -> None:
        super().__init__(registry, environment, admission)
        self.long_command_timeout = long_command_timeout

    def validate(self, request: FlowRequest) -> Optional[str]:
        if not request.design_name.strip():
            return "design_name must not be empty"
        has_code = bool(request.verilog_code and request.verilog_code.strip())
        if not has_code and not request.verilog_files and not request.project_id:
            return "Either verilog_code, verilog_files or project_id must be provided"
        if request.user_config_json:
            try:
                parsed = json.loads(request.user_config_json)
            except json.JSONDecodeError as e:
                return f"Invalid user_config_json: {e}"
            if not isinstance(parsed, dict):
                return "Invalid user_config_json: expected a JSON object"
        return None

    def default_project_spec(self, request: FlowRequest) -> ProjectSpec:
        return ProjectSpec(
            name=request.project_name or f"flow_{request.design_name}_{int(time.time() * 1000)}",
            design_name=request.design_name,
            top_module=request.design_name,
        )

    async def stage(self, ctx: PipelineContext, request: FlowRequest) -> list[StagedFile]:
        files: list[StagedFile] = []
        if request.verilog_code and request.verilog_code.strip():
            files.append(StagedFile(f"{request.design_name}.v", request.verilog_code, FileCategory.INPUT))
        else:
            for path in request.verilog_files:
                name, content = await self.read_source(path)
                if is_testbench(name):
                    continue
                files.append(StagedFile(name, content, FileCategory.INPUT))

        sources = [f.filename for f in files]
        if not sources and request.project_id:
            sources = [
                rel.split("/", 1)[1]
                for rel in self.store.list(ctx.project_id, Subarea.INPUTS)
                if rel.endswith(HDL_EXTENSIONS) and not is_testbench(rel.rsplit("/", 1)[-1])
            ]

        config = self._config(request, sources)
        files.append(StagedFile("config.json", json.dumps(config, indent=2), FileCategory.CONFIG))
        files.append(StagedFile("constraint.sdc", await self._sdc(request), FileCategory.CONSTRAINT))
        return files

    def _config(self, request: FlowRequest, sources: list[str]) -> dict[str, Any]:
        if request.user_config_json:
            return json.loads(request.user_config_json)
        config = generate_flow_config(
            design_name=request.design_name,
            clock_port=request.clock_port,
            clock_period=request.clock_period,
            pdk=request.pdk,
            sources=sources,
            die_area=request.die_area,
            core_area=request.core_area,
        )
        if request.user_config:
            config.update(request.user_config)
        return config

    async def _sdc(self, request: FlowRequest) -> str:
        if request.user_sdc_content:
            return request.user_sdc_content
        if request.user_sdc_file:
            _, content = await self.read_source(request.user_sdc_file)
            if not content.strip():
                raise IOFailure(f"Constraint file {request.user_sdc_file} is empty")
            return content
        return generate_constraint_sdc(request.design_name, request.clock_port, request.clock_period)

    def steps(self, ctx: PipelineContext, request: FlowRequest) -> list[CommandStep]:
        return [
            CommandStep(
                name="flow",
                command=f"cd {shlex.quote(ctx.container_path or '')} && librelane --flow Classic config.json",
                failure_label="Flow failed",
                timeout=self.long_command_timeout,
            )
        ]

    async def discover(self, ctx: PipelineContext, request: FlowRequest) -> list[Discovered]:
        root = shlex.quote(ctx.container_path or "")
        latest = await self.environment.exec(f"ls -t {root}/runs 2>/dev/null | head -1", timeout=30.0)
        latest_run = latest.stdout.strip().splitlines()[0] if latest.stdout.strip() else None
        ctx.details["latest_run"] = latest_run
        ctx.details["gds_file"] = None
        if not latest_run:
            return []

        run_dir = f"runs/{latest_run}"
        discovered: list[Discovered] = []
        gds = [
            p for p in await self.find_outputs(ctx, run_dir, (".gds",))
            if not p.endswith((".magic.gds", ".klayout.gds"))
        ]
        if gds:
            relative = ctx.project_relative(gds[0])
            if relative:
                self.set_artifact(ctx, relative)
                ctx.details["gds_file"] = ctx.generated_artifact
                discovered.append(Discovered(relative, FileCategory.LAYOUT))

        raw = self.store.read_by_path(
            self.store.translator.file_external_path(ctx.project_id, f"{run_dir}/final/metrics.json")
        )
        if raw:
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, dict):
                ppa, signoff = parse_signoff_metrics(parsed, request.clock_period)
                ctx.details["ppa_metrics"] = ppa
                ctx.details["signoff_status"] = signoff
                ctx.metrics.update({dst: ppa[src] for src, dst in _SAVED_METRICS.items() if src in ppa})
                discovered.append(Discovered(f"{run_dir}/final/metrics.json", FileCategory.REPORT))
        return discovered
