from __future__ import annotations

import posixpath
import shlex
import time
from typing import Any, Optional

from ..models import FileCategory, ProjectSpec, RunKind
from .base import CommandStep, Discovered, JobPipeline, JobRequest, StagedFile
from .context import PipelineContext

WAVEFORM_EXTENSIONS = (".vcd", ".fst")

# vvp in the tool image needs libvvp.so from the iverilog install.
IVERILOG_LIB = "/foss/tools/iverilog/lib"


class SimulationRequest(JobRequest):
    verilog_code: str
    testbench_code: str
    waveform_filename: Optional[str] = None


class SimulatePipeline(JobPipeline[SimulationRequest]):
    """Icarus Verilog compile + vvp run; picks up any waveform the testbench dumps into output/."""

    kind = RunKind.SIMULATION
    config_exclude = frozenset({"verilog_code", "testbench_code"})

    def validate(self, request: SimulationRequest) -> Optional[str]:
        if not request.verilog_code.strip():
            return "verilog_code must not be empty"
        if not request.testbench_code.strip():
            return "testbench_code must not be empty"
        return None

    def default_project_spec(self, request: SimulationRequest) -> ProjectSpec:
        return ProjectSpec(
            name=request.project_name or f"sim_{int(time.time() * 1000)}",
            design_name="simulation",
        )

    async def stage(self, ctx: PipelineContext, request: SimulationRequest) -> list[StagedFile]:
        return [
            StagedFile("design.v", request.verilog_code, FileCategory.INPUT),
            StagedFile("testbench.v", request.testbench_code, FileCategory.INPUT),
        ]

    def steps(self, ctx: PipelineContext, request: SimulationRequest) -> list[CommandStep]:
        root = shlex.quote(ctx.container_path or "")
        return [
            CommandStep(
                name="compile",
                command=f"cd {root}/src && iverilog -o {root}/output/simulation design.v testbench.v",
                failure_label="Compilation failed",
            ),
            CommandStep(
                name="simulate",
                command=f"cd {root}/output && LD_LIBRARY_PATH={IVERILOG_LIB}:$LD_LIBRARY_PATH vvp simulation",
                failure_label="Simulation failed",
            ),
        ]

    async def discover(self, ctx: PipelineContext, request: SimulationRequest) -> list[Discovered]:
        found = await self.find_outputs(ctx, "output", WAVEFORM_EXTENSIONS)
        relatives = [rel for rel in (ctx.project_relative(p) for p in found) if rel]

        chosen = _pick_waveform(relatives, request.waveform_filename)
        ctx.details["has_waveform"] = chosen is not None
        ctx.details["waveform_file"] = posixpath.basename(chosen) if chosen else None
        ctx.details["waveform_bytes"] = self.store.file_size(ctx.project_id, chosen) if chosen else None
        if chosen:
            self.set_artifact(ctx, chosen)

        return [Discovered(rel, FileCategory.WAVEFORM) for rel in relatives]

    def build_result(self, ctx: PipelineContext, request: SimulationRequest) -> dict[str, Any]:
        return {
            "has_waveform": ctx.details.get("has_waveform", False),
            "waveform_file": ctx.details.get("waveform_file"),
            "waveform_bytes": ctx.details.get("waveform_bytes"),
        }


def _pick_waveform(relatives: list[str], preferred: Optional[str]) -> Optional[str]:
    if not relatives:
        return None
    if preferred:
        for rel in relatives:
            if posixpath.basename(rel) == preferred:
                return rel
    return relatives[0]
