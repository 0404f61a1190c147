from __future__ import annotations

import re
import shlex
import time
from enum import Enum
from typing import Any, Optional

from pydantic import Field

from ..models import FileCategory, ProjectSpec, RunKind
from .base import CommandStep, Discovered, JobPipeline, JobRequest, StagedFile
from .context import PipelineContext

SKY130_LIBERTY = "/foss/pdks/sky130A/libs.ref/sky130_fd_sc_hd/lib/sky130_fd_sc_hd__tt_025C_1v80.lib"

NETLIST = "synth_output.v"


class SynthTarget(str, Enum):
    GENERIC = "generic"
    ICE40 = "ice40"
    XILINX = "xilinx"
    SKY130 = "sky130"


class SynthesisRequest(JobRequest):
    top_module: str
    verilog_code: Optional[str] = None
    verilog_files: list[str] = Field(default_factory=list)
    target: SynthTarget = SynthTarget.GENERIC


def _target_body(top: str, target: SynthTarget) -> list[str]:
    if target == SynthTarget.ICE40:
        return [f"synth_ice40 -top {top}", "clean"]
    if target == SynthTarget.XILINX:
        return [f"synth_xilinx -top {top}", "clean"]
    if target == SynthTarget.SKY130:
        return [
            f"synth -top {top}",
            f"dfflibmap -liberty {SKY130_LIBERTY}",
            f"abc -liberty {SKY130_LIBERTY}",
            "clean",
        ]
    return [f"synth -top {top}", "techmap", "opt", "clean"]


def generate_synth_script(top: str, target: SynthTarget, sources: list[str]) -> str:
    """Yosys script run from <project>/src; the netlist lands at the project root."""
    lines = [
        "# Yosys synthesis script",
        f"# Target: {target.value}",
        f"# Top module: {top}",
        "",
        *[f"read_verilog {name}" for name in sources],
        f"hierarchy -check -top {top}",
        "",
        *_target_body(top, target),
        f"write_verilog -noattr ../{NETLIST}",
        "stat",
        "",
    ]
    return "\n".join(lines)


_STAT_PATTERNS: dict[str, str] = {
    "cells": r"Number of cells:\s*(\d+)",
    "wires": r"Number of wires:\s*(\d+)",
    "wire_bits": r"Number of wire bits:\s*(\d+)",
    "public_wires": r"Number of public wires:\s*(\d+)",
    "public_wire_bits": r"Number of public wire bits:\s*(\d+)",
    "memories": r"Number of memories:\s*(\d+)",
    "memory_bits": r"Number of memory bits:\s*(\d+)",
    "processes": r"Number of processes:\s*(\d+)",
    "modules": r"Number of modules:\s*(\d+)",
}

# Newer Yosys prints "   42 cells" instead of "Number of cells: 42".
_STAT_PATTERNS_NEW: dict[str, str] = {
    "cells": r"^\s*(\d+)\s+cells\s*$",
    "wires": r"^\s*(\d+)\s+wires\s*$",
    "wire_bits": r"^\s*(\d+)\s+wire bits\s*$",
    "public_wires": r"^\s*(\d+)\s+public wires\s*$",
    "public_wire_bits": r"^\s*(\d+)\s+public wire bits\s*$",
    "memories": r"^\s*(\d+)\s+memories\s*$",
    "memory_bits": r"^\s*(\d+)\s+memory bits\s*$",
    "processes": r"^\s*(\d+)\s+processes\s*$",
}

_CELL_LINE = re.compile(r"^\s+(sky130_\w+|\$\w+|[A-Z_]+\d*)\s+(\d+)\s*$", re.MULTILINE)


def parse_yosys_stats(output: str) -> dict[str, Any]:
    """
    Pull the statistics block out of Yosys output. When the log holds several
    `stat` passes the last value wins.
    """
    stats: dict[str, Any] = {}
    for key, pattern in _STAT_PATTERNS.items():
        matches = re.findall(pattern, output, flags=re.IGNORECASE)
        if matches:
            stats[key] = int(matches[-1])
    for key, pattern in _STAT_PATTERNS_NEW.items():
        if key in stats:
            continue
        matches = re.findall(pattern, output, flags=re.IGNORECASE | re.MULTILINE)
        if matches:
            stats[key] = int(matches[-1])

    breakdown = {name: int(count) for name, count in _CELL_LINE.findall(output)}
    if breakdown:
        stats["cell_breakdown"] = breakdown
    return stats


class SynthesizePipeline(JobPipeline[SynthesisRequest]):
    kind = RunKind.SYNTHESIS
    config_exclude = frozenset({"verilog_code"})

    def validate(self, request: SynthesisRequest) -> Optional[str]:
        if not (request.verilog_code and request.verilog_code.strip()) and not request.verilog_files:
            return "Either verilog_code or verilog_files must be provided"
        if not request.top_module.strip():
            return "top_module must not be empty"
        return None

    def default_project_spec(self, request: SynthesisRequest) -> ProjectSpec:
        return ProjectSpec(
            name=request.project_name or f"synth_{int(time.time() * 1000)}",
            design_name=request.top_module,
            top_module=request.top_module,
        )

    async def stage(self, ctx: PipelineContext, request: SynthesisRequest) -> list[StagedFile]:
        files: list[StagedFile] = []
        if request.verilog_code and request.verilog_code.strip():
            files.append(StagedFile("design.v", request.verilog_code, FileCategory.INPUT))
        else:
            for path in request.verilog_files:
                name, content = await self.read_source(path)
                files.append(StagedFile(name, content, FileCategory.INPUT))

        script = generate_synth_script(request.top_module, request.target, [f.filename for f in files])
        files.append(StagedFile("synth.ys", script, FileCategory.CONFIG))
        return files

    def steps(self, ctx: PipelineContext, request: SynthesisRequest) -> list[CommandStep]:
        return [
            CommandStep(
                name="synthesize",
                command=f"cd {shlex.quote(ctx.container_path + '/src')} && yosys -s ../synth.ys",
                failure_label="Synthesis failed",
            )
        ]

    async def discover(self, ctx: PipelineContext, request: SynthesisRequest) -> list[Discovered]:
        step = ctx.steps.get("synthesize")
        stats = parse_yosys_stats(step.stdout if step else "")
        ctx.details["statistics"] = stats
        ctx.details["target"] = request.target.value
        if "cells" in stats:
            ctx.metrics["cell_count"] = stats["cells"]

        netlist = self.store.read_by_path(self.store.translator.file_external_path(ctx.project_id, NETLIST))
        ctx.details["netlist_generated"] = netlist is not None
        if netlist is not None:
            # write() tracks the copy itself.
            copied = self.store.write(ctx.project_id, NETLIST, netlist, FileCategory.OUTPUT, run_id=ctx.run_id)
            if copied.success:
                self.set_artifact(ctx, f"output/{NETLIST}")
        return []

    def build_result(self, ctx: PipelineContext, request: SynthesisRequest) -> dict[str, Any]:
        return {
            "target": request.target.value,
            "statistics": ctx.details.get("statistics", {}),
            "synthesized_verilog": "generated" if ctx.details.get("netlist_generated") else "not generated",
        }
