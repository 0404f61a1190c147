"""Job pipelines.

Each pipeline resolves a project, records a run, stages inputs, drives the
tool container through an ordered list of commands and reports a
PipelineResult.
"""

from .admission import AdmissionPolicy, BoundedAdmission, UnboundedAdmission, admission_from_limit
from .base import CommandStep, JobPipeline, JobRequest
from .context import PipelineContext
from .flow import FlowPipeline, FlowRequest
from .simulate import SimulatePipeline, SimulationRequest
from .synthesize import SynthesisRequest, SynthesizePipeline, SynthTarget

__all__ = [
    "AdmissionPolicy",
    "BoundedAdmission",
    "CommandStep",
    "FlowPipeline",
    "FlowRequest",
    "JobPipeline",
    "JobRequest",
    "PipelineContext",
    "SimulatePipeline",
    "SimulationRequest",
    "SynthTarget",
    "SynthesisRequest",
    "SynthesizePipeline",
    "UnboundedAdmission",
    "admission_from_limit",
]
