from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from .utils import now_iso


class RunKind(str, Enum):
    SYNTHESIS = "synthesis"
    SIMULATION = "simulation"
    FLOW = "flow"


class RunStatus(str, Enum):
    """
    Run lifecycle. Allowed moves:

      pending -> running -> completed | failed
      pending -> failed   (early abort before any remote command ran)
    """
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED)


ALLOWED_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.RUNNING, RunStatus.FAILED}),
    RunStatus.RUNNING: frozenset({RunStatus.COMPLETED, RunStatus.FAILED}),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
}


class FileCategory(str, Enum):
    INPUT = "input"
    OUTPUT = "output"
    REPORT = "report"
    LAYOUT = "layout"
    WAVEFORM = "waveform"
    CONFIG = "config"
    CONSTRAINT = "constraint"


class Subarea(str, Enum):
    """Fixed subareas of a project directory. ROOT is the project directory itself."""
    INPUTS = "src"
    OUTPUTS = "output"
    RUNS = "runs"
    ROOT = ""


class Project(BaseModel):
    """
    Project metadata. A project owns a directory subtree and all of its runs,
    tracked files and metrics.

    project_id: immutable id, also the directory name under the projects root
    """
    project_id: str
    name: str
    design_name: Optional[str] = None
    top_module: Optional[str] = None
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)


class ProjectSpec(BaseModel):
    name: str
    design_name: Optional[str] = None
    top_module: Optional[str] = None


class ProjectHandle(BaseModel):
    """A created/resolved project together with its location in both namespaces."""
    project: Project
    host_path: str
    container_path: str


class Run(BaseModel):
    """
    One execution attempt of a job kind against a project.

    config: opaque JSON payload owned by the pipeline that created the run
    result: set on completion; error: set on failure
    """
    run_id: str
    project_id: str
    kind: RunKind
    status: RunStatus = RunStatus.PENDING
    config: dict[str, Any] = Field(default_factory=dict)
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    parent_run_id: Optional[str] = None
    created_at: str = Field(default_factory=now_iso)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None


class RunSpec(BaseModel):
    project_id: str
    kind: RunKind
    config: dict[str, Any] = Field(default_factory=dict)
    parent_run_id: Optional[str] = None


class TrackedFile(BaseModel):
    """
    path is relative to the projects root and always starts with the project id,
    e.g. "p1/src/counter.v".
    """
    file_id: Optional[int] = None
    project_id: str
    run_id: Optional[str] = None
    category: FileCategory
    path: str
    created_at: str = Field(default_factory=now_iso)


class Metrics(BaseModel):
    metrics_id: Optional[int] = None
    run_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: str = Field(default_factory=now_iso)


class FileResult(BaseModel):
    success: bool
    host_path: Optional[str] = None
    container_path: Optional[str] = None
    error: Optional[str] = None


class ExecResult(BaseModel):
    success: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    timed_out: bool = False

    def failure_text(self) -> str:
        """Human-readable reason for a failed command: stderr, else stdout, else the exit code."""
        text = self.stderr.strip() or self.stdout.strip()
        return text or f"command exited with code {self.exit_code}"


class ContainerStatus(BaseModel):
    running: bool
    exists: bool = False
    container_id: Optional[str] = None
    image: Optional[str] = None
    status: Optional[str] = None


class EnvironmentState(str, Enum):
    ABSENT = "absent"
    STARTING = "starting"
    READY = "ready"
    UNREACHABLE = "unreachable"


class EnsureResult(BaseModel):
    ready: bool
    state: EnvironmentState
    started: bool = False
    error: Optional[str] = None


class ToolVersion(BaseModel):
    available: bool
    version: Optional[str] = None
    detail: Optional[str] = None


class StepOutput(BaseModel):
    success: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    timed_out: bool = False


class PipelineResult(BaseModel):
    """
    Stable result shape shared by every pipeline.

    steps holds one entry per step that actually ran; skipped steps are absent.
    """
    success: bool
    kind: RunKind
    project_id: str = ""
    run_id: Optional[str] = None
    host_path: Optional[str] = None
    container_path: Optional[str] = None
    steps: dict[str, StepOutput] = Field(default_factory=dict)
    generated_artifact: Optional[str] = None
    generated_artifact_host_path: Optional[str] = None
    generated_artifact_container_path: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


class ProjectSummary(BaseModel):
    project: Project
    run_counts: dict[RunStatus, int]
    total_runs: int
    file_count: int
    size_bytes: int
    latest_metrics: Optional[Metrics] = None


class DeleteReport(BaseModel):
    """
    Outcome of a cascading project delete.

    rows_removed / directory_removed tell the caller which half of the delete
    happened; errors and warnings are never swallowed.
    """
    project_id: str
    rows_removed: bool = False
    directory_removed: bool = False
    runs_deleted: int = 0
    files_deleted: int = 0
    metrics_deleted: int = 0
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.rows_removed and self.directory_removed and not self.errors


class CleanupResult(BaseModel):
    projects_deleted: int = 0
    bytes_freed: int = 0
    deleted_projects: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
