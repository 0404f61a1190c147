from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from ..models import ExecResult, PipelineResult, RunKind, StepOutput
from ..registry import ProjectRegistry


@dataclass
class PipelineContext:
    """Mutable state of one pipeline invocation.

    finish_* are the only way a pipeline ends its run; the first call that
    reaches the registry wins and later calls are ignored, so a run gets
    exactly one terminal transition. A call whose registry write raises leaves
    the context open for the failure path.
    """

    registry: ProjectRegistry
    kind: RunKind
    project_id: str = ""
    run_id: Optional[str] = None
    host_path: Optional[str] = None
    container_path: Optional[str] = None
    steps: dict[str, StepOutput] = field(default_factory=dict)
    details: dict[str, Any] = field(default_factory=dict)
    staged: list[str] = field(default_factory=list)
    metrics: dict[str, Any] = field(default_factory=dict)
    generated_artifact: Optional[str] = None
    generated_artifact_host_path: Optional[str] = None
    generated_artifact_container_path: Optional[str] = None
    finalized: bool = False

    def record_step(self, name: str, res: ExecResult) -> StepOutput:
        out = StepOutput(
            success=res.success,
            stdout=res.stdout,
            stderr=res.stderr,
            exit_code=res.exit_code,
            timed_out=res.timed_out,
        )
        self.steps[name] = out
        return out

    def project_relative(self, container_path: str) -> Optional[str]:
        """Container path -> path relative to this project's directory, or None outside it."""
        if not self.container_path:
            return None
        prefix = self.container_path.rstrip("/") + "/"
        if not container_path.startswith(prefix):
            return None
        return container_path[len(prefix):]

    def finish_ok(self, result: dict[str, Any]) -> PipelineResult:
        if not self.finalized and self.run_id is not None:
            self.registry.complete_run(self.run_id, result)
            self.finalized = True
        return self.to_result(success=True)

    def finish_failed(self, error: str) -> PipelineResult:
        if not self.finalized and self.run_id is not None:
            self.registry.fail_run(self.run_id, error)
            self.finalized = True
        return self.to_result(success=False, error=error)

    def to_result(self, *, success: bool, error: Optional[str] = None) -> PipelineResult:
        return PipelineResult(
            success=success,
            kind=self.kind,
            project_id=self.project_id,
            run_id=self.run_id,
            host_path=self.host_path,
            container_path=self.container_path,
            steps=dict(self.steps),
            generated_artifact=self.generated_artifact,
            generated_artifact_host_path=self.generated_artifact_host_path,
            generated_artifact_container_path=self.generated_artifact_container_path,
            details=dict(self.details),
            error=error,
        )
