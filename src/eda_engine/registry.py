from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Any, Optional

import pandas as pd

from .artifacts import ArtifactStore
from .errors import InvalidTransition, IOFailure, ProjectNotFound, RunNotFound
from .models import (
    ALLOWED_TRANSITIONS,
    DeleteReport,
    Metrics,
    Project,
    ProjectHandle,
    ProjectSpec,
    ProjectSummary,
    Run,
    RunSpec,
    RunStatus,
    TrackedFile,
)
from .persistence import Persistence
from .utils import format_bytes, iso_days_ago, new_id, now_iso

logger = logging.getLogger(__name__)

_MAX_ID_ATTEMPTS = 5


class ProjectRegistry:
    """
    Projects, runs, tracked files and metrics.

    Run status only moves through start_run / complete_run / fail_run, each of
    which is a conditional update on the expected prior status, so concurrent
    callers cannot both win the same transition.
    """

    def __init__(self, persistence: Persistence, store: ArtifactStore) -> None:
        self.persistence = persistence
        self.store = store

    # ---- projects ----

    def create_project(self, spec: ProjectSpec) -> ProjectHandle:
        """
        Allocate an id, lay out the directory tree, then persist the row.

        A layout failure raises IOFailure before anything is persisted; a
        persistence failure removes the freshly created tree before re-raising.
        """
        project_id = self._allocate_project_id()

        layout = self.store.ensure_project_layout(project_id)
        if not layout.success:
            raise IOFailure(layout.error or f"Failed to create directory for project {project_id}")

        project = Project(
            project_id=project_id,
            name=spec.name,
            design_name=spec.design_name,
            top_module=spec.top_module,
        )
        try:
            self.persistence.insert_project(project)
        except Exception:
            rollback = self.store.delete(project_id)
            if not rollback.success:
                logger.warning("orphaned project directory %s left behind: %s", layout.host_path, rollback.error)
            raise

        logger.info("created project %s (%s)", project_id, spec.name)
        return ProjectHandle(
            project=project,
            host_path=layout.host_path or "",
            container_path=layout.container_path or "",
        )

    def _allocate_project_id(self) -> str:
        for _ in range(_MAX_ID_ATTEMPTS):
            candidate = new_id("proj")
            if self.persistence.get_project(candidate) is None and not self.store.project_dir(candidate).exists():
                return candidate
        raise IOFailure("Could not allocate a unique project id")

    def get_project(self, project_id: str) -> Optional[Project]:
        return self.persistence.get_project(project_id)

    def require_project(self, project_id: str) -> Project:
        project = self.persistence.get_project(project_id)
        if project is None:
            raise ProjectNotFound(f"Project {project_id} not found")
        return project

    def project_handle(self, project_id: str) -> ProjectHandle:
        project = self.require_project(project_id)
        return ProjectHandle(
            project=project,
            host_path=self.store.translator.project_external_path(project_id),
            container_path=self.store.translator.project_internal_path(project_id),
        )

    def list_all(self) -> list[Project]:
        return self.persistence.list_projects()

    def list_older_than(self, days: float) -> list[Project]:
        """Projects not updated in the last `days` days, oldest first."""
        return self.persistence.list_projects_older_than(iso_days_ago(days))

    def update_project(self, project_id: str, **fields: Any) -> Project:
        self.require_project(project_id)
        self.persistence.update_project(project_id, fields, now_iso())
        return self.require_project(project_id)

    def delete_project(self, project_id: str) -> DeleteReport:
        """
        Cascade delete: rows first (one transaction), then the directory tree.

        If the rows cannot be removed the directory is left alone so both halves
        stay consistent. If the directory cannot be removed after the rows are
        gone, the report carries the error and a warning naming the leftover path.
        """
        self.require_project(project_id)
        report = DeleteReport(project_id=project_id)

        try:
            counts = self.persistence.delete_project(project_id)
        except sqlite3.Error as e:
            report.errors.append(f"Failed to delete rows for {project_id}: {e}")
            report.warnings.append("Project directory was kept because its rows could not be removed.")
            logger.error("delete of project %s aborted: %s", project_id, e)
            return report

        report.rows_removed = counts.projects > 0
        report.runs_deleted = counts.runs
        report.files_deleted = counts.files
        report.metrics_deleted = counts.metrics

        removed = self.store.delete(project_id)
        report.directory_removed = removed.success
        if not removed.success:
            leftover = self.store.project_dir(project_id)
            report.errors.append(f"Failed to delete directory for {project_id}: {removed.error}")
            report.warnings.append(f"Rows were removed but {leftover} still exists; remove it manually.")
            logger.warning("project %s rows removed but directory %s remains", project_id, leftover)

        return report

    # ---- runs ----

    def create_run(self, spec: RunSpec) -> Run:
        self.require_project(spec.project_id)
        if spec.parent_run_id is not None:
            self.require_run(spec.parent_run_id)
        run = Run(
            run_id=new_id("run"),
            project_id=spec.project_id,
            kind=spec.kind,
            status=RunStatus.PENDING,
            config=spec.config,
            parent_run_id=spec.parent_run_id,
        )
        self.persistence.insert_run(run)
        # A new run counts as activity for retention cleanup.
        self.persistence.update_project(spec.project_id, {}, now_iso())
        logger.debug("created %s run %s for %s", spec.kind.value, run.run_id, spec.project_id)
        return run

    def get_run(self, run_id: str) -> Optional[Run]:
        return self.persistence.get_run(run_id)

    def require_run(self, run_id: str) -> Run:
        run = self.persistence.get_run(run_id)
        if run is None:
            raise RunNotFound(f"Run {run_id} not found")
        return run

    def list_runs(self, project_id: str) -> list[Run]:
        self.require_project(project_id)
        return self.persistence.list_runs(project_id)

    def start_run(self, run_id: str) -> Run:
        return self._transition(run_id, (RunStatus.PENDING,), RunStatus.RUNNING, started_at=now_iso())

    def complete_run(self, run_id: str, result: Optional[dict[str, Any]] = None) -> Run:
        return self._transition(
            run_id,
            (RunStatus.RUNNING,),
            RunStatus.COMPLETED,
            result=result or {},
            finished_at=now_iso(),
        )

    def fail_run(self, run_id: str, error: str) -> Run:
        return self._transition(
            run_id,
            (RunStatus.RUNNING, RunStatus.PENDING),
            RunStatus.FAILED,
            error=error,
            finished_at=now_iso(),
        )

    def _transition(
        self,
        run_id: str,
        allowed_from: tuple[RunStatus, ...],
        new: RunStatus,
        **payload: Any,
    ) -> Run:
        current = self.require_run(run_id)
        for expected in allowed_from:
            if new not in ALLOWED_TRANSITIONS[expected]:
                raise InvalidTransition(f"{expected.value} -> {new.value} is not a run transition")
            if current.status != expected:
                continue
            if self.persistence.update_run_status(run_id, expected, new, **payload):
                logger.info("run %s: %s -> %s", run_id, expected.value, new.value)
                return self.require_run(run_id)
            # Lost the race; re-read and try the remaining expectations.
            current = self.require_run(run_id)

        raise InvalidTransition(f"Run {run_id} cannot move from {current.status.value} to {new.value}")

    # ---- files ----

    def tracked_files(self, project_id: str) -> list[TrackedFile]:
        self.require_project(project_id)
        return self.persistence.list_tracked_files_by_project(project_id)

    # ---- metrics ----

    def save_metrics(self, run_id: str, payload: dict[str, Any]) -> Metrics:
        self.require_run(run_id)
        return self.persistence.insert_metrics(Metrics(run_id=run_id, payload=dict(payload)))

    def latest_metrics(self, run_id: str) -> Optional[Metrics]:
        return self.persistence.get_latest_metrics(run_id)

    def metrics_history(self, project_id: str) -> pd.DataFrame:
        """One row per metrics record for the project, newest first; payload keys become columns."""
        self.require_project(project_id)
        records = self.persistence.list_metrics_by_project(project_id)
        rows = [{"run_id": m.run_id, "created_at": m.created_at, **m.payload} for m in records]
        return pd.DataFrame(rows, columns=None if rows else ["run_id", "created_at"])

    def export_metrics_csv(self, project_id: str, out_path: Path) -> Path:
        df = self.metrics_history(project_id)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(out_path, index=False)
        return out_path

    # ---- summaries ----

    def summary(self, project_id: str) -> ProjectSummary:
        project = self.require_project(project_id)
        runs = self.persistence.list_runs(project_id)

        counts = {status: 0 for status in RunStatus}
        for run in runs:
            counts[run.status] += 1

        history = self.persistence.list_metrics_by_project(project_id)
        return ProjectSummary(
            project=project,
            run_counts=counts,
            total_runs=len(runs),
            file_count=len(self.persistence.list_tracked_files_by_project(project_id)),
            size_bytes=self.store.size(project_id),
            latest_metrics=history[0] if history else None,
        )

    def format_summary(self, project_id: str) -> str:
        s = self.summary(project_id)
        p = s.project
        lines = [
            f"Project: {p.name} ({p.project_id})",
            f"Design: {p.design_name or 'N/A'}",
            f"Top Module: {p.top_module or 'N/A'}",
            f"Created: {p.created_at}",
            f"Updated: {p.updated_at}",
            f"Runs: {s.total_runs} ("
            + ", ".join(f"{status.value}={n}" for status, n in s.run_counts.items())
            + ")",
            f"Files: {s.file_count}",
            f"Size: {format_bytes(s.size_bytes)}",
        ]
        if s.latest_metrics and s.latest_metrics.payload:
            lines.append("")
            lines.append(f"Latest metrics (run {s.latest_metrics.run_id}):")
            for key in sorted(s.latest_metrics.payload):
                lines.append(f"  {key}: {s.latest_metrics.payload[key]}")
        return "\n".join(lines)
