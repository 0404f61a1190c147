from __future__ import annotations

import logging

from .errors import EngineError
from .models import CleanupResult, Project
from .registry import ProjectRegistry
from .utils import format_bytes

logger = logging.getLogger(__name__)


def cleanup_old_projects(
    registry: ProjectRegistry,
    days_old: float,
    dry_run: bool = False,
    keep_min_projects: int = 5,
) -> CleanupResult:
    """
    Delete projects not updated in `days_old` days, oldest first.

    The `keep_min_projects` most recently updated projects always survive,
    however old they are. With dry_run nothing is removed; the result reports
    what would have been.
    """
    result = CleanupResult()

    old = registry.list_older_than(days_old)
    total = len(registry.list_all())
    budget = max(0, total - max(0, keep_min_projects))

    for project in old[:budget]:
        size = registry.store.size(project.project_id)
        if dry_run:
            result.projects_deleted += 1
            result.bytes_freed += size
            result.deleted_projects.append(project.project_id)
            continue

        try:
            report = registry.delete_project(project.project_id)
        except EngineError as e:
            result.errors.append(f"Failed to delete {project.project_id}: {e}")
            continue

        if not report.rows_removed:
            result.errors.extend(report.errors)
            continue
        result.projects_deleted += 1
        result.bytes_freed += size if report.directory_removed else 0
        result.deleted_projects.append(project.project_id)
        result.errors.extend(report.errors)

    if result.projects_deleted:
        logger.info(
            "cleanup %s %d project(s), %s",
            "would remove" if dry_run else "removed",
            result.projects_deleted,
            format_bytes(result.bytes_freed),
        )
    return result


def preview_cleanup(registry: ProjectRegistry, days_old: float) -> tuple[list[Project], int]:
    """(projects older than the cutoff, their combined size in bytes). Ignores keep_min_projects."""
    old = registry.list_older_than(days_old)
    return old, sum(registry.store.size(p.project_id) for p in old)


def format_cleanup_report(result: CleanupResult) -> str:
    lines = [
        "=== Cleanup Report ===",
        f"Projects deleted: {result.projects_deleted}",
        f"Space freed: {format_bytes(result.bytes_freed)}",
    ]
    if result.deleted_projects:
        lines += ["", "Deleted projects:"]
        lines += [f"  - {pid}" for pid in result.deleted_projects]
    if result.errors:
        lines += ["", "Errors:"]
        lines += [f"  - {err}" for err in result.errors]
    return "\n".join(lines)
