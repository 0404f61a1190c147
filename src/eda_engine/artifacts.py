from __future__ import annotations

import logging
import os
import shutil
import sqlite3
from pathlib import Path
from typing import Optional

from .errors import EngineError, OutOfBounds, RunNotFound
from .models import FileCategory, FileResult, Subarea, TrackedFile
from .paths import PathTranslator
from .persistence import Persistence

logger = logging.getLogger(__name__)

_STORE_ERRORS = (OSError, UnicodeError, EngineError, sqlite3.Error)

# Where each category lands inside a project directory.
CATEGORY_SUBAREA: dict[FileCategory, Subarea] = {
    FileCategory.INPUT: Subarea.INPUTS,
    FileCategory.OUTPUT: Subarea.OUTPUTS,
    FileCategory.REPORT: Subarea.OUTPUTS,
    FileCategory.WAVEFORM: Subarea.OUTPUTS,
    FileCategory.LAYOUT: Subarea.OUTPUTS,
    FileCategory.CONFIG: Subarea.ROOT,
    FileCategory.CONSTRAINT: Subarea.ROOT,
}

EXTENSION_CATEGORY: dict[str, FileCategory] = {
    ".v": FileCategory.INPUT,
    ".sv": FileCategory.INPUT,
    ".vhd": FileCategory.INPUT,
    ".vhdl": FileCategory.INPUT,
    ".gds": FileCategory.LAYOUT,
    ".gds2": FileCategory.LAYOUT,
    ".vcd": FileCategory.WAVEFORM,
    ".fst": FileCategory.WAVEFORM,
    ".sdc": FileCategory.CONSTRAINT,
    ".json": FileCategory.CONFIG,
    ".yaml": FileCategory.CONFIG,
    ".yml": FileCategory.CONFIG,
    ".tcl": FileCategory.CONFIG,
    ".rpt": FileCategory.REPORT,
    ".log": FileCategory.REPORT,
    ".txt": FileCategory.REPORT,
}

# Probe order for read(): inputs first, project root last.
READ_ORDER: tuple[Subarea, ...] = (Subarea.INPUTS, Subarea.OUTPUTS, Subarea.RUNS, Subarea.ROOT)

PROJECT_SUBAREAS: tuple[Subarea, ...] = (Subarea.INPUTS, Subarea.OUTPUTS, Subarea.RUNS)


def subarea_for(category: FileCategory) -> Subarea:
    return CATEGORY_SUBAREA[category]


def detect_category(filename: str) -> FileCategory:
    """Classify a file by extension; anything unknown is a generic output."""
    ext = os.path.splitext(filename)[1].lower()
    return EXTENSION_CATEGORY.get(ext, FileCategory.OUTPUT)


class ArtifactStore:
    """
    Per-project directory tree on the host side of the mount.

      <projects_root>/<project_id>/
        src/      inputs (HDL, testbenches)
        output/   outputs, reports, waveforms, layouts
        runs/     tool scratch space (e.g. LibreLane run dirs)
        *.json / *.sdc / *.ys  config and constraints at the root

    Filesystem errors never escape: writes/deletes return FileResult,
    reads return None, sizes return 0.
    """

    def __init__(self, translator: PathTranslator, persistence: Persistence) -> None:
        self.translator = translator
        self.persistence = persistence

    @property
    def root(self) -> Path:
        return Path(self.translator.external_root)

    def project_dir(self, project_id: str) -> Path:
        return Path(self.translator.project_external_path(project_id))

    def ensure_project_layout(self, project_id: str) -> FileResult:
        try:
            pdir = self.project_dir(project_id)
            pdir.mkdir(parents=True, exist_ok=True)
            for sub in PROJECT_SUBAREAS:
                (pdir / sub.value).mkdir(exist_ok=True)
            return FileResult(
                success=True,
                host_path=str(pdir),
                container_path=self.translator.project_internal_path(project_id),
            )
        except (OSError, EngineError) as e:
            return FileResult(success=False, error=f"Failed to create project directory: {e}")

    def write(
        self,
        project_id: str,
        filename: str,
        content: str | bytes,
        category: FileCategory,
        run_id: Optional[str] = None,
    ) -> FileResult:
        try:
            layout = self.ensure_project_layout(project_id)
            if not layout.success:
                return layout

            relative = _join_relative(subarea_for(category), filename)
            target = Path(self.translator.file_external_path(project_id, relative))
            self._check_run(project_id, run_id)
            data = content if isinstance(content, bytes) else content.encode("utf-8")
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

            self._track(project_id, target, category, run_id)

            return FileResult(
                success=True,
                host_path=str(target),
                container_path=self.translator.to_internal(target),
            )
        except _STORE_ERRORS as e:
            return FileResult(success=False, error=str(e))

    def track_existing(
        self,
        project_id: str,
        relative: str,
        category: FileCategory,
        run_id: Optional[str] = None,
    ) -> FileResult:
        """Record a TrackedFile for a file some tool already produced inside the project."""
        try:
            target = Path(self.translator.file_external_path(project_id, relative))
            self._track(project_id, target, category, run_id)
            return FileResult(
                success=True,
                host_path=str(target),
                container_path=self.translator.to_internal(target),
            )
        except _STORE_ERRORS as e:
            return FileResult(success=False, error=str(e))

    def _track(self, project_id: str, target: Path, category: FileCategory, run_id: Optional[str]) -> TrackedFile:
        pdir = self.project_dir(project_id)
        try:
            target.relative_to(pdir)
        except ValueError:
            raise OutOfBounds(f"{target} is outside project {project_id}") from None

        self._check_run(project_id, run_id)
        rel_to_root = target.relative_to(self.root).as_posix()
        return self.persistence.insert_tracked_file(
            TrackedFile(project_id=project_id, run_id=run_id, category=category, path=rel_to_root)
        )

    def _check_run(self, project_id: str, run_id: Optional[str]) -> None:
        if run_id is None:
            return
        run = self.persistence.get_run(run_id)
        if run is None or run.project_id != project_id:
            raise RunNotFound(f"Run {run_id} does not belong to project {project_id}")

    def read(self, project_id: str, filename: str) -> Optional[str]:
        """First match across src/, output/, runs/, project root; None when nowhere."""
        for sub in READ_ORDER:
            try:
                p = Path(self.translator.file_external_path(project_id, _join_relative(sub, filename)))
                if p.is_file():
                    return p.read_text(encoding="utf-8", errors="replace")
            except (OSError, EngineError):
                continue
        return None

    def exists(self, project_id: str, filename: str) -> bool:
        for sub in READ_ORDER:
            try:
                p = Path(self.translator.file_external_path(project_id, _join_relative(sub, filename)))
            except EngineError:
                return False
            if p.is_file():
                return True
        return False

    def read_by_path(self, path: str) -> Optional[str]:
        """Read a host or container path that must lie under the projects root."""
        try:
            if self.translator.is_internal_path(path):
                host = self.translator.to_external(path)
            else:
                host = os.path.abspath(path)
                self.translator.to_internal(host)
            p = Path(host)
            if p.is_file():
                return p.read_text(encoding="utf-8", errors="replace")
            return None
        except (OSError, EngineError):
            return None

    def list(self, project_id: str, subarea: Optional[Subarea] = None) -> list[str]:
        try:
            pdir = self.project_dir(project_id)
            search = pdir / subarea.value if subarea is not None and subarea.value else pdir
            if not search.is_dir():
                return []
            files = [p.relative_to(pdir).as_posix() for p in search.rglob("*") if p.is_file()]
            return sorted(files)
        except (OSError, EngineError):
            return []

    def size(self, project_id: str) -> int:
        try:
            pdir = self.project_dir(project_id)
            if not pdir.is_dir():
                return 0
            total = 0
            for p in pdir.rglob("*"):
                if p.is_file():
                    total += p.stat().st_size
            return total
        except (OSError, EngineError):
            return 0

    def file_size(self, project_id: str, relative: str) -> Optional[int]:
        try:
            return Path(self.translator.file_external_path(project_id, relative)).stat().st_size
        except (OSError, EngineError):
            return None

    def delete(self, project_id: str) -> FileResult:
        try:
            pdir = self.project_dir(project_id)
            if pdir.exists():
                shutil.rmtree(pdir)
            return FileResult(success=True, host_path=str(pdir))
        except FileNotFoundError:
            return FileResult(success=True)
        except (OSError, EngineError) as e:
            logger.warning("failed to delete project directory for %s: %s", project_id, e)
            return FileResult(success=False, error=str(e))


def _join_relative(sub: Subarea, filename: str) -> str:
    filename = filename.replace("\\", "/")
    return f"{sub.value}/{filename}" if sub.value else filename
