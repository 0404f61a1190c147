from __future__ import annotations

import logging
import os
import posixpath
import shlex
import sqlite3
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, ClassVar, Generic, Iterable, Mapping, Optional, TypeVar

from pydantic import BaseModel

from ..artifacts import ArtifactStore
from ..environment import EnvironmentManager
from ..errors import EngineError, IOFailure, OutOfBounds
from ..models import FileCategory, PipelineResult, ProjectSpec, RunKind, RunSpec
from ..registry import ProjectRegistry
from .admission import AdmissionPolicy, UnboundedAdmission
from .context import PipelineContext

logger = logging.getLogger(__name__)

SOURCE_READ_TIMEOUT = 10.0
DISCOVERY_TIMEOUT = 30.0


class JobRequest(BaseModel):
    """Fields every job request shares."""
    project_id: Optional[str] = None
    project_name: Optional[str] = None


@dataclass(frozen=True)
class StagedFile:
    filename: str
    content: str
    category: FileCategory


@dataclass(frozen=True)
class CommandStep:
    """One container command. failure_label prefixes the run error when it fails."""
    name: str
    command: str
    failure_label: str = ""
    timeout: Optional[float] = None
    workdir: Optional[str] = None
    env: Optional[Mapping[str, str]] = None


@dataclass(frozen=True)
class Discovered:
    """A file some step produced, relative to the project directory."""
    relative: str
    category: FileCategory


R = TypeVar("R", bound=JobRequest)


class JobPipeline(ABC, Generic[R]):
    """
    The shared job algorithm; subclasses fill in the hooks.

      1. resolve or create the project
      2. create the run and move it to running
      3. stage inputs (tagged with the run)
      4. make sure the tool container is up
      5. run the command steps in order, stopping at the first failure
      6. best-effort discovery of produced files
      7. complete or fail the run (exactly once)
      8. track discovered files
    """

    kind: ClassVar[RunKind]
    # Request fields kept out of the stored run config (bulky sources).
    config_exclude: ClassVar[frozenset[str]] = frozenset()

    def __init__(
        self,
        registry: ProjectRegistry,
        environment: EnvironmentManager,
        admission: Optional[AdmissionPolicy] = None,
    ) -> None:
        self.registry = registry
        self.environment = environment
        self.admission = admission or UnboundedAdmission()

    @property
    def store(self) -> ArtifactStore:
        return self.registry.store

    # ---- hooks ----

    def validate(self, request: R) -> Optional[str]:
        """Return an error message to reject the request before anything is created."""
        return None

    @abstractmethod
    def default_project_spec(self, request: R) -> ProjectSpec: ...

    def run_config(self, request: R) -> dict[str, Any]:
        return request.model_dump(mode="json", exclude=set(self.config_exclude) | {"project_id", "project_name"})

    @abstractmethod
    async def stage(self, ctx: PipelineContext, request: R) -> list[StagedFile]: ...

    @abstractmethod
    def steps(self, ctx: PipelineContext, request: R) -> list[CommandStep]: ...

    async def discover(self, ctx: PipelineContext, request: R) -> list[Discovered]:
        return []

    def build_result(self, ctx: PipelineContext, request: R) -> dict[str, Any]:
        return dict(ctx.details)

    # ---- driver ----

    async def run(self, request: R) -> PipelineResult:
        ctx = PipelineContext(registry=self.registry, kind=self.kind, project_id=request.project_id or "")
        try:
            return await self._run(ctx, request)
        except Exception as e:  # noqa: BLE001
            logger.exception("%s pipeline crashed (run %s)", self.kind.value, ctx.run_id)
            message = f"Unexpected error during {self.kind.value}: {e}"
            try:
                return ctx.finish_failed(message)
            except (EngineError, sqlite3.Error) as inner:
                logger.error("could not record failure for run %s: %s", ctx.run_id, inner)
                return ctx.to_result(success=False, error=message)

    async def _run(self, ctx: PipelineContext, request: R) -> PipelineResult:
        problem = self.validate(request)
        if problem:
            return ctx.to_result(success=False, error=problem)

        if request.project_id:
            if self.registry.get_project(request.project_id) is None:
                return ctx.to_result(success=False, error=f"Project {request.project_id} not found")
            handle = self.registry.project_handle(request.project_id)
        else:
            handle = self.registry.create_project(self.default_project_spec(request))
        ctx.project_id = handle.project.project_id
        ctx.host_path = handle.host_path
        ctx.container_path = handle.container_path

        run = self.registry.create_run(RunSpec(project_id=ctx.project_id, kind=self.kind, config=self.run_config(request)))
        ctx.run_id = run.run_id
        self.registry.start_run(run.run_id)

        try:
            staged = await self.stage(ctx, request)
        except IOFailure as e:
            return ctx.finish_failed(str(e))
        for f in staged:
            written = self.store.write(ctx.project_id, f.filename, f.content, f.category, run_id=ctx.run_id)
            if not written.success:
                return ctx.finish_failed(f"Failed to write {f.filename}: {written.error}")
            ctx.staged.append(f.filename)

        async with self.admission.slot():
            ensured = await self.environment.ensure_running()
            if not ensured.ready:
                return ctx.finish_failed(f"Tool environment is not available: {ensured.error}")

            for step in self.steps(ctx, request):
                res = await self.environment.exec(
                    step.command,
                    workdir=step.workdir or ctx.container_path,
                    timeout=step.timeout,
                    env=step.env,
                )
                ctx.record_step(step.name, res)
                if not res.success:
                    reason = res.failure_text()
                    return ctx.finish_failed(f"{step.failure_label}: {reason}" if step.failure_label else reason)

            try:
                discovered = await self.discover(ctx, request)
            except (EngineError, OSError, ValueError) as e:
                logger.warning("discovery failed for run %s: %s", ctx.run_id, e)
                discovered = []

        if ctx.metrics:
            self.registry.save_metrics(ctx.run_id, ctx.metrics)
        result = ctx.finish_ok(self.build_result(ctx, request))

        for item in discovered:
            tracked = self.store.track_existing(ctx.project_id, item.relative, item.category, run_id=ctx.run_id)
            if not tracked.success:
                logger.warning("could not track %s: %s", item.relative, tracked.error)
        return result

    # ---- helpers for subclasses ----

    async def find_outputs(self, ctx: PipelineContext, subdir: str, extensions: Iterable[str]) -> list[str]:
        """Container paths of files under <project>/<subdir> with any of the extensions. Zero matches is fine."""
        exts = list(extensions)
        if not exts or not ctx.container_path:
            return []
        root = posixpath.join(ctx.container_path, subdir) if subdir else ctx.container_path
        names = " -o ".join(f"-name {shlex.quote('*' + ext)}" for ext in exts)
        res = await self.environment.exec(
            f"find {shlex.quote(root)} -type f \\( {names} \\) 2>/dev/null",
            timeout=DISCOVERY_TIMEOUT,
        )
        found = sorted(line.strip() for line in res.stdout.splitlines() if line.strip())
        if not found:
            logger.debug("no %s files under %s", "/".join(exts), root)
        return found

    def set_artifact(self, ctx: PipelineContext, relative: str) -> None:
        ctx.generated_artifact = posixpath.basename(relative)
        ctx.generated_artifact_host_path = self.store.translator.file_external_path(ctx.project_id, relative)
        ctx.generated_artifact_container_path = self.store.translator.file_internal_path(ctx.project_id, relative)

    async def read_source(self, path: str) -> tuple[str, str]:
        """
        Load a caller-supplied HDL file as (basename, content).

        Host paths are read directly. Container paths under the projects mount
        are read through the host side; any other container path is read with
        `cat` inside the container. Raises IOFailure.
        """
        translator = self.store.translator
        name = posixpath.basename(path.replace("\\", "/"))
        if not translator.is_internal_path(path):
            return name, _read_host(path)

        try:
            return name, _read_host(translator.to_external(path))
        except OutOfBounds:
            pass

        ensured = await self.environment.ensure_running()
        if not ensured.ready:
            raise IOFailure(f"Failed to read container file {path}: {ensured.error}")
        res = await self.environment.exec(f"cat {shlex.quote(path)}", timeout=SOURCE_READ_TIMEOUT)
        if not res.success:
            raise IOFailure(f"Failed to read container file {path}: {res.failure_text()}")
        return name, res.stdout


def _read_host(path: str) -> str:
    try:
        return Path(os.path.expanduser(path)).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise IOFailure(f"Failed to read file {path}: {e}") from e
