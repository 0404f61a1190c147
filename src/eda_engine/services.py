from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .artifacts import ArtifactStore
from .config import Settings
from .container import ContainerEngine, DockerEngine
from .environment import EnvironmentManager
from .paths import PathTranslator
from .persistence import Persistence, SQLitePersistence
from .pipeline import FlowPipeline, SimulatePipeline, SynthesizePipeline, admission_from_limit
from .pipeline.admission import AdmissionPolicy
from .registry import ProjectRegistry


@dataclass
class Services:
    settings: Settings
    persistence: Persistence
    translator: PathTranslator
    store: ArtifactStore
    registry: ProjectRegistry
    environment: EnvironmentManager
    admission: AdmissionPolicy
    simulate: SimulatePipeline
    synthesize: SynthesizePipeline
    flow: FlowPipeline

    def close(self) -> None:
        close = getattr(self.persistence, "close", None)
        if close is not None:
            close()


def build_services(
    settings: Settings,
    *,
    engine: Optional[ContainerEngine] = None,
    persistence: Optional[Persistence] = None,
) -> Services:
    """Wire every component from settings. engine / persistence can be swapped (tests)."""
    persistence = persistence or SQLitePersistence(settings.db_path)
    translator = PathTranslator(settings.projects_dir, settings.container_projects_dir)
    store = ArtifactStore(translator, persistence)
    registry = ProjectRegistry(persistence, store)
    environment = EnvironmentManager(
        engine or DockerEngine(compose_file=settings.compose_file),
        settings.container_name,
        command_timeout=settings.command_timeout,
        ready_timeout=settings.ready_timeout,
        poll_interval=settings.poll_interval,
    )
    admission = admission_from_limit(settings.max_concurrent_jobs)

    return Services(
        settings=settings,
        persistence=persistence,
        translator=translator,
        store=store,
        registry=registry,
        environment=environment,
        admission=admission,
        simulate=SimulatePipeline(registry, environment, admission),
        synthesize=SynthesizePipeline(registry, environment, admission),
        flow=FlowPipeline(registry, environment, admission, long_command_timeout=settings.long_command_timeout),
    )
