from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping, Optional

from pydantic import BaseModel

CONTAINER_PROJECTS_DIR = "/workspace/projects"


class Settings(BaseModel):
    """
    Engine configuration.

    Only the host-side projects directory is configurable; the container-side
    root is the fixed mount prefix the tool image is built around.
    Timeouts are in seconds.
    """
    projects_dir: Path
    db_path: Path
    container_projects_dir: str = CONTAINER_PROJECTS_DIR
    container_name: str = "eda-tools"
    compose_file: Optional[Path] = None
    command_timeout: float = 120.0
    long_command_timeout: float = 600.0
    ready_timeout: float = 30.0
    poll_interval: float = 1.0
    max_concurrent_jobs: Optional[int] = None
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ

        projects_dir = Path(_get_str(env, "EDA_PROJECTS_DIR") or Path.cwd() / "projects").absolute()
        db_raw = _get_str(env, "EDA_DB_PATH")
        db_path = Path(db_raw).absolute() if db_raw else projects_dir.parent / "eda_engine.db"
        compose_raw = _get_str(env, "EDA_COMPOSE_FILE")

        return cls(
            projects_dir=projects_dir,
            db_path=db_path,
            container_name=_get_str(env, "EDA_CONTAINER_NAME") or "eda-tools",
            compose_file=Path(compose_raw) if compose_raw else None,
            command_timeout=_get_float(env, "EDA_COMMAND_TIMEOUT", 120.0),
            long_command_timeout=_get_float(env, "EDA_LONG_COMMAND_TIMEOUT", 600.0),
            ready_timeout=_get_float(env, "EDA_READY_TIMEOUT", 30.0),
            poll_interval=_get_float(env, "EDA_POLL_INTERVAL", 1.0),
            max_concurrent_jobs=_get_positive_int(env, "EDA_MAX_CONCURRENT_JOBS"),
            log_level=(_get_str(env, "EDA_LOG_LEVEL") or "WARNING").upper(),
        )


def _get_str(env: Mapping[str, str], key: str) -> Optional[str]:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return None
    return raw.strip()


def _get_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = _get_str(env, key)
    if raw is None:
        return default
    try:
        v = float(raw)
        return v if v > 0 else default
    except ValueError:
        return default


def _get_positive_int(env: Mapping[str, str], key: str) -> Optional[int]:
    raw = _get_str(env, key)
    if raw is None:
        return None
    try:
        v = int(raw)
        return v if v > 0 else None
    except ValueError:
        return None
