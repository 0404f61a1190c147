from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, Optional, Protocol

from .models import FileCategory, Metrics, Project, Run, RunKind, RunStatus, TrackedFile
from .utils import dumps_or_none, loads_or_none

SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
  id TEXT PRIMARY KEY,
  name TEXT NOT NULL,
  design_name TEXT,
  top_module TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS runs (
  id TEXT PRIMARY KEY,
  project_id TEXT NOT NULL,
  kind TEXT NOT NULL CHECK (kind IN ('synthesis', 'simulation', 'flow')),
  status TEXT NOT NULL CHECK (status IN ('pending', 'running', 'completed', 'failed')),
  config TEXT,
  result TEXT,
  error TEXT,
  parent_run_id TEXT,
  created_at TEXT NOT NULL,
  started_at TEXT,
  finished_at TEXT,
  FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE,
  FOREIGN KEY (parent_run_id) REFERENCES runs(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS files (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  project_id TEXT NOT NULL,
  run_id TEXT,
  category TEXT NOT NULL
    CHECK (category IN ('input', 'output', 'report', 'layout', 'waveform', 'config', 'constraint')),
  path TEXT NOT NULL,
  created_at TEXT NOT NULL,
  FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE,
  FOREIGN KEY (run_id) REFERENCES runs(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS metrics (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  run_id TEXT NOT NULL,
  payload TEXT NOT NULL,
  created_at TEXT NOT NULL,
  FOREIGN KEY (run_id) REFERENCES runs(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_runs_project_id ON runs(project_id);
CREATE INDEX IF NOT EXISTS idx_runs_status ON runs(status);
CREATE INDEX IF NOT EXISTS idx_files_project_id ON files(project_id);
CREATE INDEX IF NOT EXISTS idx_files_run_id ON files(run_id);
CREATE INDEX IF NOT EXISTS idx_metrics_run_id ON metrics(run_id);
"""


@dataclass(frozen=True)
class DeletedCounts:
    projects: int
    runs: int
    files: int
    metrics: int


class Persistence(Protocol):
    """
    Row storage consumed by the registry and the artifact store.

    update_run_status must be conditional on the expected prior status and
    report whether the row actually changed.
    """

    def insert_project(self, project: Project) -> None: ...

    def get_project(self, project_id: str) -> Optional[Project]: ...

    def list_projects(self) -> list[Project]: ...

    def list_projects_older_than(self, cutoff_iso: str) -> list[Project]: ...

    def update_project(self, project_id: str, fields: dict[str, Any], updated_at: str) -> bool: ...

    def delete_project(self, project_id: str) -> DeletedCounts: ...

    def insert_run(self, run: Run) -> None: ...

    def get_run(self, run_id: str) -> Optional[Run]: ...

    def list_runs(self, project_id: str) -> list[Run]: ...

    def update_run_status(
        self,
        run_id: str,
        expected: RunStatus,
        new: RunStatus,
        *,
        result: Optional[dict[str, Any]] = None,
        error: Optional[str] = None,
        started_at: Optional[str] = None,
        finished_at: Optional[str] = None,
    ) -> bool: ...

    def insert_tracked_file(self, tracked: TrackedFile) -> TrackedFile: ...

    def list_tracked_files_by_project(self, project_id: str) -> list[TrackedFile]: ...

    def insert_metrics(self, metrics: Metrics) -> Metrics: ...

    def get_latest_metrics(self, run_id: str) -> Optional[Metrics]: ...

    def list_metrics_by_project(self, project_id: str) -> list[Metrics]: ...


class SQLitePersistence:
    """
    SQLite-backed persistence.

    One connection shared across threads, serialized by a lock. Foreign keys
    are on, so deleting a project cascades to runs, files and metrics.
    Pass ":memory:" for an ephemeral database.
    """

    _PROJECT_FIELDS = {"name": "name", "design_name": "design_name", "top_module": "top_module"}

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        if self.db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.executescript(SCHEMA)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")

    def _query(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    # ---- projects ----

    def insert_project(self, project: Project) -> None:
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO projects (id, name, design_name, top_module, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    project.project_id,
                    project.name,
                    project.design_name,
                    project.top_module,
                    project.created_at,
                    project.updated_at,
                ),
            )

    def get_project(self, project_id: str) -> Optional[Project]:
        rows = self._query("SELECT * FROM projects WHERE id = ?", (project_id,))
        return _row_to_project(rows[0]) if rows else None

    def list_projects(self) -> list[Project]:
        rows = self._query("SELECT * FROM projects ORDER BY updated_at DESC, id")
        return [_row_to_project(r) for r in rows]

    def list_projects_older_than(self, cutoff_iso: str) -> list[Project]:
        rows = self._query("SELECT * FROM projects WHERE updated_at < ? ORDER BY updated_at ASC", (cutoff_iso,))
        return [_row_to_project(r) for r in rows]

    def update_project(self, project_id: str, fields: dict[str, Any], updated_at: str) -> bool:
        sets: list[str] = []
        values: list[Any] = []
        for key, value in fields.items():
            column = self._PROJECT_FIELDS.get(key)
            if column is None:
                raise ValueError(f"Unknown project field: {key}")
            sets.append(f"{column} = ?")
            values.append(value)
        sets.append("updated_at = ?")
        values.append(updated_at)
        values.append(project_id)
        with self._tx() as conn:
            cur = conn.execute(f"UPDATE projects SET {', '.join(sets)} WHERE id = ?", tuple(values))
            return cur.rowcount > 0

    def delete_project(self, project_id: str) -> DeletedCounts:
        with self._tx() as conn:
            runs = conn.execute("SELECT COUNT(*) FROM runs WHERE project_id = ?", (project_id,)).fetchone()[0]
            files = conn.execute("SELECT COUNT(*) FROM files WHERE project_id = ?", (project_id,)).fetchone()[0]
            metrics = conn.execute(
                "SELECT COUNT(*) FROM metrics WHERE run_id IN (SELECT id FROM runs WHERE project_id = ?)",
                (project_id,),
            ).fetchone()[0]
            cur = conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
            return DeletedCounts(projects=cur.rowcount, runs=runs, files=files, metrics=metrics)

    # ---- runs ----

    def insert_run(self, run: Run) -> None:
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO runs (id, project_id, kind, status, config, result, error, parent_run_id, "
                "created_at, started_at, finished_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    run.run_id,
                    run.project_id,
                    run.kind.value,
                    run.status.value,
                    dumps_or_none(run.config),
                    dumps_or_none(run.result),
                    run.error,
                    run.parent_run_id,
                    run.created_at,
                    run.started_at,
                    run.finished_at,
                ),
            )

    def get_run(self, run_id: str) -> Optional[Run]:
        rows = self._query("SELECT * FROM runs WHERE id = ?", (run_id,))
        return _row_to_run(rows[0]) if rows else None

    def list_runs(self, project_id: str) -> list[Run]:
        rows = self._query("SELECT * FROM runs WHERE project_id = ? ORDER BY created_at DESC, id", (project_id,))
        return [_row_to_run(r) for r in rows]

    def update_run_status(
        self,
        run_id: str,
        expected: RunStatus,
        new: RunStatus,
        *,
        result: Optional[dict[str, Any]] = None,
        error: Optional[str] = None,
        started_at: Optional[str] = None,
        finished_at: Optional[str] = None,
    ) -> bool:
        # Compare-and-swap: the WHERE clause carries the expected prior status.
        with self._tx() as conn:
            cur = conn.execute(
                "UPDATE runs SET status = ?, "
                "result = COALESCE(?, result), error = COALESCE(?, error), "
                "started_at = COALESCE(?, started_at), finished_at = COALESCE(?, finished_at) "
                "WHERE id = ? AND status = ?",
                (new.value, dumps_or_none(result), error, started_at, finished_at, run_id, expected.value),
            )
            return cur.rowcount == 1

    # ---- files ----

    def insert_tracked_file(self, tracked: TrackedFile) -> TrackedFile:
        with self._tx() as conn:
            cur = conn.execute(
                "INSERT INTO files (project_id, run_id, category, path, created_at) VALUES (?, ?, ?, ?, ?)",
                (tracked.project_id, tracked.run_id, tracked.category.value, tracked.path, tracked.created_at),
            )
            return tracked.model_copy(update={"file_id": int(cur.lastrowid)})

    def list_tracked_files_by_project(self, project_id: str) -> list[TrackedFile]:
        rows = self._query("SELECT * FROM files WHERE project_id = ? ORDER BY created_at DESC, id DESC", (project_id,))
        return [_row_to_file(r) for r in rows]

    # ---- metrics ----

    def insert_metrics(self, metrics: Metrics) -> Metrics:
        with self._tx() as conn:
            cur = conn.execute(
                "INSERT INTO metrics (run_id, payload, created_at) VALUES (?, ?, ?)",
                (metrics.run_id, json.dumps(metrics.payload, sort_keys=True), metrics.created_at),
            )
            return metrics.model_copy(update={"metrics_id": int(cur.lastrowid)})

    def get_latest_metrics(self, run_id: str) -> Optional[Metrics]:
        rows = self._query(
            "SELECT * FROM metrics WHERE run_id = ? ORDER BY created_at DESC, id DESC LIMIT 1", (run_id,)
        )
        return _row_to_metrics(rows[0]) if rows else None

    def list_metrics_by_project(self, project_id: str) -> list[Metrics]:
        rows = self._query(
            "SELECT m.* FROM metrics m JOIN runs r ON m.run_id = r.id "
            "WHERE r.project_id = ? ORDER BY m.created_at DESC, m.id DESC",
            (project_id,),
        )
        return [_row_to_metrics(r) for r in rows]


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        project_id=row["id"],
        name=row["name"],
        design_name=row["design_name"],
        top_module=row["top_module"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_run(row: sqlite3.Row) -> Run:
    return Run(
        run_id=row["id"],
        project_id=row["project_id"],
        kind=RunKind(row["kind"]),
        status=RunStatus(row["status"]),
        config=loads_or_none(row["config"]) or {},
        result=loads_or_none(row["result"]),
        error=row["error"],
        parent_run_id=row["parent_run_id"],
        created_at=row["created_at"],
        started_at=row["started_at"],
        finished_at=row["finished_at"],
    )


def _row_to_file(row: sqlite3.Row) -> TrackedFile:
    return TrackedFile(
        file_id=row["id"],
        project_id=row["project_id"],
        run_id=row["run_id"],
        category=FileCategory(row["category"]),
        path=row["path"],
        created_at=row["created_at"],
    )


def _row_to_metrics(row: sqlite3.Row) -> Metrics:
    return Metrics(
        metrics_id=row["id"],
        run_id=row["run_id"],
        payload=json.loads(row["payload"]),
        created_at=row["created_at"],
    )
