from __future__ import annotations

import os
import posixpath
from pathlib import Path

from .config import CONTAINER_PROJECTS_DIR
from .errors import OutOfBounds
from .utils import is_path_segment

# Prefixes that only exist inside the tool container. Used by is_internal_path
# to guess where a caller-supplied path comes from; not a safety check.
INTERNAL_PREFIXES: tuple[str, ...] = ("/workspace", "/foss")


class PathTranslator:
    """
    Maps paths between the host-visible projects tree and the container's
    mount of the same tree.

      host:      <external_root>/<project_id>/src/design.v
      container: /workspace/projects/<project_id>/src/design.v

    Containment is checked lexically (component-wise) on canonical paths.
    Symlinks are not resolved.
    """

    def __init__(self, external_root: str | Path, internal_root: str = CONTAINER_PROJECTS_DIR) -> None:
        self._external_root = os.path.abspath(os.fspath(external_root))
        internal = posixpath.normpath(internal_root)
        if not internal.startswith("/"):
            raise ValueError(f"internal root must be absolute: {internal_root!r}")
        self._internal_root = internal

    @property
    def external_root(self) -> str:
        return self._external_root

    @property
    def internal_root(self) -> str:
        return self._internal_root

    def to_internal(self, external_path: str | Path) -> str:
        """Host path -> container path. Raises OutOfBounds outside the external root."""
        canonical = os.path.abspath(os.fspath(external_path))
        if not _contains(self._external_root, canonical, os.path):
            raise OutOfBounds(f"Path {external_path} is not within the projects directory {self._external_root}")

        rel = os.path.relpath(canonical, self._external_root)
        if rel == os.curdir:
            return self._internal_root
        return posixpath.join(self._internal_root, *rel.split(os.sep))

    def to_external(self, internal_path: str) -> str:
        """Container path -> host path. Raises OutOfBounds outside the internal root."""
        normalized = posixpath.normpath(internal_path.replace("\\", "/"))
        if not normalized.startswith("/") or not _contains(self._internal_root, normalized, posixpath):
            raise OutOfBounds(
                f"Path {internal_path} is not within the container projects directory {self._internal_root}"
            )

        rel = posixpath.relpath(normalized, self._internal_root)
        if rel == posixpath.curdir:
            return self._external_root
        return os.path.join(self._external_root, *rel.split("/"))

    def is_internal_path(self, path: str) -> bool:
        """Heuristic: does this look like a container path?"""
        p = path.replace("\\", "/")
        if p == self._internal_root or p.startswith(self._internal_root + "/"):
            return True
        return any(p == pre or p.startswith(pre + "/") for pre in INTERNAL_PREFIXES)

    # ---- project helpers ----

    def project_external_path(self, project_id: str) -> str:
        _check_project_id(project_id)
        return os.path.join(self._external_root, project_id)

    def project_internal_path(self, project_id: str) -> str:
        _check_project_id(project_id)
        return f"{self._internal_root}/{project_id}"

    def file_external_path(self, project_id: str, relative: str) -> str:
        """Host path of `relative` inside the project; OutOfBounds when it escapes."""
        base = self.project_external_path(project_id)
        target = os.path.abspath(os.path.join(base, *relative.replace("\\", "/").split("/")))
        if not _contains(base, target, os.path):
            raise OutOfBounds(f"{relative!r} escapes project {project_id}")
        return target

    def file_internal_path(self, project_id: str, relative: str) -> str:
        return self.to_internal(self.file_external_path(project_id, relative))


def _check_project_id(project_id: str) -> None:
    if not is_path_segment(project_id):
        raise OutOfBounds(f"Invalid project id {project_id!r}")


def _contains(root: str, candidate: str, mod) -> bool:  # noqa: ANN001
    if candidate == root:
        return True
    prefix = root if root.endswith(mod.sep) else root + mod.sep
    return candidate.startswith(prefix)
