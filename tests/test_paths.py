from __future__ import annotations

import os

import pytest

from eda_engine.errors import OutOfBounds
from eda_engine.paths import PathTranslator


def test_host_and_container_paths_map_both_ways() -> None:
    t = PathTranslator("/data/projects")

    assert t.to_internal("/data/projects/p1/src/counter.v") == "/workspace/projects/p1/src/counter.v"
    assert t.to_external("/workspace/projects/p1/src/counter.v") == os.path.join(
        "/data/projects", "p1", "src", "counter.v"
    )


def test_roots_map_to_each_other() -> None:
    t = PathTranslator("/data/projects/")

    assert t.external_root == "/data/projects"
    assert t.to_internal("/data/projects") == "/workspace/projects"
    assert t.to_external("/workspace/projects") == "/data/projects"


@pytest.mark.parametrize(
    "path",
    [
        "/data/projects2/p1/x.v",
        "/data/projects/../etc/passwd",
        "/etc/passwd",
        "/data",
    ],
)
def test_host_paths_outside_root_are_rejected(path: str) -> None:
    with pytest.raises(OutOfBounds):
        PathTranslator("/data/projects").to_internal(path)


@pytest.mark.parametrize(
    "path",
    [
        "/workspace/projects/../secret",
        "/workspace/projectsX/p1",
        "/foss/pdks/sky130A",
        "workspace/projects/p1",
    ],
)
def test_container_paths_outside_root_are_rejected(path: str) -> None:
    with pytest.raises(OutOfBounds):
        PathTranslator("/data/projects").to_external(path)


def test_out_of_bounds_is_a_value_error() -> None:
    with pytest.raises(ValueError) as ei:
        PathTranslator("/data/projects").to_internal("/tmp/x")
    assert "not within the projects directory" in str(ei.value)


def test_internal_path_heuristic() -> None:
    t = PathTranslator("/data/projects")

    assert t.is_internal_path("/workspace/projects/p1/src/a.v")
    assert t.is_internal_path("/foss/designs/top.v")
    assert not t.is_internal_path("/data/projects/p1/src/a.v")
    assert not t.is_internal_path("/workspacefoo/a.v")


def test_project_file_paths_cannot_escape_the_project() -> None:
    t = PathTranslator("/data/projects")

    assert t.file_internal_path("p1", "src/counter.v") == "/workspace/projects/p1/src/counter.v"
    with pytest.raises(OutOfBounds):
        t.file_external_path("p1", "../p2/src/a.v")
    with pytest.raises(OutOfBounds):
        t.project_external_path("../p2")
    with pytest.raises(OutOfBounds):
        t.project_internal_path("a/b")
