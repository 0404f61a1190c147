from __future__ import annotations

from pathlib import Path

import pytest

from eda_engine.artifacts import ArtifactStore, detect_category
from eda_engine.models import FileCategory, Project, Run, RunKind, Subarea
from eda_engine.paths import PathTranslator
from eda_engine.persistence import SQLitePersistence


@pytest.fixture
def store(tmp_path: Path) -> ArtifactStore:
    db = SQLitePersistence(":memory:")
    db.insert_project(Project(project_id="p1", name="counter"))
    return ArtifactStore(PathTranslator(tmp_path / "projects"), db)


def test_writing_counter_v_lands_in_src_and_is_tracked(store: ArtifactStore, tmp_path: Path) -> None:
    res = store.write("p1", "counter.v", "module counter; endmodule\n", FileCategory.INPUT)

    assert res.success
    assert res.host_path == str(tmp_path / "projects" / "p1" / "src" / "counter.v")
    assert res.container_path == "/workspace/projects/p1/src/counter.v"
    assert Path(res.host_path).read_text(encoding="utf-8").startswith("module counter")

    tracked = store.persistence.list_tracked_files_by_project("p1")
    assert [(f.path, f.category) for f in tracked] == [("p1/src/counter.v", FileCategory.INPUT)]


def test_write_creates_the_project_layout(store: ArtifactStore) -> None:
    store.write("p1", "config.json", "{}", FileCategory.CONFIG)

    pdir = store.project_dir("p1")
    assert (pdir / "src").is_dir()
    assert (pdir / "output").is_dir()
    assert (pdir / "runs").is_dir()
    assert (pdir / "config.json").is_file()


def test_write_rejects_escaping_filenames(store: ArtifactStore, tmp_path: Path) -> None:
    res = store.write("p1", "../../../evil.v", "x", FileCategory.INPUT)

    assert not res.success
    assert not (tmp_path / "evil.v").exists()
    assert store.persistence.list_tracked_files_by_project("p1") == []


def test_write_with_unencodable_text_is_a_failed_result(store: ArtifactStore) -> None:
    res = store.write("p1", "a.v", "bad \udcff", FileCategory.INPUT)

    assert not res.success
    assert "utf-8" in (res.error or "")
    assert not store.exists("p1", "a.v")
    assert store.persistence.list_tracked_files_by_project("p1") == []


def test_write_with_run_from_another_project_fails(store: ArtifactStore) -> None:
    store.persistence.insert_project(Project(project_id="p2", name="other"))
    store.persistence.insert_run(Run(run_id="r2", project_id="p2", kind=RunKind.SIMULATION))

    res = store.write("p1", "a.v", "x", FileCategory.INPUT, run_id="r2")

    assert not res.success
    assert not store.exists("p1", "a.v")


def test_read_probes_inputs_before_outputs(store: ArtifactStore) -> None:
    store.write("p1", "x.v", "from src", FileCategory.INPUT)
    store.write("p1", "x.v", "from output", FileCategory.OUTPUT)
    store.write("p1", "only_out.txt", "report", FileCategory.REPORT)

    assert store.read("p1", "x.v") == "from src"
    assert store.read("p1", "only_out.txt") == "report"
    assert store.read("p1", "missing.v") is None
    assert store.exists("p1", "only_out.txt")
    assert not store.exists("p1", "missing.v")


def test_read_by_path_accepts_both_namespaces(store: ArtifactStore, tmp_path: Path) -> None:
    res = store.write("p1", "a.v", "module a; endmodule", FileCategory.INPUT)

    assert store.read_by_path(res.container_path) == "module a; endmodule"
    assert store.read_by_path(res.host_path) == "module a; endmodule"
    outside = tmp_path / "outside.v"
    outside.write_text("nope", encoding="utf-8")
    assert store.read_by_path(str(outside)) is None


def test_list_size_and_delete(store: ArtifactStore) -> None:
    store.write("p1", "a.v", "12345", FileCategory.INPUT)
    store.write("p1", "wave.vcd", b"\x00" * 10, FileCategory.WAVEFORM)

    assert store.list("p1") == ["output/wave.vcd", "src/a.v"]
    assert store.list("p1", Subarea.INPUTS) == ["src/a.v"]
    assert store.size("p1") == 15
    assert store.file_size("p1", "output/wave.vcd") == 10

    assert store.delete("p1").success
    assert not store.project_dir("p1").exists()
    assert store.size("p1") == 0
    assert store.list("p1") == []
    # Deleting again is not an error.
    assert store.delete("p1").success


def test_detect_category_by_extension() -> None:
    assert detect_category("top.sv") == FileCategory.INPUT
    assert detect_category("dump.FST") == FileCategory.WAVEFORM
    assert detect_category("chip.gds") == FileCategory.LAYOUT
    assert detect_category("constraint.sdc") == FileCategory.CONSTRAINT
    assert detect_category("unknown.bin") == FileCategory.OUTPUT
