from __future__ import annotations

from pathlib import Path

import pytest

from drg_profile.cpu_profile import artifacts, paths


def test_sanitize_run_id_filesystem_safe() -> None:
    assert paths.sanitize_run_id("hello world") == "hello-world"
    assert paths.sanitize_run_id("  2026-02-03T00:00:00Z  ") == "2026-02-03T00-00-00Z"


def test_sanitize_run_id_rejects_empty() -> None:
    with pytest.raises(ValueError):
        paths.sanitize_run_id("   ")
    with pytest.raises(ValueError):
        paths.sanitize_run_id("///")


def test_run_artifacts_dir_under_tmp() -> None:
    p = paths.run_artifacts_dir(work_dir=Path("/tmp/fake-drg"), run_id="r1")
    assert str(p).endswith("/tmp/fake-drg/tmp/cpu_profile/r1")


def test_downloads_dir_follows_home() -> None:
    assert paths.downloads_dir({"HOME": "/home/alice"}) == Path("/home/alice/downloads")


def test_release_binary_default_target_dir() -> None:
    src = Path("/src/drg-attacks")
    assert paths.release_binary(source_dir=src, binary_name="drg-attacks", env={}) == src / "target/release/drg-attacks"


def test_release_binary_honours_cargo_target_dir() -> None:
    src = Path("/src/drg-attacks")
    env = {"CARGO_TARGET_DIR": "/cache/target"}
    assert paths.release_binary(source_dir=src, binary_name="drg-attacks", env=env) == Path(
        "/cache/target/release/drg-attacks"
    )
    rel = {"CARGO_TARGET_DIR": "out"}
    assert paths.target_dir(source_dir=src, env=rel) == src / "out"


def test_graph_output_path_is_labelled() -> None:
    work = Path("/work")
    assert paths.graph_output_path(work_dir=work, label="abc1234") == work / "profile-abc1234.dot"
    assert paths.graph_output_path(work_dir=work, label="a/b") == work / "profile-a-b.dot"


def test_installed_libraries(tmp_path: Path) -> None:
    assert paths.installed_libraries(lib_dir=tmp_path / "missing", library="profiler") == []
    (tmp_path / "libprofiler.so.0.4.18").touch()
    (tmp_path / "libprofiler.a").touch()
    (tmp_path / "libunwind.so").touch()
    assert [p.name for p in paths.installed_libraries(lib_dir=tmp_path, library="profiler")] == ["libprofiler.so.0.4.18"]


def test_ensure_new_run_dir_refuses_existing(tmp_path: Path) -> None:
    artifacts.ensure_new_run_dir(tmp_path / "fresh")
    with pytest.raises(FileExistsError):
        artifacts.ensure_new_run_dir(tmp_path)


def test_create_artifact_dirs(tmp_path: Path) -> None:
    dirs = artifacts.create_artifact_dirs(tmp_path / "r1")
    assert dirs["root"] == tmp_path / "r1"
    assert dirs["logs"].is_dir()
    assert artifacts.metadata_path(dirs["root"]) == tmp_path / "r1" / "metadata.json"
