from __future__ import annotations

import json
from pathlib import Path

import pytest

from drg_profile.cpu_profile import prereqs
from drg_profile.cpu_profile.__main__ import build_parser, main
from drg_profile.cpu_profile.config import build_config


def _source(tmp_path: Path) -> Path:
    src = tmp_path / "drg-attacks"
    src.mkdir()
    (src / "Cargo.toml").write_text('[package]\nname = "drg-attacks"\n')
    return src


def test_parser_requires_subcommand() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_check_passes_with_tools_on_path(fake_bin: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    src = _source(tmp_path)
    rc = main(["check", "--source-dir", str(src), "--prefix", str(tmp_path / "prefix")])
    out = capsys.readouterr().out
    assert rc == 0
    assert "PASS rustup_available" in out
    assert "PASS cargo_project" in out


def test_check_reports_missing_project(fake_bin: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    rc = main(["check", "--source-dir", str(tmp_path / "nowhere"), "--prefix", str(tmp_path / "prefix")])
    captured = capsys.readouterr()
    assert rc == 2
    assert "FAIL cargo_project" in captured.out
    assert "Missing prerequisites:" in captured.err


def test_out_of_range_size_is_a_config_error(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    rc = main(["run", "--source-dir", str(tmp_path), "--size", "50"])
    assert rc == 2
    assert "workload/size" in capsys.readouterr().err


def test_bad_config_file_is_a_config_error(tmp_path: Path) -> None:
    cfg = tmp_path / "profile.json"
    cfg.write_text('{"feature": ""}')
    assert main(["provision", "--config", str(cfg)]) == 2


def test_run_from_config_file(
    fake_bin: Path,
    archive_dir: Path,
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    src = _source(tmp_path)
    prefix = tmp_path / "prefix"
    monkeypatch.setenv("FAKE_PROFILER_LIB_DIR", str(prefix / "lib"))
    template = f"file://{archive_dir}/{{name}}-{{version}}.tar.gz"
    cfg = tmp_path / "profile.json"
    cfg.write_text(
        json.dumps(
            {
                "unwinder": {"url_template": template},
                "profiler": {"url_template": template},
                "downloads_dir": str(tmp_path / "downloads"),
                "install_prefix": str(prefix),
            }
        )
    )
    monkeypatch.setenv("DRG_PROFILE_CONFIG", str(cfg))

    rc = main(["run", "--source-dir", str(src), "--run-id", "cli", "--algorithm", "greedy", "--size", "12"])

    assert rc == 0
    assert (src / "profile-abc1234.dot").is_file()
    assert (src / "greedy.profile").read_text().strip() == "samples:-k 12 greedy"
    meta = json.loads((src / "tmp" / "cpu_profile" / "cli" / "metadata.json").read_text())
    assert meta["config"]["workload"]["size"] == 12
    assert meta["config"]["install_prefix"] == str(prefix.resolve())


def test_check_all_with_skip_provision_requires_installed_profiler(fake_bin: Path, tmp_path: Path) -> None:
    src = _source(tmp_path)
    cfg = build_config({"source_dir": str(src), "install_prefix": str(tmp_path / "prefix"), "skip_provision": True}, env={})

    checks = {c.check_name: c for c in prereqs.check_all(cfg)}

    assert checks["profiler_installed"].status == "fail"
    assert "make_available" not in checks
    assert checks["renderer_available"].status == "pass"

    lib = tmp_path / "prefix" / "lib"
    lib.mkdir(parents=True)
    (lib / "libprofiler.so.0").touch()
    assert prereqs.check_profiler_installed(cfg).status == "pass"


def test_renderer_deferred_until_provisioned(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PATH", str(tmp_path))
    cfg = build_config({"source_dir": str(tmp_path), "install_prefix": str(tmp_path / "prefix")}, env={})
    assert prereqs.check_renderer(cfg).status == "pass"

    skip = build_config(
        {"source_dir": str(tmp_path), "install_prefix": str(tmp_path / "prefix"), "skip_provision": True}, env={}
    )
    assert prereqs.check_renderer(skip).status == "fail"
