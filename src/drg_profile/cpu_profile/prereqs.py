from __future__ import annotations

import os
import shutil
from pathlib import Path

from . import paths
from .model import PipelineConfig, PrerequisiteCheck


def check_command(name: str, *, hint: str) -> PrerequisiteCheck:
    if shutil.which(name) is not None:
        return PrerequisiteCheck(check_name=f"{name}_available", status="pass")
    return PrerequisiteCheck(check_name=f"{name}_available", status="fail", details=hint)


def check_cargo_project(source_dir: Path) -> PrerequisiteCheck:
    if (source_dir / "Cargo.toml").is_file():
        return PrerequisiteCheck(check_name="cargo_project", status="pass")
    return PrerequisiteCheck(
        check_name="cargo_project",
        status="fail",
        details=f"No Cargo.toml in {source_dir} (pass --source-dir)",
    )


def check_renderer(cfg: PipelineConfig) -> PrerequisiteCheck:
    """The renderer ships with gperftools, so it may only appear after provisioning."""
    if shutil.which(cfg.renderer) is not None or (cfg.install_prefix / "bin" / cfg.renderer).exists():
        return PrerequisiteCheck(check_name="renderer_available", status="pass")
    if not cfg.skip_provision:
        return PrerequisiteCheck(
            check_name="renderer_available",
            status="pass",
            details=f"{cfg.renderer} will be installed with {cfg.profiler.dirname}",
        )
    return PrerequisiteCheck(
        check_name="renderer_available",
        status="fail",
        details=f"{cfg.renderer} not found on PATH or in {cfg.install_prefix / 'bin'}",
    )


def check_prefix_writable(prefix: Path) -> PrerequisiteCheck:
    target = prefix if prefix.exists() else prefix.parent
    if os.access(target, os.W_OK):
        return PrerequisiteCheck(check_name="install_prefix_writable", status="pass")
    return PrerequisiteCheck(
        check_name="install_prefix_writable",
        status="fail",
        details=f"{target} is not writable (run as root or pass --prefix)",
    )


def check_profiler_installed(cfg: PipelineConfig) -> PrerequisiteCheck:
    libs = paths.installed_libraries(lib_dir=cfg.library_dir, library=cfg.profiler.library)
    if libs:
        return PrerequisiteCheck(check_name="profiler_installed", status="pass", details=str(libs[0]))
    return PrerequisiteCheck(
        check_name="profiler_installed",
        status="fail",
        details=f"lib{cfg.profiler.library}.so not in {cfg.library_dir} (run the `provision` command)",
    )


def check_all(cfg: PipelineConfig) -> list[PrerequisiteCheck]:
    checks = [
        check_command("rustup", hint="Install rustup: https://rustup.rs"),
        check_command("cargo", hint="Install a Rust toolchain with rustup"),
        check_command("git", hint="Install git (used to label outputs by revision)"),
        check_cargo_project(cfg.source_dir),
        check_renderer(cfg),
    ]
    if cfg.skip_provision:
        checks.append(check_profiler_installed(cfg))
    else:
        checks += [
            check_command("make", hint="Install make and a C/C++ compiler to build libunwind and gperftools"),
            check_prefix_writable(cfg.install_prefix),
        ]
    return checks


def format_prereq_failures(checks: list[PrerequisiteCheck]) -> str:
    lines: list[str] = ["Missing prerequisites:"]
    for c in checks:
        if c.status != "fail":
            continue
        hint = f" - {c.details}" if c.details else ""
        lines.append(f"- {c.check_name}{hint}")
    return "\n".join(lines)
