from __future__ import annotations

import os
import re
from collections.abc import Mapping
from pathlib import Path


def home_dir(env: Mapping[str, str] | None = None) -> Path:
    env = os.environ if env is None else env
    home = env.get("HOME")
    if home:
        return Path(home).expanduser()
    return Path.home()


def downloads_dir(env: Mapping[str, str] | None = None) -> Path:
    """`${HOME}/downloads`: staging area for source archives and build trees."""
    return home_dir(env) / "downloads"


def sanitize_run_id(run_id: str) -> str:
    """Make run_id filesystem-safe and non-empty."""
    s = run_id.strip()
    if not s:
        raise ValueError("run_id must be non-empty")
    s = re.sub(r"[^A-Za-z0-9_.-]+", "-", s)
    s = s.strip("-")
    if not s:
        raise ValueError("run_id must contain at least one alphanumeric character after sanitization")
    return s


def run_artifacts_dir(*, work_dir: Path, run_id: str) -> Path:
    return (work_dir / "tmp" / "cpu_profile" / sanitize_run_id(run_id)).resolve()


def target_dir(*, source_dir: Path, env: Mapping[str, str]) -> Path:
    override = env.get("CARGO_TARGET_DIR")
    if override:
        p = Path(override).expanduser()
        return p if p.is_absolute() else (source_dir / p)
    return source_dir / "target"


def release_binary(*, source_dir: Path, binary_name: str, env: Mapping[str, str]) -> Path:
    return target_dir(source_dir=source_dir, env=env) / "release" / binary_name


def graph_output_path(*, work_dir: Path, label: str) -> Path:
    return work_dir / f"profile-{sanitize_run_id(label)}.dot"


def installed_libraries(*, lib_dir: Path, library: str) -> list[Path]:
    """Shared objects installed for `library` (e.g. `libprofiler.so`, `libprofiler.so.4`)."""
    if not lib_dir.is_dir():
        return []
    return sorted(p for p in lib_dir.glob(f"lib{library}.so*") if p.exists())
