from __future__ import annotations

import hashlib
import json
import shlex
from pathlib import Path
from typing import Any

from mdutils.mdutils import MdUtils  # type: ignore[import-untyped]

from .model import ProfilingRun


def ensure_new_run_dir(artifacts_dir: Path) -> None:
    """Raise FileExistsError if artifacts_dir already exists (prevents overwrites)."""
    if artifacts_dir.exists():
        raise FileExistsError(f"Refusing to overwrite existing run dir: {artifacts_dir}")


def create_artifact_dirs(artifacts_dir: Path) -> dict[str, Path]:
    """Create the run dir and its logs/ subdirectory."""
    artifacts_dir.mkdir(parents=True, exist_ok=False)
    logs_dir = artifacts_dir / "logs"
    logs_dir.mkdir()
    return {"root": artifacts_dir, "logs": logs_dir}


def metadata_path(artifacts_dir: Path) -> Path:
    return artifacts_dir / "metadata.json"


def sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1 << 20), b""):
            h.update(chunk)
    return h.hexdigest()


def write_metadata(path: Path, payload: dict[str, Any]) -> None:
    path.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n")


def write_readme(artifacts_dir: Path, run: ProfilingRun, *, argv: list[str]) -> Path:
    """Write a short human-readable summary of the run next to metadata.json."""
    md = MdUtils(file_name=str(artifacts_dir / "README"), title=f"CPU profile run `{run.run_id}`")
    md.new_paragraph(f"Status: **{run.status}** (state `{run.state}`)")
    if run.failure_stage is not None:
        md.new_paragraph(f"Failed in stage `{run.failure_stage}`: {run.failure_reason}")
    if run.graph_path is not None:
        md.new_paragraph(f"Call graph: `{run.graph_path}` (view with `xdot {shlex.quote(str(run.graph_path))}`)")

    md.new_header(level=1, title="Command")
    md.new_paragraph(f"`{shlex.join(argv)}`")

    md.new_header(level=1, title="Stages")
    rows = ["Stage", "Status", "Duration (s)", "Details"]
    for s in run.stages:
        rows += [s.stage, s.status, f"{s.duration_s:.2f}", (s.details or "").replace("|", "/")]
    md.new_table(columns=4, rows=len(run.stages) + 1, text=rows, text_align="left")

    md.new_header(level=1, title="Outputs")
    md.new_list(
        [
            "`metadata.json`: run record (config, stages, commands, git state)",
            "`logs/<stage>.log`: verbatim tool output per stage",
        ]
    )
    md.create_md_file()
    return artifacts_dir / "README.md"
