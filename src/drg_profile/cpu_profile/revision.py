from __future__ import annotations

import logging
import re
import shutil
import subprocess
from collections.abc import Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import attrs

from .errors import RevisionError, StageTimeoutError
from .model import StageContext, StageOutcome
from .proc import run_capture

LOGGER = logging.getLogger(__name__)

_SHORT_REV_RE = re.compile(r"^[0-9a-f]{4,40}$")


def resolve_revision(source_dir: Path, *, env: Mapping[str, str] | None = None, timeout: float | None = None) -> str:
    """Return the abbreviated commit hash of HEAD in `source_dir`."""
    git = shutil.which("git", path=(env or {}).get("PATH"))
    if git is None:
        raise RevisionError("git not found on PATH")
    argv = [git, "rev-parse", "--short", "HEAD"]
    try:
        proc = subprocess.run(
            argv,
            cwd=source_dir,
            env=dict(env) if env is not None else None,
            capture_output=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        raise StageTimeoutError("tag", timeout or 0.0) from e
    except OSError as e:
        raise RevisionError(f"Failed to run {argv[0]} in {source_dir}", output=str(e)) from e

    out = proc.stdout.decode(errors="replace").strip()
    if proc.returncode != 0:
        raise RevisionError(
            f"{source_dir} is not inside a git work tree",
            output=proc.stderr.decode(errors="replace"),
        )
    if not _SHORT_REV_RE.fullmatch(out):
        raise RevisionError(f"Unexpected revision id from git: {out!r}")
    return out


def fallback_label(now: datetime | None = None) -> str:
    """Label used when no revision can be resolved; unique per second."""
    now = now or datetime.now(timezone.utc)
    return "unversioned-" + now.strftime("%Y%m%dT%H%M%SZ")


def git_state(source_dir: Path, *, timeout: float | None = None) -> dict[str, Any]:
    """Best-effort git snapshot (branch/commit/dirty) for run metadata."""
    commit = run_capture(["git", "rev-parse", "HEAD"], cwd=source_dir, timeout=timeout)
    branch = run_capture(["git", "rev-parse", "--abbrev-ref", "HEAD"], cwd=source_dir, timeout=timeout)
    if not commit or not branch:
        return {"branch": "unknown", "commit": "unknown", "dirty": False}
    dirty = run_capture(["git", "status", "--porcelain=v1"], cwd=source_dir, timeout=timeout)
    return {"branch": branch, "commit": commit, "dirty": bool(dirty)}


def tag_revision(ctx: StageContext) -> StageOutcome:
    """Resolve the output label; a missing revision degrades naming, it does not fail."""
    cfg = ctx.config
    try:
        label = resolve_revision(cfg.source_dir, env=ctx.stage_env(), timeout=cfg.timeouts.tag)
        details = f"revision {label}"
    except RevisionError as e:
        label = fallback_label()
        LOGGER.warning(f"Could not resolve source revision ({e}); labelling output as `{label}`")
        details = f"fallback label ({e})"
    return StageOutcome(context=attrs.evolve(ctx, label=label), commands=["git rev-parse --short HEAD"], details=details)
