from __future__ import annotations

import logging
import os
import shutil
import subprocess
from collections.abc import Mapping
from pathlib import Path

import attrs

from . import paths
from .errors import RenderError, StageTimeoutError
from .model import StageContext, StageOutcome

LOGGER = logging.getLogger(__name__)


def renderer_argv(renderer: str, *, binary: Path, profile: Path) -> list[str]:
    return [renderer, "--lines", "--dot", str(binary), str(profile)]


def check_profile_matches_binary(*, binary: Path, profile: Path | None) -> Path:
    """Return the profile path if it exists and is not older than the binary."""
    if profile is None or not profile.is_file():
        raise RenderError(f"Profile not found: {profile} (the workload did not run or wrote no samples)")
    if profile.stat().st_mtime < binary.stat().st_mtime:
        raise RenderError(f"Profile {profile} predates binary {binary}; refusing to render a mismatched pair")
    return profile


def render_graph(
    *,
    renderer: str,
    binary: Path,
    profile: Path | None,
    out_path: Path,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
    log_path: Path | None = None,
) -> str:
    """Render `profile` into a dot graph at `out_path`; return the rendered command."""
    if not binary.is_file():
        raise RenderError(f"Binary not found: {binary}")
    profile = check_profile_matches_binary(binary=binary, profile=profile)

    exe = shutil.which(renderer, path=(env or {}).get("PATH")) or renderer
    argv = renderer_argv(exe, binary=binary, profile=profile)
    rendered = " ".join(argv)
    LOGGER.info(f"Executing `{rendered} > {out_path}`")

    part = out_path.with_name(out_path.name + ".part")
    try:
        with part.open("wb") as f:
            proc = subprocess.run(
                argv,
                env=dict(env) if env is not None else None,
                stdout=f,
                stderr=subprocess.PIPE,
                timeout=timeout,
                check=False,
            )
    except subprocess.TimeoutExpired as e:
        part.unlink(missing_ok=True)
        raise StageTimeoutError("render", timeout or 0.0) from e
    except FileNotFoundError as e:
        part.unlink(missing_ok=True)
        raise RenderError(f"Renderer not found: {renderer}", output=str(e)) from e

    stderr = proc.stderr.decode(errors="replace")
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with log_path.open("a") as f:
            f.write(f"$ {rendered} > {out_path}\n{stderr}[exit {proc.returncode}]\n")

    if proc.returncode != 0:
        part.unlink(missing_ok=True)
        raise RenderError(f"Renderer exited with code {proc.returncode}", output=stderr)

    text = part.read_text(errors="replace")
    if "digraph" not in text or not text.rstrip().endswith("}"):
        part.unlink(missing_ok=True)
        raise RenderError("Renderer produced no call graph (empty or malformed dot output)", output=stderr)

    part.replace(out_path)
    return f"{rendered} > {out_path}"


def render(ctx: StageContext) -> StageOutcome:
    cfg = ctx.config
    if ctx.binary is None:
        raise RenderError("No binary available to resolve symbols")
    label = ctx.label or "unlabelled"
    out_path = paths.graph_output_path(work_dir=cfg.work_dir, label=label)
    env = ctx.stage_env()
    # gperftools installs its renderer next to the libraries.
    search = os.pathsep.join(p for p in (env.get("PATH"), str(cfg.install_prefix / "bin")) if p)
    renderer = shutil.which(cfg.renderer, path=search) or cfg.renderer
    command = render_graph(
        renderer=renderer,
        binary=ctx.binary,
        profile=ctx.profile,
        out_path=out_path,
        env=env,
        timeout=cfg.timeouts.render,
        log_path=ctx.log_path("render"),
    )
    LOGGER.info(f"Wrote call graph `{out_path}`")
    return StageOutcome(context=attrs.evolve(ctx, graph=out_path), commands=[command], details=str(out_path))


def launch_viewer(graph: Path, *, viewer: str = "xdot") -> subprocess.Popen[bytes] | None:
    """Open the rendered graph in a viewer without waiting for it.

    Returns the viewer process (in its own session) or None when the viewer is missing.
    """
    exe = shutil.which(viewer)
    if exe is None:
        LOGGER.warning(f"{viewer} not found on PATH; open {graph} manually")
        return None
    return subprocess.Popen(
        [exe, str(graph)], stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, start_new_session=True
    )
