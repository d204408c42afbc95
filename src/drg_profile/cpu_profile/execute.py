from __future__ import annotations

import logging

import attrs

from .errors import ExecutionError, LinkError
from .model import StageContext, StageOutcome
from .proc import run_logged

LOGGER = logging.getLogger(__name__)

# Emitted by ld.so when a DT_NEEDED library cannot be resolved at process start.
LOADER_ERROR_MARKER = "error while loading shared libraries"


def check_library_path(ctx: StageContext) -> None:
    """Raise LinkError unless the profiler's install dir is on the search path."""
    lib_dir = ctx.config.library_dir
    if not ctx.library_path.contains(lib_dir):
        searched = ctx.library_path.render() or "<empty>"
        raise LinkError(
            f"Library search path does not include the profiler install dir {lib_dir} "
            f"(LD_LIBRARY_PATH={searched}); libprofiler would fail to load"
        )


def run_workload(ctx: StageContext) -> StageOutcome:
    """Run the instrumented binary so it writes the profile in the work dir."""
    cfg = ctx.config
    if ctx.binary is None or not ctx.binary.is_file():
        raise ExecutionError(f"Release binary not available: {ctx.binary}")

    profile = cfg.work_dir / cfg.workload.profile_name
    if profile.exists():
        # A leftover profile from an earlier run must never reach the renderer.
        LOGGER.info(f"Removing stale profile `{profile}`")
        profile.unlink()

    check_library_path(ctx)

    cfg.work_dir.mkdir(parents=True, exist_ok=True)
    result = run_logged(
        cfg.workload.argv(ctx.binary),
        stage="execute",
        cwd=cfg.work_dir,
        env=ctx.stage_env(),
        timeout=cfg.timeouts.execute,
        log_path=ctx.log_path("execute"),
    )
    if not result.ok:
        if LOADER_ERROR_MARKER in result.output:
            raise LinkError("Dynamic linking failed at process start", output=result.output)
        if result.returncode < 0:
            raise ExecutionError(f"Workload crashed (signal {-result.returncode})", output=result.output)
        raise ExecutionError(f"Workload exited with code {result.returncode}", output=result.output)

    if not profile.is_file():
        raise ExecutionError(
            f"Workload finished but wrote no profile at {profile} (was the binary built with the profiling feature?)",
            output=result.output,
        )

    LOGGER.info(f"Captured profile `{profile}` ({profile.stat().st_size} bytes)")
    return StageOutcome(context=attrs.evolve(ctx, profile=profile), commands=[result.rendered], details=str(profile))
