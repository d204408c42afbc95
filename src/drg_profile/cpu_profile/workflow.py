from __future__ import annotations

import contextlib
import logging
import os
import sys
import time
from collections.abc import Callable, Iterator, Sequence
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import attrs

from . import artifacts, build, execute, paths, provision, render, revision, toolchain
from .errors import (
    BuildError,
    ExecutionError,
    PipelineError,
    ProvisionError,
    RenderError,
    RevisionError,
    StageTimeoutError,
    ToolchainError,
)
from .model import (
    STAGE_ORDER,
    LibrarySearchPath,
    PipelineConfig,
    PipelineState,
    ProfilingRun,
    StageContext,
    StageName,
    StageOutcome,
    StageRecord,
)

LOGGER = logging.getLogger(__name__)

StageFn = Callable[[StageContext], StageOutcome]

STAGES: tuple[tuple[StageName, StageFn], ...] = (
    ("provision", provision.provision),
    ("toolchain", toolchain.select_toolchain),
    ("build", build.build_release),
    ("execute", execute.run_workload),
    ("tag", revision.tag_revision),
    ("render", render.render),
)

STAGE_ERRORS: dict[StageName, type[PipelineError]] = {
    "provision": ProvisionError,
    "toolchain": ToolchainError,
    "build": BuildError,
    "execute": ExecutionError,
    "tag": RevisionError,
    "render": RenderError,
}


@attrs.define(frozen=True, slots=True)
class PipelineOutcome:
    state: PipelineState
    context: StageContext
    records: list[StageRecord]
    error: PipelineError | None = None

    @property
    def ok(self) -> bool:
        return self.state == "done"


def _now_rfc3339() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def _default_run_id() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%SZ")


def next_state(
    current: PipelineState, *, succeeded: bool, order: Sequence[StageName] = STAGE_ORDER
) -> PipelineState:
    """Transition of the fail-fast stage machine."""
    if current in ("done", "failed"):
        raise ValueError(f"No transition out of terminal state '{current}'")
    if not succeeded:
        return "failed"
    idx = list(order).index(current)
    return order[idx + 1] if idx + 1 < len(order) else "done"


@contextlib.contextmanager
def _section(name: str) -> Iterator[list[float]]:
    elapsed: list[float] = [0.0]
    start = time.monotonic()
    ok = False
    LOGGER.info(f"Stage `{name}` starts")
    try:
        yield elapsed
        ok = True
    finally:
        elapsed[0] = time.monotonic() - start
        LOGGER.info(f"Stage `{name}` ended: {'OK' if ok else 'FAIL'} ({elapsed[0]:.2f}s)")


def initial_context(config: PipelineConfig, *, logs_dir: Path, env: dict[str, str] | None = None) -> StageContext:
    env = dict(os.environ) if env is None else dict(env)
    return StageContext(
        config=config,
        env=env,
        library_path=LibrarySearchPath.from_env(env),
        logs_dir=logs_dir,
    )


def run_stages(ctx: StageContext, stages: Sequence[tuple[StageName, StageFn]] = STAGES) -> PipelineOutcome:
    """Drive the stage machine until `done` or `failed`.

    Each stage only runs when its predecessor succeeded; the first PipelineError
    ends the run. An OSError escaping a stage is reported as that stage's error.
    """
    fns = dict(stages)
    order = [name for name, _ in stages]
    state: PipelineState = order[0]
    records: list[StageRecord] = []
    while state not in ("done", "failed"):
        stage: StageName = state  # type: ignore[assignment]
        try:
            with _section(stage) as elapsed:
                outcome = fns[stage](ctx)
        except (PipelineError, OSError) as e:
            err = e if isinstance(e, PipelineError) else _wrap_os_error(stage, e)
            records.append(StageRecord(stage=stage, status="fail", duration_s=elapsed[0], details=str(err)))
            failed = next_state(state, succeeded=False, order=order)
            return PipelineOutcome(state=failed, context=ctx, records=records, error=err)
        ctx = outcome.context
        records.append(
            StageRecord(
                stage=stage,
                status="skipped" if outcome.details == "skipped" else "pass",
                duration_s=elapsed[0],
                commands=outcome.commands,
                details=outcome.details,
            )
        )
        state = next_state(state, succeeded=True, order=order)
    return PipelineOutcome(state=state, context=ctx, records=records)


def _wrap_os_error(stage: StageName, error: OSError) -> PipelineError:
    cls = STAGE_ERRORS.get(stage, PipelineError)
    wrapped = cls(f"Stage '{stage}' failed: {error}", output=str(error))
    wrapped.__cause__ = error
    return wrapped


def _failure_reason(error: PipelineError) -> str:
    if isinstance(error, StageTimeoutError):
        return f"timeout: {error}"
    return f"{type(error).__name__}: {error}"


def report_failure(error: PipelineError) -> None:
    """Print the failure and the tool's verbatim output to stderr."""
    print(f"[{error.stage}] {type(error).__name__}: {error}", file=sys.stderr)
    if error.output:
        print(error.output.rstrip(), file=sys.stderr)


def run(
    config: PipelineConfig,
    *,
    run_id: str | None = None,
    argv: list[str] | None = None,
    stages: Sequence[tuple[StageName, StageFn]] = STAGES,
) -> int:
    """Run the full profiling pipeline; return the process exit code.

    Always attempts to write `metadata.json` in the per-run artifacts dir.
    """
    chosen_run_id = run_id or _default_run_id()
    try:
        artifacts_dir = paths.run_artifacts_dir(work_dir=config.work_dir, run_id=chosen_run_id)
        artifacts.ensure_new_run_dir(artifacts_dir)
        dirs = artifacts.create_artifact_dirs(artifacts_dir)
    except (FileExistsError, ValueError) as e:
        print(str(e), file=sys.stderr)
        return 2
    except OSError as e:
        print(f"Failed to create run dir: {e}", file=sys.stderr)
        return 2

    run_meta = ProfilingRun(
        run_id=paths.sanitize_run_id(chosen_run_id),
        started_at=_now_rfc3339(),
        finished_at=None,
        state=STAGE_ORDER[0],
        status="fail",
        failure_stage=None,
        failure_reason=None,
        artifacts_dir=artifacts_dir,
        git=revision.git_state(config.source_dir, timeout=config.timeouts.tag),
    )
    outputs: dict[str, Any] = {}
    exit_code = 1
    try:
        outcome = run_stages(initial_context(config, logs_dir=dirs["logs"]), stages)
        run_meta = attrs.evolve(
            run_meta,
            state=outcome.state,
            stages=outcome.records,
            label=outcome.context.label,
            graph_path=outcome.context.graph,
        )
        if outcome.error is not None:
            report_failure(outcome.error)
            run_meta = attrs.evolve(
                run_meta,
                status="fail",
                failure_stage=outcome.records[-1].stage,
                failure_reason=_failure_reason(outcome.error),
            )
            exit_code = 1
        else:
            run_meta = attrs.evolve(run_meta, status="pass")
            exit_code = 0

        ctx = outcome.context
        if ctx.binary is not None and ctx.binary.is_file():
            outputs["binary"] = {"path": str(ctx.binary), "sha256": artifacts.sha256_file(ctx.binary)}
        if ctx.profile is not None and ctx.profile.is_file():
            outputs["profile"] = {"path": str(ctx.profile), "sha256": artifacts.sha256_file(ctx.profile)}
        if ctx.graph is not None and ctx.graph.is_file():
            outputs["graph"] = {"path": str(ctx.graph), "sha256": artifacts.sha256_file(ctx.graph)}
            print(f"Call graph: {ctx.graph}")
            if config.view:
                viewer = render.launch_viewer(ctx.graph)
                if viewer is not None:
                    LOGGER.info(f"Opened `{ctx.graph}` in viewer (pid {viewer.pid})")
    except Exception as e:
        print(f"Unexpected error: {e}", file=sys.stderr)
        run_meta = attrs.evolve(run_meta, state="failed", status="fail", failure_reason=f"unexpected: {e}")
        exit_code = 1
    finally:
        run_meta = attrs.evolve(run_meta, finished_at=_now_rfc3339())
        payload: dict[str, Any] = {
            "profiling_run": run_meta.to_dict(),
            "config": config.to_dict(),
            "outputs": outputs,
        }
        try:
            artifacts.write_metadata(artifacts.metadata_path(artifacts_dir), payload)
            artifacts.write_readme(artifacts_dir, run_meta, argv=argv or sys.argv)
        except OSError as e:
            print(f"Failed to write metadata: {e}", file=sys.stderr)
            return 2

    return exit_code


def provision_only(config: PipelineConfig) -> int:
    """Run just the provisioning stage (no run dir; logs go to the downloads dir)."""
    ctx = initial_context(config, logs_dir=config.downloads_dir / "logs")
    outcome = run_stages(ctx, [("provision", provision.provision)])
    if outcome.error is not None:
        report_failure(outcome.error)
        return 1
    print(f"Installed into {config.install_prefix}; add {config.library_dir} to LD_LIBRARY_PATH")
    return 0
