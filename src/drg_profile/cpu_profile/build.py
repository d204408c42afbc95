from __future__ import annotations

import logging
import shutil

import attrs

from . import paths
from .errors import BuildError
from .model import StageContext, StageOutcome
from .proc import run_logged

LOGGER = logging.getLogger(__name__)


def cargo_build_argv(cargo: str, *, feature: str) -> list[str]:
    return [cargo, "build", "--release", "--features", feature]


def build_release(ctx: StageContext) -> StageOutcome:
    """Compile the target in release mode with the instrumentation feature enabled."""
    cfg = ctx.config
    env = ctx.stage_env()

    cargo = shutil.which("cargo", path=env.get("PATH"))
    if cargo is None:
        raise BuildError("cargo not found on PATH")
    if not (cfg.source_dir / "Cargo.toml").is_file():
        raise BuildError(f"No Cargo.toml in source dir: {cfg.source_dir}")

    result = run_logged(
        cargo_build_argv(cargo, feature=cfg.feature),
        stage="build",
        cwd=cfg.source_dir,
        env=env,
        timeout=cfg.timeouts.build,
        log_path=ctx.log_path("build"),
    )
    if not result.ok:
        raise BuildError(f"Build failed with exit code {result.returncode}", output=result.output)

    binary = paths.release_binary(source_dir=cfg.source_dir, binary_name=cfg.binary_name, env=env)
    if not binary.is_file():
        raise BuildError(f"Build succeeded but the release binary is missing: {binary}", output=result.output)

    LOGGER.info(f"Built `{binary}` with feature `{cfg.feature}`")
    return StageOutcome(context=attrs.evolve(ctx, binary=binary), commands=[result.rendered], details=str(binary))
