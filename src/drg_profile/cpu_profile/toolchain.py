from __future__ import annotations

import logging
import shutil

import attrs

from .errors import ToolchainError
from .model import StageContext, StageOutcome
from .proc import run_logged

LOGGER = logging.getLogger(__name__)

TOOLCHAIN_ENV_VAR = "RUSTUP_TOOLCHAIN"


def select_toolchain(ctx: StageContext) -> StageOutcome:
    """Activate the configured rustup channel for every later stage.

    Selection is expressed as `RUSTUP_TOOLCHAIN=<channel>` in the stage context
    env rather than `rustup default`, so it never leaks outside this pipeline.
    """
    cfg = ctx.config
    channel = cfg.toolchain_channel
    log_path = ctx.log_path("toolchain")
    timeout = cfg.timeouts.toolchain
    env = ctx.stage_env()

    rustup = shutil.which("rustup", path=env.get("PATH"))
    if rustup is None:
        raise ToolchainError("rustup not found on PATH (required to select the toolchain channel)")

    commands: list[str] = []
    if cfg.install_toolchain:
        install = run_logged(
            [rustup, "toolchain", "install", channel, "--profile", "minimal"],
            stage="toolchain",
            env=env,
            timeout=timeout,
            log_path=log_path,
        )
        commands.append(install.rendered)
        if not install.ok:
            raise ToolchainError(f"Failed to install toolchain '{channel}'", output=install.output)

    probe = run_logged(
        [rustup, "run", channel, "rustc", "--version"],
        stage="toolchain",
        env=env,
        timeout=timeout,
        log_path=log_path,
    )
    commands.append(probe.rendered)
    if not probe.ok:
        hint = "" if cfg.install_toolchain else f" (install it with `rustup toolchain install {channel}` or pass --install-toolchain)"
        raise ToolchainError(f"Toolchain '{channel}' is not installed or cannot be activated{hint}", output=probe.output)

    version = probe.output.strip().splitlines()[0] if probe.output.strip() else channel
    LOGGER.info(f"Using toolchain `{channel}`: {version}")
    new_env = {**ctx.env, TOOLCHAIN_ENV_VAR: channel}
    return StageOutcome(context=attrs.evolve(ctx, env=new_env), commands=commands, details=version)
