from __future__ import annotations

import logging
import shlex
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path

import attrs

from .errors import StageTimeoutError

LOGGER = logging.getLogger(__name__)


@attrs.define(frozen=True, slots=True)
class CommandResult:
    argv: list[str]
    returncode: int
    output: str

    @property
    def rendered(self) -> str:
        return shlex.join(self.argv)

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def run_logged(
    argv: Sequence[str | Path],
    *,
    stage: str,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
    log_path: Path | None = None,
) -> CommandResult:
    """Run a command, capturing combined stdout/stderr verbatim.

    The captured output is appended to `log_path` when given. A missing
    executable is reported as returncode 127, the same as a shell would.
    """
    args = [str(a) for a in argv]
    rendered = shlex.join(args)
    LOGGER.info(f"Executing `{rendered}`" + (f" in `{cwd}`" if cwd is not None else ""))
    try:
        proc = subprocess.run(
            args,
            cwd=cwd,
            env=dict(env) if env is not None else None,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        partial = _decode(e.output)
        _append_log(log_path, rendered, partial, returncode=None)
        raise StageTimeoutError(stage, timeout or 0.0, output=partial) from e
    except FileNotFoundError as e:
        output = f"{e.strerror}: {args[0]}"
        _append_log(log_path, rendered, output, returncode=127)
        return CommandResult(argv=args, returncode=127, output=output)
    except OSError as e:
        # Not executable, bad cwd, ...: the shell reports these as 126.
        output = f"{e.strerror or e}: {args[0]}"
        _append_log(log_path, rendered, output, returncode=126)
        return CommandResult(argv=args, returncode=126, output=output)

    output = _decode(proc.stdout)
    _append_log(log_path, rendered, output, returncode=proc.returncode)
    if proc.returncode != 0:
        LOGGER.debug(f"`{rendered}` exited with {proc.returncode}")
    return CommandResult(argv=args, returncode=proc.returncode, output=output)


def run_capture(argv: Sequence[str | Path], *, cwd: Path | None = None, timeout: float | None = None) -> str | None:
    """Best-effort capture of a short command's output (None on any failure)."""
    try:
        out = subprocess.check_output([str(a) for a in argv], stderr=subprocess.DEVNULL, cwd=cwd, timeout=timeout)
    except (OSError, subprocess.SubprocessError):
        return None
    return out.decode(errors="replace").strip()


def _decode(data: bytes | str | None) -> str:
    if data is None:
        return ""
    if isinstance(data, str):
        return data
    return data.decode(errors="replace")


def _append_log(log_path: Path | None, rendered: str, output: str, *, returncode: int | None) -> None:
    if log_path is None:
        return
    log_path.parent.mkdir(parents=True, exist_ok=True)
    status = "timeout" if returncode is None else f"exit {returncode}"
    with log_path.open("a") as f:
        f.write(f"$ {rendered}\n{output}")
        if output and not output.endswith("\n"):
            f.write("\n")
        f.write(f"[{status}]\n")
