"""
Fetch, build and install the unwinder and the sampling profiler.

Each tool is downloaded as `<name>-<version>.tar.gz` into the downloads dir,
extracted to `<downloads>/<name>-<version>/` and built with
`./configure --prefix=<prefix> && make && make install`.

Re-running is cheap: a tool whose source tree carries a matching install marker
and whose shared library is present under `<prefix>/lib` is skipped. Partially
downloaded archives and partially extracted trees never take the final name, so
an interrupted run is simply redone.
"""

from __future__ import annotations

import contextlib
import fcntl
import json
import logging
import shutil
import tarfile
import urllib.error
import urllib.request
from collections.abc import Iterator, Mapping, Sequence
from pathlib import Path

import attrs

from . import paths
from .errors import ProvisionError, StageTimeoutError
from .model import StageContext, StageOutcome, ToolVersion
from .proc import run_logged

LOGGER = logging.getLogger(__name__)

INSTALL_MARKER = ".drg-profile-installed"
LOCK_NAME = ".provision.lock"

DEFAULT_BUILD_STEPS: tuple[tuple[str, ...], ...] = (
    ("./configure", "--prefix={prefix}"),
    ("make",),
    ("make", "install"),
)


@attrs.define(frozen=True, slots=True)
class ProvisionResult:
    tool: ToolVersion
    source_dir: Path
    libraries: list[Path]
    skipped: bool
    commands: list[str] = attrs.field(factory=list)


@contextlib.contextmanager
def install_lock(downloads_dir: Path) -> Iterator[None]:
    """Hold an exclusive lock on the downloads dir for the duration of provisioning."""
    downloads_dir.mkdir(parents=True, exist_ok=True)
    lock_path = downloads_dir / LOCK_NAME
    with lock_path.open("a+") as fh:
        LOGGER.debug(f"Acquiring provisioning lock `{lock_path}`")
        fcntl.flock(fh, fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(fh, fcntl.LOCK_UN)


def is_installed(tool: ToolVersion, *, downloads_dir: Path, prefix: Path) -> bool:
    marker = downloads_dir / tool.dirname / INSTALL_MARKER
    try:
        data = json.loads(marker.read_text())
    except (OSError, ValueError):
        return False
    if data != _marker_payload(tool, prefix):
        return False
    return bool(paths.installed_libraries(lib_dir=prefix / "lib", library=tool.library))


def download_archive(tool: ToolVersion, *, downloads_dir: Path, timeout: float | None = None) -> Path:
    """Download the tool's source archive unless it is already present."""
    archive = downloads_dir / tool.archive_name
    if archive.is_file() and archive.stat().st_size > 0:
        LOGGER.info(f"Reusing archive `{archive}`")
        return archive

    downloads_dir.mkdir(parents=True, exist_ok=True)
    part = archive.with_name(archive.name + ".part")
    LOGGER.info(f"Downloading `{tool.url}` into `{archive}`")
    try:
        with urllib.request.urlopen(tool.url, timeout=timeout) as resp, part.open("wb") as f:
            shutil.copyfileobj(resp, f)
    except TimeoutError as e:
        part.unlink(missing_ok=True)
        raise StageTimeoutError("provision", timeout or 0.0, output=str(e)) from e
    except (urllib.error.URLError, OSError, ValueError) as e:
        part.unlink(missing_ok=True)
        # Connect timeouts surface wrapped in URLError.
        if isinstance(getattr(e, "reason", None), TimeoutError):
            raise StageTimeoutError("provision", timeout or 0.0, output=str(e)) from e
        raise ProvisionError(f"Failed to download {tool.dirname} from {tool.url}", output=str(e)) from e
    part.replace(archive)
    return archive


def extract_archive(tool: ToolVersion, archive: Path, *, downloads_dir: Path) -> Path:
    """Extract `archive` to `<downloads>/<name>-<version>/` and return that directory."""
    dest = downloads_dir / tool.dirname
    if dest.is_dir():
        return dest

    staging = downloads_dir / f".{tool.dirname}.partial"
    if staging.exists():
        shutil.rmtree(staging)
    LOGGER.info(f"Unpacking archive `{archive}`")
    try:
        shutil.unpack_archive(str(archive), str(staging), filter="data")
    except (shutil.ReadError, tarfile.TarError, ValueError, OSError, EOFError) as e:
        shutil.rmtree(staging, ignore_errors=True)
        # A corrupt archive must not be reused on the next run.
        archive.unlink(missing_ok=True)
        raise ProvisionError(f"Failed to extract {archive}", output=str(e)) from e

    entries = [p for p in staging.iterdir()]
    root = entries[0] if len(entries) == 1 and entries[0].is_dir() else staging
    root.replace(dest)
    shutil.rmtree(staging, ignore_errors=True)
    return dest


def build_and_install(
    tool: ToolVersion,
    source_dir: Path,
    *,
    prefix: Path,
    env: Mapping[str, str],
    timeout: float | None,
    log_path: Path | None,
    build_steps: Sequence[Sequence[str]] = DEFAULT_BUILD_STEPS,
) -> list[str]:
    commands: list[str] = []
    for step in build_steps:
        argv = [part.format(prefix=prefix) for part in step]
        result = run_logged(argv, stage="provision", cwd=source_dir, env=env, timeout=timeout, log_path=log_path)
        commands.append(result.rendered)
        if not result.ok:
            raise ProvisionError(
                f"{tool.dirname}: `{result.rendered}` failed with exit code {result.returncode}",
                output=result.output,
            )

    if not paths.installed_libraries(lib_dir=prefix / "lib", library=tool.library):
        raise ProvisionError(f"{tool.dirname}: lib{tool.library}.so not found under {prefix / 'lib'} after install")

    (source_dir / INSTALL_MARKER).write_text(json.dumps(_marker_payload(tool, prefix), indent=2, sort_keys=True) + "\n")
    return commands


def provision_tool(
    tool: ToolVersion,
    *,
    downloads_dir: Path,
    prefix: Path,
    env: Mapping[str, str],
    timeout: float | None = None,
    log_path: Path | None = None,
    build_steps: Sequence[Sequence[str]] = DEFAULT_BUILD_STEPS,
) -> ProvisionResult:
    source_dir = downloads_dir / tool.dirname
    if is_installed(tool, downloads_dir=downloads_dir, prefix=prefix):
        LOGGER.info(f"{tool.dirname} already installed under `{prefix}`, skipping")
        return ProvisionResult(
            tool=tool,
            source_dir=source_dir,
            libraries=paths.installed_libraries(lib_dir=prefix / "lib", library=tool.library),
            skipped=True,
        )

    archive = download_archive(tool, downloads_dir=downloads_dir, timeout=timeout)
    source_dir = extract_archive(tool, archive, downloads_dir=downloads_dir)
    commands = build_and_install(
        tool,
        source_dir,
        prefix=prefix,
        env=env,
        timeout=timeout,
        log_path=log_path,
        build_steps=build_steps,
    )
    return ProvisionResult(
        tool=tool,
        source_dir=source_dir,
        libraries=paths.installed_libraries(lib_dir=prefix / "lib", library=tool.library),
        skipped=False,
        commands=commands,
    )


def provision(ctx: StageContext, *, build_steps: Sequence[Sequence[str]] = DEFAULT_BUILD_STEPS) -> StageOutcome:
    """Install the unwinder then the profiler and extend the library search path.

    The unwinder goes first: the profiler's configure step links against it.
    """
    cfg = ctx.config
    if cfg.skip_provision:
        LOGGER.info("Provisioning skipped by configuration")
        return StageOutcome(
            context=attrs.evolve(ctx, library_path=ctx.library_path.extended([cfg.library_dir])),
            details="skipped",
        )

    results: list[ProvisionResult] = []
    with install_lock(cfg.downloads_dir):
        for tool in (cfg.unwinder, cfg.profiler):
            results.append(
                provision_tool(
                    tool,
                    downloads_dir=cfg.downloads_dir,
                    prefix=cfg.install_prefix,
                    env=ctx.stage_env(),
                    timeout=cfg.timeouts.provision,
                    log_path=ctx.log_path("provision"),
                    build_steps=build_steps,
                )
            )

    commands = [c for r in results for c in r.commands]
    details = ", ".join(f"{r.tool.dirname}: {'cached' if r.skipped else 'installed'}" for r in results)
    return StageOutcome(
        context=attrs.evolve(ctx, library_path=ctx.library_path.extended([cfg.library_dir])),
        commands=commands,
        details=details,
    )


def _marker_payload(tool: ToolVersion, prefix: Path) -> dict[str, str]:
    return {"name": tool.name, "version": tool.version, "prefix": str(prefix)}
