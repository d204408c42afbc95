from __future__ import annotations

import io
import os
import tarfile
from collections.abc import Callable
from pathlib import Path

import pytest

from drg_profile.cpu_profile import config as config_mod
from drg_profile.cpu_profile.model import PipelineConfig, StageContext, ToolVersion
from drg_profile.cpu_profile.workflow import initial_context

FAKE_CARGO = r"""#!/bin/sh
feature=""
while [ $# -gt 0 ]; do
  case "$1" in
    --features) feature="$2"; shift 2 ;;
    *) shift ;;
  esac
done
if [ "$RUSTUP_TOOLCHAIN" != "nightly" ]; then
  echo "error[E0554]: #![feature] may not be used on the stable release channel" >&2
  exit 101
fi
if [ "$feature" != "cpu-profile" ]; then
  echo "error: Package \`drg-attacks v0.1.0\` does not have the feature \`$feature\`" >&2
  exit 101
fi
mkdir -p target/release
cat > target/release/drg-attacks <<'EOS'
#!/bin/sh
case ":$LD_LIBRARY_PATH:" in
  *":$FAKE_PROFILER_LIB_DIR:"*) ;;
  *)
    echo "drg-attacks: error while loading shared libraries: libprofiler.so.0: cannot open shared object file: No such file or directory" >&2
    exit 127 ;;
esac
if [ -n "$FAKE_WORKLOAD_SLEEP" ]; then exec sleep "$FAKE_WORKLOAD_SLEEP"; fi
if [ -n "$FAKE_WORKLOAD_FAIL" ]; then echo "thread 'main' panicked" >&2; exit 3; fi
echo "Greedy Attacks parameters"
echo "samples:$1 $2 $3" > "$3.profile"
EOS
chmod +x target/release/drg-attacks
echo "    Finished release [optimized] target(s)"
"""

FAKE_RUSTUP = r"""#!/bin/sh
if [ "$1" = "run" ] && [ "$2" = "nightly" ]; then
  echo "rustc 1.80.0-nightly (fake 2024-05-01)"
  exit 0
fi
if [ "$1" = "run" ]; then
  echo "error: toolchain '$2' is not installed" >&2
  exit 1
fi
exit 0
"""

FAKE_GIT = r"""#!/bin/sh
if [ -n "$FAKE_GIT_SLEEP" ]; then exec sleep "$FAKE_GIT_SLEEP"; fi
if [ -n "$FAKE_GIT_NOT_REPO" ]; then
  echo "fatal: not a git repository (or any of the parent directories): .git" >&2
  exit 128
fi
rev="${FAKE_GIT_REV:-abc1234}"
case "$*" in
  "rev-parse --short HEAD") echo "$rev" ;;
  "rev-parse HEAD") echo "${rev}000000000000000000000000000000000" ;;
  "rev-parse --abbrev-ref HEAD") echo "main" ;;
  "status --porcelain=v1") ;;
  *) exit 1 ;;
esac
"""

FAKE_PPROF = r"""#!/bin/sh
prof="$4"
if [ ! -f "$prof" ]; then
  echo "$prof: No such file or directory" >&2
  exit 1
fi
if [ -n "$FAKE_PPROF_EMPTY" ]; then exit 0; fi
echo 'digraph "drg-attacks; 42 samples" {'
echo '  N1 [label="drg_attacks::attacks::attack_with_profile"];'
echo '}'
"""

FAKE_MAKE = r"""#!/bin/sh
if [ "$1" = "install" ]; then
  prefix="$(cat .prefix)"
  mkdir -p "$prefix/lib"
  touch "$prefix/lib/lib$(cat .library).so.0"
  echo "$(cat .library)" >> "$prefix/install.log"
  exit 0
fi
echo "make: building"
"""

CONFIGURE = r"""#!/bin/sh
echo "${1#--prefix=}" > .prefix
echo "checking for gcc... gcc"
"""


def write_script(path: Path, text: str) -> Path:
    path.write_text(text)
    path.chmod(0o755)
    return path


def make_source_archive(
    dest_dir: Path,
    *,
    name: str,
    version: str,
    library: str,
    configure: str = CONFIGURE,
    configure_mode: int = 0o755,
) -> Path:
    """Write `<name>-<version>.tar.gz` with a configure script and a library marker."""
    dest_dir.mkdir(parents=True, exist_ok=True)
    archive = dest_dir / f"{name}-{version}.tar.gz"
    with tarfile.open(archive, "w:gz") as tar:
        for member, text, mode in (
            ("configure", configure, configure_mode),
            (".library", library + "\n", 0o644),
        ):
            data = text.encode()
            info = tarfile.TarInfo(name=f"{name}-{version}/{member}")
            info.size = len(data)
            info.mode = mode
            tar.addfile(info, io.BytesIO(data))
    return archive


@pytest.fixture()
def fake_bin(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Directory of fake cargo/rustup/git/pprof/make prepended to PATH."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    write_script(bin_dir / "cargo", FAKE_CARGO)
    write_script(bin_dir / "rustup", FAKE_RUSTUP)
    write_script(bin_dir / "git", FAKE_GIT)
    write_script(bin_dir / "pprof", FAKE_PPROF)
    write_script(bin_dir / "make", FAKE_MAKE)
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")
    for var in (
        "RUSTUP_TOOLCHAIN",
        "CARGO_TARGET_DIR",
        "LD_LIBRARY_PATH",
        "FAKE_GIT_NOT_REPO",
        "FAKE_GIT_REV",
        "FAKE_GIT_SLEEP",
    ):
        monkeypatch.delenv(var, raising=False)
    return bin_dir


@pytest.fixture()
def archive_dir(tmp_path: Path) -> Path:
    d = tmp_path / "mirror"
    make_source_archive(d, name="libunwind", version="0.99-beta", library="unwind")
    make_source_archive(d, name="gperftools", version="2.7", library="profiler")
    return d


@pytest.fixture()
def make_config(tmp_path: Path, archive_dir: Path, monkeypatch: pytest.MonkeyPatch) -> Callable[..., PipelineConfig]:
    """Build a PipelineConfig rooted in tmp_path; keyword overrides go through the settings layer."""
    source = tmp_path / "drg-attacks"
    source.mkdir()
    (source / "Cargo.toml").write_text('[package]\nname = "drg-attacks"\nversion = "0.1.0"\n')
    prefix = tmp_path / "prefix"
    monkeypatch.setenv("FAKE_PROFILER_LIB_DIR", str(prefix / "lib"))
    monkeypatch.setenv("HOME", str(tmp_path / "home"))

    def _make(**overrides: object) -> PipelineConfig:
        template = f"file://{archive_dir}/{{name}}-{{version}}.tar.gz"
        settings: dict[str, object] = {
            "unwinder": {"url_template": template},
            "profiler": {"url_template": template},
            "source_dir": str(source),
            "work_dir": str(source),
            "downloads_dir": str(tmp_path / "downloads"),
            "install_prefix": str(prefix),
        }
        return config_mod.build_config(config_mod.merge_settings(settings, overrides))

    return _make


@pytest.fixture()
def make_context(tmp_path: Path) -> Callable[[PipelineConfig], StageContext]:
    def _make(cfg: PipelineConfig) -> StageContext:
        return initial_context(cfg, logs_dir=tmp_path / "logs", env=dict(os.environ))

    return _make


def tool(name: str, version: str, library: str, archive_dir: Path) -> ToolVersion:
    return ToolVersion(
        name=name,
        version=version,
        url_template=f"file://{archive_dir}/{{name}}-{{version}}.tar.gz",
        library=library,
    )


@pytest.fixture()
def make_archive() -> Callable[..., Path]:
    return make_source_archive


@pytest.fixture()
def make_tool() -> Callable[..., ToolVersion]:
    return tool
