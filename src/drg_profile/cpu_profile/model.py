from __future__ import annotations

from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any, Literal

import attrs

StageName = Literal["provision", "toolchain", "build", "execute", "tag", "render"]
PipelineState = Literal["provision", "toolchain", "build", "execute", "tag", "render", "done", "failed"]
RunStatus = Literal["pass", "fail"]
StageStatus = Literal["pass", "fail", "skipped"]

STAGE_ORDER: tuple[StageName, ...] = ("provision", "toolchain", "build", "execute", "tag", "render")


@attrs.define(frozen=True, slots=True)
class ToolVersion:
    name: str
    version: str
    url_template: str
    library: str

    @property
    def dirname(self) -> str:
        return f"{self.name}-{self.version}"

    @property
    def archive_name(self) -> str:
        return f"{self.dirname}.tar.gz"

    @property
    def url(self) -> str:
        return self.url_template.format(name=self.name, version=self.version)

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "version": self.version, "url": self.url, "library": self.library}


@attrs.define(frozen=True, slots=True)
class WorkloadConfig:
    algorithm: str
    size: int
    size_flag: str = "-k"

    @property
    def profile_name(self) -> str:
        """Fixed profile filename written by the instrumented binary (`<algorithm>.profile`)."""
        return f"{self.algorithm}.profile"

    def argv(self, binary: Path) -> list[str]:
        return [str(binary), self.size_flag, str(self.size), self.algorithm]

    def to_dict(self) -> dict[str, Any]:
        return {"algorithm": self.algorithm, "size": self.size, "size_flag": self.size_flag}


@attrs.define(frozen=True, slots=True)
class LibrarySearchPath:
    """Ordered, de-duplicated directories for `LD_LIBRARY_PATH`."""

    entries: tuple[str, ...] = ()

    @staticmethod
    def from_env(env: Mapping[str, str], var: str = "LD_LIBRARY_PATH") -> "LibrarySearchPath":
        raw = env.get(var, "")
        return LibrarySearchPath(entries=tuple(dict.fromkeys(p for p in raw.split(":") if p)))

    def extended(self, paths: Iterable[Path | str]) -> "LibrarySearchPath":
        # Existing entries keep their position; new ones are appended.
        merged = dict.fromkeys(self.entries)
        for p in paths:
            merged.setdefault(str(p), None)
        return LibrarySearchPath(entries=tuple(merged))

    def contains(self, path: Path | str) -> bool:
        want = Path(path).resolve()
        return any(Path(e).resolve() == want for e in self.entries)

    def render(self) -> str:
        return ":".join(self.entries)


@attrs.define(frozen=True, slots=True)
class StageTimeouts:
    """Per-stage timeouts in seconds (None = unbounded)."""

    provision: float | None = None
    toolchain: float | None = 300.0
    build: float | None = None
    execute: float | None = None
    tag: float | None = 30.0
    render: float | None = 600.0

    def for_stage(self, stage: StageName) -> float | None:
        return getattr(self, stage)

    def to_dict(self) -> dict[str, Any]:
        return {s: self.for_stage(s) for s in STAGE_ORDER}


@attrs.define(frozen=True, slots=True)
class PipelineConfig:
    unwinder: ToolVersion
    profiler: ToolVersion
    workload: WorkloadConfig
    source_dir: Path
    work_dir: Path
    downloads_dir: Path
    install_prefix: Path
    toolchain_channel: str = "nightly"
    install_toolchain: bool = False
    feature: str = "cpu-profile"
    binary_name: str = "drg-attacks"
    renderer: str = "pprof"
    skip_provision: bool = False
    view: bool = False
    timeouts: StageTimeouts = attrs.field(factory=StageTimeouts)

    @property
    def library_dir(self) -> Path:
        return self.install_prefix / "lib"

    def to_dict(self) -> dict[str, Any]:
        return {
            "unwinder": self.unwinder.to_dict(),
            "profiler": self.profiler.to_dict(),
            "workload": self.workload.to_dict(),
            "source_dir": str(self.source_dir),
            "work_dir": str(self.work_dir),
            "downloads_dir": str(self.downloads_dir),
            "install_prefix": str(self.install_prefix),
            "toolchain_channel": self.toolchain_channel,
            "install_toolchain": self.install_toolchain,
            "feature": self.feature,
            "binary_name": self.binary_name,
            "renderer": self.renderer,
            "skip_provision": self.skip_provision,
            "view": self.view,
            "timeouts": self.timeouts.to_dict(),
        }


@attrs.define(frozen=True, slots=True)
class StageContext:
    """Explicit invocation context handed from one stage to the next.

    Environment changes (toolchain selection, library search path) are carried
    here instead of being applied to `os.environ`.
    """

    config: PipelineConfig
    env: dict[str, str]
    library_path: LibrarySearchPath
    logs_dir: Path
    binary: Path | None = None
    profile: Path | None = None
    label: str | None = None
    graph: Path | None = None

    def stage_env(self) -> dict[str, str]:
        env = dict(self.env)
        rendered = self.library_path.render()
        if rendered:
            env["LD_LIBRARY_PATH"] = rendered
        else:
            env.pop("LD_LIBRARY_PATH", None)
        return env

    def log_path(self, stage: StageName) -> Path:
        return self.logs_dir / f"{stage}.log"


@attrs.define(frozen=True, slots=True)
class StageRecord:
    stage: StageName
    status: StageStatus
    duration_s: float
    commands: list[str] = attrs.field(factory=list)
    details: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "status": self.status,
            "duration_s": round(self.duration_s, 3),
            "commands": list(self.commands),
            "details": self.details,
        }


@attrs.define(frozen=True, slots=True)
class PrerequisiteCheck:
    check_name: str
    status: RunStatus
    details: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"check_name": self.check_name, "status": self.status, "details": self.details}


@attrs.define(frozen=True, slots=True)
class ProfilingRun:
    run_id: str
    started_at: str
    finished_at: str | None
    state: PipelineState
    status: RunStatus
    failure_stage: StageName | None
    failure_reason: str | None
    artifacts_dir: Path
    label: str | None = None
    graph_path: Path | None = None
    git: dict[str, Any] = attrs.field(factory=dict)
    stages: list[StageRecord] = attrs.field(factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "state": self.state,
            "status": self.status,
            "failure_stage": self.failure_stage,
            "failure_reason": self.failure_reason,
            "artifacts_dir": str(self.artifacts_dir),
            "label": self.label,
            "graph_path": str(self.graph_path) if self.graph_path is not None else None,
            "git": self.git,
            "stages": [s.to_dict() for s in self.stages],
        }


@attrs.define(frozen=True, slots=True)
class StageOutcome:
    """Result of one successful stage: the context for the next stage plus what ran."""

    context: StageContext
    commands: list[str] = attrs.field(factory=list)
    details: str | None = None
