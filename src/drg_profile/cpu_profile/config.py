from __future__ import annotations

import json
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from jsonschema import Draft202012Validator

from . import paths
from .errors import ConfigError
from .model import PipelineConfig, StageTimeouts, ToolVersion, WorkloadConfig

CONFIG_ENV_VAR = "DRG_PROFILE_CONFIG"

UNWINDER = ToolVersion(
    name="libunwind",
    version="0.99-beta",
    url_template="https://download.savannah.nongnu.org/releases/libunwind/{name}-{version}.tar.gz",
    library="unwind",
)

PROFILER = ToolVersion(
    name="gperftools",
    version="2.7",
    url_template="https://github.com/gperftools/gperftools/releases/download/{name}-{version}/{name}-{version}.tar.gz",
    library="profiler",
)

# Reference run: `drg-attacks -k 14 greedy`, which writes `greedy.profile`.
WORKLOAD = WorkloadConfig(algorithm="greedy", size=14, size_flag="-k")

DEFAULT_INSTALL_PREFIX = Path("/usr/local")


def schema_path() -> Path:
    return Path(__file__).resolve().parent / "schemas" / "pipeline_config.schema.json"


def validate_config_data(data: Any) -> None:
    """Raise ConfigError listing every schema violation in `data`."""
    schema = json.loads(schema_path().read_text())
    errors = sorted(Draft202012Validator(schema).iter_errors(data), key=lambda e: list(e.absolute_path))
    if errors:
        lines = []
        for e in errors:
            where = "/".join(str(p) for p in e.absolute_path) or "<root>"
            lines.append(f"- {where}: {e.message}")
        raise ConfigError("Invalid pipeline config:\n" + "\n".join(lines))


def load_config_file(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text())
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Config file is not valid JSON: {path}: {e}") from e
    validate_config_data(data)
    return data


def resolve_config_path(explicit: Path | None, env: Mapping[str, str] | None = None) -> Path | None:
    if explicit is not None:
        return explicit
    env = os.environ if env is None else env
    from_env = env.get(CONFIG_ENV_VAR)
    if from_env:
        return Path(from_env).expanduser().resolve()
    return None


def merge_settings(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Recursively merge `override` onto `base`; None values in `override` are ignored."""
    out: dict[str, Any] = dict(base)
    for k, v in override.items():
        if v is None:
            continue
        if isinstance(v, Mapping):
            merged = merge_settings(out.get(k) or {}, v)
            if merged:
                out[k] = merged
        else:
            out[k] = v
    return out


def _tool(default: ToolVersion, data: Mapping[str, Any] | None) -> ToolVersion:
    data = data or {}
    return ToolVersion(
        name=data.get("name", default.name),
        version=data.get("version", default.version),
        url_template=data.get("url_template", default.url_template),
        library=data.get("library", default.library),
    )


def _path(value: Any, default: Path, *, base: Path) -> Path:
    if value is None:
        return default
    p = Path(str(value)).expanduser()
    return (p if p.is_absolute() else base / p).resolve()


def build_config(settings: Mapping[str, Any], *, env: Mapping[str, str] | None = None) -> PipelineConfig:
    """Build a PipelineConfig from merged settings (config file + CLI overrides).

    Relative paths resolve against the current directory.
    """
    env = os.environ if env is None else env
    validate_config_data(_schema_view(settings))
    cwd = Path.cwd()

    workload_data = settings.get("workload") or {}
    workload = WorkloadConfig(
        algorithm=workload_data.get("algorithm", WORKLOAD.algorithm),
        size=int(workload_data.get("size", WORKLOAD.size)),
        size_flag=workload_data.get("size_flag", WORKLOAD.size_flag),
    )

    timeouts = StageTimeouts()
    timeout_data = settings.get("timeouts") or {}
    if timeout_data:
        timeouts = StageTimeouts(**{**timeouts.to_dict(), **timeout_data})

    source_dir = _path(settings.get("source_dir"), cwd.resolve(), base=cwd)
    return PipelineConfig(
        unwinder=_tool(UNWINDER, settings.get("unwinder")),
        profiler=_tool(PROFILER, settings.get("profiler")),
        workload=workload,
        source_dir=source_dir,
        work_dir=_path(settings.get("work_dir"), source_dir, base=cwd),
        downloads_dir=_path(settings.get("downloads_dir"), paths.downloads_dir(env), base=cwd),
        install_prefix=_path(settings.get("install_prefix"), DEFAULT_INSTALL_PREFIX, base=cwd),
        toolchain_channel=settings.get("toolchain_channel", "nightly"),
        install_toolchain=bool(settings.get("install_toolchain", False)),
        feature=settings.get("feature", "cpu-profile"),
        binary_name=settings.get("binary_name", "drg-attacks"),
        renderer=settings.get("renderer", "pprof"),
        skip_provision=bool(settings.get("skip_provision", False)),
        view=bool(settings.get("view", False)),
        timeouts=timeouts,
    )


def _schema_view(settings: Mapping[str, Any]) -> dict[str, Any]:
    # `view` is a CLI-only switch and is not part of the file schema.
    return {k: v for k, v in settings.items() if k != "view"}
