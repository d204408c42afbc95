from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any

from . import config as config_mod
from . import prereqs, workflow
from .errors import ConfigError
from .model import PipelineConfig


def _abs_path(p: str) -> Path:
    return Path(p).expanduser().resolve()


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", type=_abs_path, default=None, help=f"JSON config file (default: ${config_mod.CONFIG_ENV_VAR}).")
    p.add_argument("--source-dir", default=None, help="Cargo project of the target binary (default: cwd).")
    p.add_argument("--work-dir", default=None, help="Where the profile and call graph are written (default: source dir).")
    p.add_argument("--downloads-dir", default=None, help="Archive staging dir (default: $HOME/downloads).")
    p.add_argument("--prefix", dest="install_prefix", default=None, help="Install prefix for libunwind/gperftools (default: /usr/local).")
    p.add_argument("--skip-provision", action="store_true", default=None, help="Assume the libraries are already installed.")
    p.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser for the CPU profiling pipeline."""
    parser = argparse.ArgumentParser(
        prog="drg_profile.cpu_profile",
        description="Provision gperftools, build drg-attacks with cpu-profile, run a workload and render a call graph.",
    )
    sub = parser.add_subparsers(dest="cmd", required=True)

    run = sub.add_parser("run", help="Run provision + build + execute + render.")
    _add_common(run)
    run.add_argument("--run-id", default=None, help="Filesystem-safe run id (default: timestamp).")
    run.add_argument("--toolchain", dest="toolchain_channel", default=None, help="rustup channel (default: nightly).")
    run.add_argument("--install-toolchain", action="store_true", default=None, help="Install the channel if missing.")
    run.add_argument("--feature", default=None, help="Cargo feature enabling instrumentation (default: cpu-profile).")
    run.add_argument("--algorithm", default=None, help="Workload algorithm token (default: greedy).")
    run.add_argument("--size", type=int, default=None, help="Workload size parameter, log2 of graph size (default: 14).")
    run.add_argument("--renderer", default=None, help="Call-graph renderer executable (default: pprof).")
    run.add_argument("--view", action="store_true", default=None, help="Open the rendered graph with xdot.")

    check = sub.add_parser("check", help="Check prerequisites without running anything.")
    _add_common(check)

    prov = sub.add_parser("provision", help="Only fetch, build and install libunwind and gperftools.")
    _add_common(prov)

    return parser


def _cli_settings(ns: argparse.Namespace) -> dict[str, Any]:
    keys = (
        "source_dir",
        "work_dir",
        "downloads_dir",
        "install_prefix",
        "skip_provision",
        "toolchain_channel",
        "install_toolchain",
        "feature",
        "renderer",
        "view",
    )
    out: dict[str, Any] = {k: getattr(ns, k, None) for k in keys}
    out["workload"] = {"algorithm": getattr(ns, "algorithm", None), "size": getattr(ns, "size", None)}
    return out


def load_pipeline_config(ns: argparse.Namespace) -> PipelineConfig:
    settings: dict[str, Any] = {}
    cfg_path = config_mod.resolve_config_path(ns.config)
    if cfg_path is not None:
        settings = config_mod.load_config_file(cfg_path)
    settings = config_mod.merge_settings(settings, _cli_settings(ns))
    return config_mod.build_config(settings)


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint. Returns process exit code."""
    parser = build_parser()
    ns = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, ns.log_level), format="%(name)s %(levelname)-4s: %(message)s")

    try:
        cfg = load_pipeline_config(ns)
    except ConfigError as e:
        print(str(e), file=sys.stderr)
        return 2

    if ns.cmd == "run":
        return workflow.run(cfg, run_id=ns.run_id, argv=["drg-profile", *(argv if argv is not None else sys.argv[1:])])
    if ns.cmd == "check":
        checks = prereqs.check_all(cfg)
        for c in checks:
            detail = f" ({c.details})" if c.details else ""
            print(f"{c.status.upper():4s} {c.check_name}{detail}")
        if any(c.status == "fail" for c in checks):
            print(prereqs.format_prereq_failures(checks), file=sys.stderr)
            return 2
        return 0
    if ns.cmd == "provision":
        return workflow.provision_only(cfg)

    raise AssertionError(f"Unhandled cmd: {ns.cmd}")


if __name__ == "__main__":
    raise SystemExit(main())
