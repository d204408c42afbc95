from __future__ import annotations


class PipelineError(Exception):
    """Base class for stage failures.

    `output` holds the underlying tool's diagnostic text verbatim (may be empty).
    """

    stage: str = "pipeline"

    def __init__(self, message: str, *, output: str = "") -> None:
        super().__init__(message)
        self.output = output

    def describe(self) -> str:
        if not self.output:
            return str(self)
        return f"{self}\n{self.output.rstrip()}"


class ProvisionError(PipelineError):
    stage = "provision"


class ToolchainError(PipelineError):
    stage = "toolchain"


class BuildError(PipelineError):
    stage = "build"


class LinkError(PipelineError):
    stage = "execute"


class ExecutionError(PipelineError):
    stage = "execute"


class RevisionError(PipelineError):
    """Not fatal: the orchestrator falls back to an unversioned output label."""

    stage = "tag"


class RenderError(PipelineError):
    stage = "render"


class StageTimeoutError(PipelineError):
    """A stage exceeded its configured timeout; reported apart from tool failures."""

    def __init__(self, stage: str, timeout_s: float, *, output: str = "") -> None:
        super().__init__(f"Stage '{stage}' timed out after {timeout_s:g}s", output=output)
        self.stage = stage
        self.timeout_s = timeout_s


class ConfigError(ValueError):
    """Invalid pipeline configuration (bad config file or CLI value)."""
