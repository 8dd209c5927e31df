# errors.py
from __future__ import annotations

from typing import Any, Dict, Optional


class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - the per-job breakdown of a run (error_kind)
      - debugging without full tracebacks
    """

    kind = "error"

    def __init__(
        self,
        message: str,
        *,
        job: Optional[str] = None,
        step: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.job = job
        self.step = step
        self.details = dict(details or {})

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class DefinitionError(CIError):
    """The pipeline definition is invalid. Raised before anything executes."""

    kind = "definition_error"


class ConditionError(DefinitionError):
    """A trigger pattern could not be compiled."""

    kind = "condition_error"


class MissingArtifactError(CIError):
    kind = "missing_artifact"

    def __init__(self, job: str, upstream: str, reason: str):
        super().__init__(
            f"missing required artifact from '{upstream}' ({reason})",
            job=job,
            details={"upstream": upstream},
        )
        self.upstream = upstream
        self.reason = reason


class StepFailure(CIError):
    kind = "step_failure"

    def __init__(self, job: str, step: str, cmd: str, exit_code: int):
        super().__init__(
            f"step '{step}' failed (exit={exit_code}): {cmd}",
            job=job,
            step=step,
            details={"exit_code": exit_code},
        )
        self.cmd = cmd
        self.exit_code = exit_code


class ProvisioningError(CIError):
    """The execution environment could not be created."""

    kind = "provisioning_failure"


class JobTimeout(CIError):
    kind = "timeout"


class JobCancelled(CIError):
    kind = "cancelled"


class ArtifactError(CIError):
    kind = "artifact_error"


class CacheError(CIError):
    kind = "cache_error"
