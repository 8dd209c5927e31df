# run.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .conditions import TriggerContext


class JobStatus(str, Enum):
    PENDING = "pending"
    SKIPPED = "skipped"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SKIPPED, JobStatus.SUCCEEDED, JobStatus.FAILED)


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_ALLOWED = {
    JobStatus.PENDING: {JobStatus.SKIPPED, JobStatus.RUNNING, JobStatus.FAILED},
    JobStatus.RUNNING: {JobStatus.SUCCEEDED, JobStatus.FAILED},
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class JobExecution:
    """Runtime record of one job inside one run."""
    job: str
    stage: str
    status: JobStatus = JobStatus.PENDING
    reason: Optional[str] = None
    error_kind: Optional[str] = None
    exit_code: Optional[int] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    log_path: Optional[str] = None
    artifact: Optional[str] = None  # published artifact name
    cache_key: Optional[str] = None

    def transition(self, status: JobStatus, reason: Optional[str] = None) -> None:
        if status not in _ALLOWED.get(self.status, set()):
            raise RuntimeError(f"[{self.job}] illegal transition {self.status.value} -> {status.value}")
        self.status = status
        if reason is not None:
            self.reason = reason
        if status is JobStatus.RUNNING:
            self.started_at = utc_now()
        elif status.terminal:
            self.finished_at = utc_now()

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job": self.job,
            "stage": self.stage,
            "status": self.status.value,
            "reason": self.reason,
            "error_kind": self.error_kind,
            "exit_code": self.exit_code,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_s": self.duration,
            "log_path": self.log_path,
            "artifact": self.artifact,
            "cache_key": self.cache_key,
        }


@dataclass
class Run:
    """One execution of a pipeline graph. Owns its job executions."""
    run_id: str
    pipeline_id: int
    ctx: TriggerContext
    executions: Dict[str, JobExecution] = field(default_factory=dict)
    status: RunStatus = RunStatus.PENDING
    cancelled: bool = False
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def execution(self, job: str) -> JobExecution:
        return self.executions[job]

    def failed_jobs(self) -> List[str]:
        return [n for n, e in self.executions.items() if e.status is JobStatus.FAILED]

    def result(self) -> "RunResult":
        return RunResult(
            run_id=self.run_id,
            pipeline_id=self.pipeline_id,
            status=self.status,
            cancelled=self.cancelled,
            trigger=self.ctx,
            started_at=self.started_at,
            finished_at=self.finished_at,
            jobs=list(self.executions.values()),
        )


@dataclass
class RunResult:
    run_id: str
    pipeline_id: int
    status: RunStatus
    cancelled: bool
    trigger: TriggerContext
    started_at: Optional[datetime]
    finished_at: Optional[datetime]
    jobs: List[JobExecution]

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.SUCCEEDED

    @property
    def exit_code(self) -> int:
        if self.cancelled:
            return 130
        return 0 if self.succeeded else 1

    def job(self, name: str) -> JobExecution:
        for e in self.jobs:
            if e.job == name:
                return e
        raise KeyError(name)

    def statuses(self) -> Dict[str, str]:
        return {e.job: e.status.value for e in self.jobs}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "pipeline_id": self.pipeline_id,
            "status": self.status.value,
            "cancelled": self.cancelled,
            "exit_code": self.exit_code,
            "trigger": {
                "event": self.trigger.event,
                "ref": self.trigger.ref,
                "tag": self.trigger.tag,
            },
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "jobs": [e.to_dict() for e in self.jobs],
        }
