# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .conditions import Condition

DEFAULT_STAGE = "test"
DEFAULT_STAGES = ("build", "test", "deploy")


@dataclass(frozen=True)
class Stage:
    """A synchronization barrier. Stages run in ordinal order."""
    name: str
    ordinal: int


@dataclass(frozen=True)
class Step:
    """A single shell command inside a CI job."""
    name: str
    run: str
    cwd: str | None = None


@dataclass(frozen=True)
class ArtifactSpec:
    """
    Files a job hands to later jobs of the same run.

    `paths` are globs relative to the job workspace and may reference
    variables, e.g. "ffsend-$RUST_TARGET".
    """
    paths: Tuple[str, ...]
    name: Optional[str] = None
    expire_in: Optional[str] = None


@dataclass(frozen=True)
class CacheSpec:
    """
    Cache declaration. The key is composite: (group, variant...), both
    expanded against the job variables before use.
    """
    paths: Tuple[str, ...] = ()
    group: str = "$CI_PIPELINE_ID"
    variant: Tuple[str, ...] = ()
    enabled: bool = True

    @classmethod
    def disabled(cls) -> "CacheSpec":
        return cls(enabled=False)


@dataclass
class Job:
    """
    A CI job: steps + stage + dependencies + metadata for gating/caching.

    `dependencies`:
      - None -> artifacts of every succeeded job in earlier stages
      - []   -> no artifacts are restored
      - [..] -> artifacts of exactly these jobs, all required
    """
    name: str
    steps: List[Step]
    stage: str = DEFAULT_STAGE

    dependencies: Optional[List[str]] = None
    artifacts: Optional[ArtifactSpec] = None
    condition: Condition = field(default_factory=Condition)

    image: Optional[str] = None
    variables: Dict[str, str] = field(default_factory=dict)

    # None inherits the pipeline defaults
    before_steps: Optional[List[Step]] = None
    after_steps: List[Step] = field(default_factory=list)
    cache: Optional[CacheSpec] = None

    timeout: Optional[float] = None  # seconds

    @property
    def no_dependencies(self) -> bool:
        return self.dependencies is not None and len(self.dependencies) == 0


@dataclass
class Pipeline:
    """A full definition: ordered stages, jobs, and pipeline-wide defaults."""
    jobs: List[Job]
    stages: List[str] = field(default_factory=lambda: list(DEFAULT_STAGES))
    name: str = "pipeline"

    image: Optional[str] = None
    variables: Dict[str, str] = field(default_factory=dict)
    before_steps: List[Step] = field(default_factory=list)
    cache: Optional[CacheSpec] = None

    def image_for(self, job: Job) -> Optional[str]:
        return job.image if job.image is not None else self.image

    def before_steps_for(self, job: Job) -> List[Step]:
        return list(self.before_steps if job.before_steps is None else job.before_steps)

    def cache_for(self, job: Job) -> Optional[CacheSpec]:
        spec = job.cache if job.cache is not None else self.cache
        if spec is None or not spec.enabled or not spec.paths:
            return None
        return spec
