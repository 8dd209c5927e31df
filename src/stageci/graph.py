# graph.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Set

from .errors import ConditionError, DefinitionError
from .model import Job, Pipeline, Stage


@dataclass
class PipelineGraph:
    """
    Validated pipeline. Stages impose a total order; edges carry artifacts
    from a dependency (earlier stage) to its dependents.
    """
    pipeline: Pipeline
    stages: List[Stage]
    by_name: Dict[str, Job]
    by_stage: Dict[str, List[str]]
    adj: Dict[str, Set[str]]   # dep -> dependents

    def job(self, name: str) -> Job:
        return self.by_name[name]

    def jobs_in(self, stage: str) -> List[Job]:
        return [self.by_name[n] for n in self.by_stage[stage]]

    def ordinal(self, name: str) -> int:
        return self._stage_ordinals()[self.by_name[name].stage]

    def upstream(self, name: str) -> List[str]:
        return list(self.by_name[name].dependencies or [])

    def dependents(self, name: str) -> List[str]:
        return sorted(self.adj[name])

    def earlier_jobs(self, name: str) -> List[str]:
        """All jobs in stages strictly before this job's stage, in stage order."""
        limit = self.ordinal(name)
        return [n for s in self.stages if s.ordinal < limit for n in self.by_stage[s.name]]

    def levels(self) -> List[List[str]]:
        """One list of job names per stage. Each level can run in parallel."""
        return [list(self.by_stage[s.name]) for s in self.stages]

    def _stage_ordinals(self) -> Dict[str, int]:
        return {s.name: s.ordinal for s in self.stages}


def build_graph(pipeline: Pipeline) -> PipelineGraph:
    """
    Validate a pipeline definition and build its graph.

    Fails fast with DefinitionError naming the offending job:
      - duplicate stage or job names
      - job in an unknown stage
      - dependency on a missing job, or on a job that is not in a
        strictly earlier stage (forward / same-stage / cyclic)
      - malformed condition patterns
    """
    if not pipeline.stages:
        raise DefinitionError("Pipeline declares no stages")

    if len(set(pipeline.stages)) != len(pipeline.stages):
        dupes = sorted({s for s in pipeline.stages if pipeline.stages.count(s) > 1})
        raise DefinitionError(f"Duplicate stage names found: {dupes}")

    stages = [Stage(name=s, ordinal=i) for i, s in enumerate(pipeline.stages)]
    ordinals = {s.name: s.ordinal for s in stages}

    names = [j.name for j in pipeline.jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise DefinitionError(f"Duplicate job names found: {dupes}", job=dupes[0])

    by_name: Dict[str, Job] = {}
    by_stage: Dict[str, List[str]] = {s.name: [] for s in stages}

    for job in pipeline.jobs:
        if job.stage not in ordinals:
            raise DefinitionError(
                f"Job '{job.name}' uses unknown stage '{job.stage}'. "
                f"Known stages: {list(pipeline.stages)}",
                job=job.name,
            )
        if not job.steps:
            raise DefinitionError(f"Job '{job.name}' has no steps", job=job.name)
        if job.timeout is not None and job.timeout <= 0:
            raise DefinitionError(f"Job '{job.name}' has a non-positive timeout", job=job.name)
        try:
            job.condition.validate()
        except ConditionError as e:
            raise ConditionError(e.message, job=job.name) from e

        by_name[job.name] = job
        by_stage[job.stage].append(job.name)

    adj: Dict[str, Set[str]] = {n: set() for n in by_name}

    for job in pipeline.jobs:
        for dep in job.dependencies or []:
            if dep not in by_name:
                raise DefinitionError(
                    f"Job '{job.name}' depends on missing job '{dep}'. "
                    f"Known jobs: {sorted(by_name)}",
                    job=job.name,
                )
            dep_stage = by_name[dep].stage
            if ordinals[dep_stage] >= ordinals[job.stage]:
                where = "the same stage" if dep_stage == job.stage else "a later stage"
                raise DefinitionError(
                    f"Job '{job.name}' (stage '{job.stage}') depends on '{dep}' "
                    f"in {where} ('{dep_stage}'); dependencies must be in earlier stages",
                    job=job.name,
                )
            adj[dep].add(job.name)

    return PipelineGraph(
        pipeline=pipeline,
        stages=stages,
        by_name=by_name,
        by_stage=by_stage,
        adj=adj,
    )
