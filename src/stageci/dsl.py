# src/stageci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

from .conditions import ChangesRule, Condition, Rule, parse_rules
from .model import DEFAULT_STAGE, ArtifactSpec, CacheSpec, Job, Pipeline, Step


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd)


def script(*cmds: str) -> List[Step]:
    """Unnamed script lines -> steps named after their command."""
    return [Step(name=c.splitlines()[0][:60], run=c) for c in cmds]


# ---------------------------------------------------------------------
# Declarations
# ---------------------------------------------------------------------

def artifacts(*paths: str, name: str | None = None, expire_in: str | None = None) -> ArtifactSpec:
    return ArtifactSpec(paths=tuple(paths), name=name, expire_in=expire_in)


def cache(*paths: str, group: str = "$CI_PIPELINE_ID", variant: Sequence[str] = ()) -> CacheSpec:
    return CacheSpec(paths=tuple(paths), group=group, variant=tuple(variant))


RuleLike = Union[str, Rule]


def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    stage: str = DEFAULT_STAGE,
    dependencies: Optional[List[str]] = None,
    artifacts: Optional[ArtifactSpec] = None,
    only: Optional[Iterable[RuleLike]] = None,
    except_: Optional[Iterable[RuleLike]] = None,
    changes: Optional[List[str]] = None,
    image: Optional[str] = None,
    variables: Optional[Dict[str, Any]] = None,
    before: Optional[List[Step]] = None,
    after: Optional[List[Step]] = None,
    cache: Optional[CacheSpec] = None,
    timeout: Optional[float] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    only_rules = parse_rules(only)
    if changes:
        only_rules = only_rules + (ChangesRule(tuple(changes)),)

    return Job(
        name=name,
        steps=steps_final,
        stage=stage,
        dependencies=list(dependencies) if dependencies is not None else None,
        artifacts=artifacts,
        condition=Condition(only=only_rules, except_=parse_rules(except_)),
        image=image,
        # force values to str for env compatibility
        variables={k: str(v) for k, v in (variables or {}).items()},
        before_steps=list(before) if before is not None else None,
        after_steps=list(after or []),
        cache=cache,
        timeout=timeout,
    )


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("RUST_VERSION", ["stable", "beta"]).jobs(
            lambda v: job(f"check-{v}", sh(...), variables={"RUST_VERSION": v})
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], Job]) -> List[Job]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Pipeline helper (single-file story)
# ---------------------------------------------------------------------

def pipeline(
    *jobs: Union[Job, List[Job]],
    stages: Sequence[str],
    name: str = "pipeline",
    image: Optional[str] = None,
    variables: Optional[Dict[str, Any]] = None,
    before: Optional[List[Step]] = None,
    cache: Optional[CacheSpec] = None,
) -> Pipeline:
    """
    Pipeline definition helper. Matrix expansions (lists of jobs) are
    flattened in place.

        from stageci import pipeline, job, sh

        def pipeline_definition():
            return pipeline(job(...), job(...), stages=["build", "test"])
    """
    flat: List[Job] = []
    for j in jobs:
        if isinstance(j, list):
            flat.extend(j)
        else:
            flat.append(j)
    return Pipeline(
        jobs=flat,
        stages=list(stages),
        name=name,
        image=image,
        variables={k: str(v) for k, v in (variables or {}).items()},
        before_steps=list(before or []),
        cache=cache,
    )
