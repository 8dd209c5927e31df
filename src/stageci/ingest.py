# ingest.py
"""
Build a Pipeline from an already-deserialized mapping (e.g. json.load of a
pipeline file). The layout follows GitLab CI: reserved top-level keys plus
one mapping per job. Job mappings may also be grouped under "jobs". Keys
starting with "." are templates and are ignored.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .artifacts import parse_duration
from .conditions import ChangesRule, Condition, parse_rules
from .dsl import script
from .errors import DefinitionError
from .model import DEFAULT_STAGES, DEFAULT_STAGE, ArtifactSpec, CacheSpec, Job, Pipeline

RESERVED_KEYS = {"name", "stages", "image", "variables", "before_script", "cache", "jobs", "default"}


def _str_list(value: Union[str, List[Any], None]) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


class CacheKeyIn(BaseModel):
    model_config = ConfigDict(extra="forbid")
    group: str = "$CI_PIPELINE_ID"
    variant: List[str] = Field(default_factory=list)


class CacheIn(BaseModel):
    model_config = ConfigDict(extra="forbid")
    key: Union[str, CacheKeyIn] = "$CI_PIPELINE_ID"
    paths: List[str] = Field(default_factory=list)

    def to_spec(self) -> CacheSpec:
        if isinstance(self.key, str):
            return CacheSpec(paths=tuple(self.paths), group=self.key)
        return CacheSpec(paths=tuple(self.paths), group=self.key.group, variant=tuple(self.key.variant))


class ArtifactsIn(BaseModel):
    model_config = ConfigDict(extra="forbid")
    name: Optional[str] = None
    paths: List[str] = Field(default_factory=list)
    expire_in: Optional[str] = None

    @field_validator("expire_in")
    @classmethod
    def _valid_duration(cls, v: Optional[str]) -> Optional[str]:
        parse_duration(v)
        return v


class JobIn(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    script: List[str]
    stage: str = DEFAULT_STAGE
    image: Optional[str] = None
    variables: Dict[str, Union[str, int, float, bool]] = Field(default_factory=dict)
    before_script: Optional[List[str]] = None
    after_script: List[str] = Field(default_factory=list)
    dependencies: Optional[List[str]] = None
    artifacts: Optional[ArtifactsIn] = None
    only: List[str] = Field(default_factory=list)
    except_: List[str] = Field(default_factory=list, alias="except")
    changes: List[str] = Field(default_factory=list)
    cache: Union[CacheIn, bool, None] = None
    timeout: Union[float, str, None] = None

    @field_validator("script", "before_script", "after_script", "only", "except_", "changes", mode="before")
    @classmethod
    def _listify(cls, v):
        return v if v is None else _str_list(v)

    @field_validator("script")
    @classmethod
    def _non_empty(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("script must contain at least one command")
        return v

    def to_job(self, name: str) -> Job:
        only_rules = parse_rules(self.only)
        if self.changes:
            only_rules = only_rules + (ChangesRule(tuple(self.changes)),)

        cache: Optional[CacheSpec]
        if self.cache is False:
            cache = CacheSpec.disabled()
        elif isinstance(self.cache, CacheIn):
            cache = self.cache.to_spec()
        else:
            cache = None

        timeout = self.timeout
        if isinstance(timeout, str):
            timeout = parse_duration(timeout)

        return Job(
            name=name,
            steps=script(*self.script),
            stage=self.stage,
            dependencies=self.dependencies,
            artifacts=(
                ArtifactSpec(paths=tuple(self.artifacts.paths), name=self.artifacts.name, expire_in=self.artifacts.expire_in)
                if self.artifacts is not None
                else None
            ),
            condition=Condition(only=only_rules, except_=parse_rules(self.except_)),
            image=self.image,
            variables={k: _scalar(v) for k, v in self.variables.items()},
            before_steps=script(*self.before_script) if self.before_script is not None else None,
            after_steps=script(*self.after_script),
            cache=cache,
            timeout=timeout,
        )


class PipelineIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = "pipeline"
    stages: List[str] = Field(default_factory=lambda: list(DEFAULT_STAGES))
    image: Optional[str] = None
    variables: Dict[str, Union[str, int, float, bool]] = Field(default_factory=dict)
    before_script: List[str] = Field(default_factory=list)
    cache: Optional[CacheIn] = None

    @field_validator("before_script", mode="before")
    @classmethod
    def _listify(cls, v):
        return _str_list(v)


def _scalar(v: Union[str, int, float, bool]) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    return str(v)


def _format_validation(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err["loc"])
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)


def pipeline_from_mapping(data: Mapping[str, Any]) -> Pipeline:
    """
    Validate a deserialized definition and build the Pipeline.
    Structural problems raise DefinitionError; graph-level checks
    (stages, dependencies, patterns) happen in build_graph.
    """
    if not isinstance(data, Mapping):
        raise DefinitionError("Pipeline definition must be a mapping")

    raw_jobs: Dict[str, Any] = dict(data.get("jobs") or {})
    for key, value in data.items():
        if key in RESERVED_KEYS or key.startswith("."):
            continue
        if key in raw_jobs:
            raise DefinitionError(f"Job '{key}' is defined twice", job=key)
        raw_jobs[key] = value

    settings = {k: v for k, v in data.items() if k in RESERVED_KEYS - {"jobs", "default"}}
    defaults = data.get("default") or {}
    if not isinstance(defaults, Mapping):
        raise DefinitionError("'default' must be a mapping")
    for k, v in defaults.items():
        settings.setdefault(k, v)

    try:
        top = PipelineIn.model_validate(settings)
    except ValidationError as e:
        raise DefinitionError(f"Invalid pipeline settings: {_format_validation(e)}") from e

    jobs: List[Job] = []
    for name, body in raw_jobs.items():
        if not isinstance(body, Mapping):
            raise DefinitionError(f"Job '{name}' must be a mapping", job=name)
        try:
            parsed = JobIn.model_validate(body)
            jobs.append(parsed.to_job(name))
        except ValidationError as e:
            raise DefinitionError(f"Invalid job '{name}': {_format_validation(e)}", job=name) from e
        except ValueError as e:
            raise DefinitionError(f"Invalid job '{name}': {e}", job=name) from e

    return Pipeline(
        jobs=jobs,
        stages=list(top.stages),
        name=top.name,
        image=top.image,
        variables={k: _scalar(v) for k, v in top.variables.items()},
        before_steps=script(*top.before_script),
        cache=top.cache.to_spec() if top.cache is not None else None,
    )
