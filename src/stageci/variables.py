# variables.py
from __future__ import annotations

import re
from typing import Dict, Mapping, Optional

from .conditions import TriggerContext
from .model import Job, Pipeline

_VAR_RE = re.compile(r"\$(?:\{([A-Za-z_][A-Za-z0-9_]*)\}|([A-Za-z_][A-Za-z0-9_]*))")


def expand(text: str, variables: Mapping[str, str]) -> str:
    """Expand $NAME / ${NAME}. Unknown names expand to an empty string."""

    def _sub(m: re.Match) -> str:
        name = m.group(1) or m.group(2)
        return variables.get(name, "")

    return _VAR_RE.sub(_sub, text)


def predefined_variables(
    job: Job,
    *,
    ctx: TriggerContext,
    run_id: str,
    pipeline_id: int,
    project_dir: str,
    image: Optional[str],
) -> Dict[str, str]:
    env = {
        "CI": "true",
        "CI_RUN_ID": run_id,
        "CI_PIPELINE_ID": str(pipeline_id),
        "CI_PIPELINE_SOURCE": ctx.event,
        "CI_COMMIT_REF_NAME": ctx.ref,
        "CI_DEFAULT_BRANCH": ctx.default_branch,
        "CI_JOB_NAME": job.name,
        "CI_JOB_STAGE": job.stage,
        "CI_PROJECT_DIR": project_dir,
    }
    if ctx.is_tag and ctx.tag:
        env["CI_COMMIT_TAG"] = ctx.tag
    else:
        env["CI_COMMIT_BRANCH"] = ctx.ref
    if image:
        env["CI_JOB_IMAGE"] = image
    return env


def job_variables(
    pipeline: Pipeline,
    job: Job,
    *,
    ctx: TriggerContext,
    run_id: str,
    pipeline_id: int,
    project_dir: str,
) -> Dict[str, str]:
    """
    Resolve the variables a job sees.
    Precedence: predefined < pipeline defaults < job overrides.
    Values may reference anything defined before them.
    """
    resolved = predefined_variables(
        job,
        ctx=ctx,
        run_id=run_id,
        pipeline_id=pipeline_id,
        project_dir=project_dir,
        image=pipeline.image_for(job),
    )
    for layer in (pipeline.variables, job.variables):
        for k, v in layer.items():
            resolved[k] = expand(str(v), resolved)
    return resolved
