from .dsl import artifacts, job, matrix, pipeline, script, sh
from .conditions import TriggerContext, on_tags
from .graph import build_graph
from .model import Job, Pipeline, Step
from .run import JobStatus, RunResult

__all__ = [
    "artifacts", "job", "matrix", "pipeline", "script", "sh",
    "TriggerContext", "on_tags", "build_graph",
    "Job", "Pipeline", "Step", "JobStatus", "RunResult",
]
