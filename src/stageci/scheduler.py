# scheduler.py
from __future__ import annotations

import itertools
import logging
import os
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from .artifacts import ArtifactHandle, ArtifactStore
from .conditions import Eligibility, TriggerContext, evaluate
from .driver import ExecutionDriver
from .errors import MissingArtifactError
from .graph import PipelineGraph
from .model import Job
from .run import JobExecution, JobStatus, Run, RunResult, RunStatus, utc_now
from .ui.console import Console, get_console

logger = logging.getLogger(__name__)

_pipeline_ids = itertools.count(int(time.time()))


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


class Scheduler:
    """
    Stage-barrier scheduler:

    - Walks stages in order; a stage starts only when every job of the
      previous stage is terminal.
    - Per stage: conditions first (ineligible -> skipped), then required
      artifacts (missing -> failed, never dispatched), then all remaining
      jobs run in parallel.
    - Fail-fast (default): after a stage with a failed job, no job of a
      later stage is dispatched. Jobs that explicitly depend on a job that
      did not succeed fail with missing_artifact, the others are skipped.
    """

    def __init__(
        self,
        graph: PipelineGraph,
        driver: ExecutionDriver,
        *,
        artifact_root: str | Path,
        fail_fast: bool = True,
        max_workers: int | None = None,
        console: Optional[Console] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.graph = graph
        self.driver = driver
        self.artifact_root = Path(artifact_root)
        self.fail_fast = fail_fast
        self.max_workers = max_workers
        self.console = console or get_console()
        self.clock = clock

    # ------------------------------------------------------------------
    # planning
    # ------------------------------------------------------------------

    def plan(self, ctx: TriggerContext) -> List[Tuple[str, str, Eligibility]]:
        """(stage, job, eligibility) for every job, in stage order."""
        out = []
        for stage in self.graph.stages:
            for job in self.graph.jobs_in(stage.name):
                out.append((stage.name, job.name, evaluate(job.condition, ctx)))
        return out

    # ------------------------------------------------------------------
    # artifacts
    # ------------------------------------------------------------------

    def _inputs_for(self, job: Job, store: ArtifactStore) -> List[ArtifactHandle]:
        """
        Resolve the artifact handles a job receives. Explicit dependencies
        are required; the implicit default takes whatever earlier stages
        published.
        """
        if job.dependencies is None:
            handles = []
            for name in self.graph.earlier_jobs(job.name):
                if not store.has(name):
                    continue
                try:
                    handles.append(store.fetch(name, requested_by=job.name))
                except MissingArtifactError as e:
                    logger.debug("[%s] implicit artifact from %s unavailable: %s", job.name, name, e.reason)
            return handles

        return [store.fetch(dep, requested_by=job.name) for dep in job.dependencies]

    # ------------------------------------------------------------------
    # execution
    # ------------------------------------------------------------------

    def _skip(self, execution: JobExecution, reason: str) -> None:
        execution.transition(JobStatus.SKIPPED, reason)
        self.console.print_job_skipped(execution.job, reason)

    def _fail_missing(self, execution: JobExecution, err: MissingArtifactError) -> None:
        execution.error_kind = err.kind
        execution.transition(JobStatus.FAILED, err.message)
        self.console.print_job_finished(execution.job, execution.status.value, err.message)

    def _abort_stage(self, run: Run, stage: str, store: ArtifactStore, reason: str) -> None:
        """
        Nothing in the stage is dispatched. Eligible jobs whose explicit
        dependencies can no longer be satisfied fail with missing_artifact,
        the rest are skipped.
        """
        for job in self.graph.jobs_in(stage):
            execution = run.execution(job.name)
            if job.dependencies and evaluate(job.condition, run.ctx).eligible:
                try:
                    self._inputs_for(job, store)
                except MissingArtifactError as e:
                    self._fail_missing(execution, e)
                    continue
            self._skip(execution, reason)

    def _dispatch(
        self,
        run: Run,
        job: Job,
        inputs: List[ArtifactHandle],
        store: ArtifactStore,
        cancel_event: Optional[threading.Event],
    ) -> JobExecution:
        execution = run.execution(job.name)
        if cancel_event is not None and cancel_event.is_set():
            self._skip(execution, "cancelled")
            return execution
        return self.driver.run(
            execution,
            job,
            self.graph.pipeline,
            ctx=run.ctx,
            run_id=run.run_id,
            pipeline_id=run.pipeline_id,
            artifacts=store,
            inputs=inputs,
            cancel_event=cancel_event,
        )

    def _run_stage(self, run: Run, stage: str, store: ArtifactStore, cancel_event) -> None:
        jobs = self.graph.jobs_in(stage)
        self.console.print_stage(stage, [j.name for j in jobs])

        ready: List[Tuple[Job, List[ArtifactHandle]]] = []
        for job in jobs:
            execution = run.execution(job.name)

            decision = evaluate(job.condition, run.ctx)
            if not decision.eligible:
                self._skip(execution, decision.reason)
                continue

            try:
                inputs = self._inputs_for(job, store)
            except MissingArtifactError as e:
                self._fail_missing(execution, e)
                continue

            ready.append((job, inputs))

        if not ready:
            return

        workers = self.max_workers or min(len(ready), max(1, (os.cpu_count() or 2)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"stageci-{stage}") as pool:
            futures = {
                pool.submit(self._dispatch, run, job, inputs, store, cancel_event): job.name
                for job, inputs in ready
            }
            # stage barrier: every dispatched job reaches a terminal state
            for future in as_completed(futures):
                name = futures[future]
                try:
                    future.result()
                except Exception as e:
                    logger.exception("[%s] internal error in execution driver", name)
                    execution = run.execution(name)
                    if not execution.status.terminal:
                        execution.error_kind = "internal_error"
                        execution.transition(JobStatus.FAILED, f"internal error: {e}")

    def run(
        self,
        ctx: TriggerContext,
        *,
        run_id: Optional[str] = None,
        pipeline_id: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> RunResult:
        run = Run(
            run_id=run_id or new_run_id(),
            pipeline_id=pipeline_id if pipeline_id is not None else next(_pipeline_ids),
            ctx=ctx,
        )
        for stage in self.graph.stages:
            for job in self.graph.jobs_in(stage.name):
                run.executions[job.name] = JobExecution(job=job.name, stage=stage.name)

        store = ArtifactStore(self.artifact_root, run.run_id, clock=self.clock)

        run.status = RunStatus.RUNNING
        run.started_at = utc_now()
        logger.info("run %s started (pipeline %s, %s %s)", run.run_id, run.pipeline_id, ctx.event, ctx.ref)

        abort_reason: Optional[str] = None
        for stage in self.graph.stages:
            if abort_reason is None and cancel_event is not None and cancel_event.is_set():
                run.cancelled = True
                abort_reason = "cancelled"

            if run.cancelled:
                for job in self.graph.jobs_in(stage.name):
                    self._skip(run.execution(job.name), abort_reason)
                continue
            if abort_reason is not None:
                self._abort_stage(run, stage.name, store, abort_reason)
                continue

            self._run_stage(run, stage.name, store, cancel_event)

            if cancel_event is not None and cancel_event.is_set():
                run.cancelled = True
                abort_reason = "cancelled"
            elif self.fail_fast:
                failed = [j.name for j in self.graph.jobs_in(stage.name)
                          if run.execution(j.name).status is JobStatus.FAILED]
                if failed:
                    abort_reason = f"aborted: stage '{stage.name}' failed ({', '.join(failed)})"
                    logger.info("fail-fast: %s", abort_reason)

        run.status = RunStatus.FAILED if (run.failed_jobs() or run.cancelled) else RunStatus.SUCCEEDED
        run.finished_at = utc_now()
        logger.info("run %s finished: %s", run.run_id, run.status.value)
        return run.result()
