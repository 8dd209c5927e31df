# driver.py
from __future__ import annotations

import logging
import shutil
import threading
import time
from pathlib import Path
from typing import IO, List, Optional, Sequence

from .artifacts import ArtifactHandle, ArtifactStore
from .cache import CacheKey, CacheManager
from .conditions import TriggerContext
from .errors import CacheError, CIError, ProvisioningError, StepFailure
from .model import Job, Pipeline, Step
from .provision import Environment, ProvisionRequest, Provisioner
from .run import JobExecution, JobStatus
from .ui.console import Console, get_console
from .variables import expand, job_variables

logger = logging.getLogger(__name__)

# never copied into a job workspace
SOURCE_EXCLUDES = (".git", ".stageci", "__pycache__")


class ExecutionDriver:
    """
    Runs one job execution:
      workspace -> cache restore -> artifacts -> provision -> steps
      -> after steps -> publish (on success) -> cache persist (always)
    """

    def __init__(
        self,
        provisioner: Provisioner,
        cache: CacheManager,
        *,
        source_dir: str | Path,
        work_root: str | Path,
        log_root: str | Path,
        console: Optional[Console] = None,
    ):
        self.provisioner = provisioner
        self.cache = cache
        self.source_dir = Path(source_dir).resolve()
        self.work_root = Path(work_root).resolve()
        self.log_root = Path(log_root).resolve()
        self.console = console or get_console()

    # ------------------------------------------------------------------
    # workspace
    # ------------------------------------------------------------------

    def _prepare_workspace(self, run_id: str, job: Job, strategy: str) -> Path:
        ws = self.work_root / run_id / job.name
        if ws.exists():
            shutil.rmtree(ws)
        if strategy == "none" or not self.source_dir.is_dir():
            ws.mkdir(parents=True)
        else:
            shutil.copytree(
                self.source_dir,
                ws,
                symlinks=True,
                ignore=self._ignore_source,
            )
        return ws

    def _ignore_source(self, directory: str, names: List[str]) -> set:
        skipped = {n for n in names if n in SOURCE_EXCLUDES}
        for n in names:
            if (Path(directory) / n).resolve() in (self.work_root, self.log_root):
                skipped.add(n)
        return skipped

    # ------------------------------------------------------------------
    # steps
    # ------------------------------------------------------------------

    def _run_steps(
        self,
        job: Job,
        steps: Sequence[Step],
        env: Environment,
        variables: dict,
        log: IO[str],
        deadline: Optional[float],
        cancel_event: Optional[threading.Event],
    ) -> None:
        for step in steps:
            self.console.print_step(job.name, step.name)
            log.write(f"$ {step.run}\n")
            try:
                code = env.run(step, variables, log=log, deadline=deadline, cancel_event=cancel_event)
            except OSError as e:
                raise ProvisioningError(f"could not start step: {e}", job=job.name, step=step.name) from e
            if code != 0:
                log.write(f"step '{step.name}' exited with {code}\n")
                raise StepFailure(job=job.name, step=step.name, cmd=step.run, exit_code=code)

    def _run_after_steps(self, job, env, variables, log, deadline, cancel_event) -> None:
        """After steps share the job deadline; none start once it has passed."""
        for step in job.after_steps:
            if deadline is not None and time.monotonic() >= deadline:
                log.write("job timeout reached, remaining after steps not run\n")
                logger.warning("[%s] timeout reached before after step '%s'", job.name, step.name)
                return
            log.write(f"$ {step.run}  (after)\n")
            try:
                code = env.run(step, variables, log=log, deadline=deadline, cancel_event=cancel_event)
            except CIError as e:
                logger.warning("[%s] after step '%s' aborted: %s", job.name, step.name, e.message)
                return
            except OSError as e:
                logger.warning("[%s] after step '%s' could not start: %s", job.name, step.name, e)
                return
            if code != 0:
                logger.warning("[%s] after step '%s' exited with %s (ignored)", job.name, step.name, code)

    # ------------------------------------------------------------------
    # cache
    # ------------------------------------------------------------------

    def _persist_cache(self, job: Job, key: Optional[CacheKey], paths: Sequence[str], ws: Optional[Path]) -> None:
        """Best effort: failures are logged, never raised."""
        if key is None or ws is None or not ws.exists():
            logger.debug("[%s] nothing to persist", job.name)
            return
        try:
            saved = self.cache.persist(key, ws, paths)
            self.console.print_cache(job.name, f"saved {key} ({len(saved.files)} files)")
        except CacheError as e:
            logger.error("[%s] cache persist failed: %s", job.name, e.message)
            self.console.print_cache(job.name, "persist failed (ignored)")

    # ------------------------------------------------------------------
    # entry point
    # ------------------------------------------------------------------

    def run(
        self,
        execution: JobExecution,
        job: Job,
        pipeline: Pipeline,
        *,
        ctx: TriggerContext,
        run_id: str,
        pipeline_id: int,
        artifacts: ArtifactStore,
        inputs: List[ArtifactHandle],
        cancel_event: Optional[threading.Event] = None,
    ) -> JobExecution:
        """
        Execute `job` and drive `execution` to a terminal state.
        Job-level errors end up on the execution record, they are not raised.
        """
        execution.transition(JobStatus.RUNNING)
        self.console.print_job_start(job.name)

        log_path = self.log_root / run_id / f"{job.name}.log"
        log_path.parent.mkdir(parents=True, exist_ok=True)
        execution.log_path = str(log_path)

        image = pipeline.image_for(job)
        cache_spec = pipeline.cache_for(job)
        deadline = time.monotonic() + job.timeout if job.timeout else None

        ws: Optional[Path] = None
        env: Optional[Environment] = None
        cache_key: Optional[CacheKey] = None
        cache_paths: List[str] = []

        with open(log_path, "w", encoding="utf-8") as log:
            try:
                strategy = str(job.variables.get("GIT_STRATEGY", pipeline.variables.get("GIT_STRATEGY", "clone")))
                ws = self._prepare_workspace(run_id, job, strategy)
                request = ProvisionRequest(
                    run_id=run_id,
                    job=job.name,
                    image=image,
                    workspace=ws,
                    project=self.source_dir.name,
                )
                variables = job_variables(
                    pipeline,
                    job,
                    ctx=ctx,
                    run_id=run_id,
                    pipeline_id=pipeline_id,
                    project_dir=self.provisioner.project_dir(request),
                )

                if cache_spec is not None:
                    cache_key = self.cache.key_for(cache_spec, variables)
                    cache_paths = [expand(p, variables) for p in cache_spec.paths]
                    execution.cache_key = str(cache_key)
                    restored = self.cache.restore(cache_key, ws)
                    self.console.print_cache(job.name, restored.reason)

                for handle in inputs:
                    files = artifacts.materialize(handle, ws)
                    log.write(f"restored artifact '{handle.name}' from {handle.job} ({len(files)} files)\n")

                env = self.provisioner.provision(request)
                log.write(f"environment: {self.provisioner.name} image={image or '-'}\n")

                steps = pipeline.before_steps_for(job) + list(job.steps)
                try:
                    self._run_steps(job, steps, env, variables, log, deadline, cancel_event)
                finally:
                    self._run_after_steps(job, env, variables, log, deadline, cancel_event)

                handle = artifacts.publish(job.name, ws, job.artifacts, variables)
                execution.artifact = handle.name
                execution.exit_code = 0
                execution.transition(JobStatus.SUCCEEDED)

            except StepFailure as e:
                execution.exit_code = e.exit_code
                self._fail(execution, e, log)
            except CIError as e:
                self._fail(execution, e, log)
            except OSError as e:
                # workspace copy / log IO on the host
                self._fail(execution, ProvisioningError(f"workspace error: {e}", job=job.name), log)
            finally:
                if env is not None:
                    env.close()
                self._persist_cache(job, cache_key, cache_paths, ws)

        self.console.print_job_finished(job.name, execution.status.value, execution.reason)
        return execution

    def _fail(self, execution: JobExecution, err: CIError, log: IO[str]) -> None:
        log.write(f"{err}\n")
        logger.info("[%s] failed: %s", execution.job, err.message)
        execution.error_kind = err.kind
        execution.transition(JobStatus.FAILED, err.message)
