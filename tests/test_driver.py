import threading
import time

import pytest

from stageci.artifacts import ArtifactStore
from stageci.cache import CacheManager
from stageci.conditions import TriggerContext
from stageci.driver import ExecutionDriver
from stageci.dsl import artifacts, cache, job, pipeline, sh
from stageci.errors import CacheError, ProvisioningError
from stageci.provision import LocalProvisioner
from stageci.run import JobExecution, JobStatus

CTX = TriggerContext.for_branch("main")


@pytest.fixture
def store(state_dir):
    return ArtifactStore(state_dir / "artifacts", "run1")


def _run(driver, p, name, store, *, inputs=(), cancel_event=None):
    j = next(x for x in p.jobs if x.name == name)
    execution = JobExecution(job=name, stage=j.stage)
    return driver.run(
        execution, j, p,
        ctx=CTX, run_id="run1", pipeline_id=1,
        artifacts=store, inputs=list(inputs), cancel_event=cancel_event,
    )


def test_success_publishes_and_logs(make_driver, store, state_dir):
    p = pipeline(
        job("build", sh("write", "echo built > out.txt; echo to-the-log"),
            stage="build", artifacts=artifacts("out.txt")),
        stages=["build"],
    )
    e = _run(make_driver(), p, "build", store)

    assert e.status is JobStatus.SUCCEEDED
    assert e.exit_code == 0
    assert e.started_at <= e.finished_at
    assert store.fetch("build").files == ("out.txt",)
    log = (state_dir / "logs" / "run1" / "build.log").read_text()
    assert "to-the-log" in log
    assert "$ echo built" in log


def test_step_failure_is_recorded(make_driver, store):
    p = pipeline(
        job("build", sh("ok", "true"), sh("boom", "exit 3"), sh("never", "touch never"), stage="build"),
        stages=["build"],
    )
    e = _run(make_driver(), p, "build", store)

    assert e.status is JobStatus.FAILED
    assert e.error_kind == "step_failure"
    assert e.exit_code == 3
    assert "boom" in e.reason
    assert not store.has("build")


def test_workspace_is_a_copy_of_the_source(make_driver, store, project_dir, state_dir):
    (project_dir / ".git").mkdir()
    (project_dir / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
    p = pipeline(job("check", sh("read", "test -f README.md && test ! -e .git"), stage="build"), stages=["build"])

    assert _run(make_driver(), p, "check", store).status is JobStatus.SUCCEEDED
    assert (project_dir / "README.md").exists()
    assert not (state_dir / "work" / "run1" / "check" / ".git").exists()


def test_git_strategy_none_starts_empty(make_driver, store):
    p = pipeline(
        job("bare", sh("empty", "test ! -e README.md"), stage="build", variables={"GIT_STRATEGY": "none"}),
        stages=["build"],
    )
    assert _run(make_driver(), p, "bare", store).status is JobStatus.SUCCEEDED


def test_before_steps_inherit_and_override(make_driver, store, state_dir):
    p = pipeline(
        job("inherit", sh("check", "test -f before.txt"), stage="build"),
        job("override", sh("check", "test ! -e before.txt"), stage="build", before=[]),
        stages=["build"],
        before=[sh("prepare", "touch before.txt")],
    )
    driver = make_driver()
    assert _run(driver, p, "inherit", store).status is JobStatus.SUCCEEDED
    assert _run(driver, p, "override", store).status is JobStatus.SUCCEEDED


def test_after_steps_run_after_a_failing_step(make_driver, store, state_dir):
    p = pipeline(
        job("build", sh("boom", "false"), stage="build", after=[sh("cleanup", "touch after-ran")]),
        stages=["build"],
    )
    e = _run(make_driver(), p, "build", store)
    assert e.status is JobStatus.FAILED
    assert (state_dir / "work" / "run1" / "build" / "after-ran").exists()


def test_variables_reach_the_shell(make_driver, store, state_dir):
    p = pipeline(
        job("build", sh("env", 'echo "$CI_JOB_NAME:$CI_COMMIT_BRANCH:$RUST_TARGET" > env.txt'),
            stage="build", variables={"RUST_TARGET": "musl"}),
        stages=["build"],
        variables={"RUST_TARGET": "gnu"},
    )
    _run(make_driver(), p, "build", store)
    assert (state_dir / "work" / "run1" / "build" / "env.txt").read_text().strip() == "build:main:musl"


def test_step_cwd(make_driver, store, project_dir):
    (project_dir / "pkg" / "aur").mkdir(parents=True)
    p = pipeline(
        job("pkg", sh("where", "test \"$(basename \"$PWD\")\" = aur"), stage="build", cwd="pkg/aur"),
        stages=["build"],
    )
    assert _run(make_driver(), p, "pkg", store).status is JobStatus.SUCCEEDED


def test_timeout(make_driver, store):
    p = pipeline(job("slow", sh("sleep", "sleep 5"), stage="build", timeout=0.3), stages=["build"])
    e = _run(make_driver(), p, "slow", store)
    assert e.status is JobStatus.FAILED
    assert e.error_kind == "timeout"


def test_cancel_kills_running_step(make_driver, store):
    p = pipeline(job("slow", sh("sleep", "sleep 5"), stage="build"), stages=["build"])
    cancel = threading.Event()
    threading.Timer(0.3, cancel.set).start()
    e = _run(make_driver(), p, "slow", store, cancel_event=cancel)
    assert e.status is JobStatus.FAILED
    assert e.error_kind == "cancelled"
    assert e.duration < 4


def test_inputs_are_materialized(make_driver, store, state_dir):
    p = pipeline(
        job("build", sh("write", "echo payload > bin.txt"), stage="build", artifacts=artifacts("bin.txt")),
        job("use", sh("read", "grep payload bin.txt"), stage="test", variables={"GIT_STRATEGY": "none"}),
        stages=["build", "test"],
    )
    driver = make_driver()
    _run(driver, p, "build", store)
    e = _run(driver, p, "use", store, inputs=[store.fetch("build")])
    assert e.status is JobStatus.SUCCEEDED


def test_cache_round_trip_between_jobs(make_driver, store, state_dir):
    p = pipeline(
        job("fill", sh("fill", "mkdir -p vendor && echo dep > vendor/dep.txt"), stage="build"),
        job("use", sh("use", "grep dep vendor/dep.txt"), stage="test"),
        stages=["build", "test"],
        cache=cache("vendor/", group="deps"),
    )
    driver = make_driver(CacheManager(state_dir / "cache"))
    first = _run(driver, p, "fill", store)
    assert first.cache_key == "deps"
    assert _run(driver, p, "use", store).status is JobStatus.SUCCEEDED


def test_failed_job_still_persists_cache(make_driver, store, state_dir):
    p = pipeline(
        job("fill", sh("fill", "mkdir -p vendor && echo dep > vendor/dep.txt && exit 1"), stage="build"),
        stages=["build"],
        cache=cache("vendor/", group="deps"),
    )
    cm = CacheManager(state_dir / "cache")
    _run(make_driver(cm), p, "fill", store)
    assert cm.archive_path(cm.key_for(p.cache, {})).exists()


def test_after_steps_are_bounded_by_the_timeout(make_driver, store):
    p = pipeline(
        job("slow", sh("sleep", "sleep 5"), stage="build", timeout=0.5,
            after=[sh("cleanup", "sleep 3")]),
        stages=["build"],
    )
    started = time.monotonic()
    e = _run(make_driver(), p, "slow", store)

    assert e.status is JobStatus.FAILED
    assert e.error_kind == "timeout"
    assert time.monotonic() - started < 2.0


class BrokenProvisioner(LocalProvisioner):
    def provision(self, request):
        raise ProvisioningError("image pull failed", job=request.job)


class FailingCache(CacheManager):
    def persist(self, key, workspace, paths):
        raise CacheError(f"disk full while saving {key}")


def _driver(provisioner, cm, project_dir, state_dir, console):
    return ExecutionDriver(
        provisioner, cm,
        source_dir=project_dir,
        work_root=state_dir / "work",
        log_root=state_dir / "logs",
        console=console,
    )


def test_provisioning_failure(store, project_dir, state_dir, quiet_console):
    p = pipeline(
        job("build", sh("fill", "mkdir -p vendor"), stage="build"),
        stages=["build"],
        cache=cache("vendor/", group="deps"),
    )
    cm = CacheManager(state_dir / "cache")
    driver = _driver(BrokenProvisioner(), cm, project_dir, state_dir, quiet_console)
    e = _run(driver, p, "build", store)

    assert e.status is JobStatus.FAILED
    assert e.error_kind == "provisioning_failure"
    assert "image pull failed" in e.reason
    assert not store.has("build")
    # persisted even though no step ran
    assert cm.archive_path(cm.key_for(p.cache, {})).exists()


def test_cache_persist_failure_does_not_fail_the_job(store, project_dir, state_dir, quiet_console):
    p = pipeline(
        job("build", sh("fill", "mkdir -p vendor && echo dep > vendor/dep.txt"), stage="build"),
        stages=["build"],
        cache=cache("vendor/", group="deps"),
    )
    driver = _driver(LocalProvisioner(), FailingCache(state_dir / "cache"), project_dir, state_dir, quiet_console)
    e = _run(driver, p, "build", store)

    assert e.status is JobStatus.SUCCEEDED
    assert e.error_kind is None
    assert store.has("build")
