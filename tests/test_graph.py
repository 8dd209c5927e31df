import pytest

from stageci.dsl import job, pipeline, sh
from stageci.errors import ConditionError, DefinitionError
from stageci.graph import build_graph
from stageci.model import Job, Pipeline


def _ok(name, **kw):
    return job(name, sh("noop", "true"), **kw)


def test_levels_follow_stage_order():
    g = build_graph(pipeline(
        _ok("deploy", stage="deploy"),
        _ok("unit", stage="test"),
        _ok("build-a", stage="build"),
        _ok("build-b", stage="build"),
        stages=["build", "test", "deploy"],
    ))
    assert g.levels() == [["build-a", "build-b"], ["unit"], ["deploy"]]
    assert [s.ordinal for s in g.stages] == [0, 1, 2]
    assert g.earlier_jobs("deploy") == ["build-a", "build-b", "unit"]


def test_dependents_and_upstream():
    g = build_graph(pipeline(
        _ok("build", stage="build"),
        _ok("unit", stage="test", dependencies=["build"]),
        _ok("lint", stage="test", dependencies=[]),
        stages=["build", "test"],
    ))
    assert g.dependents("build") == ["unit"]
    assert g.upstream("unit") == ["build"]
    assert g.upstream("lint") == []
    assert g.job("lint").no_dependencies


def test_empty_stage_is_allowed():
    g = build_graph(pipeline(_ok("x", stage="build"), stages=["check", "build"]))
    assert g.jobs_in("check") == []


@pytest.mark.parametrize(
    "jobs,stages,match",
    [
        ([_ok("a", stage="build")], [], "no stages"),
        ([_ok("a", stage="build")], ["build", "build"], "Duplicate stage"),
        ([_ok("a", stage="build"), _ok("a", stage="build")], ["build"], "Duplicate job"),
        ([_ok("a", stage="nope")], ["build"], "unknown stage"),
        ([_ok("a", stage="build", dependencies=["ghost"])], ["build"], "missing job 'ghost'"),
        ([_ok("a", stage="build"), _ok("b", stage="build", dependencies=["a"])], ["build"], "the same stage"),
        ([_ok("a", stage="build", dependencies=["b"]), _ok("b", stage="test")], ["build", "test"], "a later stage"),
    ],
)
def test_invalid_definitions(jobs, stages, match):
    with pytest.raises(DefinitionError, match=match):
        build_graph(Pipeline(jobs=jobs, stages=stages))


def test_error_names_offending_job():
    with pytest.raises(DefinitionError) as exc:
        build_graph(pipeline(_ok("a", stage="build", dependencies=["ghost"]), stages=["build"]))
    assert exc.value.job == "a"


def test_job_without_steps_rejected():
    with pytest.raises(DefinitionError, match="no steps"):
        build_graph(Pipeline(jobs=[Job(name="empty", steps=[], stage="build")], stages=["build"]))


def test_non_positive_timeout_rejected():
    with pytest.raises(DefinitionError, match="timeout"):
        build_graph(pipeline(_ok("a", stage="build", timeout=0), stages=["build"]))


def test_malformed_condition_rejected_with_job_name():
    with pytest.raises(ConditionError) as exc:
        build_graph(pipeline(_ok("rel", stage="build", only=["/(/"]), stages=["build"]))
    assert exc.value.job == "rel"
