from pathlib import Path

from stageci.conditions import TriggerContext, evaluate
from stageci.graph import build_graph
from stageci.loader import load_pipeline

EXAMPLE = Path(__file__).resolve().parents[1] / "stageci_pipeline.py"


def _graph():
    return build_graph(load_pipeline(EXAMPLE))


def _eligible(graph, ctx):
    return {name for name, job in graph.by_name.items() if evaluate(job.condition, ctx).eligible}


def test_example_builds():
    g = _graph()
    assert [s.name for s in g.stages] == ["check", "build", "test", "release", "package"]
    assert [j.name for j in g.jobs_in("check")] == ["check-stable", "check-beta", "check-nightly", "check-1.32.0"]
    assert g.dependents("build-x86_64-linux-musl") == ["release-github", "test-public"]


def test_release_jobs_only_on_version_tags():
    g = _graph()
    releases = {"release-crate", "release-github", "release-snap", "package-aur"}

    assert not releases & _eligible(g, TriggerContext.for_branch("master", default_branch="master"))
    assert releases <= _eligible(g, TriggerContext.for_tag("v0.2.58"))
    assert not releases & _eligible(g, TriggerContext.for_tag("nightly-build"))


def test_snap_release_publishes_a_glob_artifact():
    snap = _graph().by_name["release-snap"]
    assert snap.image == "snapcore/snapcraft:edge"
    assert snap.dependencies == []
    assert snap.artifacts.paths == ("pkg/snap/ffsend_*_amd64.snap",)
    assert snap.artifacts.name == "ffsend-snap-x86_64"


def test_cache_is_keyed_per_pipeline_and_toolchain():
    spec = _graph().pipeline.cache
    assert spec.group == "$CI_PIPELINE_ID"
    assert spec.variant == ("$RUST_VERSION",)
