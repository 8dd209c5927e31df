import json
import os
from pathlib import Path

import pytest
from click.testing import CliRunner

from stageci.cli import cli

PIPELINE = {
    "stages": ["build", "test", "release"],
    "build": {"stage": "build", "script": ["echo bin > bin"], "artifacts": {"paths": ["bin"]}},
    "test": {"stage": "test", "dependencies": ["build"], "script": ["grep bin bin"]},
    "release": {"stage": "release", "only": ["tags"], "script": ["true"]},
}


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def project(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for name in list(os.environ):
        if name.startswith("STAGECI_"):
            monkeypatch.delenv(name)
    Path("stageci_pipeline.json").write_text(json.dumps(PIPELINE), encoding="utf-8")
    return tmp_path


def test_validate(runner, project):
    result = runner.invoke(cli, ["validate"])
    assert result.exit_code == 0, result.output
    assert "build: build" in result.output
    assert "test <- build" in result.output
    assert "build -> test" in result.output


def test_plan(runner, project):
    result = runner.invoke(cli, ["plan", "--ref", "main", "--no-git"])
    assert result.exit_code == 0, result.output
    assert "release (skipped:" in result.output

    tagged = runner.invoke(cli, ["plan", "--tag", "v1.0.0"])
    assert "release (skipped:" not in tagged.output


def test_run_success_writes_json(runner, project):
    result = runner.invoke(cli, ["run", "--ref", "main", "--no-git", "--json-output", "result.json"])
    assert result.exit_code == 0, result.output
    assert "RESULTS (SUCCEEDED)" in result.output

    data = json.loads(Path("result.json").read_text())
    assert {j["job"]: j["status"] for j in data["jobs"]} == {
        "build": "succeeded",
        "test": "succeeded",
        "release": "skipped",
    }
    assert (project / ".stageci" / "logs" / data["run_id"] / "build.log").exists()


def test_run_failure_exit_code(runner, project):
    broken = dict(PIPELINE, build={"stage": "build", "script": ["exit 4"]})
    Path("stageci_pipeline.json").write_text(json.dumps(broken), encoding="utf-8")

    result = runner.invoke(cli, ["run", "--ref", "main", "--no-git"])
    assert result.exit_code == 1
    assert "aborted: stage 'build' failed" in result.output


def test_invalid_pipeline_exits_2(runner, project):
    bad = dict(PIPELINE, test={"stage": "test", "dependencies": ["ghost"], "script": ["true"]})
    Path("stageci_pipeline.json").write_text(json.dumps(bad), encoding="utf-8")

    assert runner.invoke(cli, ["validate"]).exit_code == 2
    assert runner.invoke(cli, ["run", "--ref", "main", "--no-git"]).exit_code == 2


def test_missing_pipeline_file(runner, project):
    result = runner.invoke(cli, ["validate", "--pipeline", "nope.json"])
    assert result.exit_code == 1


def test_trigger_required_without_git(runner, project):
    result = runner.invoke(cli, ["plan", "--no-git"])
    assert result.exit_code == 2
    assert "No trigger" in result.output


def test_prune(runner, project):
    assert runner.invoke(cli, ["run", "--ref", "main", "--no-git"]).exit_code == 0
    result = runner.invoke(cli, ["prune", "--cache-max-age-days", "0"])
    assert result.exit_code == 0, result.output
    assert "Removed 0 expired artifact(s)" in result.output


@pytest.mark.parametrize(
    "name,value,message",
    [
        ("STAGECI_MAX_WORKERS", "many", "must be an integer"),
        ("STAGECI_MAX_WORKERS", "0", "at least 1"),
        ("STAGECI_PROVISIONER", "podman", "must be one of local, docker"),
    ],
)
def test_invalid_environment_exits_2(runner, project, monkeypatch, name, value, message):
    monkeypatch.setenv(name, value)
    result = runner.invoke(cli, ["run", "--ref", "main", "--no-git"])
    assert result.exit_code == 2
    assert "Invalid configuration" in result.output
    assert message in result.output
    assert not isinstance(result.exception, ValueError)
