import json
import logging
from pathlib import Path

import pytest

from stageci.config import EngineConfig
from stageci.observability import setup_logging


def test_defaults():
    cfg = EngineConfig()
    assert cfg.fail_fast is True
    assert cfg.provisioner == "local"
    assert cfg.cache_dir == Path(".stageci/cache")
    assert cfg.artifact_dir == Path(".stageci/artifacts")


def test_from_env():
    cfg = EngineConfig.from_env({
        "STAGECI_STATE_DIR": "/tmp/ci",
        "STAGECI_MAX_WORKERS": "3",
        "STAGECI_FAIL_FAST": "no",
        "STAGECI_PROVISIONER": "docker",
        "STAGECI_DEFAULT_BRANCH": "master",
    })
    assert cfg.work_dir == Path("/tmp/ci/work")
    assert cfg.max_workers == 3
    assert cfg.fail_fast is False
    assert cfg.provisioner == "docker"
    assert cfg.default_branch == "master"


def test_overrides_ignore_unset_options():
    cfg = EngineConfig.from_env({"STAGECI_MAX_WORKERS": "3"}).with_overrides(
        max_workers=None, fail_fast=False, state_dir="state"
    )
    assert cfg.max_workers == 3
    assert cfg.fail_fast is False
    assert cfg.log_dir == Path("state/logs")


def test_json_logging(capsys):
    setup_logging("INFO", json_format=True)
    try:
        logging.getLogger("stageci.test").info("persisted", extra={"run_id": "r1", "job": "build"})
        line = capsys.readouterr().err.strip().splitlines()[-1]
        record = json.loads(line)
        assert record["message"] == "persisted"
        assert record["level"] == "INFO"
        assert record["run_id"] == "r1"
        assert record["job"] == "build"
    finally:
        setup_logging("WARNING")


def test_from_env_rejects_unknown_provisioner():
    with pytest.raises(ValueError, match="STAGECI_PROVISIONER"):
        EngineConfig.from_env({"STAGECI_PROVISIONER": "podman"})
