# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional

ENV_PREFIX = "STAGECI_"
PROVISIONERS = ("local", "docker")


def _bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _workers(value: str) -> int:
    try:
        n = int(value)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}MAX_WORKERS must be an integer, got {value!r}") from None
    if n < 1:
        raise ValueError(f"{ENV_PREFIX}MAX_WORKERS must be at least 1, got {n}")
    return n


@dataclass(frozen=True)
class EngineConfig:
    """Where the engine keeps its state and how it schedules jobs."""
    state_dir: Path = Path(".stageci")
    max_workers: Optional[int] = None
    fail_fast: bool = True
    provisioner: str = "local"
    docker_default_image: str = "alpine:latest"
    default_branch: str = "main"

    @property
    def work_dir(self) -> Path:
        return self.state_dir / "work"

    @property
    def cache_dir(self) -> Path:
        return self.state_dir / "cache"

    @property
    def artifact_dir(self) -> Path:
        return self.state_dir / "artifacts"

    @property
    def log_dir(self) -> Path:
        return self.state_dir / "logs"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        env = os.environ if environ is None else environ
        cfg = cls()
        if f"{ENV_PREFIX}STATE_DIR" in env:
            cfg = replace(cfg, state_dir=Path(env[f"{ENV_PREFIX}STATE_DIR"]))
        if f"{ENV_PREFIX}MAX_WORKERS" in env:
            cfg = replace(cfg, max_workers=_workers(env[f"{ENV_PREFIX}MAX_WORKERS"]))
        if f"{ENV_PREFIX}FAIL_FAST" in env:
            cfg = replace(cfg, fail_fast=_bool(env[f"{ENV_PREFIX}FAIL_FAST"]))
        if f"{ENV_PREFIX}PROVISIONER" in env:
            name = env[f"{ENV_PREFIX}PROVISIONER"]
            if name not in PROVISIONERS:
                raise ValueError(f"{ENV_PREFIX}PROVISIONER must be one of {', '.join(PROVISIONERS)}, got {name!r}")
            cfg = replace(cfg, provisioner=name)
        if f"{ENV_PREFIX}DOCKER_IMAGE" in env:
            cfg = replace(cfg, docker_default_image=env[f"{ENV_PREFIX}DOCKER_IMAGE"])
        if f"{ENV_PREFIX}DEFAULT_BRANCH" in env:
            cfg = replace(cfg, default_branch=env[f"{ENV_PREFIX}DEFAULT_BRANCH"])
        return cfg

    def with_overrides(self, **overrides) -> "EngineConfig":
        """Apply CLI overrides; None means "not given"."""
        given = {k: v for k, v in overrides.items() if v is not None}
        if "state_dir" in given:
            given["state_dir"] = Path(given["state_dir"])
        return replace(self, **given)
