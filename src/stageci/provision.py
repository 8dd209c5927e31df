# provision.py
from __future__ import annotations

import logging
import os
import re
import signal
import subprocess
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Mapping, Optional, Protocol

from .errors import JobCancelled, JobTimeout, ProvisioningError
from .model import Step

logger = logging.getLogger(__name__)

TOOL_HINTS = {
    "docker": "Install Docker and ensure the daemon is running.",
    "sh": "A POSIX shell (sh) must be on PATH.",
}

_POLL_SECONDS = 0.1


@dataclass(frozen=True)
class ProvisionRequest:
    run_id: str
    job: str
    image: Optional[str]
    workspace: Path
    project: str


class Environment(Protocol):
    project_dir: str

    def run(
        self,
        step: Step,
        env: Mapping[str, str],
        *,
        log: IO[str],
        deadline: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> int: ...

    def close(self) -> None: ...


class Provisioner(Protocol):
    name: str

    def project_dir(self, request: ProvisionRequest) -> str: ...

    def provision(self, request: ProvisionRequest) -> Environment: ...


# ----------------------------------------------------------------------
# Process supervision
# ----------------------------------------------------------------------

def _kill(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        proc.kill()
    proc.wait()


def _supervise(
    proc: subprocess.Popen,
    *,
    job: str,
    step: str,
    deadline: Optional[float],
    cancel_event: Optional[threading.Event],
) -> int:
    """Wait for a step process; kill it on timeout or cancellation."""
    while True:
        try:
            return proc.wait(timeout=_POLL_SECONDS)
        except subprocess.TimeoutExpired:
            pass
        if cancel_event is not None and cancel_event.is_set():
            _kill(proc)
            raise JobCancelled("run cancelled while step was running", job=job, step=step)
        if deadline is not None and time.monotonic() >= deadline:
            _kill(proc)
            raise JobTimeout("job exceeded its timeout", job=job, step=step)


# ----------------------------------------------------------------------
# Local (subprocess in the job workspace)
# ----------------------------------------------------------------------

class LocalEnvironment:
    def __init__(self, request: ProvisionRequest):
        self.request = request
        self.project_dir = str(request.workspace)

    def run(self, step, env, *, log, deadline=None, cancel_event=None) -> int:
        cwd = (self.request.workspace / (step.cwd or ".")).resolve()
        if not cwd.exists():
            log.write(f"cwd not found: {cwd}\n")
            return 1

        full_env = os.environ.copy()
        full_env.update(env)

        log.flush()
        proc = subprocess.Popen(
            ["sh", "-c", step.run],
            cwd=str(cwd),
            env=full_env,
            stdout=log,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            start_new_session=True,
        )
        return _supervise(proc, job=self.request.job, step=step.name, deadline=deadline, cancel_event=cancel_event)

    def close(self) -> None:
        pass


class LocalProvisioner:
    """Runs steps with the host shell. The image is recorded but not enforced."""

    name = "local"

    def project_dir(self, request: ProvisionRequest) -> str:
        return str(request.workspace)

    def provision(self, request: ProvisionRequest) -> LocalEnvironment:
        if not request.workspace.is_dir():
            raise ProvisioningError(f"workspace missing: {request.workspace}", job=request.job)
        if request.image:
            logger.debug("[%s] local provisioner ignores image %s", request.job, request.image)
        return LocalEnvironment(request)


# ----------------------------------------------------------------------
# Docker (one long-lived container per job execution)
# ----------------------------------------------------------------------

def _check_docker_available(job: str) -> None:
    try:
        subprocess.run(["docker", "--version"], capture_output=True, check=True)
    except (subprocess.CalledProcessError, FileNotFoundError) as e:
        raise ProvisioningError(
            "Docker is not available",
            job=job,
            details={"hint": TOOL_HINTS["docker"]},
        ) from e


class DockerEnvironment:
    def __init__(self, request: ProvisionRequest, container: str, project_dir: str):
        self.request = request
        self.container = container
        self.project_dir = project_dir

    def run(self, step, env, *, log, deadline=None, cancel_event=None) -> int:
        container_cwd = f"{self.project_dir}/{step.cwd or '.'}".replace("//", "/")
        cmd = ["docker", "exec", "-w", container_cwd]
        for key, value in env.items():
            cmd.extend(["-e", f"{key}={value}"])
        cmd.extend([self.container, "sh", "-c", step.run])

        log.flush()
        proc = subprocess.Popen(
            cmd,
            stdout=log,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            start_new_session=True,
        )
        return _supervise(proc, job=self.request.job, step=step.name, deadline=deadline, cancel_event=cancel_event)

    def close(self) -> None:
        proc = subprocess.run(["docker", "rm", "-f", self.container], capture_output=True, text=True)
        if proc.returncode != 0:
            logger.warning("[%s] could not remove container %s: %s", self.request.job, self.container, proc.stderr.strip())


class DockerProvisioner:
    """
    Creates a container from the job image with the workspace mounted at
    /builds/<project>, then runs every step with `docker exec`.
    """

    name = "docker"

    def __init__(self, default_image: str = "alpine:latest", extra_args: Optional[list[str]] = None):
        self.default_image = default_image
        self.extra_args = list(extra_args or [])

    def project_dir(self, request: ProvisionRequest) -> str:
        return f"/builds/{request.project}"

    def provision(self, request: ProvisionRequest) -> DockerEnvironment:
        _check_docker_available(request.job)

        image = request.image or self.default_image
        project_dir = self.project_dir(request)
        safe = re.sub(r"[^a-zA-Z0-9_.-]", "-", f"{request.job}")
        container = f"stageci-{safe}-{uuid.uuid4().hex[:8]}"

        cmd = [
            "docker", "run", "-d",
            "--name", container,
            "-v", f"{request.workspace.resolve()}:{project_dir}",
            "-w", project_dir,
            "--entrypoint", "sh",
            *self.extra_args,
            image,
            "-c", "while :; do sleep 3600; done",
        ]
        logger.debug("[%s] %s", request.job, " ".join(cmd))
        proc = subprocess.run(cmd, capture_output=True, text=True)
        if proc.returncode != 0:
            raise ProvisioningError(
                f"could not start container from image '{image}'",
                job=request.job,
                details={"stderr": proc.stderr.strip()[-2000:]},
            )
        return DockerEnvironment(request, container, project_dir)


def get_provisioner(name: str, **kwargs) -> Provisioner:
    if name == "local":
        return LocalProvisioner()
    if name == "docker":
        return DockerProvisioner(**kwargs)
    raise ValueError(f"Unknown provisioner: {name!r} (expected 'local' or 'docker')")
