# artifacts.py
"""
Run-scoped artifact store.

Artifacts are immutable bundles published by a job that succeeded. They live
under `root/<run_id>/`, so two runs never see each other's outputs even when
their jobs share names. Downstream jobs fetch them by upstream job name.
"""

from __future__ import annotations

import json
import logging
import re
import shutil
import tarfile
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from .archive import extract_archive, resolve_paths, sha256_str, write_archive, write_json
from .errors import ArtifactError, MissingArtifactError
from .model import ArtifactSpec
from .variables import expand

logger = logging.getLogger(__name__)

DEFAULT_ARTIFACT_DIR = ".stageci/artifacts"

_UNITS = {
    "s": 1, "sec": 1, "secs": 1, "second": 1, "seconds": 1,
    "m": 60, "min": 60, "mins": 60, "minute": 60, "minutes": 60,
    "h": 3600, "hr": 3600, "hrs": 3600, "hour": 3600, "hours": 3600,
    "d": 86400, "day": 86400, "days": 86400,
    "w": 604800, "week": 604800, "weeks": 604800,
    "mo": 2592000, "month": 2592000, "months": 2592000,
    "y": 31536000, "year": 31536000, "years": 31536000,
}
_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)\s*([a-z]*)")


def parse_duration(text: Optional[str]) -> Optional[float]:
    """
    "1 month" -> 2592000.0, "2 days 3 hrs" -> 183600.0, "3600" -> 3600.0.
    None or "never" means no expiry.
    """
    if text is None:
        return None
    s = str(text).strip().lower()
    if s in ("", "never"):
        return None

    total = 0.0
    pos = 0
    for m in _DURATION_RE.finditer(s):
        if s[pos:m.start()].strip(" ,and"):
            raise ValueError(f"Invalid duration: {text!r}")
        unit = m.group(2) or "s"
        if unit not in _UNITS:
            raise ValueError(f"Invalid duration unit {unit!r} in {text!r}")
        total += float(m.group(1)) * _UNITS[unit]
        pos = m.end()
    if pos == 0 or s[pos:].strip():
        raise ValueError(f"Invalid duration: {text!r}")
    return total


def _slug(job_name: str) -> str:
    safe = re.sub(r"[^A-Za-z0-9._-]", "_", job_name)
    return f"{safe}-{sha256_str(job_name)[:8]}"


@dataclass(frozen=True)
class ArtifactHandle:
    run_id: str
    job: str
    name: str
    files: Tuple[str, ...]
    archive: Optional[str]
    created_at: float
    expires_at: Optional[float] = None

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def to_dict(self) -> Dict:
        d = asdict(self)
        d["files"] = list(self.files)
        return d

    @classmethod
    def from_dict(cls, data: Mapping) -> "ArtifactHandle":
        return cls(
            run_id=data["run_id"],
            job=data["job"],
            name=data["name"],
            files=tuple(data.get("files", ())),
            archive=data.get("archive"),
            created_at=float(data["created_at"]),
            expires_at=data.get("expires_at"),
        )


class ArtifactStore:
    """
    File-based store for one run:
      root/<run_id>/<job slug>.tar.gz
      root/<run_id>/<job slug>.json
    """

    def __init__(
        self,
        root: str | Path,
        run_id: str,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.root = Path(root).resolve()
        self.run_id = run_id
        self.run_dir = self.root / run_id
        self.run_dir.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        self._handles: Dict[str, ArtifactHandle] = {}
        self._lock = threading.Lock()

    def has(self, job_name: str) -> bool:
        with self._lock:
            return job_name in self._handles

    def publish(
        self,
        job_name: str,
        workspace: str | Path,
        spec: Optional[ArtifactSpec] = None,
        variables: Optional[Mapping[str, str]] = None,
    ) -> ArtifactHandle:
        """
        Called when a job succeeds. A job without an artifact declaration
        still publishes an empty handle, so dependents can tell "succeeded"
        apart from "skipped/failed".
        """
        variables = variables or {}
        ws = Path(workspace)
        now = self._clock()

        files: List[str] = []
        name = job_name
        ttl = None
        if spec is not None:
            patterns = [expand(p, variables) for p in spec.paths]
            files, rejected = resolve_paths(ws, patterns)
            for pat in rejected:
                logger.warning("[%s] artifact path %r is outside the workspace, ignored", job_name, pat)
            if not files:
                logger.warning("[%s] no files matched artifact paths %s", job_name, patterns)
            if spec.name:
                name = expand(spec.name, variables)
            try:
                ttl = parse_duration(spec.expire_in)
            except ValueError as e:
                raise ArtifactError(str(e), job=job_name) from e

        with self._lock:
            if job_name in self._handles:
                raise ArtifactError(f"artifact for '{job_name}' already published in run {self.run_id}", job=job_name)

            archive: Optional[Path] = None
            slug = _slug(job_name)
            try:
                if files:
                    archive = self.run_dir / f"{slug}.tar.gz"
                    write_archive(archive, ws, files)
                handle = ArtifactHandle(
                    run_id=self.run_id,
                    job=job_name,
                    name=name,
                    files=tuple(files),
                    archive=str(archive) if archive else None,
                    created_at=now,
                    expires_at=now + ttl if ttl is not None else None,
                )
                write_json(self.run_dir / f"{slug}.json", handle.to_dict())
            except OSError as e:
                raise ArtifactError(f"could not store artifact: {e}", job=job_name) from e

            self._handles[job_name] = handle

        logger.info("[%s] published artifact %s (%d files)", job_name, name, len(files))
        return handle

    def fetch(self, job_name: str, *, requested_by: Optional[str] = None) -> ArtifactHandle:
        """
        Return the handle published by `job_name` in this run.
        Raises MissingArtifactError if it never published or has expired.
        """
        with self._lock:
            handle = self._handles.get(job_name)
        if handle is None:
            raise MissingArtifactError(requested_by or "", job_name, "upstream job did not succeed in this run")
        if handle.expired(self._clock()):
            raise MissingArtifactError(requested_by or "", job_name, "artifact expired")
        return handle

    def materialize(self, handle: ArtifactHandle, workspace: str | Path) -> List[str]:
        if handle.run_id != self.run_id:
            raise ArtifactError(f"artifact of run {handle.run_id} used in run {self.run_id}", job=handle.job)
        if not handle.archive:
            return []
        try:
            return extract_archive(Path(handle.archive), Path(workspace))
        except (OSError, tarfile.TarError) as e:
            raise ArtifactError(f"could not unpack artifact '{handle.name}': {e}", job=handle.job) from e


def prune_expired(root: str | Path, *, now: Optional[float] = None) -> List[str]:
    """Remove expired artifacts of every run under root. Returns removed job names."""
    root_p = Path(root)
    now = time.time() if now is None else now
    removed: List[str] = []
    if not root_p.exists():
        return removed

    for man in sorted(root_p.glob("*/*.json")):
        try:
            handle = ArtifactHandle.from_dict(json.loads(man.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError) as e:
            logger.warning("unreadable artifact manifest %s: %s", man, e)
            continue
        if not handle.expired(now):
            continue
        if handle.archive:
            Path(handle.archive).unlink(missing_ok=True)
        man.unlink(missing_ok=True)
        removed.append(f"{handle.run_id}/{handle.job}")

    for run_dir in root_p.iterdir():
        if run_dir.is_dir() and not any(run_dir.iterdir()):
            shutil.rmtree(run_dir, ignore_errors=True)
    return removed
