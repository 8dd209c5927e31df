# cache.py
from __future__ import annotations

import json
import logging
import shutil
import tarfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from .archive import (
    extract_archive,
    json_dumps_stable,
    resolve_paths,
    sha256_str,
    write_archive,
    write_json,
)
from .errors import CacheError
from .model import CacheSpec
from .variables import expand

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Keyed, run-independent caching:
#   key = (group, variant...)   e.g. ("1042", ("stable",))
#   storage dir = sha256(stable json of the key)
#
# Entry layout:
#   root/
#     <digest>/
#       cache.tar.gz
#       manifest.json
#
# Restore never fails a job: a missing or unreadable entry is an empty cache.
# Persist runs after every job, successful or not; writes for the same key
# are serialized in-process and land via atomic rename (last writer wins).
# ---------------------------------------------------------------------

DEFAULT_CACHE_DIR = ".stageci/cache"
DEFAULT_CACHE_EXCLUDES = (
    "*.pyc",
    ".DS_Store",
)


@dataclass(frozen=True)
class CacheKey:
    group: str
    variant: Tuple[str, ...] = ()

    @property
    def digest(self) -> str:
        return sha256_str(json_dumps_stable({"v": 1, "group": self.group, "variant": list(self.variant)}))

    def __str__(self) -> str:
        if not self.variant:
            return self.group
        return f"{self.group}[{', '.join(self.variant)}]"


@dataclass(frozen=True)
class CacheRestore:
    hit: bool
    key: CacheKey
    reason: str  # human readable
    files: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CachePersist:
    key: CacheKey
    files: Tuple[str, ...]
    skipped: Tuple[str, ...] = field(default_factory=tuple)


class CacheManager:
    """
    File-based cache store shared across runs:
      root/<key digest>/cache.tar.gz
      root/<key digest>/manifest.json
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, key: CacheKey) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(key.digest, threading.Lock())

    def _entry_dir(self, key: CacheKey) -> Path:
        return self.root / key.digest

    def archive_path(self, key: CacheKey) -> Path:
        return self._entry_dir(key) / "cache.tar.gz"

    def manifest_path(self, key: CacheKey) -> Path:
        return self._entry_dir(key) / "manifest.json"

    def key_for(self, spec: CacheSpec, variables: Mapping[str, str]) -> CacheKey:
        return CacheKey(
            group=expand(spec.group, variables),
            variant=tuple(expand(v, variables) for v in spec.variant),
        )

    def restore(self, key: CacheKey, workspace: str | Path) -> CacheRestore:
        """
        Restore a cache entry into the workspace.

        NOTE: restore is "overwrite by extraction"; files not in the entry
        are left alone.
        """
        art = self.archive_path(key)
        if not art.exists():
            return CacheRestore(hit=False, key=key, reason="cache miss (empty cache)")

        # a concurrent persist replaces the file atomically; read under the lock
        # so we never open a path that is being swapped
        with self._lock_for(key):
            try:
                files = extract_archive(art, Path(workspace))
            except (OSError, tarfile.TarError) as e:
                logger.warning("cache %s exists but restore failed: %s", key, e)
                return CacheRestore(hit=False, key=key, reason=f"cache exists but restore failed: {e}")

        return CacheRestore(hit=True, key=key, reason=f"cache hit ({len(files)} files)", files=tuple(files))

    def persist(self, key: CacheKey, workspace: str | Path, paths: Sequence[str]) -> CachePersist:
        """
        Save `paths` (relative to the workspace) under `key`.
        Raises CacheError; callers treat that as non-fatal.
        """
        ws = Path(workspace)
        try:
            files, rejected = resolve_paths(ws, paths, excludes=DEFAULT_CACHE_EXCLUDES)
        except OSError as e:
            raise CacheError(f"could not collect cache paths for {key}: {e}") from e
        for pat in rejected:
            logger.warning("cache path %r is outside the workspace, ignored", pat)

        manifest = {
            "key": {"group": key.group, "variant": list(key.variant)},
            "paths": list(paths),
            "files": len(files),
            "generated_at_unix": int(time.time()),
        }
        with self._lock_for(key):
            try:
                write_archive(self.archive_path(key), ws, files)
                write_json(self.manifest_path(key), manifest)
            except (OSError, tarfile.TarError) as e:
                raise CacheError(f"could not persist cache {key}: {e}") from e

        return CachePersist(key=key, files=tuple(files), skipped=tuple(rejected))

    def entries(self) -> List[Dict]:
        """Stored manifests, newest first."""
        out = []
        for man in self.root.glob("*/manifest.json"):
            try:
                data = json.loads(man.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                continue
            data["digest"] = man.parent.name
            out.append(data)
        return sorted(out, key=lambda d: d.get("generated_at_unix", 0), reverse=True)

    def prune(self, max_age_days: float, *, now: Optional[float] = None) -> List[str]:
        """Delete entries not written for `max_age_days`. Returns removed digests."""
        now = time.time() if now is None else now
        cutoff = now - max_age_days * 86400
        removed = []
        for d in self.root.iterdir():
            art = d / "cache.tar.gz"
            if not d.is_dir():
                continue
            if not art.exists() or art.stat().st_mtime < cutoff:
                shutil.rmtree(d, ignore_errors=True)
                removed.append(d.name)
        return removed
