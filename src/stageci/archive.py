# archive.py
# tar.gz bundles of workspace files, shared by the cache and artifact stores.
from __future__ import annotations

import hashlib
import json
import logging
import os
import tarfile
from pathlib import Path
from typing import Dict, Iterable, List, Sequence, Tuple

logger = logging.getLogger(__name__)


def sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file() or p.is_symlink():
            yield p


def _matches_any_glob(rel: str, globs: Sequence[str]) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in globs)


def _inside(p: Path, root: Path) -> bool:
    try:
        p.resolve().relative_to(root.resolve())
        return True
    except ValueError:
        return False


def resolve_paths(
    workspace: Path,
    patterns: Sequence[str],
    *,
    excludes: Sequence[str] = (),
) -> Tuple[List[str], List[str]]:
    """
    Expand path patterns inside a workspace.

    Supports:
      - file path: "ffsend-x86_64-unknown-linux-gnu"
      - dir path:  "target/"
      - glob:      "pkg/snap/ffsend_*_amd64.snap"

    Returns (files, rejected): files are workspace-relative and sorted,
    rejected are patterns pointing outside the workspace.
    """
    root = workspace.resolve()
    found: Dict[str, None] = {}
    rejected: List[str] = []

    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        if os.path.isabs(pat) or not _inside(root / pat, root):
            rejected.append(pat)
            continue

        p = root / pat
        matches = [p] if p.exists() else sorted(root.glob(pat))
        for m in matches:
            if not _inside(m, root):
                continue
            candidates = _iter_files_under(m) if m.is_dir() else [m]
            for f in candidates:
                rel = relpath(f, root) if not f.is_symlink() else str(f.relative_to(root))
                if excludes and _matches_any_glob(rel, excludes):
                    continue
                found[rel] = None

    return sorted(found), rejected


def write_archive(dest: Path, workspace: Path, files: Sequence[str]) -> None:
    """Build a tar.gz in a tmp file, then atomic rename."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    tmp = dest.with_name(dest.name + f".{os.getpid()}.tmp")
    try:
        with tarfile.open(str(tmp), mode="w:gz") as tar:
            for rel in files:
                tar.add(str(workspace / rel), arcname=rel, recursive=False)
        tmp.replace(dest)
    finally:
        if tmp.exists():
            tmp.unlink(missing_ok=True)


def extract_archive(archive: Path, dest: Path) -> List[str]:
    """Extract into dest. Members escaping dest are refused by the data filter."""
    dest.mkdir(parents=True, exist_ok=True)
    with tarfile.open(str(archive), mode="r:gz") as tar:
        names = [m.name for m in tar.getmembers()]
        tar.extractall(path=str(dest), filter="data")
    return names


def write_json(path: Path, payload) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + f".{os.getpid()}.tmp")
    tmp.write_text(json.dumps(payload, sort_keys=True, indent=2, ensure_ascii=False), encoding="utf-8")
    os.replace(tmp, path)
