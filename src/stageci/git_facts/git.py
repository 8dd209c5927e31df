# git.py
# Small wrapper around the Git CLI, used to derive a trigger context from
# the local checkout. Nothing else in the package shells out to git.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional

from ..conditions import EVENT_PUSH, TriggerContext


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.
    Raises CalledProcessError on a non-zero exit.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def current_branch(cwd: Optional[str | Path] = None) -> Optional[str]:
    """Branch name, or None on a detached HEAD."""
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    return None if name == "HEAD" else name


def exact_tag(cwd: Optional[str | Path] = None) -> Optional[str]:
    """The tag pointing exactly at HEAD, if any."""
    try:
        return _git(["describe", "--tags", "--exact-match", "HEAD"], cwd=cwd) or None
    except subprocess.CalledProcessError:
        return None


def merge_base(with_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> str:
    return _git(["merge-base", "HEAD", with_ref], cwd=cwd)


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str | Path] = None) -> List[str]:
    out = _git(["diff", "--name-only", f"{base}..{head}"], cwd=cwd)
    return out.splitlines() if out else []


def working_tree_changes(cwd: Optional[str | Path] = None) -> List[str]:
    """Staged, unstaged and untracked paths."""
    files = set()
    for args in (["diff", "--name-only"], ["diff", "--name-only", "--cached"],
                 ["ls-files", "--others", "--exclude-standard"]):
        out = _git(args, cwd=cwd)
        if out:
            files.update(out.splitlines())
    return sorted(files)


def trigger_from_checkout(
    cwd: Optional[str | Path] = None,
    *,
    default_branch: str = "main",
    compare_ref: Optional[str] = None,
) -> TriggerContext:
    """
    Describe the local checkout as a trigger: a tag at HEAD wins, otherwise
    a push to the current branch. Changed files are collected against
    `compare_ref` (merge-base) plus uncommitted changes; when they cannot
    be determined they stay unknown.
    """
    tag = exact_tag(cwd)
    if tag:
        return TriggerContext.for_tag(tag, default_branch=default_branch)

    branch = current_branch(cwd) or "HEAD"
    changed: Optional[List[str]] = None
    if compare_ref:
        try:
            base = merge_base(compare_ref, cwd=cwd)
            changed = sorted(set(changed_files(base, cwd=cwd)) | set(working_tree_changes(cwd)))
        except subprocess.CalledProcessError:
            changed = None

    return TriggerContext.for_branch(
        branch,
        event=EVENT_PUSH,
        default_branch=default_branch,
        changed_files=changed,
    )
