# conditions.py
"""
Condition evaluation: decide whether a job is eligible for a trigger.

A condition is a pair of rule lists, `only` and `except_`. A job is eligible
iff no `only` rule is declared or one of them matches, and no `except_`
rule matches. `changes` rules inside `only` gate the ref rules instead of
being one more alternative. Evaluation is pure and happens before anything is
materialized for the job.

Tag patterns use a small language:
  /regex/   a regular expression searched in the tag
  v**       "**" is one or more dot-separated numeric groups (v1, v1.2.3)
  v*.*.*    "*" is exactly one numeric group
Everything else in a version pattern is literal.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from fnmatch import fnmatch
from functools import lru_cache
from typing import Iterable, Optional, Tuple, Union

from .errors import ConditionError

EVENT_PUSH = "push"
EVENT_TAG = "tag"
EVENT_MANUAL = "manual"
EVENT_SCHEDULE = "schedule"
EVENT_MERGE_REQUEST = "merge_request"

EVENTS = frozenset({EVENT_PUSH, EVENT_TAG, EVENT_MANUAL, EVENT_SCHEDULE, EVENT_MERGE_REQUEST})


@dataclass(frozen=True)
class TriggerContext:
    """The event that started a run. Sole input to condition evaluation."""
    event: str
    ref: str
    tag: Optional[str] = None
    default_branch: str = "main"
    changed_files: Optional[Tuple[str, ...]] = None

    def __post_init__(self) -> None:
        if self.event not in EVENTS:
            raise ValueError(f"Unknown trigger event {self.event!r}. Known: {sorted(EVENTS)}")
        if self.event == EVENT_TAG and not self.tag:
            # tag triggers carry the tag as their ref
            object.__setattr__(self, "tag", self.ref)

    @classmethod
    def for_branch(
        cls,
        ref: str,
        *,
        event: str = EVENT_PUSH,
        default_branch: str = "main",
        changed_files: Optional[Iterable[str]] = None,
    ) -> "TriggerContext":
        return cls(
            event=event,
            ref=ref,
            default_branch=default_branch,
            changed_files=tuple(changed_files) if changed_files is not None else None,
        )

    @classmethod
    def for_tag(cls, tag: str, *, default_branch: str = "main") -> "TriggerContext":
        return cls(event=EVENT_TAG, ref=tag, tag=tag, default_branch=default_branch)

    @property
    def is_tag(self) -> bool:
        return self.event == EVENT_TAG

    @property
    def is_default_branch(self) -> bool:
        return not self.is_tag and self.ref == self.default_branch


# ---------------------------------------------------------------------
# Pattern language
# ---------------------------------------------------------------------

def _is_regex_literal(text: str) -> bool:
    return len(text) >= 2 and text.startswith("/") and text.endswith("/")


def _compile_version_glob(text: str) -> str:
    if "***" in text:
        raise ConditionError(f"malformed version pattern {text!r}: '***' is not allowed")
    out = []
    i = 0
    while i < len(text):
        if text.startswith("**", i):
            out.append(r"(?:\d+\.)*\d+")
            i += 2
        elif text[i] == "*":
            out.append(r"\d+")
            i += 1
        else:
            out.append(re.escape(text[i]))
            i += 1
    return "^" + "".join(out) + "$"


@lru_cache(maxsize=256)
def compile_pattern(text: str) -> "re.Pattern[str]":
    """Compile a tag/branch pattern. Raises ConditionError if malformed."""
    if not text or text != text.strip() or any(c.isspace() for c in text):
        raise ConditionError(f"malformed pattern {text!r}: empty or contains whitespace")

    if _is_regex_literal(text):
        body = text[1:-1]
        if not body:
            raise ConditionError(f"malformed pattern {text!r}: empty regex")
        try:
            return re.compile(body)
        except re.error as e:
            raise ConditionError(f"malformed pattern {text!r}: {e}") from e

    return re.compile(_compile_version_glob(text))


# ---------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class TagRule:
    """Matches tag triggers; a pattern restricts which tags."""
    pattern: Optional[str] = None

    def validate(self) -> None:
        if self.pattern is not None:
            compile_pattern(self.pattern)

    def matches(self, ctx: TriggerContext) -> bool:
        if not ctx.is_tag or ctx.tag is None:
            return False
        if self.pattern is None:
            return True
        return compile_pattern(self.pattern).search(ctx.tag) is not None

    def describe(self) -> str:
        return f"tag {self.pattern}" if self.pattern else "tags"


@dataclass(frozen=True)
class BranchRule:
    """Matches branch triggers; `name` is a literal branch or /regex/."""
    name: Optional[str] = None

    def validate(self) -> None:
        if self.name is not None and _is_regex_literal(self.name):
            compile_pattern(self.name)

    def matches(self, ctx: TriggerContext) -> bool:
        if ctx.is_tag:
            return False
        if self.name is None:
            return True
        if _is_regex_literal(self.name):
            return compile_pattern(self.name).search(ctx.ref) is not None
        return ctx.ref == self.name

    def describe(self) -> str:
        return f"branch {self.name}" if self.name else "branches"


@dataclass(frozen=True)
class DefaultBranchRule:
    def validate(self) -> None:
        pass

    def matches(self, ctx: TriggerContext) -> bool:
        return ctx.is_default_branch

    def describe(self) -> str:
        return "default branch"


@dataclass(frozen=True)
class EventRule:
    events: Tuple[str, ...]

    def validate(self) -> None:
        unknown = sorted(set(self.events) - EVENTS)
        if unknown:
            raise ConditionError(f"unknown trigger event(s) {unknown}")

    def matches(self, ctx: TriggerContext) -> bool:
        return ctx.event in self.events

    def describe(self) -> str:
        return "event " + "|".join(self.events)


@dataclass(frozen=True)
class ChangesRule:
    """Matches when a changed file matches a glob. Unknown change sets match."""
    patterns: Tuple[str, ...]

    def validate(self) -> None:
        if not self.patterns:
            raise ConditionError("changes rule needs at least one path pattern")

    def matches(self, ctx: TriggerContext) -> bool:
        if ctx.changed_files is None:
            return True
        return any(fnmatch(f, p) for f in ctx.changed_files for p in self.patterns)

    def describe(self) -> str:
        return "changes " + ",".join(self.patterns)


Rule = Union[TagRule, BranchRule, DefaultBranchRule, EventRule, ChangesRule]

_KEYWORDS = {
    "tags": TagRule(),
    "branches": BranchRule(),
    "default_branch": DefaultBranchRule(),
    "pushes": EventRule((EVENT_PUSH,)),
    "schedules": EventRule((EVENT_SCHEDULE,)),
    "merge_requests": EventRule((EVENT_MERGE_REQUEST,)),
    "web": EventRule((EVENT_MANUAL,)),
}


def parse_rule(entry: Union[str, Rule]) -> Rule:
    """
    Map a GitLab-like `only`/`except` entry to a rule:
      keyword ("tags", "branches", ...), "/regex/" (a tag pattern),
      or a literal branch name.
    """
    if not isinstance(entry, str):
        return entry
    if entry in _KEYWORDS:
        return _KEYWORDS[entry]
    if _is_regex_literal(entry):
        return TagRule(entry)
    return BranchRule(entry)


def parse_rules(entries: Iterable[Union[str, Rule]] | None) -> Tuple[Rule, ...]:
    return tuple(parse_rule(e) for e in (entries or ()))


@dataclass(frozen=True)
class Condition:
    only: Tuple[Rule, ...] = field(default_factory=tuple)
    except_: Tuple[Rule, ...] = field(default_factory=tuple)

    def validate(self) -> None:
        for rule in (*self.only, *self.except_):
            rule.validate()

    @property
    def is_always(self) -> bool:
        return not self.only and not self.except_


def on_tags(pattern: Optional[str] = None) -> Condition:
    """Condition for release jobs: run only for tags (matching `pattern`)."""
    return Condition(only=(TagRule(pattern),))


@dataclass(frozen=True)
class Eligibility:
    eligible: bool
    reason: str


def evaluate(condition: Condition, ctx: TriggerContext) -> Eligibility:
    if condition.is_always:
        return Eligibility(True, "no conditions")

    for rule in condition.except_:
        if rule.matches(ctx):
            return Eligibility(False, f"excluded by except: {rule.describe()}")

    if not condition.only:
        return Eligibility(True, "no except rule matched")

    # ref rules are alternatives; changes rules additionally gate them
    refs = [r for r in condition.only if not isinstance(r, ChangesRule)]
    gates = [r for r in condition.only if isinstance(r, ChangesRule)]

    matched = None
    if refs:
        matched = next((r for r in refs if r.matches(ctx)), None)
        if matched is None:
            wanted = ", ".join(r.describe() for r in refs)
            return Eligibility(False, f"'{ctx.ref}' does not match only: {wanted}")

    if gates:
        gate = next((r for r in gates if r.matches(ctx)), None)
        if gate is None:
            wanted = ", ".join(r.describe() for r in gates)
            return Eligibility(False, f"no changed file matches only: {wanted}")
        matched = matched or gate

    return Eligibility(True, f"matched {matched.describe()}")
