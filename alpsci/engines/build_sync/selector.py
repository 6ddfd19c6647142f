"""Selector matching — does a workflow run belong to a build?"""

from __future__ import annotations

import re
from collections.abc import Iterable
from functools import lru_cache

from alpsci.engines.build_sync.models import Selector, WorkflowRun

_TAG_REF_PREFIX = "refs/tags/"


@lru_cache(maxsize=256)
def _compile(pattern: str) -> re.Pattern[str]:
    # ``*`` matches any run of characters, ``?`` exactly one
    parts = []
    for ch in pattern:
        if ch == "*":
            parts.append(".*")
        elif ch == "?":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    return re.compile("".join(parts), re.IGNORECASE | re.DOTALL)


def matches_pattern(value: str | None, pattern: str) -> bool:
    """Case-insensitive glob match of the whole *value*."""
    if not value:
        return False
    return _compile(pattern).fullmatch(value) is not None


def _strip_tag_ref(ref: str) -> str:
    return ref[len(_TAG_REF_PREFIX) :] if ref.startswith(_TAG_REF_PREFIX) else ref


def _matches_one(run: WorkflowRun, selector: Selector, tag_names: frozenset[str]) -> bool:
    if selector.type == "branch":
        return matches_pattern(run.head_branch, selector.pattern)
    if selector.type == "workflow":
        return matches_pattern(run.name, selector.pattern)
    if selector.type == "tag":
        if not run.head_branch:
            return False
        tag = _strip_tag_ref(run.head_branch)
        return tag in tag_names and matches_pattern(tag, selector.pattern)
    return False


def matches(
    run: WorkflowRun,
    selectors: Iterable[Selector | dict],
    tag_names: Iterable[str] = (),
) -> bool:
    """Return True if *run* matches any selector; an empty list matches all.

    A tag selector only matches runs whose head ref (bare or
    ``refs/tags/``-prefixed) is one of the repository's *tag_names*.
    """
    selectors = [s if isinstance(s, Selector) else Selector.from_dict(s) for s in selectors]
    if not selectors:
        return True
    tags = frozenset(tag_names)
    return any(_matches_one(run, selector, tags) for selector in selectors)


def needs_tags(selectors: Iterable[Selector | dict]) -> bool:
    """True when any selector is of type ``tag``."""
    for s in selectors:
        kind = s.type if isinstance(s, Selector) else s.get("type")
        if kind == "tag":
            return True
    return False
