"""Glob matching for resource types and dotted property paths.

Shared by the ignore rules, the diff normalizer and the classifier so that
a pattern means the same thing in every rule table:

- Resource types use fnmatch, case-insensitive ("Microsoft.Network/*").
- Property paths are matched segment by segment: "*" matches exactly one
  segment, "**" matches zero or more, other segments may contain fnmatch
  wildcards. Matching is case-insensitive (ARM property names are).
"""

from __future__ import annotations

import fnmatch
from functools import lru_cache


def resource_type_matches(resource_type: str, pattern: str) -> bool:
    """Check if a resource type matches a type pattern."""
    if pattern == "*":
        return True
    return fnmatch.fnmatchcase(resource_type.lower(), pattern.lower())


def path_matches(path: str, pattern: str) -> bool:
    """Check if a dotted property path matches a path pattern.

    Examples:
        >>> path_matches("networkAcls.defaultAction", "networkAcls.*")
        True
        >>> path_matches("a.b.c.enabled", "**.enabled")
        True
        >>> path_matches("sku", "sku.name")
        False
    """
    return _match_parts(tuple(path.lower().split(".")), _split_pattern(pattern))


@lru_cache(maxsize=1024)
def _split_pattern(pattern: str) -> tuple[str, ...]:
    return tuple(pattern.lower().split("."))


def _match_parts(path_parts: tuple[str, ...], pattern_parts: tuple[str, ...]) -> bool:
    """Recursively match path parts against pattern parts."""
    if not pattern_parts:
        return not path_parts
    if not path_parts:
        return all(p == "**" for p in pattern_parts)

    head = pattern_parts[0]
    if head == "**":
        if len(pattern_parts) == 1:
            return True
        # "**" can match zero or more segments
        return any(
            _match_parts(path_parts[i:], pattern_parts[1:]) for i in range(len(path_parts) + 1)
        )
    if head == "*" or fnmatch.fnmatchcase(path_parts[0], head):
        return _match_parts(path_parts[1:], pattern_parts[1:])
    return False
