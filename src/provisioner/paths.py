"""Attribute path helpers.

Paths are dotted strings addressing nested attribute values, e.g.
``tags.Name`` or ``ingress.0.cidr_blocks``. Integer segments index lists.

Patterns support wildcards:
- "*" matches any single segment (fnmatch is applied per segment)
- "**" matches any number of segments

A pattern that matches an ancestor of a path covers the path too, so
ignoring ``tags`` also ignores ``tags.Name``.
"""

from __future__ import annotations

import fnmatch
from collections.abc import Iterable, Mapping, Sequence
from typing import Any


class _Missing:
    """Marker for an absent attribute."""

    _instance: _Missing | None = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "<missing>"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def split_path(path: str) -> list[str]:
    """Split a dotted path into segments; the empty path has no segments."""
    if not path:
        return []
    return path.split(".")


def join_path(*parts: str | int) -> str:
    """Join segments into a dotted path, skipping empty ones."""
    return ".".join(str(p) for p in parts if p != "")


def get_path(data: Any, path: str | Sequence[str], default: Any = MISSING) -> Any:
    """Look up a nested value by path.

    Args:
        data: Root mapping (or list) to descend into.
        path: Dotted path or pre-split segments.
        default: Returned when any segment is absent.

    Returns:
        The value at ``path`` or ``default``.
    """
    parts = split_path(path) if isinstance(path, str) else list(path)
    current = data
    for part in parts:
        if isinstance(current, Mapping):
            if part not in current:
                return default
            current = current[part]
        elif isinstance(current, list | tuple):
            try:
                index = int(part)
            except ValueError:
                return default
            if not -len(current) <= index < len(current):
                return default
            current = current[index]
        else:
            return default
    return current


def match_path(path: str, pattern: str) -> bool:
    """Check whether ``pattern`` matches ``path`` exactly (segment-wise)."""
    return _match_parts(split_path(path), split_path(pattern))


def covers(pattern: str, path: str) -> bool:
    """Check whether ``pattern`` matches ``path`` or one of its ancestors."""
    path_parts = split_path(path)
    pattern_parts = split_path(pattern)
    return any(
        _match_parts(path_parts[:i], pattern_parts) for i in range(1, len(path_parts) + 1)
    )


def covered_by_any(path: str, patterns: Iterable[str]) -> bool:
    """Check whether any pattern covers ``path``."""
    return any(covers(pattern, path) for pattern in patterns)


def _match_parts(path_parts: list[str], pattern_parts: list[str]) -> bool:
    """Recursively match path parts against pattern parts."""
    if not pattern_parts:
        return not path_parts
    if not path_parts:
        return all(p == "**" for p in pattern_parts)

    if pattern_parts[0] == "**":
        if len(pattern_parts) == 1:
            return True
        for i in range(len(path_parts) + 1):
            if _match_parts(path_parts[i:], pattern_parts[1:]):
                return True
        return False
    elif pattern_parts[0] == "*" or fnmatch.fnmatchcase(path_parts[0], pattern_parts[0]):
        return _match_parts(path_parts[1:], pattern_parts[1:])
    else:
        return False
