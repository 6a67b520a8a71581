"""Glob matching for include/exclude rules.

Patterns without a path separator match a file's basename anywhere in the tree
(``*.py``, ``Makefile``, ``test_*.go``). Patterns with a separator match the path
relative to the current working directory (``web/static/*.js``), and their
wildcards never cross a separator.
"""

import functools
import os
import re
from collections.abc import Iterable

from devloop_core.errors import PatternError


def split_patterns(text: str | None) -> list[str]:
    """Split a comma-separated pattern list, trimming entries and dropping empties.

    Args:
        text: Raw pattern list, e.g. ``"*.go, *.tmpl"``

    Returns:
        Ordered list of patterns
    """
    if not text:
        return []
    return [part.strip() for part in text.split(",") if part.strip()]


@functools.lru_cache(maxsize=256)
def compile_pattern(pattern: str) -> re.Pattern[str]:
    """Translate a glob pattern into an anchored regular expression.

    Supports ``*``, ``?``, ``[...]`` classes (``^`` or ``!`` negation, ranges)
    and backslash escapes. Wildcards never match ``/``.

    Raises:
        PatternError: If the pattern is malformed
    """
    out = []
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        i += 1
        if c == "*":
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "\\":
            if i >= n:
                raise PatternError(pattern, "trailing escape")
            out.append(re.escape(pattern[i]))
            i += 1
        elif c == "[":
            i, char_class = _translate_class(pattern, i)
            out.append(char_class)
        else:
            out.append(re.escape(c))
    return re.compile("".join(out) + r"\Z", re.DOTALL)


def _translate_class(pattern: str, i: int) -> tuple[int, str]:
    """Translate a ``[...]`` class starting just after the opening bracket."""
    negate = False
    if i < len(pattern) and pattern[i] in "^!":
        negate = True
        i += 1

    items = []
    while True:
        if i >= len(pattern):
            raise PatternError(pattern, "unclosed character class")
        c = pattern[i]
        if c == "]" and items:
            i += 1
            break
        lo, i = _class_char(pattern, i)
        if i < len(pattern) and pattern[i] == "-" and i + 1 < len(pattern) and pattern[i + 1] != "]":
            hi, i = _class_char(pattern, i + 1)
            if hi < lo:
                raise PatternError(pattern, f"bad range {lo}-{hi}")
            items.append(f"{re.escape(lo)}-{re.escape(hi)}")
        else:
            items.append(re.escape(lo))

    body = "".join(items)
    if negate:
        return i, f"[^/{body}]"
    return i, f"[{body}]"


def _class_char(pattern: str, i: int) -> tuple[str, int]:
    c = pattern[i]
    if c == "\\":
        if i + 1 >= len(pattern):
            raise PatternError(pattern, "trailing escape")
        return pattern[i + 1], i + 2
    return c, i + 1


def validate_patterns(patterns: Iterable[str]) -> None:
    """Compile every pattern so malformed ones fail before any event arrives.

    Raises:
        PatternError: On the first malformed pattern
    """
    for pattern in patterns:
        compile_pattern(pattern)


def match(pattern: str, path: str) -> bool:
    """Match a single pattern against an absolute path.

    Args:
        pattern: Glob pattern
        path: Absolute path of the changed file

    Returns:
        True if the pattern matches
    """
    regex = compile_pattern(pattern)
    if "/" not in pattern:
        return regex.match(os.path.basename(path)) is not None

    rel_path = os.path.relpath(path, os.getcwd())
    return regex.match(rel_path) is not None


def matches(path: str, include: Iterable[str], exclude: Iterable[str]) -> bool:
    """Apply include rules first, then exclude rules.

    Returns:
        True if some include pattern matches and no exclude pattern does
    """
    if not any(match(pattern, path) for pattern in include):
        return False
    return not any(match(pattern, path) for pattern in exclude)
