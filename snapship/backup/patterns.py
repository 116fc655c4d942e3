"""
Exclusion pattern matching for directory archives.

A pattern can be rooted (``/var/lib/app/cache``) or relative to the
directory being archived (``*.log``, ``node_modules``, ``build/tmp``).
Rooted patterns are compared with the entry's absolute path; relative
patterns are compared with the relative path, each of its components and
its base name. Glob wildcards never cross a ``/`` except ``**``.
"""

import os
import re
from functools import lru_cache
from typing import Iterable, List, Optional

SEPARATOR = '/'


class PatternSyntaxError(ValueError):
    """Raised internally for a glob that cannot be compiled."""
    pass


@lru_cache(maxsize=512)
def _compile_glob(pattern: str):
    """
    Translate a glob into a compiled regular expression.

    Supports ``*``, ``**``, ``?``, ``[...]`` / ``[!...]`` classes and
    backslash escapes.

    Raises:
        PatternSyntaxError: For an unterminated class or trailing escape
    """
    parts = []
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        if c == '*':
            if i + 1 < n and pattern[i + 1] == '*':
                parts.append('.*')
                i += 2
                continue
            parts.append('[^/]*')
        elif c == '?':
            parts.append('[^/]')
        elif c == '[':
            j = i + 1
            negate = j < n and pattern[j] in '!^'
            if negate:
                j += 1
            body = []
            # A ']' right after the opening bracket is literal
            if j < n and pattern[j] == ']':
                body.append(r'\]')
                j += 1
            while j < n and pattern[j] != ']':
                if pattern[j] == '\\':
                    if j + 1 >= n:
                        raise PatternSyntaxError(f"trailing escape in {pattern!r}")
                    body.append(re.escape(pattern[j + 1]))
                    j += 2
                    continue
                # '-' keeps its range meaning
                body.append('\\' + pattern[j] if pattern[j] in '[^&~|' else pattern[j])
                j += 1
            if j >= n:
                raise PatternSyntaxError(f"unterminated character class in {pattern!r}")
            parts.append(f"[{'^/' if negate else ''}{''.join(body)}]")
            i = j
        elif c == '\\':
            if i + 1 >= n:
                raise PatternSyntaxError(f"trailing escape in {pattern!r}")
            parts.append(re.escape(pattern[i + 1]))
            i += 1
        else:
            parts.append(re.escape(c))
        i += 1

    try:
        return re.compile(''.join(parts) + r'\Z', re.DOTALL)
    except re.error as e:
        raise PatternSyntaxError(str(e))


def glob_match(pattern: str, name: str) -> bool:
    """Match name against pattern; a malformed pattern never matches."""
    try:
        return _compile_glob(pattern).match(name) is not None
    except PatternSyntaxError:
        return False


def normalize(path: str) -> str:
    """Use '/' as the only separator and drop trailing separators."""
    path = path.replace(os.sep, SEPARATOR)
    if os.altsep:
        path = path.replace(os.altsep, SEPARATOR)
    stripped = path.rstrip(SEPARATOR)
    # Keep the filesystem root itself
    return stripped or (SEPARATOR if path.startswith(SEPARATOR) else '')


def _is_same_or_descendant(path: str, prefix: str) -> bool:
    return path == prefix or path.startswith(prefix + SEPARATOR)


class PatternMatcher:
    """
    Decides whether a filesystem entry is excluded from an archive.

    Patterns are cleaned once: blank entries are dropped, separators are
    normalized and trailing separators removed so that ``cache/`` and
    ``cache`` behave the same.
    """

    def __init__(self, patterns: Optional[Iterable[str]] = None):
        self.patterns: List[str] = []
        for pattern in patterns or []:
            pattern = (pattern or '').strip()
            if not pattern:
                continue
            cleaned = normalize(pattern)
            if cleaned:
                self.patterns.append(cleaned)

    def __bool__(self):
        return bool(self.patterns)

    def is_excluded(self, abs_path: str, rel_path: str) -> bool:
        """
        Check an entry against every pattern, stopping at the first match.

        Args:
            abs_path: Absolute path of the entry
            rel_path: Path of the entry relative to the archive root

        Returns:
            True if any pattern matches by any rule
        """
        if not self.patterns:
            return False

        abs_norm = normalize(abs_path)
        rel_norm = normalize(rel_path)
        components = [part for part in rel_norm.split(SEPARATOR) if part]
        base_name = components[-1] if components else rel_norm

        for pattern in self.patterns:
            if pattern.startswith(SEPARATOR) or os.path.isabs(pattern):
                if _is_same_or_descendant(abs_norm, pattern):
                    return True
                if glob_match(pattern, abs_norm):
                    return True
                continue

            if glob_match(pattern, rel_norm):
                return True
            # Directory-style exclusion: 'build/tmp' removes build/tmp/**
            if _is_same_or_descendant(rel_norm, pattern):
                return True
            if any(glob_match(pattern, part) for part in components):
                return True
            if glob_match(pattern, base_name):
                return True

        return False


def should_exclude(abs_path: str, rel_path: str, source_root: str, patterns: Iterable[str]) -> bool:
    """
    Decide whether a single entry is excluded.

    Args:
        abs_path: Absolute path of the entry (resolved against source_root
            when given as a relative path)
        rel_path: Path relative to source_root
        source_root: Root directory being archived
        patterns: Exclusion patterns

    Returns:
        True if the entry must be left out of the archive
    """
    if not os.path.isabs(abs_path):
        abs_path = os.path.join(os.path.abspath(source_root), abs_path)
    return PatternMatcher(patterns).is_excluded(abs_path, rel_path)
