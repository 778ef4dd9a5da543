#!/usr/bin/env python3
"""Path classification against a workspace root.

Two questions, both pure functions of (root, path[, pattern]):
- is_within(root, path): does the path resolve to root or below it?
- matches_glob(root, path, pattern): does the path, made relative to root,
  match a shell-style glob?

Glob syntax (component-wise, "/" is the separator):
    *       any run of characters within one component
    ?       one character within one component
    [...]   character class ([!...] negates)
    **      zero or more whole components
    {a,b}   brace alternation
A trailing "/" means "this directory and everything below it".

Absolute paths are first rewritten to the root-relative form rule authors
write patterns against; a path outside the root never matches.
"""

import fnmatch
import os
import sys
from pathlib import Path

MAX_PATH_LENGTH = 4096
MAX_COMPONENT_LENGTH = 255

GLOB_CHARS = frozenset("*?[")


def _fold_case(s: str) -> str:
    # Case-insensitive on Windows and macOS (HFS+ is case-insensitive)
    if sys.platform != "linux":
        return s.lower()
    return s


def is_path_candidate(s) -> bool:
    """Check if a string is a plausible filesystem path.

    Rejects strings that cannot be valid paths before they reach os.path calls.
    """
    if not isinstance(s, str) or not s:
        return False
    if "\n" in s or "\r" in s or "\0" in s:
        return False
    if len(s) > MAX_PATH_LENGTH:
        return False
    return all(len(component) <= MAX_COMPONENT_LENGTH for component in s.split("/"))


def has_glob_chars(s: str) -> bool:
    return any(c in GLOB_CHARS for c in s)


def _absolute(root: str, path: str) -> str:
    expanded = os.path.expanduser(path)
    if not os.path.isabs(expanded):
        expanded = os.path.join(root, expanded)
    return os.path.normpath(expanded)


def resolve_path(root: str, path: str) -> Path | None:
    """Absolute, symlink-resolved form of ``path`` (relative to ``root``).

    Returns None for malformed paths.
    """
    if not is_path_candidate(path) or not is_path_candidate(root):
        return None
    try:
        return Path(_absolute(root, path)).resolve(strict=False)
    except (OSError, RuntimeError, ValueError):
        return None


def is_within(root: str, path: str) -> bool:
    """True iff ``path`` resolves to ``root`` or somewhere below it.

    ``..`` components are collapsed and symlinks resolved before comparing,
    so traversal out of the root is detected. Malformed input is outside
    (fail closed).
    """
    if not is_path_candidate(root):
        return False
    resolved = resolve_path(root, path)
    if resolved is None:
        return False
    try:
        resolved_root = Path(os.path.expanduser(root)).resolve(strict=False)
    except (OSError, RuntimeError, ValueError):
        return False

    if sys.platform != "linux":
        return _is_relative(Path(_fold_case(str(resolved))), Path(_fold_case(str(resolved_root))))
    return _is_relative(resolved, resolved_root)


def _is_relative(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
        return True
    except ValueError:
        return False


def relative_to_root(root: str, path: str) -> str | None:
    """Root-relative posix form of ``path``; "" for the root itself.

    Tries the lexical form first (what the user typed, with ``..``
    collapsed), then the symlink-resolved form, so /var vs /private/var
    style aliases still normalize to the same relative path.
    Returns None when the path is outside the root or malformed.
    """
    if not is_path_candidate(path) or not is_path_candidate(root):
        return None

    root_abs = os.path.abspath(os.path.expanduser(root))
    lexical = _absolute(root_abs, path)
    candidates = [(lexical, root_abs)]
    try:
        candidates.append((str(Path(lexical).resolve(strict=False)), str(Path(root_abs).resolve(strict=False))))
    except (OSError, RuntimeError, ValueError):
        pass

    for absolute, base in candidates:
        absolute_cmp, base_cmp = _fold_case(absolute), _fold_case(base)
        if absolute_cmp == base_cmp:
            return ""
        prefix = base_cmp.rstrip(os.sep) + os.sep
        if absolute_cmp.startswith(prefix):
            return absolute[len(prefix) :].replace(os.sep, "/")
    return None


# ============================================================
# Glob Matching
# ============================================================


def _find_brace_group(pattern: str) -> tuple[int, int] | None:
    """Locate the first top-level {...} group containing a comma."""
    start = -1
    depth = 0
    has_comma = False
    i = 0
    while i < len(pattern):
        c = pattern[i]
        if c == "\\":
            i += 2
            continue
        if c == "{":
            if depth == 0:
                start = i
                has_comma = False
            depth += 1
        elif c == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                if has_comma:
                    return start, i
                start = -1
        elif c == "," and depth == 1:
            has_comma = True
        i += 1
    return None


def _split_alternatives(body: str) -> list[str]:
    """Split the inside of a brace group on its top-level commas."""
    parts: list[str] = []
    depth = 0
    current: list[str] = []
    for c in body:
        if c == "{":
            depth += 1
        elif c == "}":
            depth -= 1
        if c == "," and depth == 0:
            parts.append("".join(current))
            current = []
            continue
        current.append(c)
    parts.append("".join(current))
    return parts


def expand_braces(pattern: str) -> list[str]:
    """Expand {a,b} alternation, nested groups included.

    Groups without a comma are left literal, as in the shell.
    """
    group = _find_brace_group(pattern)
    if group is None:
        return [pattern]
    start, end = group
    head, body, tail = pattern[:start], pattern[start + 1 : end], pattern[end + 1 :]
    expanded: list[str] = []
    for alternative in _split_alternatives(body):
        for candidate in expand_braces(head + alternative + tail):
            if candidate not in expanded:
                expanded.append(candidate)
    return expanded


def _match_recursive_glob(path_parts: list[str], pattern_parts: list[str]) -> bool:
    """Match path components against pattern components with ** support.

    Memoized on (path index, pattern index) so repeated ** stays linear in
    the number of component pairs.
    """
    memo: dict[tuple[int, int], bool] = {}

    def match(pi: int, qi: int) -> bool:
        key = (pi, qi)
        if key in memo:
            return memo[key]

        if qi == len(pattern_parts):
            result = pi == len(path_parts)
        elif pattern_parts[qi] == "**":
            # ** matches zero components, or one more component
            result = match(pi, qi + 1) or (pi < len(path_parts) and match(pi + 1, qi))
        elif pi == len(path_parts):
            result = False
        else:
            result = fnmatch.fnmatchcase(path_parts[pi], pattern_parts[qi]) and match(pi + 1, qi + 1)

        memo[key] = result
        return result

    return match(0, 0)


def _normalize_pattern(root: str, pattern: str) -> str | None:
    pattern = pattern.strip().replace("\\", "/") if os.sep == "\\" else pattern.strip()
    if not pattern:
        return None
    if pattern.startswith("~") or os.path.isabs(pattern):
        rel = relative_to_root(root, pattern.rstrip("/") or "/")
        if rel is None:
            return None
        pattern = rel + ("/" if pattern.endswith("/") else "")
    while pattern.startswith("./"):
        pattern = pattern[2:]
    if pattern.endswith("/"):
        pattern = pattern.rstrip("/") + "/**"
    return _fold_case(pattern)


def matches_glob(root: str, path: str, pattern: str) -> bool:
    """Match ``path`` (made relative to ``root``) against a glob pattern."""
    try:
        rel = relative_to_root(root, path)
        if rel is None:
            return False
        norm_pattern = _normalize_pattern(root, pattern)
        if norm_pattern is None:
            return False

        path_parts = [p for p in _fold_case(rel).split("/") if p]
        for alternative in expand_braces(norm_pattern):
            pattern_parts = [p for p in alternative.split("/") if p and p != "."]
            if _match_recursive_glob(path_parts, pattern_parts):
                return True
        return False
    except (ValueError, TypeError, RecursionError):
        return False


def matches_any(root: str, path: str, patterns) -> bool:
    return any(matches_glob(root, path, p) for p in patterns)
