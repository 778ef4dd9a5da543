#!/usr/bin/env python3
"""Project convention rules and their auto-apply scope.

A rule file is a document with a front-matter header:

    ---
    description: TypeScript conventions
    globs: src/**/*.ts, lib/**/*.ts
    alwaysApply: false
    ---
    (body, not interpreted)

``globs`` may also be a quoted string, a flow list ([a, b]) or a block
list (one "- item" per line). Rules are re-read on every invocation so
edits made during a session take effect immediately.
"""

import os
import re
from dataclasses import dataclass

from _path_classifier import matches_glob, relative_to_root

FRONT_MATTER_DELIMITER = "---"
MAX_RULE_FILE_BYTES = 512_000
MAX_INSTRUCTION_FILE_BYTES = 2_000_000

_KEY_RE = re.compile(r"^([A-Za-z_][\w-]*)\s*:\s*(.*)$")
_LIST_ITEM_RE = re.compile(r"^\s*-\s*(.*)$")


@dataclass(frozen=True)
class RuleDescriptor:
    """One convention rule; ``file_path`` is its identity."""

    file_path: str
    glob_patterns: tuple[str, ...] = ()
    always_apply: bool = False

    @property
    def effective_globs(self) -> tuple[str, ...]:
        # Always-apply rules are the host's responsibility
        if self.always_apply:
            return ()
        return self.glob_patterns

    def applies_to(self, root: str, path: str) -> bool:
        return any(matches_glob(root, path, pattern) for pattern in self.effective_globs)

    def display_path(self, root: str) -> str:
        rel = relative_to_root(root, self.file_path)
        return rel if rel else self.file_path


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def parse_front_matter(text: str) -> dict:
    """Parse the ``---`` delimited header into a dict.

    Values are strings, or lists of strings for block lists. Returns an
    empty dict when the text has no header.
    """
    lines = text.lstrip("\ufeff").splitlines()
    if not lines or lines[0].strip() != FRONT_MATTER_DELIMITER:
        return {}

    header: dict = {}
    last_key = None
    for line in lines[1:]:
        if line.strip() == FRONT_MATTER_DELIMITER:
            return header
        if not line.strip() or line.lstrip().startswith("#"):
            continue

        item = _LIST_ITEM_RE.match(line)
        if item and last_key is not None:
            existing = header.get(last_key)
            if not isinstance(existing, list):
                existing = [] if not existing else [existing]
            existing.append(_unquote(item.group(1)))
            header[last_key] = existing
            continue

        match = _KEY_RE.match(line)
        if match:
            last_key = match.group(1)
            header[last_key] = match.group(2).strip()
    # Unterminated header is not a header
    return {}


def _split_top_level_commas(value: str) -> list[str]:
    """Split on commas that are not inside a {...} group."""
    parts: list[str] = []
    current: list[str] = []
    depth = 0
    for c in value:
        if c == "{":
            depth += 1
        elif c == "}" and depth > 0:
            depth -= 1
        if c == "," and depth == 0:
            parts.append("".join(current))
            current = []
            continue
        current.append(c)
    parts.append("".join(current))
    return parts


def parse_globs(value) -> tuple[str, ...]:
    """Normalize a ``globs`` header value into an ordered pattern tuple."""
    if value is None:
        return ()
    if isinstance(value, list):
        items = value
    else:
        text = _unquote(str(value))
        if text.startswith("[") and text.endswith("]"):
            text = text[1:-1]
        items = _split_top_level_commas(text)

    patterns: list[str] = []
    for item in items:
        pattern = _unquote(str(item))
        if pattern and pattern not in patterns:
            patterns.append(pattern)
    return tuple(patterns)


def parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return _unquote(str(value or "")).lower() in ("true", "yes", "on", "1")


def parse_rule_text(file_path: str, text: str) -> RuleDescriptor:
    header = parse_front_matter(text)
    return RuleDescriptor(
        file_path=file_path,
        glob_patterns=parse_globs(header.get("globs")),
        always_apply=parse_bool(header.get("alwaysApply")),
    )


def read_rule_descriptor(file_path: str, log=None) -> RuleDescriptor | None:
    """Read one rule file. Returns None if it cannot be read."""
    try:
        with open(file_path, encoding="utf-8", errors="replace") as f:
            text = f.read(MAX_RULE_FILE_BYTES)
    except OSError as e:
        if log is not None:
            log("WARN", f"Cannot read rule file {file_path}: {e}")
        return None
    return parse_rule_text(os.path.realpath(file_path), text)


def load_rule_descriptors(root: str, config: dict, log=None) -> list[RuleDescriptor]:
    """Discover and parse every rule file under the configured directories.

    Missing directories are skipped. Order is deterministic (sorted walk)
    and each file appears once.
    """
    rules_config = config.get("rules", {})
    directories = rules_config.get("directories", [])
    extensions = tuple(rules_config.get("extensions", [".mdc", ".md"]))

    descriptors: list[RuleDescriptor] = []
    seen: set[str] = set()
    for directory in directories:
        base = directory if os.path.isabs(directory) else os.path.join(root, directory)
        if not os.path.isdir(base):
            continue
        for dirpath, dirnames, filenames in os.walk(base):
            dirnames.sort()
            for filename in sorted(filenames):
                if not filename.endswith(extensions):
                    continue
                full_path = os.path.realpath(os.path.join(dirpath, filename))
                if full_path in seen:
                    continue
                seen.add(full_path)
                descriptor = read_rule_descriptor(full_path, log)
                if descriptor is not None:
                    descriptors.append(descriptor)
    return descriptors


def load_instruction_text(root: str, config: dict, log=None) -> str:
    """Concatenated text of the top-level project instruction documents."""
    chunks: list[str] = []
    for name in config.get("rules", {}).get("instructionFiles", []):
        path = name if os.path.isabs(name) else os.path.join(root, name)
        if not os.path.isfile(path):
            continue
        try:
            with open(path, encoding="utf-8", errors="replace") as f:
                chunks.append(f.read(MAX_INSTRUCTION_FILE_BYTES))
        except OSError as e:
            if log is not None:
                log("WARN", f"Cannot read instruction file {path}: {e}")
    return "\n".join(chunks)


def is_referenced(rule: RuleDescriptor, root: str, text: str) -> bool:
    """True if ``text`` mentions the rule by project-relative path or file name."""
    if not text:
        return False
    names = [os.path.basename(rule.file_path)]
    rel = relative_to_root(root, rule.file_path)
    if rel:
        names.insert(0, rel)
    for name in names:
        if re.search(r"(?<![\w./-])" + re.escape(name) + r"(?![\w/-])", text):
            return True
    return False
