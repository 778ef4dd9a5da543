#!/usr/bin/env python3
"""Read-only queries over a session transcript.

The transcript is a JSON Lines file the host appends to. It is read in
full on every load (no cursor survives process restarts) and each query is
one linear pass over the loaded records.

Two record layouts are recognized:

    {"type": "assistant", "message": {"content": [
        {"type": "tool_use", "id": "toolu_1", "name": "Read", "input": {...}}]}}

    {"tool_name": "Read", "tool_input": {...}, "tool_use_id": "toolu_1"}
"""

import json
import os
from dataclasses import dataclass, field, replace
from typing import Any, Callable

# Inputs that name the file a tool operates on
FILE_INPUT_KEYS = ("file_path", "notebook_path")

MAX_TRANSCRIPT_BYTES = 100_000_000


@dataclass(frozen=True)
class SessionEvent:
    tool_name: str
    tool_input: dict
    ordinal: int
    tool_use_id: str | None = None
    failed: bool = False


@dataclass(frozen=True)
class SessionHistory:
    events: tuple[SessionEvent, ...] = ()
    source: str | None = None
    skipped: int = 0

    def __len__(self) -> int:
        return len(self.events)


@dataclass(frozen=True)
class EventRef:
    """Identity of the in-flight event, used to exclude its own record."""

    tool_name: str
    tool_input: dict = field(default_factory=dict)
    tool_use_id: str | None = None

    def matches(self, event: SessionEvent) -> bool:
        if self.tool_use_id and event.tool_use_id:
            return self.tool_use_id == event.tool_use_id
        return self.tool_name == event.tool_name and self.tool_input == event.tool_input


@dataclass(frozen=True)
class FileQuery:
    found: bool
    match_count: int

    def __bool__(self) -> bool:
        return self.found


EMPTY_HISTORY = SessionHistory()


# ============================================================
# Loading
# ============================================================


def _records_from_line(entry: Any) -> list[tuple[str, dict, str | None]]:
    """Extract (tool_name, tool_input, tool_use_id) tuples from one JSON line."""
    if not isinstance(entry, dict):
        return []

    if "tool_name" in entry:
        name = entry.get("tool_name")
        tool_input = entry.get("tool_input")
        if not isinstance(name, str) or not isinstance(tool_input, dict):
            return []
        use_id = entry.get("tool_use_id")
        return [(name, tool_input, use_id if isinstance(use_id, str) else None)]

    found = []
    for block in _content_blocks(entry):
        if block.get("type") != "tool_use":
            continue
        name = block.get("name")
        tool_input = block.get("input")
        if not isinstance(name, str) or not isinstance(tool_input, dict):
            continue
        use_id = block.get("id")
        found.append((name, tool_input, use_id if isinstance(use_id, str) else None))
    return found


def _content_blocks(entry: dict) -> list[dict]:
    message = entry.get("message")
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if not isinstance(content, list):
        return []
    return [block for block in content if isinstance(block, dict)]


def _failed_ids_from_line(entry: Any) -> list[str]:
    """tool_use_ids whose tool_result is an error (denied or failed calls)."""
    if not isinstance(entry, dict):
        return []
    if entry.get("type") == "tool_result" and entry.get("is_error") is True:
        use_id = entry.get("tool_use_id")
        return [use_id] if isinstance(use_id, str) else []

    failed = []
    for block in _content_blocks(entry):
        if block.get("type") != "tool_result" or block.get("is_error") is not True:
            continue
        use_id = block.get("tool_use_id")
        if isinstance(use_id, str):
            failed.append(use_id)
    return failed


class _HistoryBuilder:
    """Accumulates decoded transcript lines into a SessionHistory.

    A record whose tool_use_id was already seen (streamed messages are
    sometimes written twice) is kept once. A record whose call ended in an
    error result is kept but marked ``failed``.
    """

    def __init__(self):
        self.events: list[SessionEvent] = []
        self.seen_ids: set[str] = set()
        self.failed_ids: set[str] = set()

    def add(self, entry: Any) -> None:
        for name, tool_input, use_id in _records_from_line(entry):
            if use_id is not None:
                if use_id in self.seen_ids:
                    continue
                self.seen_ids.add(use_id)
            self.events.append(SessionEvent(name, tool_input, len(self.events), use_id))
        self.failed_ids.update(_failed_ids_from_line(entry))

    def build(self, source: str | None = None, skipped: int = 0) -> SessionHistory:
        events = tuple(
            replace(event, failed=True) if event.tool_use_id in self.failed_ids else event
            for event in self.events
        )
        return SessionHistory(events=events, source=source, skipped=skipped)


def load_history(transcript_path: str | None, log=None) -> SessionHistory:
    """Load every tool invocation recorded in the transcript.

    Never raises: an absent handle or an unreadable file yields an empty
    history. Unparseable lines are skipped and counted.
    """
    if not transcript_path or not isinstance(transcript_path, str):
        return EMPTY_HISTORY

    path = os.path.expanduser(transcript_path)
    builder = _HistoryBuilder()
    skipped = 0
    try:
        if os.path.getsize(path) > MAX_TRANSCRIPT_BYTES:
            if log is not None:
                log("WARN", f"Transcript too large to scan: {path}")
            return SessionHistory(source=path)
        with open(path, encoding="utf-8", errors="replace") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    skipped += 1
                    continue
                builder.add(entry)
    except OSError as e:
        if log is not None:
            log("DEBUG", f"Transcript unavailable ({path}): {e}")
        return SessionHistory(source=path)

    if skipped and log is not None:
        log("DEBUG", f"Skipped {skipped} malformed transcript line(s)")
    return builder.build(source=path, skipped=skipped)


def history_from_records(records) -> SessionHistory:
    """Build a history from already-decoded records (either layout)."""
    builder = _HistoryBuilder()
    for record in records:
        builder.add(record)
    return builder.build()


# ============================================================
# Queries
# ============================================================


def _excluded_ordinal(history: SessionHistory, exclude_current: EventRef | None) -> int | None:
    """Ordinal of the last record matching the in-flight event, if any."""
    if exclude_current is None:
        return None
    for event in reversed(history.events):
        if exclude_current.matches(event):
            return event.ordinal
    return None


def _iter_other_events(history: SessionHistory, exclude_current: EventRef | None):
    """Completed calls other than the in-flight one."""
    skip = _excluded_ordinal(history, exclude_current)
    for event in history.events:
        if event.ordinal != skip and not event.failed:
            yield event


def normalize_file_path(file_path: str, root: str | None = None) -> str | None:
    """Absolute, symlink-resolved form used to compare recorded paths."""
    if not isinstance(file_path, str) or not file_path or "\0" in file_path:
        return None
    path = os.path.expanduser(file_path)
    if not os.path.isabs(path) and root:
        path = os.path.join(root, path)
    try:
        return os.path.realpath(path)
    except (OSError, ValueError):
        return None


def event_file_path(event: SessionEvent) -> str | None:
    for key in FILE_INPUT_KEYS:
        value = event.tool_input.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def was_tool_invoked_with_file(
    history: SessionHistory,
    tool_name: str,
    file_path: str,
    root: str | None = None,
    exclude_current: EventRef | None = None,
) -> FileQuery:
    """Has ``tool_name`` already been invoked on ``file_path`` this session?

    The in-flight event's own record and calls that ended in an error
    result are never counted.
    """
    target = normalize_file_path(file_path, root)
    if target is None:
        return FileQuery(False, 0)

    count = 0
    for event in _iter_other_events(history, exclude_current):
        if event.tool_name != tool_name:
            continue
        recorded = event_file_path(event)
        if recorded is not None and normalize_file_path(recorded, root) == target:
            count += 1
    return FileQuery(count > 0, count)


def count_invocations(
    history: SessionHistory,
    tool_name: str,
    matcher: Callable[[dict], bool] | None = None,
    exclude_current: EventRef | None = None,
) -> int:
    count = 0
    for event in _iter_other_events(history, exclude_current):
        if event.tool_name != tool_name:
            continue
        if matcher is not None and not matcher(event.tool_input):
            continue
        count += 1
    return count


def files_read(
    history: SessionHistory,
    root: str | None = None,
    exclude_current: EventRef | None = None,
    tool_names=("Read",),
) -> set[str]:
    """Resolved paths of every file read this session."""
    paths: set[str] = set()
    for event in _iter_other_events(history, exclude_current):
        if event.tool_name not in tool_names:
            continue
        recorded = event_file_path(event)
        if recorded is None:
            continue
        normalized = normalize_file_path(recorded, root)
        if normalized is not None:
            paths.add(normalized)
    return paths
