#!/usr/bin/env python3
"""Verdict aggregation and the checker registry.

A checker is a function ``(event, context) -> Verdict``. The engine runs
every registered checker that applies to the event's tool and hook phase,
isolates their failures, and folds the results into one verdict:

    block   any checker blocked; the first block's message wins
    notice  no block; every notice concatenated in registration order
    allow   nothing to say

A checker that raises contributes ``allow``. Blocking is reserved for a
checker's own documented trigger, never for an internal error.
"""

import os
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any, Callable

from _command_parser import ParsedCommand, parse_command
from _rule_descriptors import RuleDescriptor, load_instruction_text, load_rule_descriptors
from _sentinel_utils import GitStatus, HookLog, null_log, truncate_command
from _transcript_index import EventRef, SessionHistory, load_history

ALLOW = "allow"
NOTICE = "notice"
BLOCK = "block"

PRE_TOOL_USE = "PreToolUse"
POST_TOOL_USE = "PostToolUse"

_VERDICT_PRIORITY = {BLOCK: 2, NOTICE: 1, ALLOW: 0}

NOTICE_SEPARATOR = "\n\n"


@dataclass(frozen=True)
class Verdict:
    kind: str = ALLOW
    message: str = ""
    retriable: bool = False
    checker: str = ""

    @classmethod
    def allow(cls, checker: str = "") -> "Verdict":
        return cls(ALLOW, "", False, checker)

    @classmethod
    def notice(cls, message: str, checker: str = "") -> "Verdict":
        return cls(NOTICE, message, False, checker)

    @classmethod
    def block(cls, message: str, retriable: bool = True, checker: str = "") -> "Verdict":
        return cls(BLOCK, message, retriable, checker)

    @property
    def is_allow(self) -> bool:
        return self.kind == ALLOW

    @property
    def is_notice(self) -> bool:
        return self.kind == NOTICE

    @property
    def is_block(self) -> bool:
        return self.kind == BLOCK

    def named(self, checker: str) -> "Verdict":
        if self.checker:
            return self
        return Verdict(self.kind, self.message, self.retriable, checker)


def aggregate(verdicts) -> Verdict:
    """Fold per-checker verdicts into one.

    Unknown kinds count as allow; they are never a reason to block.
    """
    first_block = None
    notices: list[str] = []
    notice_checkers: list[str] = []
    for verdict in verdicts:
        priority = _VERDICT_PRIORITY.get(verdict.kind, 0)
        if priority == _VERDICT_PRIORITY[BLOCK]:
            if first_block is None:
                first_block = verdict
        elif priority == _VERDICT_PRIORITY[NOTICE] and verdict.message:
            notices.append(verdict.message)
            notice_checkers.append(verdict.checker)

    if first_block is not None:
        return first_block
    if notices:
        return Verdict.notice(NOTICE_SEPARATOR.join(notices), ",".join(c for c in notice_checkers if c))
    return Verdict.allow()


@dataclass(frozen=True)
class Event:
    """One proposed (PreToolUse) or completed (PostToolUse) tool action."""

    tool_name: str
    tool_input: dict = field(default_factory=dict)
    tool_response: Any = None
    transcript_path: str | None = None
    tool_use_id: str | None = None
    hook_event_name: str = PRE_TOOL_USE
    cwd: str | None = None

    @classmethod
    def from_hook_input(cls, data: dict) -> "Event":
        """Build an Event from hook JSON, tolerating missing or mistyped fields."""
        if not isinstance(data, dict):
            data = {}
        tool_input = data.get("tool_input")
        if not isinstance(tool_input, dict):
            tool_input = {}

        def text(key):
            value = data.get(key)
            return value if isinstance(value, str) and value else None

        return cls(
            tool_name=text("tool_name") or "",
            tool_input=tool_input,
            tool_response=data.get("tool_response"),
            transcript_path=text("transcript_path"),
            tool_use_id=text("tool_use_id"),
            hook_event_name=text("hook_event_name") or PRE_TOOL_USE,
            cwd=text("cwd"),
        )

    @property
    def is_post(self) -> bool:
        return self.hook_event_name == POST_TOOL_USE

    @property
    def ref(self) -> EventRef:
        return EventRef(self.tool_name, self.tool_input, self.tool_use_id)

    @property
    def command(self) -> str:
        value = self.tool_input.get("command", "")
        return value if isinstance(value, str) else ""


class SessionContext:
    """Lazily computed, read-only inputs shared by the checkers of one evaluation.

    Each value is computed at most once, on first use, so a checker that
    never touches the transcript or the rules costs nothing.
    """

    def __init__(
        self,
        event: Event,
        project_dir: str,
        config: dict,
        log: HookLog,
        vcs=None,
        history: SessionHistory | None = None,
    ):
        self.event = event
        self.project_dir = project_dir
        self.config = config
        self.log = log
        self._vcs = vcs
        if history is not None:
            self.__dict__["history"] = history

    @cached_property
    def history(self) -> SessionHistory:
        return load_history(self.event.transcript_path, self.log)

    @cached_property
    def parsed_command(self) -> ParsedCommand | None:
        if self.event.tool_name != "Bash" or not self.event.command:
            return None
        return parse_command(self.event.command)

    @cached_property
    def rules(self) -> list[RuleDescriptor]:
        return load_rule_descriptors(self.project_dir, self.config, self.log)

    @cached_property
    def instruction_text(self) -> str:
        return load_instruction_text(self.project_dir, self.config, self.log)

    @property
    def current_ref(self) -> EventRef:
        return self.event.ref

    @cached_property
    def vcs(self):
        if self._vcs is not None:
            return self._vcs
        vcs_config = self.config.get("vcs", {})
        return GitStatus(
            self.project_dir,
            self.log,
            timeout_seconds=vcs_config.get("timeoutSeconds", 5),
            max_attempts=vcs_config.get("maxAttempts", 3),
        )

    def resolve(self, path: str) -> str:
        """Absolute form of ``path``, relative paths taken from the project."""
        expanded = os.path.expanduser(path)
        if os.path.isabs(expanded):
            return os.path.normpath(expanded)
        return os.path.normpath(os.path.join(self.project_dir, expanded))


Checker = Callable[[Event, SessionContext], Verdict]


@dataclass(frozen=True)
class _Registration:
    name: str
    predicate: Checker
    tools: frozenset | None
    phases: frozenset | None

    def applies(self, event: Event) -> bool:
        if self.tools is not None and event.tool_name not in self.tools:
            return False
        if self.phases is not None and event.hook_event_name not in self.phases:
            return False
        return True


class VerdictEngine:
    """Runs registered checkers against one event at a time.

    Stateless across events: everything an evaluation needs comes from the
    event, the supplied history, and files read during that evaluation.
    """

    def __init__(self, project_dir: str, config: dict, vcs=None):
        self.project_dir = project_dir
        self.config = config
        self.vcs = vcs
        self._checkers: list[_Registration] = []

    def register_checker(self, name: str, predicate: Checker, tools=None, phases=None) -> None:
        if any(r.name == name for r in self._checkers):
            raise ValueError(f"Checker already registered: {name}")
        self._checkers.append(
            _Registration(
                name,
                predicate,
                frozenset(tools) if tools is not None else None,
                frozenset(phases) if phases is not None else None,
            )
        )

    @property
    def checker_names(self) -> list[str]:
        return [r.name for r in self._checkers]

    def evaluate(self, event: Event, history: SessionHistory | None = None, log: HookLog | None = None) -> Verdict:
        if log is None:
            log = null_log()
        context = SessionContext(event, self.project_dir, self.config, log, self.vcs, history)

        verdicts: list[Verdict] = []
        for registration in self._checkers:
            if not registration.applies(event):
                continue
            try:
                verdict = registration.predicate(event, context)
            except Exception as e:
                log("ERROR", f"Checker {registration.name} failed, allowing: {type(e).__name__}: {e}")
                continue
            if not isinstance(verdict, Verdict):
                log("ERROR", f"Checker {registration.name} returned {type(verdict).__name__}, allowing")
                continue
            verdict = verdict.named(registration.name)
            if not verdict.is_allow:
                log(verdict.kind.upper(), f"[{registration.name}] {truncate_command(verdict.message, 200)}")
            verdicts.append(verdict)

        result = aggregate(verdicts)
        log("DEBUG", f"{event.hook_event_name} {event.tool_name}: {result.kind}")
        return result
