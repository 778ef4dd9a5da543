#!/usr/bin/env python3
"""Built-in checkers.

Each checker is ``(event, context) -> Verdict`` and never writes anything.
Registered by build_default_engine():

    dangerous_command        PreToolUse  Bash     notice
    read_completeness        PreToolUse  Read     block
    convention_rules         PreToolUse  any      block
    search_tool_notice       PostToolUse Bash     notice
    structured_fetch_notice  PostToolUse WebFetch notice
    write_integrity_notice   PostToolUse Write    notice

Notices defer the decision to the user (PreToolUse) or simply inform the
assistant (PostToolUse). Blocks are retriable: once the assistant does
what the message asks, the same action is allowed.
"""

import glob
import os
import shutil
import unicodedata

from _command_parser import extract_git, extract_rm
from _path_classifier import has_glob_chars, is_path_candidate, is_within, relative_to_root
from _rule_descriptors import is_referenced
from _sentinel_utils import is_checker_enabled, safe_regex_search, truncate_path
from _transcript_index import files_read, normalize_file_path, was_tool_invoked_with_file
from _verdict_engine import POST_TOOL_USE, PRE_TOOL_USE, Verdict, VerdictEngine

# Commands whose positional arguments are files they read or modify
FILE_COMMANDS = frozenset(
    {
        "cat", "head", "tail", "less", "more", "touch", "cp", "mv", "rm", "tee",
        "sed", "awk", "chmod", "chown", "truncate", "ln", "install", "dd", "patch",
        "vi", "vim", "nano", "emacs", "code",
    }
)

# Keys of tool inputs that name a path the tool operates on
PATH_INPUT_KEYS = ("file_path", "notebook_path", "path")

_WRITE_REDIRECTS = (">", ">>", ">|", "&>", "&>>")

_SHELL_EXPANSION_CHARS = ("$", "`")


# ============================================================
# Dangerous Command
# ============================================================


def _cd_target(stage, cwd: str | None) -> tuple[bool, str | None]:
    """Follow a ``cd`` stage. Returns (is_cd, new_cwd); new_cwd None if unknown."""
    if stage.name not in ("cd", "pushd"):
        return False, cwd
    if cwd is None or len(stage.args) > 1:
        return True, None
    if not stage.args:
        return True, os.path.expanduser("~")
    target = stage.args[0]
    if target == "-" or any(c in target for c in _SHELL_EXPANSION_CHARS):
        return True, None
    target = os.path.expanduser(target)
    return True, os.path.normpath(target if os.path.isabs(target) else os.path.join(cwd, target))


def _expand_target(target: str, cwd: str) -> list[str]:
    path = os.path.expanduser(target)
    if not os.path.isabs(path):
        path = os.path.join(cwd, path)
    if has_glob_chars(target):
        matches = sorted(glob.glob(path))
        if matches:
            return matches
    return [os.path.normpath(path)]


def _rm_risks(rm, cwd: str | None, context) -> list[str]:
    risks: list[str] = []
    root = context.project_dir
    for target in rm.targets:
        if any(c in target for c in _SHELL_EXPANSION_CHARS):
            risks.append(f"`{truncate_path(target)}` depends on shell expansion and cannot be checked")
            continue
        if cwd is None and not os.path.isabs(os.path.expanduser(target)):
            risks.append(f"`{truncate_path(target)}` is relative to a directory that cannot be determined")
            continue
        if not is_path_candidate(target):
            continue

        for path in _expand_target(target, cwd or root):
            shown = truncate_path(path)
            if not is_within(root, path):
                risks.append(f"`{shown}` is outside the workspace ({root})")
                continue
            if relative_to_root(root, path) == "":
                risks.append(f"`{shown}` is the whole workspace")
                continue
            if not os.path.lexists(path):
                continue
            if context.vcs.is_tracked(path) is False:
                risks.append(f"`{shown}` is not tracked by version control and cannot be restored")
    return risks


def check_dangerous_command(event, context) -> Verdict:
    """Flag deletions that cannot be undone and forced pushes.

    A notice, not a block: the user confirms or refuses. A path whose
    tracking state is unknown is not flagged.
    """
    parsed = context.parsed_command
    if parsed is None:
        return Verdict.allow()

    risks: list[str] = []
    cwd: str | None = context.resolve(event.cwd) if event.cwd else context.project_dir
    for stage in parsed.simple_commands():
        is_cd, cwd = _cd_target(stage, cwd)
        if is_cd:
            continue

        rm = extract_rm(stage)
        if rm is not None:
            for risk in _rm_risks(rm, cwd, context):
                if risk not in risks:
                    risks.append(risk)
            continue

        git = extract_git(stage)
        if git is not None and git.subcommand == "push" and git.force:
            if git.force_with_lease:
                risks.append("`git push --force-with-lease` rewrites remote history (lease-protected)")
            else:
                risks.append("forced `git push` rewrites remote history and may discard others' commits")

    if not risks:
        return Verdict.allow()
    lines = "\n".join(f"  - {risk}" for risk in risks)
    return Verdict.notice(f"Potentially irreversible command:\n{lines}")


# ============================================================
# Read Completeness
# ============================================================


def _count_lines(path: str, limit: int) -> int | None:
    """Line count of a text file, capped at ``limit``. None if unknown."""
    count = 0
    last = b"\n"
    try:
        with open(path, "rb") as f:
            while True:
                chunk = f.read(65536)
                if not chunk:
                    break
                if b"\0" in chunk:
                    return None
                count += chunk.count(b"\n")
                last = chunk[-1:]
                if count >= limit:
                    return count
    except OSError:
        return None
    if last != b"\n":
        count += 1
    return count


def _int_or_none(value) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def check_read_completeness(event, context) -> Verdict:
    """Block a partial first read of a file small enough to read whole."""
    tool_input = event.tool_input
    file_path = tool_input.get("file_path")
    if not isinstance(file_path, str) or not file_path:
        return Verdict.allow()

    offset = _int_or_none(tool_input.get("offset"))
    limit = _int_or_none(tool_input.get("limit"))
    # offset is a 1-based start line; 0 or 1 still reads from the top
    has_offset = tool_input.get("offset") is not None and (offset is None or offset > 1)
    has_limit = tool_input.get("limit") is not None
    if not has_offset and not has_limit:
        return Verdict.allow()

    threshold = context.config.get("completeness", {}).get("lineThreshold", 2000)
    path = context.resolve(file_path)
    if not os.path.isfile(path):
        return Verdict.allow()
    line_count = _count_lines(path, threshold)
    if line_count is None or line_count == 0 or line_count >= threshold:
        return Verdict.allow()

    # A "partial" read that still covers every line
    if not has_offset and limit is not None and limit >= line_count:
        return Verdict.allow()

    previous = was_tool_invoked_with_file(
        context.history, "Read", path, root=context.project_dir, exclude_current=context.current_ref
    )
    if previous:
        return Verdict.allow()

    return Verdict.block(
        f"{truncate_path(file_path)} has only {line_count} lines; read it in full "
        f"(without offset/limit) before reading parts of it.",
        retriable=True,
    )


# ============================================================
# Convention Rules
# ============================================================


def _bash_touched_paths(parsed) -> list[str]:
    paths: list[str] = []
    for stage in parsed.simple_commands():
        for op, target in stage.redirects:
            if op.lstrip("0123456789") in _WRITE_REDIRECTS and target:
                paths.append(target)
        if stage.name not in FILE_COMMANDS:
            continue
        for arg in stage.args:
            if stage.name == "dd" and arg.startswith(("of=", "if=")):
                arg = arg[3:]
            paths.append(arg)
    return paths


def touched_paths(event, context) -> list[str]:
    """Paths an action reads or modifies, in input order, deduplicated."""
    candidates: list[str] = []
    for key in PATH_INPUT_KEYS:
        value = event.tool_input.get(key)
        if isinstance(value, str) and value:
            candidates.append(value)
    if context.parsed_command is not None:
        candidates.extend(_bash_touched_paths(context.parsed_command))

    paths: list[str] = []
    for candidate in candidates:
        if candidate in ("/dev/null", "-") or any(c in candidate for c in _SHELL_EXPANSION_CHARS):
            continue
        if is_path_candidate(candidate) and candidate not in paths:
            paths.append(candidate)
    return paths


def check_convention_rules(event, context) -> Verdict:
    """Block until every convention rule covering a touched path has been read.

    A rule mentioned in a top-level instruction document counts as read.
    """
    paths = touched_paths(event, context)
    if not paths:
        return Verdict.allow()
    rules = [rule for rule in context.rules if rule.effective_globs]
    if not rules:
        return Verdict.allow()

    root = context.project_dir
    rule_files = {rule.file_path for rule in context.rules}
    targets = [p for p in paths if normalize_file_path(p, root) not in rule_files]
    if not targets:
        return Verdict.allow()

    already_read = None
    unread = []
    for rule in rules:
        if not any(rule.applies_to(root, context.resolve(p)) for p in targets):
            continue
        if already_read is None:
            already_read = files_read(context.history, root, exclude_current=context.current_ref)
        if rule.file_path in already_read:
            continue
        if is_referenced(rule, root, context.instruction_text):
            continue
        if rule not in unread:
            unread.append(rule)

    if not unread:
        return Verdict.allow()
    listing = "\n".join(f"  - {rule.display_path(root)}" for rule in unread)
    return Verdict.block(
        f"Project convention rules apply to this change but have not been read:\n{listing}\n"
        "Read these rule files, then retry.",
        retriable=True,
    )


# ============================================================
# Optimization Notices
# ============================================================


def _which(program: str) -> str | None:
    return shutil.which(program)


def check_search_tool(event, context) -> Verdict:
    """Suggest a faster search tool when one is installed."""
    parsed = context.parsed_command
    if parsed is None:
        return Verdict.allow()

    tools = context.config.get("searchTools", {})
    suggestions: list[str] = []
    for stage in parsed.simple_commands():
        fast = tools.get(stage.name)
        if not fast or stage.piped_from_previous:
            continue
        if stage.name == "find" and not stage.flags & {"-name", "-iname"}:
            continue
        if _which(fast) is None:
            continue
        suggestion = f"`{fast}` is installed and faster than `{stage.name}` for searching the tree."
        if suggestion not in suggestions:
            suggestions.append(suggestion)

    if not suggestions:
        return Verdict.allow()
    return Verdict.notice(" ".join(suggestions))


def check_structured_fetch(event, context) -> Verdict:
    """Point URL fetches of structured resources at their purpose-built client."""
    url = event.tool_input.get("url")
    if not isinstance(url, str) or not url:
        return Verdict.allow()
    for rule in context.config.get("fetchRules", []):
        if not isinstance(rule, dict) or not rule.get("pattern"):
            continue
        if safe_regex_search(rule["pattern"], url, context.log):
            guidance = rule.get("guidance") or "A dedicated client exists for this resource."
            return Verdict.notice(f"Fetched {truncate_path(url, 100)} as a web page. {guidance}")
    return Verdict.allow()


def _count_replacement_chars(text: str) -> int:
    return text.count("\ufffd") + text.count("?")


def _count_control_chars(text: str) -> int:
    return sum(1 for c in text if c not in "\n\r\t" and unicodedata.category(c) == "Cc")


def compare_written_content(intended: str, actual_bytes: bytes) -> list[str]:
    """Differences between intended content and what ended up on disk."""
    actual = actual_bytes.decode("utf-8", errors="replace")
    problems: list[str] = []

    if len(actual) != len(intended):
        problems.append(f"character length {len(actual)} (intended {len(intended)})")

    intended_bytes = len(intended.encode("utf-8", errors="surrogatepass"))
    if len(actual_bytes) != intended_bytes:
        problems.append(f"byte length {len(actual_bytes)} (intended {intended_bytes})")

    replaced = _count_replacement_chars(actual) - _count_replacement_chars(intended)
    if replaced > 0:
        problems.append(f"{replaced} replacement character(s) introduced")

    control = _count_control_chars(actual) - _count_control_chars(intended)
    if control > 0:
        problems.append(f"{control} control character(s) introduced")

    if not problems and actual != intended:
        problems.append("content differs from what was written")
    return problems


def check_write_integrity(event, context) -> Verdict:
    """Read the written file back and report any corruption."""
    file_path = event.tool_input.get("file_path")
    content = event.tool_input.get("content")
    if not isinstance(file_path, str) or not file_path or not isinstance(content, str):
        return Verdict.allow()

    try:
        with open(context.resolve(file_path), "rb") as f:
            actual = f.read()
    except OSError as e:
        context.log("DEBUG", f"Cannot read back {file_path}: {e}")
        return Verdict.allow()

    problems = compare_written_content(content, actual)
    if not problems:
        return Verdict.allow()
    details = "; ".join(problems)
    return Verdict.notice(
        f"{truncate_path(file_path)} on disk does not match the intended content: {details}. "
        "Check the file encoding and rewrite it if needed."
    )


# ============================================================
# Default Registry
# ============================================================

DEFAULT_CHECKERS = (
    ("dangerous_command", check_dangerous_command, ("Bash",), (PRE_TOOL_USE,)),
    ("read_completeness", check_read_completeness, ("Read",), (PRE_TOOL_USE,)),
    ("convention_rules", check_convention_rules, None, (PRE_TOOL_USE,)),
    ("search_tool_notice", check_search_tool, ("Bash",), (POST_TOOL_USE,)),
    ("structured_fetch_notice", check_structured_fetch, ("WebFetch",), (POST_TOOL_USE,)),
    ("write_integrity_notice", check_write_integrity, ("Write",), (POST_TOOL_USE,)),
)


def build_default_engine(project_dir: str, config: dict, vcs=None) -> VerdictEngine:
    """Engine with every built-in checker that config does not disable."""
    engine = VerdictEngine(project_dir, config, vcs=vcs)
    for name, predicate, tools, phases in DEFAULT_CHECKERS:
        if is_checker_enabled(config, name):
            engine.register_checker(name, predicate, tools=tools, phases=phases)
    return engine
