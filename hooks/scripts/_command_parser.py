#!/usr/bin/env python3
"""Shell command structural parser.

Turns an opaque command string into a ParsedCommand:

    command  ->  chain segments (&&, ||, ;, newline)
             ->  pipe stages (|, |&)
             ->  SimpleCommand(name, flags, args, redirects)

Every entry point is total: unparseable input degrades to a single opaque
segment instead of raising. The scanner is quote-aware and does NOT split
inside:
- Single-quoted strings ('...')
- Double-quoted strings ("...")
- Command substitution ($(...)), process substitution (<(...) or >(...))
- Backtick substitution
- Backslash-escaped characters
- Heredoc bodies (<<EOF ... EOF)

Bare & (backgrounding, &>, 2>&1) is never a chain operator.

Specialized extractors (extract_rm, extract_mv, extract_git) return None
when the command does not have the expected shape.
"""

import os
import re
from dataclasses import dataclass, field

CHAIN_OPERATORS = ("&&", "||", ";", "\n")
"""Control operators that separate chain segments."""

WRAPPER_COMMANDS = frozenset({"sudo", "command", "env", "nohup", "time", "exec", "builtin", "nice"})
"""Commands that run their arguments as another command."""

_WRAPPER_OPTS_WITH_VALUE = {
    "sudo": {"-u", "-g", "-C", "-h", "-p", "-U", "-r", "-t"},
    "env": {"-u", "-C", "-S"},
    "nice": {"-n"},
}

_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")
_REDIRECT_RE = re.compile(r"^(?:\d+|&)?(?:>>|>\||>&|>|<<<|<<-|<<|<&|<>|<)$")
_HEREDOC_DELIM_RE = re.compile(r"""\s*(['"]?)([^\s'"<>;&|()]+)\1""")


@dataclass(frozen=True)
class SimpleCommand:
    """One pipe stage: a command name with its arguments."""

    text: str
    name: str = ""
    program: str = ""
    tokens: tuple[str, ...] = ()
    flags: frozenset[str] = frozenset()
    args: tuple[str, ...] = ()
    redirects: tuple[tuple[str, str], ...] = ()
    background: bool = False
    piped_from_previous: bool = False


@dataclass(frozen=True)
class CommandSegment:
    """One chain segment and the control operator that precedes it."""

    text: str
    operator_before: str | None = None
    stages: tuple[SimpleCommand, ...] = ()

    @property
    def require_success_of_previous(self) -> bool:
        return self.operator_before == "&&"

    @property
    def continue_on_failure(self) -> bool:
        return self.operator_before in (";", "\n", "||")


@dataclass(frozen=True)
class ParsedCommand:
    raw: str
    segments: tuple[CommandSegment, ...] = field(default_factory=tuple)

    def simple_commands(self):
        return iter_simple_commands(self)


@dataclass(frozen=True)
class RemoveCommand:
    force: bool
    recursive: bool
    interactive: bool
    targets: tuple[str, ...]


@dataclass(frozen=True)
class MoveCommand:
    source: str
    destination: str
    is_rename: bool


@dataclass(frozen=True)
class GitCommand:
    subcommand: str
    force: bool
    force_with_lease: bool
    args: tuple[str, ...]
    flags: frozenset[str] = frozenset()


# ============================================================
# Scanner
# ============================================================


def _read_heredoc_delimiter(command: str, i: int) -> tuple[str, bool, int]:
    """Read the delimiter after ``<<`` / ``<<-`` starting at ``i``.

    Returns (delimiter, strip_tabs, index after delimiter). Empty delimiter
    when none could be read.
    """
    strip_tabs = False
    if i < len(command) and command[i] == "-":
        strip_tabs = True
        i += 1
    match = _HEREDOC_DELIM_RE.match(command, i)
    if not match:
        return "", strip_tabs, i
    return match.group(2), strip_tabs, match.end()


def _consume_heredoc_bodies(command: str, i: int, pending: list[tuple[str, bool]]) -> int:
    """Skip heredoc bodies starting at the newline at ``i``.

    Returns the index of the newline that terminates the last delimiter line
    (or len(command) when a body is unterminated).
    """
    pos = i
    for delimiter, strip_tabs in pending:
        while pos < len(command):
            line_start = pos + 1
            line_end = command.find("\n", line_start)
            if line_end == -1:
                line_end = len(command)
            line = command[line_start:line_end]
            if strip_tabs:
                line = line.lstrip("\t")
            pos = line_end
            if line == delimiter:
                break
    return pos


def _skip_backtick(text: str, i: int) -> int:
    """Return the index just past the backtick that closes the one at ``i``."""
    n = len(text)
    j = i + 1
    while j < n:
        if text[j] == "\\":
            j += 2
            continue
        if text[j] == "`":
            return j + 1
        j += 1
    return n


def _skip_double_quoted(text: str, i: int) -> int:
    """Return the index just past the double quote closing the one at ``i``."""
    n = len(text)
    j = i + 1
    while j < n:
        c = text[j]
        if c == "\\":
            j += 2
            continue
        if c == '"':
            return j + 1
        if c == "$" and text.startswith("$(", j):
            j = _skip_group(text, j + 1)
            continue
        if c == "`":
            j = _skip_backtick(text, j)
            continue
        j += 1
    return n


def _skip_group(text: str, i: int) -> int:
    """Return the index just past the ``)`` matching the ``(`` at ``i``.

    Quotes, backticks and nested groups inside are honoured. Unbalanced
    input runs to the end of the string.
    """
    n = len(text)
    depth = 0
    j = i
    while j < n:
        c = text[j]
        if c == "\\":
            j += 2
            continue
        if c == "'":
            end = text.find("'", j + 1)
            j = n if end == -1 else end + 1
            continue
        if c == '"':
            j = _skip_double_quoted(text, j)
            continue
        if c == "`":
            j = _skip_backtick(text, j)
            continue
        if c == "(":
            depth += 1
        elif c == ")":
            depth -= 1
            if depth == 0:
                return j + 1
        j += 1
    return n


def _scan(command: str, split_pipes: bool) -> list[tuple[str | None, str]]:
    """Split ``command`` at top-level operators.

    With ``split_pipes`` False, splits on chain operators and returns
    (operator_before, text) pairs. With ``split_pipes`` True, splits on
    single pipes only and the operator is "|".
    """
    parts: list[tuple[str | None, str]] = []
    current: list[str] = []
    pending_op: str | None = None
    pending_heredocs: list[tuple[str, bool]] = []
    n = len(command)
    i = 0

    def flush(next_op: str | None) -> None:
        nonlocal current, pending_op
        text = "".join(current).strip()
        if text:
            parts.append((pending_op, text))
            pending_op = next_op
        elif next_op is not None and parts:
            # Empty segment between operators: keep the first operator
            pending_op = pending_op or next_op
        current = []

    while i < n:
        c = command[i]

        # Backslash escape: \; is NOT a delimiter
        if c == "\\":
            current.append(command[i : i + 2])
            i += 2
            continue

        if c == "'":
            end = command.find("'", i + 1)
            end = n if end == -1 else end + 1
            current.append(command[i:end])
            i = end
            continue

        if c == '"':
            end = _skip_double_quoted(command, i)
            current.append(command[i:end])
            i = end
            continue

        if c == "`":
            end = _skip_backtick(command, i)
            current.append(command[i:end])
            i = end
            continue

        # $(), <(), >()
        if c == "(" and i > 0 and command[i - 1] in ("$", "<", ">"):
            end = _skip_group(command, i)
            current.append(command[i:end])
            i = end
            continue

        # Heredoc start (<< or <<-, not the <<< here-string)
        if c == "<" and command.startswith("<<", i) and not command.startswith("<<<", i):
            delimiter, strip_tabs, end = _read_heredoc_delimiter(command, i + 2)
            current.append(command[i:end])
            if delimiter:
                pending_heredocs.append((delimiter, strip_tabs))
            i = end
            continue

        if c == "\n" and pending_heredocs:
            end = _consume_heredoc_bodies(command, i, pending_heredocs)
            current.append(command[i:end])
            pending_heredocs = []
            i = end
            continue

        if split_pipes:
            if command.startswith("||", i):
                current.append("||")
                i += 2
                continue
            if c == "|" and i > 0 and command[i - 1] == ">":
                # >| is a clobbering redirect, not a pipe
                current.append(c)
                i += 1
                continue
            if c == "|":
                flush("|")
                i += 2 if command.startswith("|&", i) else 1
                continue
        else:
            if c == ";":
                flush(";")
                i += 1
                continue
            if command.startswith("&&", i):
                flush("&&")
                i += 2
                continue
            if command.startswith("||", i):
                flush("||")
                i += 2
                continue
            if c == "\n":
                flush("\n")
                i += 1
                continue

        current.append(c)
        i += 1

    flush(None)
    return parts


def split_chain(command: str) -> list[tuple[str | None, str]]:
    """Split a command into chain segments.

    Returns:
        List of (operator_before, segment_text). The first segment's operator
        is None. Empty segments are dropped.
    """
    if not command or not command.strip():
        return []
    try:
        return _scan(command, split_pipes=False)
    except Exception:
        return [(None, command.strip())]


def split_pipe(segment: str) -> list[str]:
    """Split one chain segment on unquoted single pipes."""
    if not segment or not segment.strip():
        return []
    try:
        return [text for _, text in _scan(segment, split_pipes=True)]
    except Exception:
        return [segment.strip()]


def join_chain(segments: list[tuple[str | None, str]]) -> str:
    """Rebuild a command string from split_chain() output."""
    pieces: list[str] = []
    for op, text in segments:
        if op is None or not pieces:
            pieces.append(text)
        elif op == "\n":
            pieces.append(f"\n{text}")
        elif op == ";":
            pieces.append(f"; {text}")
        else:
            pieces.append(f" {op} {text}")
    return "".join(pieces)


# ============================================================
# Tokenizer
# ============================================================


def _read_redirect(text: str, i: int) -> int:
    """Return the end index of the redirection operator starting at ``i``."""
    n = len(text)
    j = i + 1 if text[i] == "&" else i
    while j < n and text[j] in "<>|&-" and j - i < 3:
        if not _REDIRECT_RE.match(text[i : j + 1]):
            break
        j += 1
    return j


def _tokenize(text: str) -> list[tuple[str, bool]]:
    """Split a simple command into words.

    Returns (word, is_operator) pairs. Quotes are removed exactly once;
    an unterminated quote runs to the end of the string. Unquoted
    redirection operators and a background ``&`` come out as operator words.
    Substitutions ($(...), backticks, <(...)) stay verbatim inside their word.
    """
    words: list[tuple[str, bool]] = []
    buf: list[str] = []
    has_word = False
    heredoc_pending = False
    n = len(text)
    i = 0

    def end_word() -> None:
        nonlocal buf, has_word
        if has_word:
            words.append(("".join(buf), False))
        buf = []
        has_word = False

    while i < n:
        c = text[i]

        if c == "\\":
            if i + 1 < n and text[i + 1] != "\n":
                buf.append(text[i + 1])
                has_word = True
            i += 2
            continue

        if c == "'":
            end = text.find("'", i + 1)
            end = n if end == -1 else end
            buf.append(text[i + 1 : end])
            has_word = True
            i = end + 1
            continue

        if c == '"':
            has_word = True
            i += 1
            while i < n and text[i] != '"':
                if text[i] == "\\" and i + 1 < n and text[i + 1] in '"\\$`\n':
                    if text[i + 1] != "\n":
                        buf.append(text[i + 1])
                    i += 2
                    continue
                if text.startswith("$(", i):
                    end = _skip_group(text, i + 1)
                    buf.append(text[i:end])
                    i = end
                    continue
                buf.append(text[i])
                i += 1
            i += 1
            continue

        if c == "`":
            end = _skip_backtick(text, i)
            buf.append(text[i:end])
            has_word = True
            i = end
            continue

        if text.startswith(("$(", "<(", ">("), i):
            end = _skip_group(text, i + 1)
            buf.append(text[i:end])
            has_word = True
            i = end
            continue

        if c in (" ", "\t"):
            end_word()
            i += 1
            continue

        if c == "\n":
            end_word()
            if heredoc_pending:
                break
            i += 1
            continue

        if c in "<>" or text.startswith("&>", i):
            prefix = ""
            if has_word and "".join(buf).isdigit():
                prefix = "".join(buf)
                buf = []
                has_word = False
            else:
                end_word()
            end = _read_redirect(text, i)
            op = prefix + text[i:end]
            if op.endswith(("<<", "<<-")):
                heredoc_pending = True
            words.append((op, True))
            i = end
            continue

        if c == "&":
            end_word()
            words.append(("&", True))
            i += 1
            continue

        buf.append(c)
        has_word = True
        i += 1

    end_word()
    return words


def _strip_grouping(text: str) -> str:
    """Drop subshell/group delimiters around a simple command."""
    body = text.strip()
    while True:
        if body.startswith("(") and not body.startswith("(("):
            body = body[1:].lstrip()
        elif body.startswith("{") and body[1:2].isspace():
            body = body[1:].lstrip()
        elif body.startswith("!") and body[1:2].isspace():
            body = body[1:].lstrip()
        else:
            break
    while body.endswith(")") and body.count(")") > body.count("("):
        body = body[:-1].rstrip()
    if body.endswith("}") and body.count("}") > body.count("{") and body[-2:-1] in (" ", ";", "\t"):
        body = body[:-1].rstrip().rstrip(";").rstrip()
    return body


def _skip_wrappers(words: list[str]) -> int:
    """Return the index of the real command word after assignments/wrappers."""
    i = 0
    while i < len(words):
        word = words[i]
        if _ASSIGNMENT_RE.match(word):
            i += 1
            continue
        base = os.path.basename(word)
        if base in WRAPPER_COMMANDS:
            with_value = _WRAPPER_OPTS_WITH_VALUE.get(base, set())
            i += 1
            while i < len(words) and (words[i].startswith("-") or (base == "env" and _ASSIGNMENT_RE.match(words[i]))):
                i += 2 if words[i] in with_value else 1
            if base == "nice" and i < len(words) and words[i].lstrip("-").isdigit():
                i += 1
            continue
        return i
    return i


def parse_args(segment_text: str, piped_from_previous: bool = False) -> SimpleCommand:
    """Tokenize one pipe stage into name, flags and positional arguments.

    A token is a flag if it starts with ``-`` (a lone ``-`` is positional).
    After ``--`` every token is positional. Redirections and their targets
    are kept apart in ``redirects``.
    """
    text = segment_text.strip()
    try:
        raw_words = _tokenize(_strip_grouping(text))
    except Exception:
        return SimpleCommand(text=text, name=text, program=text, piped_from_previous=piped_from_previous)

    words: list[str] = []
    redirects: list[tuple[str, str]] = []
    background = False
    idx = 0
    while idx < len(raw_words):
        word, is_op = raw_words[idx]
        if is_op and word == "&":
            background = True
        elif is_op:
            target = ""
            if idx + 1 < len(raw_words) and not raw_words[idx + 1][1]:
                target = raw_words[idx + 1][0]
                idx += 1
            redirects.append((word, target))
        else:
            words.append(word)
        idx += 1

    start = _skip_wrappers(words)
    if start >= len(words):
        return SimpleCommand(
            text=text,
            redirects=tuple(redirects),
            background=background,
            piped_from_previous=piped_from_previous,
        )

    program = words[start]
    tokens = words[start + 1 :]
    flags: set[str] = set()
    args: list[str] = []
    end_of_flags = False
    for token in tokens:
        if not end_of_flags and token == "--":
            end_of_flags = True
            continue
        if not end_of_flags and token.startswith("-") and len(token) > 1:
            flags.add(token)
        else:
            args.append(token)

    return SimpleCommand(
        text=text,
        name=os.path.basename(program),
        program=program,
        tokens=tuple(tokens),
        flags=frozenset(flags),
        args=tuple(args),
        redirects=tuple(redirects),
        background=background,
        piped_from_previous=piped_from_previous,
    )


def parse_command(command: str) -> ParsedCommand:
    """Parse a raw command string. Never raises."""
    if not isinstance(command, str):
        command = "" if command is None else str(command)
    try:
        segments = []
        for op, text in split_chain(command):
            stages = tuple(
                parse_args(stage, piped_from_previous=index > 0)
                for index, stage in enumerate(split_pipe(text))
            )
            segments.append(CommandSegment(text=text, operator_before=op, stages=stages))
        return ParsedCommand(raw=command, segments=tuple(segments))
    except Exception:
        text = command.strip()
        opaque = SimpleCommand(text=text, name=text, program=text)
        return ParsedCommand(raw=command, segments=(CommandSegment(text=text, stages=(opaque,)),))


def iter_simple_commands(parsed: ParsedCommand):
    """Yield every pipe stage of every chain segment, in order."""
    for segment in parsed.segments:
        yield from segment.stages


# ============================================================
# Specialized Extractors
# ============================================================


def _short_flag_chars(flags) -> set[str]:
    chars: set[str] = set()
    for flag in flags:
        if flag.startswith("-") and not flag.startswith("--"):
            chars.update(flag[1:])
    return chars


def extract_rm(stage: SimpleCommand) -> RemoveCommand | None:
    """Force/recursive/interactive flags and targets of an ``rm`` stage."""
    if stage.name != "rm":
        return None
    short = _short_flag_chars(stage.flags)
    long_flags = {f.split("=", 1)[0] for f in stage.flags if f.startswith("--")}
    return RemoveCommand(
        force="f" in short or "--force" in long_flags,
        recursive=bool(short & {"r", "R"}) or "--recursive" in long_flags,
        interactive=bool(short & {"i", "I"}) or "--interactive" in long_flags,
        targets=stage.args,
    )


def _parent_dir(path: str, root: str) -> str:
    joined = path if os.path.isabs(path) else os.path.join(root, path)
    return os.path.dirname(os.path.normpath(joined))


def extract_mv(stage: SimpleCommand, root: str | None = None) -> MoveCommand | None:
    """Source, destination and rename decision of a two-argument ``mv``."""
    if stage.name != "mv" or len(stage.args) != 2:
        return None
    if any(f in ("-t", "--target-directory") or f.startswith("--target-directory=") for f in stage.flags):
        return None

    source, destination = stage.args
    root = root or os.getcwd()
    dest_abs = destination if os.path.isabs(destination) else os.path.join(root, destination)
    if os.path.isdir(dest_abs):
        # mv file existing_dir moves the file into the directory
        return MoveCommand(source, destination, is_rename=False)

    if os.sep not in source and "/" not in source and os.sep not in destination and "/" not in destination:
        return MoveCommand(source, destination, is_rename=True)

    same_dir = _parent_dir(source.rstrip("/"), root) == _parent_dir(destination.rstrip("/"), root)
    return MoveCommand(source, destination, is_rename=same_dir)


_GIT_GLOBAL_OPTS_WITH_VALUE = {"-C", "-c", "--git-dir", "--work-tree", "--namespace", "--exec-path"}


def extract_git(stage: SimpleCommand) -> GitCommand | None:
    """Subcommand, force flag and remaining arguments of a ``git`` stage."""
    if stage.name != "git":
        return None

    tokens = list(stage.tokens)
    i = 0
    while i < len(tokens) and tokens[i].startswith("-"):
        i += 2 if tokens[i] in _GIT_GLOBAL_OPTS_WITH_VALUE else 1
    if i >= len(tokens):
        return None

    subcommand = tokens[i]
    rest = tokens[i + 1 :]
    flags: set[str] = set()
    args: list[str] = []
    end_of_flags = False
    for token in rest:
        if not end_of_flags and token == "--":
            end_of_flags = True
            continue
        if not end_of_flags and token.startswith("-") and len(token) > 1:
            flags.add(token)
        else:
            args.append(token)

    long_flags = {f.split("=", 1)[0] for f in flags if f.startswith("--")}
    force_with_lease = "--force-with-lease" in long_flags
    force = (
        "f" in _short_flag_chars(flags)
        or "--force" in long_flags
        or force_with_lease
        or (subcommand == "push" and any(a.startswith("+") and len(a) > 1 for a in args))
    )
    return GitCommand(
        subcommand=subcommand,
        force=force,
        force_with_lease=force_with_lease,
        args=tuple(args),
        flags=frozenset(flags),
    )
