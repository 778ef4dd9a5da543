#!/usr/bin/env python3
"""Sentinel utilities for Claude Code Sentinel Plugin.

This module provides shared utilities for the sentinel hook and its checkers:
- Configuration loading from config.json
- Logging with rotation (HookLog, one instance per evaluation)
- Dry-run mode support
- Safe regex search with ReDoS timeout
- Version-control tracking status (GitStatus)
- Hook response helpers

Config resolution chain (3-step):
    1. $CLAUDE_PROJECT_DIR/.claude/sentinel/config.json (user custom)
    2. $CLAUDE_PLUGIN_ROOT/assets/sentinel.default.json (plugin default)
    3. Hardcoded _FALLBACK_CONFIG (emergency fallback)

Usage:
    from _sentinel_utils import (
        HookLog,
        load_sentinel_config,
        get_project_dir,
        is_dry_run,
        safe_regex_search,
        GitStatus,
    )

Note on HookLog:
    - Silent no-op if no project directory is known
    - Silent fail on file write errors
    - This is intentional to avoid breaking hooks on logging issues

Design Principles:
    1. Fail-open: a sentinel error must never block the assistant.
       Blocking is reserved for a checker's own documented trigger.
    2. Point-in-time reads: nothing here writes transcripts or rule files.
    3. Robust Exception Handling: Never crash the hook lifecycle
"""

import copy
import json
import os
import re
import shutil
import subprocess
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Any

import regex

# ============================================================
# Constants
# ============================================================

DRY_RUN_ENV = "CLAUDE_HOOK_DRY_RUN"
"""Environment variable to enable dry-run mode.
Set to "1", "true", or "yes" to enable."""

MAX_PATH_PREVIEW_LENGTH = 60
"""Maximum path length for log display. Paths longer than this are truncated."""

MAX_COMMAND_PREVIEW_LENGTH = 80
"""Maximum command length for log display. Commands longer than this are truncated."""

MAX_LOG_SIZE_BYTES = 1_000_000
"""Maximum log file size before rotation (1 MB)."""

REGEX_TIMEOUT_SECONDS = 0.5
"""Default timeout for regex operations to prevent ReDoS."""

HOOK_DEFAULT_TIMEOUT_SECONDS = 10
"""Default timeout for a whole evaluation."""

SENTINEL_DIR = Path(".claude") / "sentinel"
"""Per-project directory holding config.json and sentinel.log."""


# ============================================================
# Hook Timeout Handling
# ============================================================


class HookTimeoutError(Exception):
    """Hook execution timed out."""

    pass


def with_timeout(func, timeout_seconds: int = HOOK_DEFAULT_TIMEOUT_SECONDS):
    """Execute function with a timeout guard.

    Platform-specific implementation:
    - Windows: threading-based timeout
    - Unix: signal-based timeout (SIGALRM), main thread only

    Args:
        func: Function to execute (no arguments).
        timeout_seconds: Timeout in seconds.

    Returns:
        func() return value.

    Raises:
        HookTimeoutError: If execution exceeds timeout.
    """
    import threading

    if sys.platform == "win32" or threading.current_thread() is not threading.main_thread():
        result = [None]
        exception = [None]

        def wrapper():
            try:
                result[0] = func()
            except Exception as e:
                exception[0] = e

        thread = threading.Thread(target=wrapper)
        thread.daemon = True
        thread.start()
        thread.join(timeout=timeout_seconds)

        if thread.is_alive():
            raise HookTimeoutError(f"Hook execution timed out after {timeout_seconds}s")
        if exception[0]:
            raise exception[0]
        return result[0]
    else:
        import signal

        def timeout_handler(signum, frame):
            raise HookTimeoutError(f"Hook execution timed out after {timeout_seconds}s")

        old_handler = signal.signal(signal.SIGALRM, timeout_handler)
        signal.alarm(max(1, int(timeout_seconds)))
        try:
            return func()
        finally:
            signal.alarm(0)
            signal.signal(signal.SIGALRM, old_handler)


# ============================================================
# Project Directory
# ============================================================


def get_project_dir(fallback: str | None = None) -> str:
    """Get the project directory.

    Order: $CLAUDE_PROJECT_DIR, then ``fallback`` (usually the event's cwd),
    then the process working directory.

    Returns:
        Project directory path, or empty string if none of them is a directory.
    """
    for candidate in (os.environ.get("CLAUDE_PROJECT_DIR", ""), fallback or "", os.getcwd()):
        if candidate and os.path.isdir(candidate):
            return candidate
    return ""


def _get_plugin_root() -> str:
    """Get the plugin root directory from environment variable."""
    return os.environ.get("CLAUDE_PLUGIN_ROOT", "")


# ============================================================
# Dry-Run Mode
# ============================================================


def is_dry_run() -> bool:
    """Check if running in dry-run (simulation) mode.

    In dry-run mode, the hook logs what it WOULD do but never
    emits a decision.

    Enable by setting environment variable:
        CLAUDE_HOOK_DRY_RUN=1

    Returns:
        True if dry-run mode is enabled.
    """
    value = os.environ.get(DRY_RUN_ENV, "").lower()
    return value in ("1", "true", "yes")


# ============================================================
# Logging with Rotation
# ============================================================


def _rotate_log_if_needed(log_file: Path) -> None:
    """Rotate log file if it exceeds MAX_LOG_SIZE_BYTES.

    Rotation strategy:
    - If log exceeds size limit, rename to .log.1 (overwriting any existing .log.1)
    - This keeps exactly one backup for debugging recent issues
    - Silent fail on any error (non-critical operation)
    """
    try:
        if not log_file.exists():
            return

        if log_file.stat().st_size < MAX_LOG_SIZE_BYTES:
            return

        backup_file = log_file.with_suffix(".log.1")

        # On Windows, we need to remove the target first if it exists
        if backup_file.exists():
            backup_file.unlink()

        log_file.rename(backup_file)

    except Exception:
        # Silent fail - rotation is non-critical
        pass


class HookLog:
    """Diagnostic log for one evaluation.

    Log format:
        TIMESTAMP [LEVEL] [DRY-RUN] MESSAGE

    Writes to <project>/.claude/sentinel/sentinel.log. Lines are also kept
    in ``records`` so tests and the adapter can inspect what was logged.
    Never raises.
    """

    def __init__(self, project_dir: str | None = None, persist: bool = True):
        self.project_dir = project_dir or ""
        self.persist = persist
        self.records: list[tuple[str, str]] = []

    @property
    def log_file(self) -> Path | None:
        if not self.project_dir:
            return None
        return Path(self.project_dir) / SENTINEL_DIR / "sentinel.log"

    def __call__(self, level: str, message: str) -> None:
        self.records.append((level, message))
        log_file = self.log_file
        if not self.persist or log_file is None:
            return

        try:
            timestamp = datetime.now().isoformat(timespec="seconds")
            mode = "[DRY-RUN] " if is_dry_run() else ""
            line = f"{timestamp} [{level}] {mode}{message}\n"

            log_file.parent.mkdir(parents=True, exist_ok=True)
            _rotate_log_if_needed(log_file)

            with open(log_file, "a", encoding="utf-8") as f:
                f.write(line)
        except Exception:
            # Silent fail - don't break hook on log error
            pass

    def messages(self, level: str | None = None) -> list[str]:
        """Return logged messages, optionally only those at ``level``."""
        return [m for lvl, m in self.records if level is None or lvl == level]


def null_log() -> HookLog:
    """A log that records in memory only."""
    return HookLog(persist=False)


# ============================================================
# Configuration
# ============================================================

# Hardcoded fallback config for when config.json is missing/corrupted
_FALLBACK_CONFIG: dict[str, Any] = {
    "hookBehavior": {
        "onTimeout": "allow",
        "onError": "allow",
        "timeoutSeconds": HOOK_DEFAULT_TIMEOUT_SECONDS,
    },
    "checkers": {
        "dangerous_command": {"enabled": True},
        "read_completeness": {"enabled": True},
        "convention_rules": {"enabled": True},
        "search_tool_notice": {"enabled": True},
        "structured_fetch_notice": {"enabled": True},
        "write_integrity_notice": {"enabled": True},
    },
    "completeness": {
        "lineThreshold": 2000,
    },
    "rules": {
        "directories": [".cursor/rules", ".claude/rules"],
        "extensions": [".mdc", ".md"],
        "instructionFiles": ["CLAUDE.md", ".claude/CLAUDE.md", "AGENTS.md"],
    },
    "searchTools": {
        "grep": "rg",
        "egrep": "rg",
        "fgrep": "rg",
        "find": "fd",
    },
    "fetchRules": [
        {
            "name": "github-api",
            "pattern": r"^https?://api\.github\.com/",
            "guidance": "Use the `gh` CLI instead, e.g. `gh api repos/OWNER/REPO`.",
        },
        {
            "name": "github-content",
            "pattern": r"^https?://(?:www\.)?github\.com/[^/]+/[^/]+/(?:pulls?|issues|actions|releases|commits?|compare)\b",
            "guidance": "Use the `gh` CLI instead, e.g. `gh pr view`, `gh issue list`, `gh run list`.",
        },
        {
            "name": "github-raw",
            "pattern": r"^https?://raw\.githubusercontent\.com/",
            "guidance": "Use `gh api repos/OWNER/REPO/contents/PATH` or clone the repository.",
        },
        {
            "name": "gitlab-api",
            "pattern": r"^https?://gitlab\.com/api/",
            "guidance": "Use `glab api` instead, e.g. `glab api projects/:id/issues`.",
        },
    ],
    "vcs": {
        "timeoutSeconds": 5,
        "maxAttempts": 3,
    },
}

_VALID_DECISIONS = {"allow", "deny", "ask"}


def _merge_config(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Merge ``override`` over ``base`` one level deep.

    Dict sections are merged key by key; every other value replaces the base.
    """
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def load_sentinel_config(project_dir: str, log: HookLog) -> dict[str, Any]:
    """Load config.json with fallback.

    The config is read on every invocation; hooks run as separate processes
    so there is nothing to cache.

    Returns:
        Configuration dict (user or plugin config merged over the fallback).
        Never raises exceptions - returns the fallback on any error.
    """
    candidates = []
    if project_dir:
        candidates.append(Path(project_dir) / SENTINEL_DIR / "config.json")
    plugin_root = _get_plugin_root()
    if plugin_root:
        candidates.append(Path(plugin_root) / "assets" / "sentinel.default.json")

    for config_path in candidates:
        if not config_path.exists():
            continue
        try:
            with open(config_path, encoding="utf-8") as f:
                loaded = json.load(f)
        except json.JSONDecodeError as e:
            log(
                "ERROR",
                f"[FALLBACK] Invalid JSON in {config_path}: {e}\n"
                "  Fix JSON syntax to restore the sentinel config.",
            )
            continue
        except OSError as e:
            log("ERROR", f"[FALLBACK] Failed to read {config_path}: {e}")
            continue

        if not isinstance(loaded, dict):
            log("ERROR", f"[FALLBACK] {config_path} must contain a JSON object")
            continue

        config = _merge_config(_FALLBACK_CONFIG, loaded)
        for problem in validate_sentinel_config(config):
            log("WARN", f"Config validation: {problem}")
        log("DEBUG", f"Loaded config from {config_path}")
        return config

    return copy.deepcopy(_FALLBACK_CONFIG)


def validate_sentinel_config(config: dict) -> list[str]:
    """Validate sentinel configuration.

    Returns:
        List of validation error messages (empty if valid).
    """
    errors = []

    hook_behavior = config.get("hookBehavior", {})
    for key in ("onTimeout", "onError"):
        value = hook_behavior.get(key, "allow")
        if value not in _VALID_DECISIONS:
            errors.append(f"Invalid hookBehavior.{key}: {value} (must be: {sorted(_VALID_DECISIONS)})")

    timeout_seconds = hook_behavior.get("timeoutSeconds", HOOK_DEFAULT_TIMEOUT_SECONDS)
    if isinstance(timeout_seconds, bool) or not isinstance(timeout_seconds, (int, float)) or timeout_seconds <= 0:
        errors.append(
            f"Invalid hookBehavior.timeoutSeconds: {timeout_seconds} (must be positive number)"
        )

    checkers = config.get("checkers", {})
    if not isinstance(checkers, dict):
        errors.append("checkers must be an object")
    else:
        for name, settings in checkers.items():
            if not isinstance(settings, dict):
                errors.append(f"checkers.{name} must be an object")
                continue
            enabled = settings.get("enabled")
            if enabled is not None and not isinstance(enabled, bool):
                errors.append(f"checkers.{name}.enabled must be boolean, got {type(enabled).__name__}")

    threshold = config.get("completeness", {}).get("lineThreshold")
    if isinstance(threshold, bool) or not isinstance(threshold, int) or threshold <= 0:
        errors.append(f"Invalid completeness.lineThreshold: {threshold} (must be positive integer)")

    rules = config.get("rules", {})
    for key in ("directories", "extensions", "instructionFiles"):
        value = rules.get(key, [])
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            errors.append(f"rules.{key} must be a list of strings")

    search_tools = config.get("searchTools", {})
    if not isinstance(search_tools, dict):
        errors.append("searchTools must be an object")

    fetch_rules = config.get("fetchRules", [])
    if not isinstance(fetch_rules, list):
        errors.append("fetchRules must be a list")
    else:
        for i, rule in enumerate(fetch_rules):
            if not isinstance(rule, dict):
                errors.append(f"fetchRules[{i}] must be an object")
                continue
            pattern = rule.get("pattern", "")
            if not pattern:
                errors.append(f"fetchRules[{i}] missing 'pattern' field")
                continue
            try:
                regex.compile(pattern)
            except regex.error as e:
                errors.append(f"Invalid regex in fetchRules[{i}]: {e}")

    vcs = config.get("vcs", {})
    attempts = vcs.get("maxAttempts", 1)
    if isinstance(attempts, bool) or not isinstance(attempts, int) or attempts < 1:
        errors.append(f"Invalid vcs.maxAttempts: {attempts} (must be >= 1)")

    return errors


def is_checker_enabled(config: dict, name: str) -> bool:
    """True unless config explicitly disables checker ``name``."""
    settings = config.get("checkers", {}).get(name, {})
    if not isinstance(settings, dict):
        return True
    return settings.get("enabled", True) is not False


# ============================================================
# Safe Regex with Timeout Defense (ReDoS Prevention)
# ============================================================


def safe_regex_search(
    pattern: str,
    text: str,
    log: HookLog,
    flags: int = 0,
    timeout: float = REGEX_TIMEOUT_SECONDS,
):
    """Regex search with timeout defense against ReDoS.

    Config-supplied patterns run through the `regex` package, which
    supports a per-call timeout.

    Returns:
        Match object if found, None otherwise.
        Returns None on timeout or invalid pattern (treated as no match).
    """
    try:
        return regex.search(pattern, text, flags, timeout=timeout)
    except TimeoutError:
        log("WARN", f"Regex timeout ({timeout}s) for pattern: {pattern[:50]}...")
        return None
    except regex.error as e:
        log("WARN", f"Invalid regex pattern '{pattern[:50]}...': {e}")
        return None


# ============================================================
# Version Control Status
# ============================================================

_git_available_cache: bool | None = None
"""Cached result of git availability check (per-process)."""


def is_git_available() -> bool:
    """Check if git is available in PATH (cached per process)."""
    global _git_available_cache
    if _git_available_cache is None:
        _git_available_cache = shutil.which("git") is not None
    return _git_available_cache


def _get_git_env() -> dict:
    """Environment for git subprocesses: no prompts, stable output."""
    env = os.environ.copy()
    env["GIT_TERMINAL_PROMPT"] = "0"
    env["LC_ALL"] = "C"
    return env


def _is_git_lock_error(stderr: str) -> bool:
    """Check if stderr indicates index.lock contention."""
    return "index.lock" in stderr or "Unable to create" in stderr


class GitStatus:
    """Answers ``is_tracked(path)`` using ``git ls-files --error-unmatch``.

    Returns True/False when git answered, None when the answer is unknown
    (git missing, not a repository, timeout, attempts exhausted).
    """

    def __init__(
        self,
        project_dir: str,
        log: HookLog,
        timeout_seconds: float = 5,
        max_attempts: int = 3,
    ):
        self.project_dir = project_dir
        self.log = log
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, max_attempts)

    def is_tracked(self, path: str) -> bool | None:
        if not is_git_available():
            self.log("WARN", "Git not available - cannot check tracking")
            return None
        if not self.project_dir:
            return None

        for attempt in range(1, self.max_attempts + 1):
            try:
                result = subprocess.run(
                    ["git", "ls-files", "--error-unmatch", "--", str(path)],
                    capture_output=True,
                    encoding="utf-8",
                    errors="replace",
                    cwd=self.project_dir,
                    env=_get_git_env(),
                    timeout=self.timeout_seconds,
                )
            except FileNotFoundError:
                self.log("WARN", "Git executable not found in PATH")
                return None
            except subprocess.TimeoutExpired:
                self.log("WARN", f"Git ls-files timeout for {path} (attempt {attempt}/{self.max_attempts})")
                continue
            except OSError as e:
                self.log("WARN", f"Error checking git tracking for {path}: {e}")
                return None

            if result.returncode == 0:
                return True
            stderr = result.stderr or ""
            if _is_git_lock_error(stderr):
                time.sleep(0.1 * attempt)
                continue
            if "not a git repository" in stderr.lower():
                return None
            return False

        self.log("WARN", f"Git tracking status unknown for {path} after {self.max_attempts} attempts")
        return None


# ============================================================
# Hook Response Helpers
# ============================================================


def deny_response(reason: str) -> dict[str, Any]:
    """Generate a deny response for PreToolUse hook."""
    return {
        "hookSpecificOutput": {
            "hookEventName": "PreToolUse",
            "permissionDecision": "deny",
            "permissionDecisionReason": f"[BLOCKED] {reason}",
        }
    }


def ask_response(reason: str) -> dict[str, Any]:
    """Generate an ask response for PreToolUse hook (human confirmation)."""
    return {
        "hookSpecificOutput": {
            "hookEventName": "PreToolUse",
            "permissionDecision": "ask",
            "permissionDecisionReason": f"[CONFIRM] {reason}",
        }
    }


def feedback_response(reason: str) -> dict[str, Any]:
    """Generate a PostToolUse response that delivers ``reason`` to the assistant.

    The tool already ran; "block" here only means the reason is fed back.
    """
    return {
        "decision": "block",
        "reason": reason,
        "hookSpecificOutput": {
            "hookEventName": "PostToolUse",
            "additionalContext": reason,
        },
    }


# ============================================================
# Display Helpers
# ============================================================


def truncate_path(path: str, max_length: int = MAX_PATH_PREVIEW_LENGTH) -> str:
    """Truncate path for display in logs, keeping the end."""
    if len(path) <= max_length:
        return path
    return f"...{path[-(max_length - 3) :]}"


def truncate_command(command: str, max_length: int = MAX_COMMAND_PREVIEW_LENGTH) -> str:
    """Truncate command for display in logs, keeping the start."""
    if len(command) <= max_length:
        return command
    return f"{command[: max_length - 3]}..."


def sanitize_for_log(text: str, max_length: int = 500) -> str:
    """Truncate text and mask the home directory for logging."""
    if not text:
        return ""

    sanitized = text[:max_length]
    if len(text) > max_length:
        sanitized += "..."

    home = os.path.expanduser("~")
    if home != "~":
        sanitized = sanitized.replace(home, "~")

    return re.sub(r"[\r\n]+", " ", sanitized)


# ============================================================
# Module Self-Test (when run directly)
# ============================================================


if __name__ == "__main__":
    _log = null_log()
    _project = get_project_dir()
    print("_sentinel_utils.py - Module loaded successfully")
    print(f"Project dir: {_project}")
    print(f"Plugin root: {_get_plugin_root()}")
    print(f"Dry-run mode: {is_dry_run()}")
    print(f"Config sections: {sorted(load_sentinel_config(_project, _log))}")
