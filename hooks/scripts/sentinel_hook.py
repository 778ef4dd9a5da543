#!/usr/bin/env python3
"""Sentinel Hook.

Single entry point for PreToolUse and PostToolUse. Reads the hook JSON from
stdin, runs the checkers, and maps the aggregated verdict onto the hook
protocol:

    verdict   PreToolUse                 PostToolUse
    allow     (no output)                (no output)
    notice    permissionDecision "ask"   decision "block" (feedback only)
    block     permissionDecision "deny"  decision "block" (feedback only)

Design Principles:
- Fail-Open: if the sentinel itself fails, the tool call proceeds
  (hookBehavior.onError / onTimeout, default "allow")
- Every evaluation gets its own HookLog
- Thin wrapper: all checks live in _checkers.py
"""

import json
import sys
from pathlib import Path

# Add hooks directory to path
sys.path.insert(0, str(Path(__file__).parent))

from _checkers import build_default_engine  # noqa: E402
from _sentinel_utils import (  # noqa: E402
    HOOK_DEFAULT_TIMEOUT_SECONDS,
    HookLog,
    HookTimeoutError,
    ask_response,
    deny_response,
    feedback_response,
    get_project_dir,
    is_dry_run,
    load_sentinel_config,
    sanitize_for_log,
    with_timeout,
)
from _verdict_engine import Event, Verdict  # noqa: E402


def render_response(event: Event, verdict: Verdict) -> dict | None:
    """Hook output for ``verdict``, or None for a silent allow."""
    if verdict.is_allow:
        return None
    if event.is_post:
        return feedback_response(verdict.message)
    if verdict.is_block:
        return deny_response(verdict.message)
    return ask_response(verdict.message)


def fallback_response(event: Event | None, decision: str, reason: str) -> dict | None:
    """Output for hookBehavior.onError / onTimeout."""
    if decision == "deny":
        if event is not None and event.is_post:
            return feedback_response(reason)
        return deny_response(reason)
    if decision == "ask":
        if event is not None and event.is_post:
            return feedback_response(reason)
        return ask_response(reason)
    return None


def _emit(response: dict | None) -> None:
    if response is not None:
        print(json.dumps(response))


def run_hook(raw_input: str) -> dict | None:
    """Evaluate one hook invocation and return its output (None = allow)."""
    try:
        data = json.loads(raw_input)
    except json.JSONDecodeError as e:
        # Fail-open on unreadable input
        HookLog(get_project_dir())("ERROR", f"Malformed JSON input: {e}")
        return None
    if not isinstance(data, dict):
        HookLog(get_project_dir())("ERROR", f"Hook input must be an object, got {type(data).__name__}")
        return None

    event = Event.from_hook_input(data)
    project_dir = get_project_dir(event.cwd)
    log = HookLog(project_dir)
    if not event.tool_name:
        log("WARN", "Hook input without tool_name, allowing")
        return None

    config = load_sentinel_config(project_dir, log)
    behavior = config.get("hookBehavior", {})
    engine = build_default_engine(project_dir, config)

    try:
        verdict = with_timeout(
            lambda: engine.evaluate(event, log=log),
            behavior.get("timeoutSeconds", HOOK_DEFAULT_TIMEOUT_SECONDS),
        )
    except HookTimeoutError as e:
        log("ERROR", f"{event.tool_name}: {e}")
        return fallback_response(event, behavior.get("onTimeout", "allow"), f"Sentinel timed out: {e}")
    except Exception as e:
        log("ERROR", f"{event.tool_name}: {type(e).__name__}: {e}")
        return fallback_response(event, behavior.get("onError", "allow"), f"Sentinel error: {e}")

    response = render_response(event, verdict)
    if response is None:
        return None
    if is_dry_run():
        log("DRY-RUN", f"Would {verdict.kind.upper()}: {sanitize_for_log(verdict.message)}")
        return None
    return response


def main() -> None:
    """Main hook entry point."""
    _emit(run_hook(sys.stdin.read()))
    sys.exit(0)


if __name__ == "__main__":
    try:
        main()
    except SystemExit:
        raise
    except Exception as e:
        # Fail-open: never let a sentinel crash stop the tool call
        HookLog(get_project_dir())("ERROR", f"Sentinel hook error: {type(e).__name__}: {e}")
        sys.exit(0)
