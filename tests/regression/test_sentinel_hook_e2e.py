#!/usr/bin/env python3
"""End-to-end tests: run sentinel_hook.py as the host would.

Hook JSON goes to stdin; the test checks stdout and the exit code.
"""
import json
import os
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
import _bootstrap  # noqa: F401, E402

from _bootstrap import HOOK_SCRIPT  # noqa: E402


class TestSentinelHookE2E(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = os.path.realpath(os.path.join(self._tmp.name, "project"))
        os.makedirs(self.root)

    def tearDown(self):
        self._tmp.cleanup()

    def run_hook(self, payload, extra_env=None):
        env = os.environ.copy()
        env["CLAUDE_PROJECT_DIR"] = self.root
        env.pop("CLAUDE_HOOK_DRY_RUN", None)
        env.pop("CLAUDE_PLUGIN_ROOT", None)
        env.update(extra_env or {})
        stdin = payload if isinstance(payload, str) else json.dumps(payload)
        result = subprocess.run(
            [sys.executable, HOOK_SCRIPT],
            input=stdin,
            capture_output=True,
            text=True,
            env=env,
            timeout=30,
        )
        self.assertEqual(result.returncode, 0, result.stderr)
        return json.loads(result.stdout) if result.stdout.strip() else None

    def pre(self, tool_name, tool_input, **extra):
        return {"hook_event_name": "PreToolUse", "tool_name": tool_name, "tool_input": tool_input, **extra}

    def post(self, tool_name, tool_input, **extra):
        return {"hook_event_name": "PostToolUse", "tool_name": tool_name, "tool_input": tool_input,
                "tool_response": {}, **extra}

    def test_allow_is_silent(self):
        self.assertIsNone(self.run_hook(self.pre("Bash", {"command": "ls -la"})))

    def test_malformed_json_fails_open(self):
        self.assertIsNone(self.run_hook("{not json"))
        log_text = Path(self.root, ".claude", "sentinel", "sentinel.log").read_text(encoding="utf-8")
        self.assertIn("[ERROR] Malformed JSON input", log_text)

    def test_block_maps_to_deny(self):
        path = Path(self.root, "small.py")
        path.write_text("x = 1\n" * 300)
        output = self.run_hook(self.pre("Read", {"file_path": str(path), "offset": 10}, tool_use_id="t1"))
        decision = output["hookSpecificOutput"]
        self.assertEqual(decision["permissionDecision"], "deny")
        self.assertIn("300 lines", decision["permissionDecisionReason"])

    def test_prior_read_in_transcript_allows(self):
        path = Path(self.root, "small.py")
        path.write_text("x = 1\n" * 300)
        transcript = Path(self._tmp.name, "session.jsonl")
        transcript.write_text(
            json.dumps({"type": "assistant", "message": {"content": [
                {"type": "tool_use", "id": "t1", "name": "Read", "input": {"file_path": str(path)}},
            ]}}) + "\n",
            encoding="utf-8",
        )
        payload = self.pre("Read", {"file_path": str(path), "offset": 10}, tool_use_id="t2",
                           transcript_path=str(transcript))
        self.assertIsNone(self.run_hook(payload))

    def test_notice_maps_to_ask(self):
        output = self.run_hook(self.pre("Bash", {"command": "rm -rf /tmp/outside-workspace/file.txt"}))
        decision = output["hookSpecificOutput"]
        self.assertEqual(decision["permissionDecision"], "ask")
        self.assertIn("outside the workspace", decision["permissionDecisionReason"])

    def test_post_tool_use_feedback(self):
        path = Path(self.root, "greeting.txt")
        path.write_bytes(b"h?llo")
        output = self.run_hook(self.post("Write", {"file_path": str(path), "content": "héllo"}))
        self.assertEqual(output["decision"], "block")
        self.assertIn("replacement", output["reason"])

    def test_dry_run_emits_nothing(self):
        output = self.run_hook(
            self.pre("Bash", {"command": "rm -rf /tmp/outside-workspace/file.txt"}),
            extra_env={"CLAUDE_HOOK_DRY_RUN": "1"},
        )
        self.assertIsNone(output)
        log_text = Path(self.root, ".claude", "sentinel", "sentinel.log").read_text(encoding="utf-8")
        self.assertIn("[DRY-RUN]", log_text)

    def test_disabled_checker(self):
        config = Path(self.root, ".claude", "sentinel", "config.json")
        config.parent.mkdir(parents=True)
        config.write_text(json.dumps({"checkers": {"dangerous_command": {"enabled": False}}}))
        self.assertIsNone(self.run_hook(self.pre("Bash", {"command": "rm -rf /tmp/outside-workspace/x"})))

    def test_missing_tool_name(self):
        self.assertIsNone(self.run_hook({"tool_input": {}}))


if __name__ == "__main__":
    unittest.main()
