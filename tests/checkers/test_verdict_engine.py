#!/usr/bin/env python3
"""Tests for verdict aggregation, checker isolation and configuration."""
import copy
import json
import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
import _bootstrap  # noqa: F401, E402

from _checkers import build_default_engine  # noqa: E402
from _sentinel_utils import (  # noqa: E402
    _FALLBACK_CONFIG,
    HookLog,
    is_checker_enabled,
    load_sentinel_config,
    null_log,
    safe_regex_search,
    validate_sentinel_config,
)
from _transcript_index import SessionHistory  # noqa: E402
from _verdict_engine import Event, Verdict, VerdictEngine, aggregate  # noqa: E402


# ============================================================
# 1. Aggregation
# ============================================================

class TestAggregate(unittest.TestCase):

    def test_empty_is_allow(self):
        self.assertTrue(aggregate([]).is_allow)

    def test_all_allow(self):
        self.assertTrue(aggregate([Verdict.allow(), Verdict.allow()]).is_allow)

    def test_notices_concatenated_in_order(self):
        result = aggregate([Verdict.notice("first", "a"), Verdict.allow(), Verdict.notice("second", "b")])
        self.assertTrue(result.is_notice)
        self.assertEqual(result.message, "first\n\nsecond")
        self.assertEqual(result.checker, "a,b")

    def test_first_block_wins(self):
        result = aggregate([
            Verdict.notice("fyi"),
            Verdict.block("first block", retriable=False, checker="one"),
            Verdict.block("second block", checker="two"),
        ])
        self.assertTrue(result.is_block)
        self.assertEqual(result.message, "first block")
        self.assertFalse(result.retriable)
        self.assertEqual(result.checker, "one")

    def test_unknown_kind_never_blocks(self):
        self.assertTrue(aggregate([Verdict("weird", "msg")]).is_allow)


# ============================================================
# 2. Engine
# ============================================================

class TestVerdictEngine(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = self._tmp.name
        self.engine = VerdictEngine(self.root, copy.deepcopy(_FALLBACK_CONFIG))
        self.log = null_log()

    def tearDown(self):
        self._tmp.cleanup()

    def evaluate(self, event=None):
        event = event or Event("Bash", {"command": "ls"})
        return self.engine.evaluate(event, history=SessionHistory(), log=self.log)

    def test_no_checkers(self):
        self.assertTrue(self.evaluate().is_allow)

    def test_failing_checker_is_isolated(self):
        def boom(event, context):
            raise RuntimeError("glob engine exploded")

        self.engine.register_checker("boom", boom)
        self.engine.register_checker("note", lambda e, c: Verdict.notice("still here"))
        result = self.evaluate()
        self.assertTrue(result.is_notice)
        self.assertEqual(result.message, "still here")
        self.assertTrue(any("boom" in m and "glob engine exploded" in m for m in self.log.messages("ERROR")))

    def test_failing_checker_never_blocks(self):
        self.engine.register_checker("boom", lambda e, c: 1 / 0)
        self.assertTrue(self.evaluate().is_allow)

    def test_non_verdict_return_ignored(self):
        self.engine.register_checker("bad", lambda e, c: "deny")
        self.assertTrue(self.evaluate().is_allow)
        self.assertTrue(self.log.messages("ERROR"))

    def test_checker_name_attached(self):
        self.engine.register_checker("blocker", lambda e, c: Verdict.block("no"))
        self.assertEqual(self.evaluate().checker, "blocker")
        self.assertIn("[blocker] no", self.log.messages("BLOCK"))

    def test_tool_and_phase_filters(self):
        seen = []
        self.engine.register_checker("bash_pre", lambda e, c: seen.append("bash_pre") or Verdict.allow(),
                                     tools=["Bash"], phases=["PreToolUse"])
        self.engine.register_checker("read_any", lambda e, c: seen.append("read_any") or Verdict.allow(),
                                     tools=["Read"])
        self.engine.register_checker("post_any", lambda e, c: seen.append("post_any") or Verdict.allow(),
                                     phases=["PostToolUse"])
        self.evaluate(Event("Bash", {"command": "ls"}))
        self.evaluate(Event("Read", {"file_path": "x"}, hook_event_name="PostToolUse"))
        self.assertEqual(seen, ["bash_pre", "read_any", "post_any"])

    def test_duplicate_name_rejected(self):
        self.engine.register_checker("a", lambda e, c: Verdict.allow())
        with self.assertRaises(ValueError):
            self.engine.register_checker("a", lambda e, c: Verdict.allow())

    def test_context_values_computed_once(self):
        calls = []

        def uses_parse(event, context):
            calls.append(context.parsed_command)
            return Verdict.allow()

        self.engine.register_checker("one", uses_parse)
        self.engine.register_checker("two", uses_parse)
        self.evaluate(Event("Bash", {"command": "rm -rf x && ls"}))
        self.assertIs(calls[0], calls[1])
        self.assertEqual(len(calls[0].segments), 2)

    def test_history_loaded_from_transcript_when_not_given(self):
        transcript = os.path.join(self.root, "t.jsonl")
        with open(transcript, "w", encoding="utf-8") as f:
            f.write(json.dumps({"tool_name": "Read", "tool_input": {"file_path": "a"}}) + "\n")
        sizes = []
        self.engine.register_checker("hist", lambda e, c: sizes.append(len(c.history)) or Verdict.allow())
        self.engine.evaluate(Event("Read", {"file_path": "a"}, transcript_path=transcript), log=self.log)
        self.assertEqual(sizes, [1])


class TestEvent(unittest.TestCase):

    def test_from_hook_input(self):
        event = Event.from_hook_input({
            "tool_name": "Read",
            "tool_input": {"file_path": "a"},
            "tool_use_id": "t1",
            "hook_event_name": "PostToolUse",
            "transcript_path": "/x/t.jsonl",
            "cwd": "/x",
            "tool_response": {"ok": True},
        })
        self.assertTrue(event.is_post)
        self.assertEqual(event.ref.tool_use_id, "t1")
        self.assertEqual(event.cwd, "/x")

    def test_from_malformed_hook_input(self):
        event = Event.from_hook_input({"tool_name": 5, "tool_input": "rm -rf /", "hook_event_name": None})
        self.assertEqual(event.tool_name, "")
        self.assertEqual(event.tool_input, {})
        self.assertFalse(event.is_post)
        self.assertEqual(Event.from_hook_input([]).tool_name, "")


# ============================================================
# 3. Configuration
# ============================================================

class TestConfig(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = self._tmp.name
        self.log = null_log()

    def tearDown(self):
        self._tmp.cleanup()

    def write_config(self, text):
        path = Path(self.root, ".claude", "sentinel", "config.json")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")

    def test_fallback_when_missing(self):
        config = load_sentinel_config(self.root, self.log)
        self.assertEqual(config, _FALLBACK_CONFIG)
        self.assertIsNot(config, _FALLBACK_CONFIG)

    def test_partial_config_merged(self):
        self.write_config(json.dumps({
            "checkers": {"search_tool_notice": {"enabled": False}},
            "completeness": {"lineThreshold": 500},
        }))
        config = load_sentinel_config(self.root, self.log)
        self.assertEqual(config["completeness"]["lineThreshold"], 500)
        self.assertFalse(is_checker_enabled(config, "search_tool_notice"))
        self.assertTrue(is_checker_enabled(config, "dangerous_command"))
        self.assertEqual(config["rules"], _FALLBACK_CONFIG["rules"])

    def test_invalid_json_falls_back(self):
        self.write_config("{not json")
        config = load_sentinel_config(self.root, self.log)
        self.assertEqual(config, _FALLBACK_CONFIG)
        self.assertTrue(any("Invalid JSON" in m for m in self.log.messages("ERROR")))

    def test_non_object_falls_back(self):
        self.write_config("[1, 2]")
        self.assertEqual(load_sentinel_config(self.root, self.log), _FALLBACK_CONFIG)

    def test_plugin_default(self):
        plugin = Path(self.root, "plugin")
        (plugin / "assets").mkdir(parents=True)
        (plugin / "assets" / "sentinel.default.json").write_text(json.dumps({"completeness": {"lineThreshold": 9}}))
        with mock.patch.dict(os.environ, {"CLAUDE_PLUGIN_ROOT": str(plugin)}):
            config = load_sentinel_config(os.path.join(self.root, "no-project"), self.log)
        self.assertEqual(config["completeness"]["lineThreshold"], 9)

    def test_validation_problems_logged(self):
        self.write_config(json.dumps({
            "hookBehavior": {"onError": "explode"},
            "fetchRules": [{"name": "x", "pattern": "(bad"}],
        }))
        load_sentinel_config(self.root, self.log)
        warnings = " ".join(self.log.messages("WARN"))
        self.assertIn("hookBehavior.onError", warnings)
        self.assertIn("fetchRules[0]", warnings)

    def test_validate_fallback_is_clean(self):
        self.assertEqual(validate_sentinel_config(copy.deepcopy(_FALLBACK_CONFIG)), [])

    def test_validate_catches_types(self):
        config = copy.deepcopy(_FALLBACK_CONFIG)
        config["completeness"]["lineThreshold"] = "many"
        config["checkers"]["dangerous_command"] = {"enabled": "yes"}
        config["rules"]["directories"] = ".cursor/rules"
        config["vcs"]["maxAttempts"] = 0
        problems = validate_sentinel_config(config)
        self.assertEqual(len(problems), 4)

    def test_disabled_checker_not_registered(self):
        config = copy.deepcopy(_FALLBACK_CONFIG)
        config["checkers"]["convention_rules"]["enabled"] = False
        engine = build_default_engine(self.root, config)
        self.assertNotIn("convention_rules", engine.checker_names)
        self.assertIn("dangerous_command", engine.checker_names)


class TestHookLog(unittest.TestCase):

    def test_writes_to_project_log(self):
        with tempfile.TemporaryDirectory() as root:
            log = HookLog(root)
            log("INFO", "hello")
            text = Path(root, ".claude", "sentinel", "sentinel.log").read_text(encoding="utf-8")
            self.assertIn("[INFO] hello", text)
            self.assertEqual(log.messages(), ["hello"])

    def test_no_project_dir_is_silent(self):
        log = HookLog("")
        log("ERROR", "nowhere to go")
        self.assertEqual(log.messages("ERROR"), ["nowhere to go"])


class TestSafeRegexSearch(unittest.TestCase):

    def test_match_and_invalid(self):
        log = null_log()
        self.assertIsNotNone(safe_regex_search(r"^https://", "https://x", log))
        self.assertIsNone(safe_regex_search(r"(", "x", log))
        self.assertTrue(log.messages("WARN"))


if __name__ == "__main__":
    unittest.main()
