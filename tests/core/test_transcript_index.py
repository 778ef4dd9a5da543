#!/usr/bin/env python3
"""Tests for transcript loading and history queries."""
import json
import os
import sys
import tempfile
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
import _bootstrap  # noqa: F401, E402

from _sentinel_utils import null_log  # noqa: E402
from _transcript_index import (  # noqa: E402
    EventRef,
    count_invocations,
    files_read,
    history_from_records,
    load_history,
    was_tool_invoked_with_file,
)


def tool_use(tool_use_id, name, tool_input):
    """A transcript line in the assistant-message layout."""
    return {
        "type": "assistant",
        "message": {
            "role": "assistant",
            "content": [
                {"type": "text", "text": "working on it"},
                {"type": "tool_use", "id": tool_use_id, "name": name, "input": tool_input},
            ],
        },
    }


def tool_result(tool_use_id, is_error=False):
    """A transcript line carrying the result of a tool call."""
    return {
        "type": "user",
        "message": {
            "role": "user",
            "content": [{"type": "tool_result", "tool_use_id": tool_use_id, "is_error": is_error, "content": "..."}],
        },
    }


class _TranscriptTest(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = os.path.realpath(self._tmp.name)
        self.transcript = os.path.join(self.root, "session.jsonl")

    def tearDown(self):
        self._tmp.cleanup()

    def write_lines(self, lines):
        with open(self.transcript, "w", encoding="utf-8") as f:
            for line in lines:
                f.write(line if isinstance(line, str) else json.dumps(line))
                f.write("\n")


# ============================================================
# 1. Loading
# ============================================================

class TestLoadHistory(_TranscriptTest):

    def test_absent_handle_is_empty(self):
        self.assertEqual(len(load_history(None)), 0)
        self.assertEqual(len(load_history("")), 0)

    def test_missing_file_is_empty(self):
        log = null_log()
        history = load_history(os.path.join(self.root, "nope.jsonl"), log)
        self.assertEqual(len(history), 0)
        self.assertTrue(log.messages("DEBUG"))

    def test_assistant_layout(self):
        self.write_lines([
            {"type": "user", "message": {"role": "user", "content": "hi"}},
            tool_use("t1", "Read", {"file_path": "/x/a.py"}),
            tool_use("t2", "Bash", {"command": "ls"}),
        ])
        history = load_history(self.transcript)
        self.assertEqual([e.tool_name for e in history.events], ["Read", "Bash"])
        self.assertEqual([e.ordinal for e in history.events], [0, 1])
        self.assertEqual(history.events[0].tool_use_id, "t1")

    def test_flat_layout(self):
        self.write_lines([{"tool_name": "Read", "tool_input": {"file_path": "a"}, "tool_use_id": "t9"}])
        history = load_history(self.transcript)
        self.assertEqual(history.events[0].tool_name, "Read")
        self.assertEqual(history.events[0].tool_use_id, "t9")

    def test_malformed_lines_skipped(self):
        self.write_lines([
            "{not json",
            tool_use("t1", "Read", {"file_path": "a"}),
            "",
            "[1, 2]",
            {"type": "assistant", "message": {"content": [{"type": "tool_use", "name": 5}]}},
            tool_use("t2", "Read", {"file_path": "b"}),
        ])
        history = load_history(self.transcript)
        self.assertEqual(len(history), 2)
        self.assertEqual(history.skipped, 1)

    def test_duplicate_tool_use_ids_kept_once(self):
        line = tool_use("t1", "Read", {"file_path": "a"})
        self.write_lines([line, line])
        self.assertEqual(len(load_history(self.transcript)), 1)

    def test_duplicates_dropped_for_decoded_records_too(self):
        line = tool_use("t1", "Read", {"file_path": "a"})
        self.write_lines([line, line])
        self.assertEqual(history_from_records([line, line]).events, load_history(self.transcript).events)

    def test_error_results_mark_calls_failed(self):
        self.write_lines([
            tool_use("t1", "Read", {"file_path": "a", "offset": 10}),
            tool_result("t1", is_error=True),
            tool_use("t2", "Read", {"file_path": "a"}),
            tool_result("t2"),
        ])
        history = load_history(self.transcript)
        self.assertEqual([e.failed for e in history.events], [True, False])


# ============================================================
# 2. Queries
# ============================================================

class TestWasToolInvokedWithFile(_TranscriptTest):

    def setUp(self):
        super().setUp()
        self.target = os.path.join(self.root, "a.py")
        Path(self.target).write_text("x\n")

    def test_only_current_event_is_excluded(self):
        """A transcript holding just the in-flight read is not a prior read."""
        history = history_from_records([tool_use("t1", "Read", {"file_path": self.target, "offset": 5})])
        current = EventRef("Read", {"file_path": self.target, "offset": 5}, "t1")
        result = was_tool_invoked_with_file(history, "Read", self.target, self.root, exclude_current=current)
        self.assertFalse(result.found)
        self.assertEqual(result.match_count, 0)
        self.assertFalse(result)

    def test_without_exclusion_the_current_event_counts(self):
        history = history_from_records([tool_use("t1", "Read", {"file_path": self.target})])
        self.assertTrue(was_tool_invoked_with_file(history, "Read", self.target, self.root))

    def test_prior_read_found(self):
        history = history_from_records([
            tool_use("t1", "Read", {"file_path": self.target}),
            tool_use("t2", "Read", {"file_path": self.target, "offset": 5}),
        ])
        current = EventRef("Read", {"file_path": self.target, "offset": 5}, "t2")
        result = was_tool_invoked_with_file(history, "Read", self.target, self.root, exclude_current=current)
        self.assertEqual((result.found, result.match_count), (True, 1))

    def test_exclusion_by_input_when_ids_missing(self):
        """Without ids, only the last identical record is the current one."""
        record = {"tool_name": "Read", "tool_input": {"file_path": self.target}}
        history = history_from_records([record, record])
        current = EventRef("Read", {"file_path": self.target})
        result = was_tool_invoked_with_file(history, "Read", self.target, self.root, exclude_current=current)
        self.assertEqual(result.match_count, 1)

    def test_current_event_not_yet_in_transcript(self):
        history = history_from_records([tool_use("t1", "Read", {"file_path": self.target})])
        current = EventRef("Read", {"file_path": self.target, "offset": 5}, "t2")
        result = was_tool_invoked_with_file(history, "Read", self.target, self.root, exclude_current=current)
        self.assertEqual(result.match_count, 1)

    def test_relative_and_absolute_forms_compare_equal(self):
        history = history_from_records([tool_use("t1", "Read", {"file_path": "./sub/../a.py"})])
        self.assertTrue(was_tool_invoked_with_file(history, "Read", self.target, self.root))

    def test_other_tool_not_counted(self):
        history = history_from_records([tool_use("t1", "Edit", {"file_path": self.target})])
        self.assertFalse(was_tool_invoked_with_file(history, "Read", self.target, self.root))

    def test_bad_file_path(self):
        history = history_from_records([tool_use("t1", "Read", {"file_path": self.target})])
        self.assertFalse(was_tool_invoked_with_file(history, "Read", "", self.root))

    def test_failed_call_not_counted(self):
        history = history_from_records([
            tool_use("t1", "Read", {"file_path": self.target, "offset": 10}),
            tool_result("t1", is_error=True),
            tool_use("t2", "Read", {"file_path": self.target, "offset": 10}),
        ])
        query = was_tool_invoked_with_file(
            history, "Read", self.target, self.root, exclude_current=EventRef("Read", {}, "t2")
        )
        self.assertFalse(query)
        self.assertEqual(query.match_count, 0)
        self.assertEqual(files_read(history, self.root), {self.target})


class TestCountAndFilesRead(_TranscriptTest):

    def test_count_invocations(self):
        history = history_from_records([
            tool_use("t1", "Bash", {"command": "ls"}),
            tool_use("t2", "Bash", {"command": "grep x ."}),
            tool_use("t3", "Read", {"file_path": "a"}),
        ])
        self.assertEqual(count_invocations(history, "Bash"), 2)
        self.assertEqual(count_invocations(history, "Bash", lambda i: "grep" in i.get("command", "")), 1)
        self.assertEqual(count_invocations(history, "Bash", exclude_current=EventRef("Bash", {}, "t2")), 1)
        self.assertEqual(count_invocations(history, "Write"), 0)

    def test_files_read(self):
        history = history_from_records([
            tool_use("t1", "Read", {"file_path": "docs/a.md"}),
            tool_use("t2", "Read", {"file_path": os.path.join(self.root, "b.md")}),
            tool_use("t3", "Edit", {"file_path": "c.md"}),
            tool_use("t4", "Read", {}),
        ])
        self.assertEqual(
            files_read(history, self.root),
            {os.path.join(self.root, "docs", "a.md"), os.path.join(self.root, "b.md")},
        )
        self.assertEqual(
            files_read(history, self.root, exclude_current=EventRef("Read", {}, "t2")),
            {os.path.join(self.root, "docs", "a.md")},
        )


if __name__ == "__main__":
    unittest.main()
