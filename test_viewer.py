#!/usr/bin/env python3
"""Tests for the audit log viewer."""

import io
import shutil
import tempfile
import unittest
from unittest import mock

import audit
import viewer

ENTRIES = [
    {
        "ts": "2026-02-12T10:00:00+00:00", "session": "aaaa1111", "cwd": "/work/api",
        "command": "git status", "approved": True, "reason": "git",
        "segments": [{"command": "git status", "approved": True, "wrappers": []}],
    },
    {
        "ts": "2026-02-12T10:01:00+00:00", "session": "bbbb2222", "cwd": "/work/web",
        "command": "kubectl delete pod x", "approved": False,
        "segments": [{"command": "kubectl delete pod x", "approved": False, "wrappers": [],
                      "rejection": {"code": "NO_MATCH"}}],
    },
    {
        "ts": "2026-02-12T10:02:00+00:00", "session": "aaaa1111", "cwd": "/work/api",
        "command": "ls && sudo rm -rf /", "approved": False,
        "segments": [
            {"command": "ls", "approved": True, "wrappers": []},
            {"command": "sudo rm -rf /", "approved": False, "wrappers": [],
             "rejection": {"code": "DENY_MATCH", "name": "privilege escalation"}},
        ],
    },
]


class TestFilterEntries(unittest.TestCase):
    def test_no_filters(self):
        self.assertEqual(viewer.filter_entries(ENTRIES), ENTRIES)

    def test_approved(self):
        self.assertEqual([e["command"] for e in viewer.filter_entries(ENTRIES, approved=True)], ["git status"])

    def test_rejected(self):
        self.assertEqual(len(viewer.filter_entries(ENTRIES, approved=False)), 2)

    def test_code(self):
        result = viewer.filter_entries(ENTRIES, code="DENY_MATCH")
        self.assertEqual([e["command"] for e in result], ["ls && sudo rm -rf /"])

    def test_session_prefix(self):
        self.assertEqual(len(viewer.filter_entries(ENTRIES, session="aaaa")), 2)

    def test_grep_case_insensitive(self):
        self.assertEqual(len(viewer.filter_entries(ENTRIES, grep="KUBECTL")), 1)


class TestStats(unittest.TestCase):
    def test_compute(self):
        stats = viewer.compute_stats(ENTRIES)
        self.assertEqual(stats["total"], 3)
        self.assertEqual(stats["verdicts"]["approved"], 1)
        self.assertEqual(stats["verdicts"]["rejected"], 2)
        self.assertEqual(stats["codes"]["NO_MATCH"], 1)
        self.assertEqual(stats["codes"]["DENY_MATCH"], 1)

    def test_rejection_codes(self):
        self.assertEqual(viewer.rejection_codes(ENTRIES[2]), ["DENY_MATCH"])


class TestMain(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        for e in ENTRIES:
            audit.log_event(e, logs_dir=self.tmpdir)

    def tearDown(self):
        shutil.rmtree(self.tmpdir)

    def run_main(self, argv):
        out = io.StringIO()
        with mock.patch("sys.stdout", out):
            viewer.main(argv + ["--logs-dir", self.tmpdir])
        return out.getvalue()

    def test_lists_entries(self):
        out = self.run_main([])
        self.assertIn("git status", out)
        self.assertIn("DENY_MATCH (privilege escalation): sudo rm -rf /", out)

    def test_stats(self):
        out = self.run_main(["--stats"])
        self.assertIn("Total: 3", out)
        self.assertIn("DENY_MATCH: 1", out)

    def test_nothing_found(self):
        self.assertIn("No log entries found.", self.run_main(["--date", "2000-01-01"]))


if __name__ == "__main__":
    unittest.main()
