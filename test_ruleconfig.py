#!/usr/bin/env python3
"""Tests for TOML config loading in ruleconfig.py."""

import os
import shutil
import tempfile
import unittest
from unittest import mock

from ruleconfig import (
    ConfigError,
    config_path,
    load_ruleset,
    load_ruleset_or_empty,
    loads,
    parse_section,
    resolve_profile,
)
from rules import RuleError, RuleSet

EXAMPLE_CONFIG = os.path.join(os.path.dirname(os.path.abspath(__file__)), "config.example.toml")


class TestLoads(unittest.TestCase):
    def test_empty(self):
        self.assertEqual(loads(""), RuleSet())

    def test_sections(self):
        ruleset = loads(
            '[[wrappers.command]]\ncommand = "timeout"\nflags = ["<arg>"]\n\n'
            '[[commands.subcommand]]\ncommand = "git"\nsubcommands = ["diff", "status"]\n\n'
            "[[deny.regex]]\npattern = 'rm\\s+-rf\\s+/'\nname = \"rm root\"\n"
        )
        self.assertEqual([p.name for p in ruleset.wrappers], ["timeout"])
        self.assertEqual(ruleset.allow[0].source, r"^git\s+(diff|status)\b")
        self.assertEqual(ruleset.deny[0].source, r"rm\s+-rf\s+/")

    def test_kind_order_within_section(self):
        ruleset = loads(
            '[[commands.regex]]\npattern = "^make"\nname = "make"\n\n'
            '[[commands.subcommand]]\ncommand = "git"\nsubcommands = ["log"]\n\n'
            '[[commands.simple]]\nname = "ls"\ncommands = ["ls"]\n'
        )
        self.assertEqual([p.type for p in ruleset.allow], ["simple", "subcommand", "regex"])

    def test_declaration_order_within_kind(self):
        ruleset = loads(
            '[[commands.simple]]\nname = "b"\ncommands = ["b1", "b2"]\n\n'
            '[[commands.simple]]\nname = "a"\ncommands = ["a"]\n'
        )
        self.assertEqual([p.source for p in ruleset.allow], [r"^b1\b", r"^b2\b", r"^a\b"])

    def test_simple_wrapper_named_after_command(self):
        ruleset = loads('[[wrappers.simple]]\nname = "prefixes"\ncommands = ["env", "nohup"]\n')
        self.assertEqual([p.name for p in ruleset.wrappers], ["env", "nohup"])

    def test_deny_accepts_simple(self):
        ruleset = loads('[[deny.simple]]\nname = "sudo"\ncommands = ["sudo", "doas"]\n')
        self.assertEqual(len(ruleset.deny), 2)

    def test_profile_recorded(self):
        self.assertEqual(loads("", profile="strict").profile, "strict")

    def test_bad_toml(self):
        with self.assertRaises(ConfigError) as ctx:
            loads("this is = not [valid")
        self.assertIn("failed to parse TOML", str(ctx.exception))

    def test_missing_field(self):
        with self.assertRaises(ConfigError) as ctx:
            loads('[[commands.subcommand]]\ncommand = "git"\n', _source="main.toml")
        self.assertEqual(
            str(ctx.exception),
            'main.toml: commands.subcommand[0] "git": "subcommands" field is required and must not be empty',
        )

    def test_invalid_regex(self):
        with self.assertRaises(ConfigError) as ctx:
            loads('[[deny.regex]]\npattern = "[oops"\nname = "broken"\n')
        self.assertIn('deny.regex[0] "broken": invalid pattern', str(ctx.exception))

    def test_unknown_kind(self):
        with self.assertRaises(ConfigError) as ctx:
            loads('[[commands.glob]]\npattern = "*"\n')
        self.assertIn("unknown rule kind(s): glob", str(ctx.exception))

    def test_include_without_directory_is_skipped(self):
        self.assertEqual(loads('include = ["other.toml"]\n'), RuleSet())


class TestParseSection(unittest.TestCase):
    def test_not_a_table(self):
        with self.assertRaises(RuleError):
            parse_section(["x"], "commands")

    def test_entry_not_a_table(self):
        with self.assertRaises(RuleError) as ctx:
            parse_section({"simple": ["ls"]}, "commands")
        self.assertIn("commands.simple[0]: expected a table", str(ctx.exception))

    def test_string_commands_accepted(self):
        patterns = parse_section({"simple": [{"name": "ls", "commands": "ls"}]}, "commands")
        self.assertEqual(patterns[0].source, r"^ls\b")


class TestLoadRuleset(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.tmpdir)

    def write(self, name, text):
        with open(os.path.join(self.tmpdir, name), "w") as f:
            f.write(text)

    def test_missing_config_is_empty(self):
        self.assertEqual(load_ruleset(self.tmpdir), RuleSet())

    def test_missing_profile_is_error(self):
        with self.assertRaises(ConfigError):
            load_ruleset(self.tmpdir, profile="strict")

    def test_profile_file(self):
        self.write("config.toml", '[[commands.simple]]\nname = "ls"\ncommands = ["ls"]\n')
        self.write("strict.toml", '[[commands.simple]]\nname = "cat"\ncommands = ["cat"]\n')
        ruleset = load_ruleset(self.tmpdir, profile="strict")
        self.assertEqual([p.name for p in ruleset.allow], ["cat"])
        self.assertEqual(ruleset.profile, "strict")

    def test_includes_come_first(self):
        self.write("base.toml", '[[commands.simple]]\nname = "base"\ncommands = ["ls"]\n')
        self.write(
            "config.toml",
            'include = ["base.toml"]\n\n[[commands.simple]]\nname = "main"\ncommands = ["cat"]\n',
        )
        ruleset = load_ruleset(self.tmpdir)
        self.assertEqual([p.name for p in ruleset.allow], ["base", "main"])

    def test_nested_includes(self):
        self.write("a.toml", 'include = ["b.toml"]\n[[deny.simple]]\nname = "a"\ncommands = ["a"]\n')
        self.write("b.toml", '[[deny.simple]]\nname = "b"\ncommands = ["b"]\n')
        self.write("config.toml", 'include = ["a.toml"]\n')
        self.assertEqual([p.name for p in load_ruleset(self.tmpdir).deny], ["b", "a"])

    def test_circular_include(self):
        self.write("a.toml", 'include = ["b.toml"]\n')
        self.write("b.toml", 'include = ["a.toml"]\n')
        self.write("config.toml", 'include = ["a.toml"]\n')
        with self.assertRaises(ConfigError) as ctx:
            load_ruleset(self.tmpdir)
        self.assertIn("circular include detected", str(ctx.exception))

    def test_self_include(self):
        self.write("config.toml", 'include = ["config.toml"]\n')
        with self.assertRaises(ConfigError):
            load_ruleset(self.tmpdir)

    def test_missing_include(self):
        self.write("config.toml", 'include = ["nope.toml"]\n')
        with self.assertRaises(ConfigError) as ctx:
            load_ruleset(self.tmpdir)
        self.assertIn("failed to read", str(ctx.exception))

    def test_error_names_file(self):
        self.write("bad.toml", '[[commands.simple]]\nname = "x"\n')
        self.write("config.toml", 'include = ["bad.toml"]\n')
        with self.assertRaises(ConfigError) as ctx:
            load_ruleset(self.tmpdir)
        self.assertIn("bad.toml: commands.simple[0]", str(ctx.exception))

    def test_or_empty_on_error(self):
        self.write("config.toml", "not toml [[[")
        self.assertEqual(load_ruleset_or_empty(self.tmpdir), RuleSet())

    def test_config_dir_from_environment(self):
        self.write("config.toml", '[[commands.simple]]\nname = "ls"\ncommands = ["ls"]\n')
        with mock.patch.dict(os.environ, {"BASH_APPROVER_CONFIG": self.tmpdir}):
            self.assertEqual(len(load_ruleset().allow), 1)

    def test_example_config_is_valid(self):
        with open(EXAMPLE_CONFIG) as f:
            ruleset = loads(f.read())
        self.assertTrue(ruleset.wrappers)
        self.assertTrue(ruleset.allow)
        self.assertTrue(ruleset.deny)


class TestProfileResolution(unittest.TestCase):
    def test_explicit_wins(self):
        with mock.patch.dict(os.environ, {"BASH_APPROVER_PROFILE": "env"}):
            self.assertEqual(resolve_profile("cli"), "cli")

    def test_environment(self):
        with mock.patch.dict(os.environ, {"BASH_APPROVER_PROFILE": "env"}):
            self.assertEqual(resolve_profile(), "env")

    def test_none(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            self.assertIsNone(resolve_profile())

    def test_config_path(self):
        self.assertEqual(config_path("/etc/x"), os.path.join("/etc/x", "config.toml"))
        self.assertEqual(config_path("/etc/x", "ci"), os.path.join("/etc/x", "ci.toml"))


if __name__ == "__main__":
    unittest.main()
