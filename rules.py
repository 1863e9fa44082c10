"""Compile declarative command rules into regex matchers.

Rule authors describe commands (``git`` with subcommands ``diff``/``log``,
``timeout`` taking one argument, ...) and this module turns each description
into one or more :class:`Pattern` objects.  Every literal token goes through
``re.escape`` so rule text is never interpreted as regex syntax; only
:class:`RegexSpec` carries a hand-written regex.

Flag DSL accepted by :func:`build_flag_pattern`::

    ""            → no constraint
    "<arg>"       → (\\S+\\s+)?          one optional positional token
    "-v"          → (-v\\s+)?            optional literal flag
    "-n <arg>"    → (-n\\s*\\S+\\s+)?    optional flag + argument (-n10 or -n 10)
"""

import re
from dataclasses import dataclass
from typing import Optional, Tuple

PATTERN_TYPES = ("simple", "command", "subcommand", "regex")

ARG_PLACEHOLDER = "<arg>"


class RuleError(ValueError):
    """A rule specification is incomplete or does not compile."""


@dataclass(frozen=True)
class Pattern:
    regex: "re.Pattern"
    name: str
    type: str
    source: str


@dataclass(frozen=True)
class SimpleSpec:
    name: str
    commands: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CommandSpec:
    command: str
    flags: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SubcommandSpec:
    command: str
    subcommands: Tuple[str, ...] = ()
    flags: Tuple[str, ...] = ()


@dataclass(frozen=True)
class RegexSpec:
    pattern: str
    name: str = ""


SPEC_KINDS = {
    SimpleSpec: "simple",
    CommandSpec: "command",
    SubcommandSpec: "subcommand",
    RegexSpec: "regex",
}


@dataclass(frozen=True)
class RuleSet:
    """Immutable snapshot of compiled patterns.

    Safe to share between concurrent evaluations; to change rules, build a
    new ``RuleSet`` instead of touching this one.
    """

    wrappers: Tuple[Pattern, ...] = ()
    allow: Tuple[Pattern, ...] = ()
    deny: Tuple[Pattern, ...] = ()
    profile: Optional[str] = None

    def merged(self, other):
        """Return a new rule set with ``other``'s patterns appended after ours."""
        return RuleSet(
            wrappers=self.wrappers + other.wrappers,
            allow=self.allow + other.allow,
            deny=self.deny + other.deny,
            profile=self.profile,
        )


def build_flag_pattern(flag):
    flag = flag.strip()
    if not flag:
        return ""
    if flag == ARG_PLACEHOLDER:
        return r"(\S+\s+)?"
    suffix = " " + ARG_PLACEHOLDER
    if flag.endswith(suffix):
        flag_name = flag[: -len(suffix)].strip()
        # Argument may be glued to the flag (-n10) or separated (-n 10)
        return "(" + re.escape(flag_name) + r"\s*\S+\s+)?"
    return "(" + re.escape(flag) + r"\s+)?"


def build_simple_pattern(cmd):
    """``pytest`` → ``^pytest\\b`` (any arguments may follow)."""
    return "^" + re.escape(cmd) + r"\b"


def build_subcommand_pattern(cmd, subcommands, flags=()):
    """``git``, ``[diff, log]``, ``[-C <arg>]`` → ``^git\\s+(-C\\s*\\S+\\s+)?(diff|log)\\b``.

    Flags are optional but, when present, must appear in the given order.
    """
    flag_patterns = "".join(build_flag_pattern(f) for f in flags)
    alternation = "|".join(re.escape(sub) for sub in subcommands)
    return "^" + re.escape(cmd) + r"\s+" + flag_patterns + "(" + alternation + r")\b"


def build_wrapper_pattern(cmd, flags=()):
    """``timeout`` with ``[<arg>]`` → ``^timeout\\s+(\\S+\\s+)?``.

    The match is a prefix to strip, not a full command match.
    """
    flag_patterns = "".join(build_flag_pattern(f) for f in flags)
    return "^" + re.escape(cmd) + r"\s+" + flag_patterns


def _label(section, kind, index, name=""):
    label = f"{section}.{kind}[{index}]"
    if name:
        label += f' "{name}"'
    return label


def _compile(source, name, type_, label):
    try:
        regex = re.compile(source)
    except re.error as e:
        raise RuleError(f"{label}: invalid pattern {source!r}: {e}") from e
    return Pattern(regex=regex, name=name, type=type_, source=source)


def compile_rule(spec, section="commands", index=0, wrapper=False):
    """Compile one rule spec into a list of :class:`Pattern`.

    ``section`` and ``index`` only feed error messages, which read like
    ``commands.subcommand[2] "git": "subcommands" field is required ...``.
    ``wrapper`` switches simple and command rules to prefix-stripping
    patterns named after each command.
    """
    kind = SPEC_KINDS.get(type(spec))
    if kind is None:
        raise RuleError(f"{section}[{index}]: unknown rule type {type(spec).__name__}")

    if kind == "simple":
        label = _label(section, kind, index, spec.name)
        commands = [c for c in spec.commands if c and c.strip()]
        if not commands:
            raise RuleError(f'{label}: "commands" field is required and must not be empty')
        patterns = []
        for cmd in commands:
            cmd = cmd.strip()
            if wrapper:
                patterns.append(_compile(build_wrapper_pattern(cmd), cmd, kind, label))
            else:
                patterns.append(_compile(build_simple_pattern(cmd), spec.name, kind, label))
        return patterns

    if kind == "command":
        command = (spec.command or "").strip()
        if not command:
            raise RuleError(f'{_label(section, kind, index)}: "command" field is required and must not be empty')
        label = _label(section, kind, index, command)
        return [_compile(build_wrapper_pattern(command, spec.flags), command, kind, label)]

    if kind == "subcommand":
        command = (spec.command or "").strip()
        if not command:
            raise RuleError(f'{_label(section, kind, index)}: "command" field is required and must not be empty')
        label = _label(section, kind, index, command)
        subcommands = [s.strip() for s in spec.subcommands if s and s.strip()]
        if not subcommands:
            raise RuleError(f'{label}: "subcommands" field is required and must not be empty')
        source = build_subcommand_pattern(command, subcommands, spec.flags)
        return [_compile(source, command, kind, label)]

    # regex
    label = _label(section, kind, index, spec.name)
    if not spec.pattern:
        raise RuleError(f'{label}: "pattern" field is required and must not be empty')
    return [_compile(spec.pattern, spec.name, kind, label)]


def compile_rules(specs, section="commands", wrapper=False):
    """Compile ``specs`` in order; indices in errors count per rule kind."""
    patterns = []
    counters = {}
    for spec in specs:
        kind = SPEC_KINDS.get(type(spec), "rule")
        index = counters.get(kind, 0)
        counters[kind] = index + 1
        patterns.extend(compile_rule(spec, section, index, wrapper=wrapper))
    return tuple(patterns)


def build_ruleset(wrappers=(), allow=(), deny=(), profile=None):
    """Compile the three rule lists into a :class:`RuleSet`."""
    return RuleSet(
        wrappers=compile_rules(wrappers, "wrappers", wrapper=True),
        allow=compile_rules(allow, "commands"),
        deny=compile_rules(deny, "deny"),
        profile=profile,
    )
