#!/usr/bin/env python3
"""Claude Code PreToolUse hook: auto-approve Bash commands built from known-safe parts.

A command is split into its simple-command segments; each segment has its
wrapper prefixes (``timeout 30``, ``env``, ``FOO=bar``, ``.venv/bin/``)
stripped, then is checked against deny patterns and finally allow patterns.
The command is approved only when every segment is.  Anything else is
deferred to the user ("ask").

Test::

    echo '{"tool_name": "Bash", "tool_input": {"command": "timeout 30 pytest"}}' | bash-approver
"""

import argparse
import json
import logging
import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

import audit
import ruleconfig
from rules import RuleSet
from shellparse import command_names, split_command_chain, substitution_offsets

logger = logging.getLogger("approver")

HOOK_EVENT = "PreToolUse"
FALLBACK_OUTPUT = (
    '{"hookSpecificOutput": {"hookEventName": "PreToolUse", '
    '"permissionDecision": "ask", "permissionDecisionReason": "internal error"}}'
)


class RejectionCode(str, Enum):
    COMMAND_SUBSTITUTION = "COMMAND_SUBSTITUTION"
    UNPARSEABLE = "UNPARSEABLE"
    DENY_MATCH = "DENY_MATCH"
    NO_MATCH = "NO_MATCH"


@dataclass(frozen=True)
class Match:
    type: str
    name: str
    pattern: str


@dataclass(frozen=True)
class Rejection:
    code: RejectionCode
    name: Optional[str] = None
    pattern: Optional[str] = None
    detail: Optional[str] = None

    def to_dict(self):
        d = {"code": self.code.value}
        for key in ("name", "pattern", "detail"):
            value = getattr(self, key)
            if value is not None:
                d[key] = value
        return d


@dataclass(frozen=True)
class Segment:
    """Outcome for one simple command of a (possibly compound) command."""

    command: str
    core: str = ""
    wrappers: Tuple[str, ...] = ()
    match: Optional[Match] = None
    rejection: Optional[Rejection] = None

    @property
    def approved(self):
        return self.match is not None and self.rejection is None

    def describe(self):
        """``timeout+env + python`` style label used in approval reasons."""
        if self.wrappers:
            return "+".join(self.wrappers) + " + " + self.match.name
        return self.match.name

    def to_dict(self):
        d = {
            "command": self.command,
            "approved": self.approved,
            "wrappers": list(self.wrappers),
        }
        if self.match is not None:
            d["match"] = {"type": self.match.type, "name": self.match.name, "pattern": self.match.pattern}
        if self.rejection is not None:
            d["rejection"] = self.rejection.to_dict()
        return d


@dataclass(frozen=True)
class Decision:
    approved: bool
    segments: Tuple[Segment, ...] = ()
    reason: str = ""

    @property
    def unparseable(self):
        return any(s.rejection is not None and s.rejection.code == RejectionCode.UNPARSEABLE
                   for s in self.segments)

    def to_dict(self):
        d = {"approved": self.approved, "segments": [s.to_dict() for s in self.segments]}
        if self.reason:
            d["reason"] = self.reason
        return d


@dataclass
class HookResult:
    """What the hook did with one stdin payload."""

    command: str = ""
    approved: bool = False
    reason: str = ""
    output: str = ""
    decision: Optional[Decision] = field(default=None, repr=False)


def strip_wrappers(command, wrapper_patterns):
    """Strip wrapper prefixes from ``command``.

    Returns ``(core_command, wrapper_names)``.  After each strip the scan
    restarts at the first wrapper pattern, so wrappers can stack
    (``env timeout 30 pytest``) and, when two patterns could match the same
    head, the one declared first wins.  Zero-length matches are ignored so
    the loop always terminates, and the result is a fixed point: stripping
    it again removes nothing.
    """
    core = command.strip()
    wrappers = []
    stripped = True
    while stripped:
        stripped = False
        for p in wrapper_patterns:
            m = p.regex.match(core)
            if m and m.end() > 0:
                wrappers.append(p.name)
                core = core[m.end():].lstrip()
                stripped = True
                break
    return core, wrappers


def check_deny(command, deny_patterns):
    """First deny pattern that matches ``command``, or ``None``."""
    for p in deny_patterns:
        if p.regex.search(command):
            return p
    return None


def check_allow(command, allow_patterns):
    """First allow pattern that matches ``command``, or ``None``."""
    for p in allow_patterns:
        if p.regex.search(command):
            return p
    return None


def _evaluate_segment(segment, ruleset, dangerous):
    core, wrappers = strip_wrappers(segment.text, ruleset.wrappers)
    wrappers = tuple(wrappers)
    logger.debug("segment %r core=%r wrappers=%s", segment.text, core, list(wrappers))

    if dangerous:
        logger.debug("rejected command substitution in %r", segment.text)
        return Segment(
            segment.text, core, wrappers,
            rejection=Rejection(RejectionCode.COMMAND_SUBSTITUTION, pattern="$(...)"),
        )

    denied = check_deny(core, ruleset.deny)
    if denied is not None:
        logger.debug("rejected by deny rule %r: %r", denied.name, core)
        return Segment(
            segment.text, core, wrappers,
            rejection=Rejection(RejectionCode.DENY_MATCH, name=denied.name, pattern=denied.source),
        )

    allowed = check_allow(core, ruleset.allow)
    if allowed is None:
        logger.debug("no allow rule for %r", core)
        return Segment(segment.text, core, wrappers, rejection=Rejection(RejectionCode.NO_MATCH))

    logger.debug("matched %s rule %r: %r", allowed.type, allowed.name, core)
    return Segment(segment.text, core, wrappers, match=Match(allowed.type, allowed.name, allowed.source))


def evaluate(command, ruleset):
    """Decide whether ``command`` can run without asking.

    Every segment is evaluated and recorded, even after one has been
    rejected, so the decision always carries the full picture.  Rejections
    are results, not exceptions.
    """
    shell_segments = split_command_chain(command)
    if shell_segments is None:
        logger.debug("rejected unparseable command %r", command)
        rejected = Segment(command, rejection=Rejection(RejectionCode.UNPARSEABLE, detail="parse error"))
        return Decision(approved=False, segments=(rejected,))

    if logger.isEnabledFor(logging.DEBUG):
        logger.debug("split %r into %d segment(s): %s", command, len(shell_segments), command_names(command))

    # Substitution markers are found on the raw text; bashlex's spans tie each
    # one to the segment it sits in.  A marker outside every segment (a for-loop
    # word list, an unquoted heredoc body) taints the whole command.
    offsets = substitution_offsets(command)
    orphaned = any(not any(s.contains(o) for s in shell_segments) for o in offsets)

    segments = []
    for shell_segment in shell_segments:
        dangerous = orphaned or any(shell_segment.contains(o) for o in offsets)
        segments.append(_evaluate_segment(shell_segment, ruleset, dangerous))

    approved = all(s.approved for s in segments)
    reason = " | ".join(s.describe() for s in segments) if approved else ""
    return Decision(approved=approved, segments=tuple(segments), reason=reason)


def _format(permission, reason):
    output = {
        "hookSpecificOutput": {
            "hookEventName": HOOK_EVENT,
            "permissionDecision": permission,
            "permissionDecisionReason": reason,
        }
    }
    try:
        return json.dumps(output)
    except (TypeError, ValueError):
        logger.debug("failed to encode %s output", permission, exc_info=True)
        return FALLBACK_OUTPUT


def format_approval(reason):
    return _format("allow", reason)


def format_ask(reason):
    return _format("ask", reason)


def process_hook(raw, ruleset, logs_dir=None, audit_enabled=True):
    """Evaluate one PreToolUse payload and write the audit entry.

    Empty input gives an empty ``output`` (the hook stays silent); bad JSON
    and non-Bash tools are deferred to the user.
    """
    if not raw.strip():
        return HookResult()

    start = time.monotonic()
    try:
        data = json.loads(raw)
    except ValueError:
        logger.debug("invalid hook input", exc_info=True)
        return HookResult(reason="invalid input", output=format_ask("invalid input"))
    if not isinstance(data, dict):
        return HookResult(reason="invalid input", output=format_ask("invalid input"))

    tool_name = data.get("tool_name", "")
    if tool_name != "Bash":
        logger.debug("not a Bash command: %s", tool_name)
        return HookResult(reason="not a Bash command", output=format_ask("not a Bash command"))

    tool_input = data.get("tool_input") or {}
    command = tool_input.get("command", "") if isinstance(tool_input, dict) else ""
    if not isinstance(command, str):
        command = str(command)
    logger.debug("processing command %r", command)

    decision = evaluate(command, ruleset)
    if decision.approved:
        logger.debug("approved: %s", decision.reason)
        output = format_approval(decision.reason)
    elif decision.unparseable:
        output = format_ask("unparseable command")
    else:
        output = format_ask("command not in allow list")
    duration_ms = (time.monotonic() - start) * 1000.0

    if audit_enabled:
        entry = audit.build_entry(
            decision,
            command,
            session=data.get("session_id", ""),
            tool_use_id=data.get("tool_use_id", ""),
            cwd=data.get("cwd", ""),
            duration_ms=duration_ms,
            profile=ruleset.profile,
        )
        audit.log_event(entry, logs_dir=logs_dir)

    return HookResult(
        command=command,
        approved=decision.approved,
        reason=decision.reason,
        output=output,
        decision=decision,
    )


def setup_logging(verbose=False):
    """Send diagnostics to stderr; stdout belongs to the hook protocol."""
    logging.basicConfig(stream=sys.stderr, format="%(levelname)s %(name)s: %(message)s")
    logging.getLogger().setLevel(logging.DEBUG if verbose else logging.ERROR)


def print_ruleset(ruleset, out=None):
    out = out or sys.stdout
    print("Configuration valid!", file=out)
    if ruleset.profile:
        print(f"Profile: {ruleset.profile}", file=out)
    for title, patterns in (
        ("Deny patterns", ruleset.deny),
        ("Wrapper patterns", ruleset.wrappers),
        ("Safe command patterns", ruleset.allow),
    ):
        print(file=out)
        print(f"{title}: {len(patterns)}", file=out)
        for p in patterns:
            print(f"  - {p.name}: {p.regex.pattern}", file=out)


def main(argv=None):
    p = argparse.ArgumentParser(
        prog="bash-approver",
        description="Claude Code PreToolUse hook that auto-approves safe Bash commands",
        epilog="Usage in ~/.claude/settings.json:\n"
               '  "hooks": {"PreToolUse": [{"matcher": "Bash",\n'
               '    "hooks": [{"type": "command", "command": "bash-approver"}]}]}\n',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p.add_argument("action", nargs="?", choices=["run", "validate"], default="run",
                   help="run the hook on stdin (default) or validate the configuration")
    p.add_argument("-v", "--verbose", action="store_true", help="debug logging to stderr")
    p.add_argument("--dry-run", action="store_true", help="print the verdict to stderr instead of hook JSON")
    p.add_argument("--profile", default=None,
                   help=f"config profile to load (or set {ruleconfig.PROFILE_ENV})")
    p.add_argument("--no-audit-log", action="store_true", help="do not write the audit log")
    args = p.parse_args(argv)

    setup_logging(args.verbose)
    profile = ruleconfig.resolve_profile(args.profile)

    if args.action == "validate":
        try:
            ruleset = ruleconfig.load_ruleset(profile=profile)
        except ruleconfig.ConfigError as e:
            print(f"Configuration invalid: {e}", file=sys.stderr)
            return 1
        print_ruleset(ruleset)
        return 0

    ruleset = ruleconfig.load_ruleset_or_empty(profile=profile)
    result = process_hook(sys.stdin.read(), ruleset, audit_enabled=not args.no_audit_log)

    if args.dry_run:
        if result.approved:
            print(f"APPROVED: {result.command} (reason: {result.reason})", file=sys.stderr)
        elif result.command:
            print(f"REJECTED: {result.command}", file=sys.stderr)
        else:
            print("REJECTED: (no command parsed)", file=sys.stderr)
        return 0

    if result.output:
        print(result.output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
