"""Append-only JSONL audit log of approval decisions, one file per day."""

import datetime
import json
import logging
import os

SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
LOGS_ENV = "BASH_APPROVER_LOGS"
ENTRY_VERSION = 1
MAX_COMMAND_CHARS = 500

logger = logging.getLogger("audit")


def get_logs_dir():
    return os.environ.get(LOGS_ENV) or os.path.join(SCRIPT_DIR, "logs")


def log_path(date=None, logs_dir=None):
    date = date or datetime.date.today()
    return os.path.join(logs_dir or get_logs_dir(), f"{date.isoformat()}.jsonl")


def build_entry(decision, command, session="", tool_use_id="", cwd="", duration_ms=0.0, profile=None):
    """Turn a decision into the dict written to the log.

    Segments keep their full detail; the top-level command is truncated.
    """
    entry = {
        "version": ENTRY_VERSION,
        "ts": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        "session": session,
        "tool_use_id": tool_use_id,
        "cwd": cwd,
        "command": command[:MAX_COMMAND_CHARS],
        "approved": decision.approved,
        "duration_ms": round(duration_ms, 3),
        "segments": [s.to_dict() for s in decision.segments],
    }
    if decision.reason:
        entry["reason"] = decision.reason
    if profile:
        entry["profile"] = profile
    return entry


def log_event(entry, logs_dir=None):
    """Append ``entry`` to today's file.  Returns False if it could not be written.

    A failed write never changes the verdict, so errors are logged and
    swallowed here.
    """
    path = log_path(logs_dir=logs_dir)
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "a") as f:
            f.write(json.dumps(entry) + "\n")
    except (OSError, TypeError, ValueError) as e:
        logger.error("failed to write audit entry to %s: %s", path, e)
        return False
    return True


def read_entries(date=None, logs_dir=None):
    """All entries for ``date`` (default today); malformed lines are skipped."""
    path = log_path(date, logs_dir)
    if not os.path.exists(path):
        return []
    entries = []
    with open(path) as f:
        for line in f:
            if not line.strip():
                continue
            try:
                entries.append(json.loads(line))
            except ValueError:
                logger.warning("skipping malformed audit line in %s", path)
    return entries
