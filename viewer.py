#!/usr/bin/env python3
"""CLI viewer for bash-approver audit logs."""

import argparse
import datetime
import json
import os
import time
from collections import Counter

import audit
from approver import RejectionCode

COLORS = {True: "\033[32m", False: "\033[33m"}
DIM = "\033[2m"
RESET = "\033[0m"


def rejection_codes(e):
    return [s["rejection"]["code"] for s in e.get("segments", []) if s.get("rejection")]


def print_entry(e):
    ts = e["ts"][:19].replace("T", " ")
    approved = bool(e.get("approved"))
    label = "ALLOW" if approved else "ASK"
    cmd = e["command"][:120].replace("\n", "\\n")
    project = os.path.basename(e.get("cwd", "")) or "?"
    session = e.get("session", "")[:8]
    print(f"{ts}  {COLORS[approved]}{label:5s}{RESET}  {DIM}[{project}]{RESET} {cmd}")
    if approved:
        print(f"           {DIM}session:{session}  reason: {e.get('reason', '')}{RESET}")
        return
    print(f"           {DIM}session:{session}{RESET}")
    for s in e.get("segments", []):
        rejection = s.get("rejection")
        if not rejection:
            continue
        detail = rejection.get("name") or rejection.get("detail") or ""
        suffix = f" ({detail})" if detail else ""
        print(f"           {DIM}{rejection['code']}{suffix}: {s['command'][:100]}{RESET}")


def filter_entries(entries, approved=None, code=None, session=None, grep=None):
    if approved is not None:
        entries = [e for e in entries if bool(e.get("approved")) == approved]
    if code:
        entries = [e for e in entries if code in rejection_codes(e)]
    if session:
        entries = [e for e in entries if e.get("session", "").startswith(session)]
    if grep:
        entries = [e for e in entries if grep.lower() in e.get("command", "").lower()]
    return entries


def compute_stats(entries):
    verdicts = Counter("approved" if e.get("approved") else "rejected" for e in entries)
    codes = Counter(code for e in entries for code in rejection_codes(e))
    return {"total": len(entries), "verdicts": verdicts, "codes": codes}


def print_stats(entries):
    stats = compute_stats(entries)
    print(f"Total: {stats['total']}")
    for v in ("approved", "rejected"):
        print(f"  {v}: {stats['verdicts'].get(v, 0)}")
    if stats["codes"]:
        print("\nRejected segments by code:")
        for code, count in stats["codes"].most_common():
            print(f"  {code}: {count}")


def tail_log(date_str, logs_dir=None):
    path = audit.log_path(datetime.date.fromisoformat(date_str), logs_dir)
    if not os.path.exists(path):
        print(f"Waiting for {path}...")
    while not os.path.exists(path):
        time.sleep(1)
    with open(path) as f:
        f.seek(0, 2)
        while True:
            line = f.readline()
            if line.strip():
                print_entry(json.loads(line))
            else:
                time.sleep(0.5)


def main(argv=None):
    p = argparse.ArgumentParser(
        description="View bash-approver audit logs",
        epilog="Examples:\n"
               "  bash-approver-logs                          # today's logs\n"
               "  bash-approver-logs --date 2026-02-12        # specific date\n"
               "  bash-approver-logs --rejected               # only prompts\n"
               "  bash-approver-logs --code DENY_MATCH        # deny-list hits\n"
               "  bash-approver-logs --grep kubectl           # search commands\n"
               "  bash-approver-logs --session 5a12           # specific session\n"
               "  bash-approver-logs --tail                   # live follow\n"
               "  bash-approver-logs --stats                  # summary counts\n",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p.add_argument("--date", default=datetime.date.today().isoformat(), help="log date (default: today, format: YYYY-MM-DD)")
    verdict = p.add_mutually_exclusive_group()
    verdict.add_argument("--approved", dest="approved", action="store_const", const=True, help="only approved commands")
    verdict.add_argument("--rejected", dest="approved", action="store_const", const=False, help="only commands deferred to the user")
    p.add_argument("--code", choices=[c.value for c in RejectionCode],
                   help="only commands with a segment rejected for this reason")
    p.add_argument("--session", help="filter by session ID (prefix match)")
    p.add_argument("--grep", help="search within commands")
    p.add_argument("--logs-dir", default=None, help=f"log directory (default: ${audit.LOGS_ENV} or ./logs)")
    p.add_argument("--tail", action="store_true", help="live tail (follow mode)")
    p.add_argument("--stats", action="store_true", help="show summary counts")
    args = p.parse_args(argv)

    if args.tail:
        tail_log(args.date, args.logs_dir)
        return

    entries = audit.read_entries(datetime.date.fromisoformat(args.date), args.logs_dir)
    entries = filter_entries(entries, args.approved, args.code, args.session, args.grep)

    if args.stats:
        print_stats(entries)
    else:
        for e in entries:
            print_entry(e)
        if not entries:
            print("No log entries found.")


if __name__ == "__main__":
    main()
