#!/usr/bin/env python3
"""Operator CLI for the game lifecycle pipeline.

Runs a phase (or the full cycle) in-process, inspects health, job locks
and the settlement queue, and retries a failed settlement item. Output is
JSON on stdout.

Usage:
    python scripts/run_lifecycle.py discover [--league NFL] [--max-games 100]
    python scripts/run_lifecycle.py sync|finalize|settle [--max-games N] [--skip-lock]
    python scripts/run_lifecycle.py full [--skip-lock]
    python scripts/run_lifecycle.py health [--repair] [--items]
    python scripts/run_lifecycle.py locks [--release discover]
    python scripts/run_lifecycle.py queue [--status FAILED] [--limit 20]
    python scripts/run_lifecycle.py retry ITEM_ID
    python scripts/run_lifecycle.py runs [--phase settle] [--limit 20]
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

# Allow running from a checkout without installing the package
repo_root = Path(__file__).resolve().parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from sports_lifecycle.config_sports import validate_league_code
from sports_lifecycle.db import get_session
from sports_lifecycle.jobs.lifecycle_tasks import VALID_JOBS, execute_lifecycle_job
from sports_lifecycle.models.enums import JobName, SettlementStatus
from sports_lifecycle.persistence.settlement_queue import get_queue_stats
from sports_lifecycle.services.health import repair, run_health_checks
from sports_lifecycle.services.job_lock import get_job_locks, release_job_lock
from sports_lifecycle.services.job_runs import recent_job_runs
from sports_lifecycle.services.settlement import list_settlement_queue, reset_failed_item

# --max-games maps onto the batch bound each phase understands
_MAX_GAMES_KEY = {
    JobName.DISCOVER.value: "max_games_per_league",
    JobName.SYNC.value: "sync_max_games",
    JobName.FINALIZE.value: "finalize_max_games",
    JobName.SETTLE.value: "settle_max_items",
}


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if args.league:
        overrides["leagues"] = [validate_league_code(code) for code in args.league]
    if args.max_games:
        if args.command in _MAX_GAMES_KEY:
            overrides[_MAX_GAMES_KEY[args.command]] = args.max_games
        else:
            overrides.update({key: args.max_games for key in _MAX_GAMES_KEY.values()})
    return overrides


def cmd_run(args: argparse.Namespace) -> int:
    result = execute_lifecycle_job(args.command, overrides=_overrides(args), skip_lock=args.skip_lock)
    _print(result)
    return 0


def cmd_health(args: argparse.Namespace) -> int:
    output: dict[str, Any] = {}
    with get_session() as session:
        if args.repair:
            output["repair"] = repair(session)
        report = run_health_checks(session, include_items=args.items)
    output["health"] = report.to_dict()
    _print(output)
    return 0 if report.status != "critical" else 2


def cmd_locks(args: argparse.Namespace) -> int:
    if args.release:
        released = release_job_lock(args.release)
        _print({"job_name": args.release, "released": released})
        return 0 if released else 1
    _print([lock.to_dict() for lock in get_job_locks()])
    return 0


def cmd_queue(args: argparse.Namespace) -> int:
    with get_session() as session:
        output = {
            "stats": get_queue_stats(session),
            "items": list_settlement_queue(session, status=args.status, limit=args.limit),
        }
    _print(output)
    return 0


def cmd_retry(args: argparse.Namespace) -> int:
    with get_session() as session:
        reset = reset_failed_item(session, args.item_id)
    _print({"item_id": args.item_id, "reset": reset})
    return 0 if reset else 1


def cmd_runs(args: argparse.Namespace) -> int:
    _print(recent_job_runs(phase=args.phase, limit=args.limit))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Game lifecycle pipeline operations")
    sub = parser.add_subparsers(dest="command", required=True)

    for job in VALID_JOBS:
        run = sub.add_parser(job, help=f"Run the {job} phase" if job != "full" else "Run every phase")
        run.add_argument("--league", action="append", help="League code (repeatable, discover only)")
        run.add_argument("--max-games", type=int, help="Override the phase batch bound")
        run.add_argument("--skip-lock", action="store_true", help="Run without taking the job lock")
        run.set_defaults(func=cmd_run)

    health = sub.add_parser("health", help="Run health checks")
    health.add_argument("--repair", action="store_true", help="Apply remediations first")
    health.add_argument("--items", action="store_true", help="Include offending rows")
    health.set_defaults(func=cmd_health)

    locks = sub.add_parser("locks", help="List job locks")
    locks.add_argument("--release", metavar="NAME", help="Release the named lock")
    locks.set_defaults(func=cmd_locks)

    queue = sub.add_parser("queue", help="Show settlement queue stats and items")
    queue.add_argument("--status", choices=[s.value for s in SettlementStatus])
    queue.add_argument("--limit", type=int, default=50)
    queue.set_defaults(func=cmd_queue)

    retry = sub.add_parser("retry", help="Reset a FAILED settlement item to QUEUED")
    retry.add_argument("item_id", type=int)
    retry.set_defaults(func=cmd_retry)

    runs = sub.add_parser("runs", help="Show recent phase runs")
    runs.add_argument("--phase", choices=[job.value for job in JobName])
    runs.add_argument("--limit", type=int, default=20)
    runs.set_defaults(func=cmd_runs)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
