#!/usr/bin/env python3
"""
Command line entry point for the step timing agent.

    python -m step_timing_agent run features --db step_timings.db -- -x
    python -m step_timing_agent report --db step_timings.db
"""

import argparse
import logging
import sys
from pathlib import Path

import pytest

from .config import LedgerSettings
from .ledger import TimingLedger
from .storage import StepTimingStore, StorageError, StorageInitError

logger = logging.getLogger("step_timing_agent")


def run_suite(paths, db_path, extra_args) -> int:
    """Run pytest with step timing enabled and return its exit code untouched.

    A db_path of None keeps timings in memory even when STEP_TIMINGS_DB is set.
    """
    args = ["-p", "step_timing_agent.plugin", "--step-timings"]
    if db_path:
        args += ["--step-timings-db", db_path]
    else:
        args.append("--step-timings-in-memory")
    args += list(extra_args) + list(paths or ["features"])
    return int(pytest.main(args))


def print_report(db_path: str) -> int:
    if not Path(db_path).exists():
        logger.error(f"No step timing database at {db_path}")
        return 1
    try:
        store = StepTimingStore(db_path)
    except StorageInitError as e:
        logger.error(str(e))
        return 1

    ledger = TimingLedger(store=store)
    print(ledger.report())
    try:
        ledger.close()
    except StorageError as e:
        logger.error(f"Failed to close step timing store: {e}")
    return 1 if ledger.diagnostics.count() else 0


def main(argv=None) -> int:
    settings = LedgerSettings.from_env()
    default_db = settings.db_path or "step_timings.db"

    parser = argparse.ArgumentParser(
        prog="step_timing_agent",
        description="Time pytest-bdd steps and report their durations.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run a pytest-bdd suite with step timing enabled.")
    run.add_argument("paths", nargs="*", help="Test paths passed to pytest (default: features).")
    run.add_argument("--db", default=default_db, help=f"SQLite database for timings (default: {default_db}).")
    run.add_argument("--in-memory", action="store_true", help="Do not persist timings.")

    report = sub.add_parser("report", help="Print the report stored in a timing database.")
    report.add_argument("--db", default=default_db, help=f"SQLite database to read (default: {default_db}).")

    argv = list(sys.argv[1:] if argv is None else argv)
    passthrough = []
    if "--" in argv:
        split = argv.index("--")
        argv, passthrough = argv[:split], argv[split + 1:]

    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO), stream=sys.stderr)

    if args.command == "run":
        return run_suite(args.paths, None if args.in_memory else args.db, passthrough)
    return print_report(args.db)


if __name__ == "__main__":
    sys.exit(main())
