#!/usr/bin/env python3
"""
Salesflow test runner.

Runs the named suites (default: all) with one pytest process per suite and
prints a summary. Exit code is 1 when any suite fails.

Usage:
    python scripts/run_tests.py                  # every suite
    python scripts/run_tests.py sequences calls  # selected suites
    python scripts/run_tests.py --list           # show suites and their files
    python scripts/run_tests.py api -k opt_out   # extra args go to pytest
"""

import argparse
import os
import subprocess
import sys
import time

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

SUITES = {
    "sequences": [
        "tests/unit/test_sequence_templates.py",
        "tests/unit/test_sequence_engine.py",
        "tests/unit/test_throughput_governor.py",
        "tests/unit/test_scheduler.py",
    ],
    "calls": [
        "tests/unit/test_call_scorer.py",
        "tests/unit/test_feedback_tracker.py",
        "tests/unit/test_call_actions.py",
    ],
    "core": [
        "tests/unit/test_repository.py",
        "tests/unit/test_error_handler.py",
        "tests/unit/test_action_dispatcher.py",
        "tests/unit/test_logging_config.py",
    ],
    "api": [
        "tests/test_api.py",
    ],
}

SUITE_TIMEOUT = 300


def run_suite(name: str, pytest_args: list) -> tuple:
    """Returns (passed, summary line)."""
    files = [f for f in SUITES[name] if os.path.exists(os.path.join(PROJECT_ROOT, f))]
    if not files:
        return False, "no test files found"
    try:
        result = subprocess.run(
            [sys.executable, "-m", "pytest", "-q", *files, *pytest_args],
            capture_output=True, text=True, timeout=SUITE_TIMEOUT, cwd=PROJECT_ROOT,
        )
    except subprocess.TimeoutExpired:
        return False, f"timed out after {SUITE_TIMEOUT}s"
    lines = result.stdout.strip().splitlines()
    summary = lines[-1] if lines else result.stderr.strip()[-200:]
    if result.returncode != 0:
        print(result.stdout)
    return result.returncode == 0, summary


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run Salesflow test suites")
    parser.add_argument("suites", nargs="*", help=f"any of: {', '.join(SUITES)}")
    parser.add_argument("--list", action="store_true", help="list suites and exit")
    args, pytest_args = parser.parse_known_args(argv)

    if args.list:
        for name, files in SUITES.items():
            print(f"{name}:")
            for f in files:
                print(f"  {f}")
        return 0

    unknown = [s for s in args.suites if s not in SUITES]
    if unknown:
        print(f"Unknown suite(s) {unknown}. Available: {', '.join(SUITES)}")
        return 1
    selected = args.suites or list(SUITES)

    print("=" * 60)
    print("SALESFLOW TEST RUNNER")
    print("=" * 60)

    started = time.time()
    failed = []
    for name in selected:
        passed, summary = run_suite(name, pytest_args)
        print(f"  {'PASS' if passed else 'FAIL'}: {name:<10} {summary}")
        if not passed:
            failed.append(name)

    print("=" * 60)
    print(f"{len(selected) - len(failed)}/{len(selected)} suites passed "
          f"({time.time() - started:.1f}s)")
    if failed:
        print(f"FAILED: {', '.join(failed)}")
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
