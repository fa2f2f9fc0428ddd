#!/usr/bin/env python3
"""Chatty child process for integration testing.

Writes numbered lines to stdout (and optionally stderr), then exits with the
requested code. Responds to SIGTERM by printing a notice and exiting 143.

Usage:
    python chatty_child.py [--lines N] [--stderr-lines N] [--interval S]
                           [--sleep S] [--exit-code CODE] [--no-newline]
                           [--ignore-term]

Arguments:
    --lines: Number of stdout lines "out <i>" (default: 3)
    --stderr-lines: Number of stderr lines "err <i>" (default: 0)
    --interval: Delay between lines (default: 0)
    --sleep: Extra time to stay alive after writing (default: 0)
    --exit-code: Exit code (default: 0)
    --no-newline: Write a final "tail" without a line terminator
    --ignore-term: Ignore SIGTERM (forces the caller to escalate to SIGKILL)
"""

from __future__ import annotations

import argparse
import signal
import sys
import time


def _on_term(signum: int, frame) -> None:
    print("terminating", flush=True)
    sys.exit(128 + signum)


def main() -> None:
    parser = argparse.ArgumentParser(description="Chatty child for testing")
    parser.add_argument("--lines", type=int, default=3)
    parser.add_argument("--stderr-lines", type=int, default=0)
    parser.add_argument("--interval", type=float, default=0.0)
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--no-newline", action="store_true")
    parser.add_argument("--ignore-term", action="store_true")
    args = parser.parse_args()

    if args.ignore_term:
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
    else:
        signal.signal(signal.SIGTERM, _on_term)

    for i in range(max(args.lines, args.stderr_lines)):
        if i < args.lines:
            sys.stdout.write(f"out {i}\n")
            sys.stdout.flush()
        if i < args.stderr_lines:
            sys.stderr.write(f"err {i}\n")
            sys.stderr.flush()
        if args.interval:
            time.sleep(args.interval)

    if args.no_newline:
        sys.stdout.write("tail")
        sys.stdout.flush()

    deadline = time.monotonic() + args.sleep
    while time.monotonic() < deadline:
        time.sleep(0.05)

    sys.exit(args.exit_code)


if __name__ == "__main__":
    main()
