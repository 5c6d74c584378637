#!/usr/bin/env python3
"""
exec.py — Run a command through the remote execution API.

Streams the command's output to stdout as chunks arrive and exits with the
job's coarse status (0 success, 1 failure). With push URLs the job is only
submitted and the script exits 0 immediately; output goes to the URLs.

Usage:
    uv run python scripts/exec.py --url https://rce.example.com --auth <credential> -- ls -la
    uv run python scripts/exec.py -- uname -a                # RCE_URL / RCE_AUTH from env
    uv run python scripts/exec.py --push-log-url <u> --push-size-url <u> --push-exit-url <u> \\
        -- make test
"""

from __future__ import annotations

import argparse
import os
import sys
from collections.abc import Callable

from rce.client import RceClient
from rce.exceptions import RceError, Unauthorized
from rce.models import PUSH_MODE_SENTINEL, PushTargets


class ExecCliError(RuntimeError):
    """Domain error for exec CLI argument failures."""


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--url", default=os.environ.get("RCE_URL"), help="API base URL")
    parser.add_argument("--auth", default=os.environ.get("RCE_AUTH"), help="API credential")
    parser.add_argument("--push-log-url", default=None)
    parser.add_argument("--push-size-url", default=None)
    parser.add_argument("--push-exit-url", default=None)
    parser.add_argument(
        "--poll-interval", type=float, default=1.0, help="Seconds between not-ready polls"
    )
    parser.add_argument("command", nargs=argparse.REMAINDER, help="Command and arguments")
    args = parser.parse_args(argv)
    if args.command and args.command[0] == "--":
        args.command = args.command[1:]
    return args


def push_targets_from_args(args: argparse.Namespace) -> PushTargets | None:
    urls = (args.push_log_url, args.push_size_url, args.push_exit_url)
    if not any(urls):
        return None
    if not all(urls):
        raise ExecCliError("--push-log-url, --push-size-url and --push-exit-url go together")
    return PushTargets(log=args.push_log_url, size=args.push_size_url, exit=args.push_exit_url)


def _write_chunk(text: str) -> None:
    sys.stdout.write(text + "\n")
    sys.stdout.flush()


def main(
    argv: list[str] | None = None,
    *,
    client_factory: Callable[..., RceClient] = RceClient,
) -> int:
    args = parse_args(argv)
    try:
        if not args.url or not args.auth:
            raise ExecCliError("--url and --auth (or RCE_URL and RCE_AUTH) are required")
        if not args.command:
            raise ExecCliError("no command given")
        push_targets = push_targets_from_args(args)
    except ExecCliError as exc:
        print(str(exc), file=sys.stderr)
        return 2

    client = client_factory(args.url, args.auth, poll_interval=args.poll_interval)
    try:
        status = client.execute(args.command, _write_chunk, push_targets)
    except Unauthorized as exc:
        print(f"unauthorized: {exc}", file=sys.stderr)
        return 1
    except RceError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    if status == PUSH_MODE_SENTINEL:
        return 0
    return status


if __name__ == "__main__":
    raise SystemExit(main())
