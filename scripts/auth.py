#!/usr/bin/env python3
"""
auth.py — Issue and revoke execution API credentials.

Credential record:
  table: rce-auth (RCE_AUTH_TABLE)
  PK:    AUTH#{blake2b256(credential)}
  SK:    METADATA

The credential itself is printed once by `new` and never stored.

Usage:
    uv run python scripts/auth.py new <name>
    uv run python scripts/auth.py rm <digest>
    uv run python scripts/auth.py rm --credential <credential>
"""

from __future__ import annotations

import argparse
import os
import sys
from typing import Any

import boto3
from rce.auth import CredentialStore, hash_credential

DEFAULT_TABLE_NAME = "rce-auth"


def get_aws_region() -> str:
    region = os.environ.get("AWS_REGION", "").strip()
    if not region:
        raise RuntimeError("AWS_REGION environment variable not set")
    return region


def resolve_table_name() -> str:
    return os.environ.get("RCE_AUTH_TABLE", DEFAULT_TABLE_NAME)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    subparsers = parser.add_subparsers(dest="command", required=True)

    new = subparsers.add_parser("new", help="Create a credential and print it")
    new.add_argument("name", help="Label for the credential holder")
    new.add_argument(
        "--table-name",
        default=resolve_table_name(),
        help="DynamoDB table name (default rce-auth)",
    )

    rm = subparsers.add_parser("rm", help="Revoke a credential")
    rm.add_argument("digest", nargs="?", default=None, help="Stored digest (AUTH# optional)")
    rm.add_argument("--credential", default=None, help="Revoke by clear credential instead")
    rm.add_argument(
        "--table-name",
        default=resolve_table_name(),
        help="DynamoDB table name (default rce-auth)",
    )

    return parser.parse_args(argv)


def _store(args: argparse.Namespace, dynamodb_resource: Any = None) -> CredentialStore:
    resource = dynamodb_resource or boto3.resource("dynamodb", region_name=get_aws_region())
    return CredentialStore(args.table_name, dynamodb_resource=resource)


def cmd_new(args: argparse.Namespace, dynamodb_resource: Any = None) -> int:
    credential = _store(args, dynamodb_resource).create(args.name)
    print(f"digest={hash_credential(credential)}", file=sys.stderr)
    print(credential)
    return 0


def cmd_rm(args: argparse.Namespace, dynamodb_resource: Any = None) -> int:
    if bool(args.digest) == bool(args.credential):
        print("Provide exactly one of <digest> or --credential.", file=sys.stderr)
        return 2
    store = _store(args, dynamodb_resource)
    try:
        if args.credential:
            removed = store.revoke_credential(args.credential)
        else:
            removed = store.revoke(args.digest)
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    print("Credential revoked" if removed else "Credential not present")
    return 0


def main(argv: list[str] | None = None, dynamodb_resource: Any = None) -> int:
    args = parse_args(argv)
    if args.command == "new":
        return cmd_new(args, dynamodb_resource)
    if args.command == "rm":
        return cmd_rm(args, dynamodb_resource)
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
