"""
rce.auth — Credential issuance and validation against DynamoDB.

Credentials are 32 random bytes, hex encoded, shown to the operator once.
Only their BLAKE2b-256 digest is stored:

    table: rce-auth (RCE_AUTH_TABLE)
    PK:    AUTH#{blake2b256(credential)}
    SK:    METADATA
    name:  free-form label identifying the credential holder
"""

from __future__ import annotations

import hashlib
import re
import secrets
from datetime import UTC, datetime
from typing import Any

import boto3
from aws_lambda_powertools import Logger

from rce.exceptions import Unauthorized

logger = Logger(service="rce-lib")

_AUTH_PK_PREFIX = "AUTH#"
_DIGEST_RE = re.compile(r"^[0-9a-f]{64}$")


def hash_credential(credential: str) -> str:
    return hashlib.blake2b(credential.encode("utf-8"), digest_size=32).hexdigest()


def new_credential() -> str:
    return secrets.token_hex(32)


def auth_key(digest: str) -> dict[str, str]:
    return {"PK": f"{_AUTH_PK_PREFIX}{digest}", "SK": "METADATA"}


def header_value(headers: dict[str, Any] | None, name: str) -> str | None:
    """Case-insensitive header lookup; API Gateway does not normalise case."""
    for key, value in (headers or {}).items():
        if key.lower() == name.lower():
            return None if value is None else str(value)
    return None


class CredentialStore:
    """Create, revoke and check credentials in the auth table."""

    def __init__(
        self, table_name: str, *, dynamodb_resource: Any = None, region: str | None = None
    ) -> None:
        self._table_name = table_name
        self._dynamodb: Any = dynamodb_resource or boto3.resource("dynamodb", region_name=region)

    def _table(self) -> Any:
        return self._dynamodb.Table(self._table_name)

    def lookup(self, credential: str) -> str | None:
        """Return the credential's name, or None if it is not registered."""
        response = self._table().get_item(
            Key=auth_key(hash_credential(credential)),
            ConsistentRead=True,
        )
        item = response.get("Item")
        if not item:
            return None
        name = item.get("name")
        return str(name) if name else None

    def create(self, name: str, *, now: datetime | None = None) -> str:
        """Register a new credential for ``name`` and return it in the clear."""
        if not name.strip():
            raise ValueError("name must not be empty")
        credential = new_credential()
        created_at = (now or datetime.now(UTC)).isoformat(timespec="seconds")
        self._table().put_item(
            Item={
                **auth_key(hash_credential(credential)),
                "name": name.strip(),
                "createdAt": created_at.replace("+00:00", "Z"),
            }
        )
        return credential

    def revoke(self, digest: str) -> bool:
        """Delete a credential by its stored digest (with or without the AUTH# prefix)."""
        value = digest.strip().removeprefix(_AUTH_PK_PREFIX)
        if not _DIGEST_RE.match(value):
            raise ValueError(f"not a credential digest: {digest!r}")
        response = self._table().delete_item(Key=auth_key(value), ReturnValues="ALL_OLD")
        return "Attributes" in response

    def revoke_credential(self, credential: str) -> bool:
        return self.revoke(hash_credential(credential))


def require_auth(store: CredentialStore, credential: str | None) -> str:
    """Validate a request credential, returning the holder's name.

    Raises Unauthorized for a missing or unknown credential. Lookup failures
    are also treated as unauthorized rather than letting the request through.
    """
    if not credential:
        raise Unauthorized("missing auth header")
    try:
        name = store.lookup(credential)
    except Exception as exc:
        logger.exception("Credential lookup failed")
        raise Unauthorized("bad auth") from exc
    if name is None:
        raise Unauthorized("bad auth")
    logger.info("Authenticated", extra={"auth_name": name})
    return name
