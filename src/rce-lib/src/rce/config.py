"""
rce.config — Environment-driven settings for the execution API and job runner.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from rce.models import CHUNK_URL_TTL_SECONDS

_TRUTHY = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUTHY


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    region: str
    bucket: str | None
    auth_table: str
    runner_function: str | None
    ship_logs: bool
    deadline_margin_seconds: float
    chunk_url_ttl_seconds: int

    @classmethod
    def from_env(cls) -> Settings:
        return cls(
            region=os.environ.get("AWS_REGION", "eu-west-2"),
            bucket=os.environ.get("RCE_BUCKET") or None,
            auth_table=os.environ.get("RCE_AUTH_TABLE", "rce-auth"),
            runner_function=os.environ.get("RCE_RUNNER_FUNCTION") or None,
            ship_logs=_env_bool("RCE_SHIP_LOGS", True),
            deadline_margin_seconds=_env_float("RCE_DEADLINE_MARGIN_SECONDS", 60.0),
            chunk_url_ttl_seconds=int(
                _env_float("RCE_CHUNK_URL_TTL_SECONDS", float(CHUNK_URL_TTL_SECONDS))
            ),
        )

    def require_bucket(self) -> str:
        if not self.bucket:
            raise RuntimeError("RCE_BUCKET environment variable not set")
        return self.bucket
