"""
rce.models — Job, chunk and poll wire types shared by the API, runner and client.

Persisted layout (one bucket, keyed by job id):
    jobs/{job_id}/logs.{cursor:05d}   immutable output chunk, cursor 0, 1, 2, ...
    jobs/{job_id}/exit                single exit record, body "0" or "1"
    logs/{unix}.{run_id}.{count:03d}  shipped service logs (see rce.logship)

Cursor semantics are increment-based: cursor N addresses chunk N, and a client
that has consumed chunk N polls next with cursor N + 1.
"""

from __future__ import annotations

import re
import time
import uuid
from dataclasses import dataclass
from enum import IntEnum, StrEnum
from typing import Any

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
EVENT_EXEC = "exec"
FLUSH_INTERVAL_SECONDS: float = 1.0
CHUNK_URL_TTL_SECONDS: int = 60
PUSH_MODE_SENTINEL: int = -1

_JOB_ID_RE = re.compile(r"^\d+\.[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$")


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ExitStatus(IntEnum):
    """Coarse job outcome. Exact child exit codes are not preserved."""

    SUCCESS = 0
    FAILURE = 1


class PollOutcome(StrEnum):
    MORE = "more"
    TERMINAL = "terminal"
    NOT_READY = "not_ready"


class Stream(StrEnum):
    STDOUT = "stdout"
    STDERR = "stderr"


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


def new_job_id(now: float | None = None) -> str:
    """Allocate an opaque job id: submit time in unix seconds plus a uuid4."""
    ts = int(now if now is not None else time.time())
    return f"{ts}.{uuid.uuid4()}"


def is_valid_job_id(job_id: str) -> bool:
    return bool(_JOB_ID_RE.match(job_id))


def validate_job_id(job_id: Any) -> str:
    if not isinstance(job_id, str) or not is_valid_job_id(job_id):
        raise ValueError(f"invalid job id: {job_id!r}")
    return job_id


def job_prefix(job_id: str) -> str:
    return f"jobs/{job_id}/"


def chunk_key(job_id: str, cursor: int) -> str:
    if cursor < 0:
        raise ValueError(f"cursor must be >= 0, got {cursor}")
    return f"{job_prefix(job_id)}logs.{cursor:05d}"


def exit_key(job_id: str) -> str:
    return f"{job_prefix(job_id)}exit"


def shipped_log_key(unix_seconds: int, run_id: str, count: int) -> str:
    return f"logs/{unix_seconds}.{run_id}.{count:03d}"


# ---------------------------------------------------------------------------
# Request / event payloads
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PushTargets:
    """Caller-supplied PUT endpoints for push delivery mode.

    log:  receives the cumulative log on every flush (overwrite-safe).
    size: receives the byte size of the final log push, exactly once, last.
    exit: receives the coarse exit status, exactly once.
    """

    log: str
    size: str
    exit: str

    def to_dict(self) -> dict[str, str]:
        return {"log": self.log, "size": self.size, "exit": self.exit}

    @classmethod
    def from_dict(cls, data: Any) -> PushTargets | None:
        if data is None:
            return None
        if not isinstance(data, dict):
            raise ValueError("push-urls must be an object")
        values = {name: data.get(name) for name in ("log", "size", "exit")}
        missing = [
            name for name, value in values.items() if not isinstance(value, str) or not value
        ]
        if missing:
            raise ValueError(f"push-urls missing: {', '.join(missing)}")
        return cls(**values)


def parse_argv(value: Any) -> list[str]:
    if not isinstance(value, list) or not value:
        raise ValueError("argv must be a non-empty list of strings")
    if not all(isinstance(arg, str) for arg in value):
        raise ValueError("argv must be a non-empty list of strings")
    if not value[0]:
        raise ValueError("argv[0] must not be empty")
    return list(value)


@dataclass(frozen=True)
class ExecJob:
    """One remote execution, as handed from the API to the runner."""

    job_id: str
    argv: list[str]
    push_targets: PushTargets | None = None
    auth_name: str | None = None

    def to_event(self) -> dict[str, Any]:
        event: dict[str, Any] = {
            "event_type": EVENT_EXEC,
            "uid": self.job_id,
            "argv": list(self.argv),
            "push-urls": self.push_targets.to_dict() if self.push_targets else None,
        }
        if self.auth_name:
            event["auth-name"] = self.auth_name
        return event

    @classmethod
    def from_event(cls, event: dict[str, Any]) -> ExecJob:
        if event.get("event_type") != EVENT_EXEC:
            raise ValueError(f"unsupported event_type: {event.get('event_type')!r}")
        return cls(
            job_id=validate_job_id(event.get("uid")),
            argv=parse_argv(event.get("argv")),
            push_targets=PushTargets.from_dict(event.get("push-urls")),
            auth_name=event.get("auth-name"),
        )


# ---------------------------------------------------------------------------
# Poll results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PollResult:
    """Outcome of one poll: a chunk reference, the terminal status, or nothing yet."""

    outcome: PollOutcome
    url: str | None = None
    exit_status: int | None = None

    @classmethod
    def more(cls, url: str) -> PollResult:
        return cls(outcome=PollOutcome.MORE, url=url)

    @classmethod
    def terminal(cls, exit_status: int) -> PollResult:
        return cls(outcome=PollOutcome.TERMINAL, exit_status=exit_status)

    @classmethod
    def not_ready(cls) -> PollResult:
        return cls(outcome=PollOutcome.NOT_READY)

    def to_body(self) -> dict[str, Any]:
        if self.outcome == PollOutcome.MORE:
            return {"more-url": self.url}
        if self.outcome == PollOutcome.TERMINAL:
            return {"exit": self.exit_status}
        return {}

    @classmethod
    def from_body(cls, body: dict[str, Any]) -> PollResult:
        if body.get("exit") is not None:
            return cls.terminal(int(body["exit"]))
        if body.get("more-url"):
            return cls.more(str(body["more-url"]))
        raise ValueError(f"unrecognised poll response: {body!r}")


# ---------------------------------------------------------------------------
# Runner stream events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Line:
    text: str
    stream: Stream


@dataclass(frozen=True)
class EndOfStream:
    stream: Stream


StreamEvent = Line | EndOfStream
