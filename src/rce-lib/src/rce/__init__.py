"""
rce — Shared library for asynchronous remote command execution.

Wire types, the S3 log store, credential checks, log shipping and the client
poller used by the exec-api and job-runner Lambdas and the CLIs.
"""

from rce.client import RceClient, execute
from rce.exceptions import FatalError, RetriesExhausted, TransportError, Unauthorized
from rce.models import ExecJob, ExitStatus, PollOutcome, PollResult, PushTargets
from rce.store import JobLogStore

__all__ = [
    "ExecJob",
    "ExitStatus",
    "FatalError",
    "JobLogStore",
    "PollOutcome",
    "PollResult",
    "PushTargets",
    "RceClient",
    "RetriesExhausted",
    "TransportError",
    "Unauthorized",
    "execute",
]
