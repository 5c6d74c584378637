"""
rce.exceptions — Error taxonomy for the execution API, runner and client.

Not-ready polls and abnormal child exits are not errors: the former is a
PollResult outcome, the latter is coarsened to ExitStatus.FAILURE.
"""

from __future__ import annotations

from typing import Any


class RceError(Exception):
    """Base class for all rce errors."""


class Unauthorized(RceError):
    """Missing or invalid credential. Never retried."""


class TransientStoreError(RceError):
    """A store read or write failed in a way that may succeed on retry."""


class FatalError(RceError):
    """Unrecoverable for the current job or request.

    Caught only at the single top-level boundary of each Lambda entry point.
    """


class RetriesExhausted(FatalError):
    """
    Raised when a retried operation failed on every attempt.

    Attributes:
        operation:  Human-readable name of what was being retried.
        attempts:   Number of attempts made.
        last_error: The exception raised by the final attempt.
    """

    def __init__(self, *, operation: str, attempts: int, last_error: BaseException) -> None:
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{operation} failed after {attempts} attempts: {last_error}")


class StoreRetriesExhausted(RetriesExhausted):
    """A store write or read kept failing past the retry bound."""


class TransportError(RetriesExhausted):
    """A client-side API call or content fetch kept failing past the retry bound."""


class ApiRequestError(TransportError):
    """The execution API answered with a non-retryable error status."""

    def __init__(self, *, operation: str, status_code: int, payload: Any = None) -> None:
        self.status_code = status_code
        self.payload = payload
        super().__init__(
            operation=operation,
            attempts=1,
            last_error=RceError(f"http {status_code}: {payload!r}"),
        )


class PushDeliveryFailure(RceError):
    """A push-mode PUT failed. Logged by the runner, never fatal."""

    def __init__(self, *, target: str, url: str, reason: str) -> None:
        self.target = target
        self.url = url
        self.reason = reason
        super().__init__(f"push to {target} target failed: {reason}")
