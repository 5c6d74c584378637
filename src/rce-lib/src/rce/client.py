"""
rce.client — Client poller for the execution API.

Pull mode (default):
    submit -> poll(cursor) -> fetch chunk -> deliver -> poll(cursor + 1) ...
until the API answers with the exit status. Each network call is retried on
connection errors and 5xx answers; 401 fails fast; 409 from poll is the
"not ready yet" signal and is never counted against the retry budget.

Push mode:
    submit with push targets and return PUSH_MODE_SENTINEL (-1) immediately.
    The runner PUTs the cumulative log to the log target on every flush, then
    the exit status to the exit target once, then the final log size to the
    size target once. Receipt of the size PUT signals completion. Targets
    should stay writable for the runner's full deadline (about 15 minutes).
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

import requests
from aws_lambda_powertools import Logger

from rce.exceptions import ApiRequestError, FatalError, TransportError, Unauthorized
from rce.models import PUSH_MODE_SENTINEL, PollOutcome, PollResult, PushTargets, parse_argv
from rce.retry import DEFAULT_ATTEMPTS, retry_attempts

logger = Logger(service="rce-client")

EXEC_PATH = "/api/exec"
DEFAULT_TIMEOUT_SECONDS = 30
POLL_INTERVAL_SECONDS = 1.0
FETCH_RETRY_SECONDS = 1.0

# S3 answers 403 for a presigned object that is not visible yet and 416 for an
# unsatisfiable range; both mean "not consistent yet", not failure.
_NOT_CONSISTENT_STATUSES = {403, 416}


class _RetryableHttpError(Exception):
    def __init__(self, status_code: int, body: str) -> None:
        self.status_code = status_code
        super().__init__(f"http {status_code}: {body[:200]}")


class RceClient:
    """Submit commands to the execution API and follow them to completion."""

    def __init__(
        self,
        url: str,
        auth: str,
        *,
        session: Any = None,
        attempts: int = DEFAULT_ATTEMPTS,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        fetch_retry_interval: float = FETCH_RETRY_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._url = url.rstrip("/")
        self._auth = auth
        self._session: Any = session or requests.Session()
        self._attempts = attempts
        self._timeout = timeout
        self._poll_interval = poll_interval
        self._fetch_retry_interval = fetch_retry_interval
        self._sleep = sleep

    # -----------------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------------

    def _api_call(
        self,
        operation: str,
        method: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
        accept: frozenset[int] = frozenset({200}),
    ) -> requests.Response:
        def attempt() -> requests.Response:
            response = self._session.request(
                method,
                f"{self._url}{EXEC_PATH}",
                params=params,
                json=json_body,
                headers={"auth": self._auth},
                timeout=self._timeout,
            )
            if response.status_code in accept:
                return response
            if response.status_code == 401:
                raise Unauthorized(response.text or "unauthorized")
            if response.status_code >= 500:
                raise _RetryableHttpError(response.status_code, response.text)
            raise ApiRequestError(
                operation=operation,
                status_code=response.status_code,
                payload=response.text,
            )

        return retry_attempts(
            attempt,
            operation=operation,
            attempts=self._attempts,
            retry_on=(requests.RequestException, _RetryableHttpError),
            exhausted=TransportError,
            sleep=self._sleep,
        )

    # -----------------------------------------------------------------------
    # Protocol steps
    # -----------------------------------------------------------------------

    def submit(self, argv: list[str], push_targets: PushTargets | None = None) -> str:
        """Start a job and return its id."""
        body: dict[str, Any] = {"argv": parse_argv(argv)}
        if push_targets is not None:
            body["push-urls"] = push_targets.to_dict()
        response = self._api_call("submit", "POST", json_body=body)
        job_id = str(response.json()["uid"])
        logger.info("Job submitted", extra={"job_id": job_id, "push_mode": bool(push_targets)})
        return job_id

    def poll(self, job_id: str, cursor: int) -> PollResult:
        response = self._api_call(
            "poll",
            "GET",
            params={"uid": job_id, "cursor": cursor},
            accept=frozenset({200, 409}),
        )
        if response.status_code == 409:
            return PollResult.not_ready()
        return PollResult.from_body(response.json())

    def fetch(self, url: str) -> str:
        """GET a delegated-read chunk URL, waiting out not-yet-consistent answers."""

        def attempt() -> str | None:
            response = self._session.get(url, timeout=self._timeout)
            if response.status_code in (200, 206):
                return response.content.decode("utf-8", errors="replace")
            if response.status_code in _NOT_CONSISTENT_STATUSES:
                return None
            raise _RetryableHttpError(response.status_code, response.text)

        for _ in range(self._attempts):
            text = retry_attempts(
                attempt,
                operation="fetch",
                attempts=self._attempts,
                retry_on=(requests.RequestException, _RetryableHttpError),
                exhausted=TransportError,
                sleep=self._sleep,
            )
            if text is not None:
                return text
            logger.debug("Chunk not consistent yet, retrying fetch")
            self._sleep(self._fetch_retry_interval)
        raise TransportError(
            operation="fetch",
            attempts=self._attempts,
            last_error=RuntimeError("chunk stayed forbidden/unsatisfiable"),
        )

    # -----------------------------------------------------------------------
    # Full execution
    # -----------------------------------------------------------------------

    def execute(
        self,
        argv: list[str],
        on_output: Callable[[str], None] = print,
        push_targets: PushTargets | None = None,
    ) -> int:
        """Run ``argv`` remotely and return its coarse exit status.

        Each chunk is passed to ``on_output`` in cursor order. Chunk boundaries
        are line boundaries, so joining chunks with newlines rebuilds the log.
        In push mode nothing is delivered here and -1 is returned at once.
        """
        job_id = self.submit(argv, push_targets)
        if push_targets is not None:
            return PUSH_MODE_SENTINEL

        cursor = 0
        while True:
            result = self.poll(job_id, cursor)
            if result.outcome == PollOutcome.TERMINAL:
                if result.exit_status is None:
                    raise FatalError(f"terminal poll result for {job_id} has no exit status")
                logger.info(
                    "Job finished",
                    extra={"job_id": job_id, "chunks": cursor, "exit_status": result.exit_status},
                )
                return result.exit_status
            if result.outcome == PollOutcome.NOT_READY:
                self._sleep(self._poll_interval)
                continue
            if result.url is None:
                raise FatalError(f"poll result for {job_id} at cursor {cursor} has no chunk url")
            on_output(self.fetch(result.url))
            cursor += 1


def execute(
    url: str,
    auth: str,
    argv: list[str],
    on_output: Callable[[str], None] = print,
    push_targets: PushTargets | None = None,
    **client_kwargs: Any,
) -> int:
    """Convenience wrapper around ``RceClient(url, auth).execute(...)``."""
    return RceClient(url, auth, **client_kwargs).execute(argv, on_output, push_targets)
