"""
job_runner.handler — Job runner Lambda (async-invoked by exec_api).

Runs one command per invocation and publishes its output while it runs:

    reader(stdout) ─┐
                    ├─> Queue[Line | EndOfStream] ─> aggregator ─> OutputBatcher ─> sink
    reader(stderr) ─┘

The aggregator flushes the batcher whenever it holds lines and more than one
second has passed since the last flush, and once more after both readers
have reached end of stream. Each non-empty flush becomes the next chunk.
Only after that final flush does the runner wait for the process and write
the single exit record, so a poller that sees the exit record can rely on
every chunk already existing.

Sinks:
    StoreSink  — chunks and exit record to S3 (pull mode, default)
    PushSink   — cumulative log / exit / size PUTs to caller URLs (push mode)

NOTE: the whole invocation is bound by one deadline, the Lambda's remaining
time minus RCE_DEADLINE_MARGIN_SECONDS. On expiry the process group is
killed, and the final flush and exit record still happen.
"""

from __future__ import annotations

import contextlib
import os
import queue
import signal
import subprocess
import threading
import time
import traceback
from collections.abc import Callable
from dataclasses import dataclass
from typing import IO, Any, Protocol

import boto3
import requests
from aws_lambda_powertools import Logger, Tracer
from aws_lambda_powertools.utilities.typing import LambdaContext
from rce.config import Settings
from rce.exceptions import PushDeliveryFailure, RetriesExhausted
from rce.logship import LogShipper
from rce.models import (
    FLUSH_INTERVAL_SECONDS,
    EndOfStream,
    ExecJob,
    ExitStatus,
    Line,
    PushTargets,
    Stream,
    StreamEvent,
)
from rce.retry import retry_attempts
from rce.store import JobLogStore

logger = Logger(service="job-runner")
tracer = Tracer()

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
MIN_DEADLINE_SECONDS = 1.0
READER_GRACE_SECONDS = 5.0
PUSH_ATTEMPTS = 3
PUSH_TIMEOUT_SECONDS = 30
_SHIPPED_LOGGERS = ("job-runner", "rce-lib")

_s3_client = None


def get_s3(region: str):
    global _s3_client
    if _s3_client is None:
        _s3_client = boto3.client("s3", region_name=region)
    return _s3_client


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------


class ChunkSink(Protocol):
    def write_chunk(self, cursor: int, text: str) -> None: ...

    def finish(self, status: ExitStatus) -> None: ...


class StoreSink:
    """Pull-mode sink: chunks and the exit record go to the job log store."""

    def __init__(self, store: JobLogStore, job_id: str) -> None:
        self._store = store
        self._job_id = job_id

    def write_chunk(self, cursor: int, text: str) -> None:
        self._store.put_chunk(self._job_id, cursor, text)

    def finish(self, status: ExitStatus) -> None:
        self._store.put_exit(self._job_id, status)


class PushSink:
    """Push-mode sink: PUTs to caller-supplied URLs; delivery failures are only logged.

    The log target always receives the whole log so far, so a late or repeated
    PUT is harmless. The size target is pushed exactly once and last of all.
    """

    def __init__(
        self,
        targets: PushTargets,
        *,
        session: Any = None,
        attempts: int = PUSH_ATTEMPTS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._targets = targets
        self._session: Any = session or requests.Session()
        self._attempts = attempts
        self._sleep = sleep
        self._log = ""
        self._pushed_log = False

    @property
    def log(self) -> str:
        return self._log

    def _put(self, target: str, url: str, body: str) -> bool:
        def attempt() -> None:
            response = self._session.put(
                url,
                data=body.encode("utf-8"),
                headers={"Content-Type": "text/plain; charset=utf-8"},
                timeout=PUSH_TIMEOUT_SECONDS,
            )
            response.raise_for_status()

        try:
            retry_attempts(
                attempt,
                operation=f"push {target}",
                attempts=self._attempts,
                retry_on=(requests.RequestException,),
                sleep=self._sleep,
            )
        except RetriesExhausted as exc:
            failure = PushDeliveryFailure(target=target, url=url, reason=str(exc.last_error))
            logger.warning(str(failure), extra={"target": target})
            return False
        return True

    def write_chunk(self, cursor: int, text: str) -> None:
        self._log = f"{self._log}\n{text}" if self._log else text
        self._put("log", self._targets.log, self._log)
        self._pushed_log = True

    def finish(self, status: ExitStatus) -> None:
        if not self._pushed_log:
            self._put("log", self._targets.log, self._log)
        self._put("exit", self._targets.exit, str(int(status)))
        self._put("size", self._targets.size, str(len(self._log.encode("utf-8"))))


# ---------------------------------------------------------------------------
# Batching
# ---------------------------------------------------------------------------


def _trim_blank_lines(lines: list[str]) -> list[str]:
    start, end = 0, len(lines)
    while start < end and not lines[start].strip():
        start += 1
    while end > start and not lines[end - 1].strip():
        end -= 1
    return lines[start:end]


class OutputBatcher:
    """Lock-guarded line buffer that turns batches of lines into numbered chunks.

    Cursors handed to the writer are contiguous from 0. The cursor only
    advances after the writer returns, so a failed write never leaves a gap.
    """

    def __init__(
        self,
        write: Callable[[int, str], None],
        *,
        interval: float = FLUSH_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._write = write
        self._interval = interval
        self._clock = clock
        self._lock = threading.RLock()
        self._lines: list[str] = []
        self._cursor = 0
        self._last_flush = clock()

    @property
    def cursor(self) -> int:
        """Cursor the next chunk will be written at (== number of chunks written)."""
        with self._lock:
            return self._cursor

    def append(self, line: str) -> None:
        with self._lock:
            self._lines.append(line)

    def due(self) -> bool:
        with self._lock:
            return bool(self._lines) and self._clock() - self._last_flush > self._interval

    def flush(self) -> bool:
        """Write buffered lines as the next chunk. Returns True if a chunk was written."""
        with self._lock:
            lines = _trim_blank_lines(self._lines)
            self._lines = []
            if not lines:
                return False
            self._write(self._cursor, "\n".join(lines))
            self._cursor += 1
            self._last_flush = self._clock()
            return True


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


def _read_stream(pipe: IO[bytes], stream: Stream, events: queue.Queue[StreamEvent]) -> None:
    try:
        for raw in iter(pipe.readline, b""):
            events.put(Line(raw.decode("utf-8", errors="replace").rstrip("\n"), stream))
    finally:
        pipe.close()
        events.put(EndOfStream(stream))


def _kill_group(proc: subprocess.Popen[bytes]) -> None:
    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.killpg(proc.pid, signal.SIGKILL)
    with contextlib.suppress(ProcessLookupError):
        proc.kill()


class JobRunner:
    """Run one job to completion, publishing chunks and exactly one exit record.

    Invocable directly (no Lambda involved); the handler below is a thin shell.
    """

    def __init__(
        self,
        sink: ChunkSink,
        *,
        flush_interval: float = FLUSH_INTERVAL_SECONDS,
        reader_grace: float = READER_GRACE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sink = sink
        self._flush_interval = flush_interval
        self._reader_grace = reader_grace
        self._clock = clock

    def run(self, job: ExecJob, deadline_seconds: float) -> ExitStatus:
        batcher = OutputBatcher(
            self._sink.write_chunk, interval=self._flush_interval, clock=self._clock
        )
        try:
            proc = subprocess.Popen(
                job.argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            logger.warning("Failed to start command", extra={"argv0": job.argv[0]})
            batcher.append(f"failed to start {job.argv[0]!r}: {exc}")
            try:
                batcher.flush()
            finally:
                self._sink.finish(ExitStatus.FAILURE)
            return ExitStatus.FAILURE

        logger.info("Command started", extra={"pid": proc.pid, "deadline_s": deadline_seconds})
        expired = threading.Event()

        def on_deadline() -> None:
            expired.set()
            logger.warning("Deadline reached, killing command", extra={"pid": proc.pid})
            _kill_group(proc)

        killer = threading.Timer(deadline_seconds, on_deadline)
        killer.daemon = True
        killer.start()
        try:
            try:
                self._collect(proc, batcher, expired)
            except RetriesExhausted:
                logger.exception(
                    "Chunk write failed, abandoning job", extra={"cursor": batcher.cursor}
                )
                _kill_group(proc)
                proc.wait()
                self._sink.finish(ExitStatus.FAILURE)
                raise
            returncode = proc.wait()
        finally:
            killer.cancel()

        status = (
            ExitStatus.SUCCESS
            if returncode == 0 and not expired.is_set()
            else ExitStatus.FAILURE
        )
        logger.info(
            "Command finished",
            extra={
                "returncode": returncode,
                "deadline_expired": expired.is_set(),
                "exit_status": int(status),
                "chunks": batcher.cursor,
            },
        )
        self._sink.finish(status)
        return status

    def _collect(
        self,
        proc: subprocess.Popen[bytes],
        batcher: OutputBatcher,
        expired: threading.Event,
    ) -> None:
        events: queue.Queue[StreamEvent] = queue.Queue()
        if proc.stdout is None or proc.stderr is None:
            raise RuntimeError("command output pipes were not opened")
        readers = [
            threading.Thread(
                target=_read_stream, args=(pipe, stream, events), daemon=True, name=f"rd-{stream}"
            )
            for pipe, stream in ((proc.stdout, Stream.STDOUT), (proc.stderr, Stream.STDERR))
        ]
        for reader in readers:
            reader.start()

        open_streams = len(readers)
        expired_at: float | None = None
        while open_streams:
            try:
                event = events.get(timeout=self._flush_interval)
            except queue.Empty:
                event = None

            if isinstance(event, EndOfStream):
                open_streams -= 1
            elif isinstance(event, Line):
                batcher.append(event.text)

            if batcher.due():
                batcher.flush()

            if expired.is_set():
                expired_at = expired_at if expired_at is not None else self._clock()
                if self._clock() - expired_at > self._reader_grace:
                    # Descendants outside the process group can hold the pipes open.
                    logger.warning("Readers still open after kill, finalising anyway")
                    break

        # Drain lines that arrived before the readers finished or were abandoned.
        while True:
            try:
                event = events.get_nowait()
            except queue.Empty:
                break
            if isinstance(event, Line):
                batcher.append(event.text)
        batcher.flush()


def deadline_from_context(context: Any, margin_seconds: float) -> float:
    remaining = context.get_remaining_time_in_millis() / 1000.0
    return max(MIN_DEADLINE_SECONDS, remaining - margin_seconds)


# ---------------------------------------------------------------------------
# Lambda entry point
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RunnerDependencies:
    settings: Settings
    store: JobLogStore | None


def _dependencies() -> RunnerDependencies:
    settings = Settings.from_env()
    store = None
    if settings.bucket:
        store = JobLogStore(settings.bucket, s3_client=get_s3(settings.region))
    return RunnerDependencies(settings=settings, store=store)


def _sink_for(job: ExecJob, deps: RunnerDependencies) -> ChunkSink:
    if job.push_targets is not None:
        return PushSink(job.push_targets)
    if deps.store is None:
        raise RuntimeError("RCE_BUCKET environment variable not set")
    return StoreSink(deps.store, job.job_id)


def _log_scope(deps: RunnerDependencies) -> contextlib.AbstractContextManager[Any]:
    if not deps.settings.ship_logs or deps.store is None:
        return contextlib.nullcontext()
    return LogShipper(deps.store, loggers=_SHIPPED_LOGGERS)


def _failure(exc: BaseException, request_id: str) -> dict[str, Any]:
    return {
        "statusCode": 500,
        "body": {
            "error": {
                "code": "INTERNAL_ERROR",
                "message": str(exc),
                "requestId": request_id,
                "trace": traceback.format_exc(),
            }
        },
    }


@logger.inject_lambda_context(clear_state=True, log_event=False)
@tracer.capture_lambda_handler
def lambda_handler(event: dict[str, Any], context: LambdaContext) -> dict[str, Any]:
    """Job runner entry point; `event` is ExecJob.to_event() from the exec API."""
    request_id = context.aws_request_id
    try:
        deps = _dependencies()
        job = ExecJob.from_event(event)
    except Exception as exc:
        logger.exception("Rejected job event")
        return _failure(exc, request_id)

    logger.append_keys(job_id=job.job_id, auth_name=job.auth_name or "unknown")
    with _log_scope(deps):
        try:
            deadline = deadline_from_context(context, deps.settings.deadline_margin_seconds)
            status = JobRunner(_sink_for(job, deps)).run(job, deadline)
        except Exception as exc:
            logger.exception("Job runner failed")
            return _failure(exc, request_id)
    return {"statusCode": 200, "body": {"jobId": job.job_id, "exit": int(status)}}
