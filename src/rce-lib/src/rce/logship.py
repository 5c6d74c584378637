"""
rce.logship — Per-request log shipping to S3.

LogShipper is a logging.Handler that owns its own line buffer and a background
flush thread. It is scoped to one request:

    with LogShipper(store, loggers=["exec-api", "rce-lib"]):
        ... handle the request ...

Entering attaches it to the named loggers and starts the periodic flush;
leaving detaches it, stops the thread and performs a final flush, so nothing
buffered during the request outlives it.

Loggers are looked up by name in the process-global logging registry, so the
shipper captures whatever code logs through those names, including other
libraries and other threads, while the scope is open. It does not create or
configure the loggers; a name nothing logs through ships nothing. Two
overlapping scopes on the same name each receive every record.

Shipped objects land at logs/{unix}.{run_id}.{count:03d}.
"""

from __future__ import annotations

import logging
import sys
import threading
import time
import uuid
from collections.abc import Callable, Iterable
from typing import Any, Protocol

from rce.models import shipped_log_key

DEFAULT_FLUSH_INTERVAL_SECONDS = 5.0


class LogSink(Protocol):
    def put_log(self, key: str, text: str) -> None: ...


class LogShipper(logging.Handler):
    """Buffer formatted log records and write them to a LogSink in batches.

    Attachment is by logger name through ``logging.getLogger``, so records from
    any code using those names are shipped while the shipper is started.
    """

    def __init__(
        self,
        sink: LogSink,
        *,
        loggers: Iterable[str] = (),
        interval: float = DEFAULT_FLUSH_INTERVAL_SECONDS,
        run_id: str | None = None,
        clock: Callable[[], float] = time.time,
        level: int = logging.INFO,
    ) -> None:
        super().__init__(level=level)
        self.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
        self._sink = sink
        self._logger_names = list(loggers)
        self._interval = interval
        self._run_id = run_id or str(uuid.uuid4())
        self._clock = clock
        self._lines: list[str] = []
        self._buffer_lock = threading.RLock()
        self._count = 0
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def run_id(self) -> str:
        return self._run_id

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format(record)
        except Exception:
            self.handleError(record)
            return
        with self._buffer_lock:
            self._lines.append(line)

    def pending(self) -> int:
        with self._buffer_lock:
            return len(self._lines)

    def flush(self) -> None:
        with self._buffer_lock:
            if not self._lines:
                return
            lines, self._lines = self._lines, []
            key = shipped_log_key(int(self._clock()), self._run_id, self._count)
            self._count += 1
        try:
            self._sink.put_log(key, "\n".join(lines) + "\n")
        except Exception as exc:
            # Shipping must never take the request down; stderr still reaches CloudWatch.
            print(f"log shipping to {key} failed: {exc}", file=sys.stderr)

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            self.flush()

    def start(self) -> LogShipper:
        for name in self._logger_names:
            logging.getLogger(name).addHandler(self)
        self._thread = threading.Thread(
            target=self._run, daemon=True, name=f"log-shipper-{self._run_id[:8]}"
        )
        self._thread.start()
        return self

    def close(self) -> None:
        for name in self._logger_names:
            logging.getLogger(name).removeHandler(self)
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        self.flush()
        super().close()

    def __enter__(self) -> LogShipper:
        return self.start()

    def __exit__(self, *_exc: Any) -> None:
        self.close()
