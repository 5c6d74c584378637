"""
rce.retry — Bounded retry with exponential backoff and jitter.

Used for every store write, every store existence check, every client API call and every
push-mode delivery. Exhaustion raises RetriesExhausted (or the subclass the
caller asks for) chained from the final attempt's exception.
"""

from __future__ import annotations

import random
import time
from collections.abc import Callable
from typing import TypeVar

from aws_lambda_powertools import Logger

from rce.exceptions import RetriesExhausted

logger = Logger(service="rce-lib")

T = TypeVar("T")

DEFAULT_ATTEMPTS = 7
DEFAULT_BASE_DELAY_SECONDS = 0.25
DEFAULT_MAX_DELAY_SECONDS = 5.0


def backoff_delay(
    attempt: int,
    *,
    base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
    max_delay: float = DEFAULT_MAX_DELAY_SECONDS,
) -> float:
    """Full-jitter exponential delay before retry number ``attempt`` (1-based)."""
    ceiling = min(max_delay, base_delay * (2 ** (attempt - 1)))
    return random.uniform(ceiling / 2, ceiling)


def retry_attempts(
    fn: Callable[[], T],
    *,
    operation: str,
    attempts: int = DEFAULT_ATTEMPTS,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
    max_delay: float = DEFAULT_MAX_DELAY_SECONDS,
    exhausted: type[RetriesExhausted] = RetriesExhausted,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``fn`` until it returns, at most ``attempts`` times.

    Exceptions outside ``retry_on`` propagate immediately. Exceptions inside it
    are logged and retried after a backoff delay; once the budget is spent the
    ``exhausted`` error is raised from the last one.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    last_error: BaseException | None = None
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as exc:
            last_error = exc
            if attempt == attempts:
                break
            delay = backoff_delay(attempt, base_delay=base_delay, max_delay=max_delay)
            logger.warning(
                "Retrying after transient failure",
                extra={
                    "operation": operation,
                    "attempt": attempt,
                    "max_attempts": attempts,
                    "delay_seconds": round(delay, 3),
                    "error": str(exc),
                },
            )
            sleep(delay)

    if last_error is None:
        raise RuntimeError(f"{operation}: no attempt recorded an error")
    logger.error(
        "Retries exhausted",
        extra={"operation": operation, "attempts": attempts, "error": str(last_error)},
    )
    raise exhausted(operation=operation, attempts=attempts, last_error=last_error) from last_error
