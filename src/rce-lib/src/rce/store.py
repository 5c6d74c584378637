"""
rce.store — JobLogStore, the S3-backed log store for job chunks and exit records.

S3 reads-after-writes are treated as eventually consistent: an existence
check can miss an object that was just written. Callers that need race safety
(the poll handler) check again rather than trusting a single miss.

Every call is retried with bounded attempts (rce.retry). A not-found (or
forbidden) answer to a HEAD check is a normal miss, not a failure, and is never
retried. A GET that misses an object a HEAD check already saw is retried.

Security guarantees:
  - Every key is derived from a validated job id, so a caller-supplied id
    cannot address objects outside jobs/{job_id}/.
"""

from __future__ import annotations

from typing import Any

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import BotoCoreError, ClientError

from rce.exceptions import FatalError, StoreRetriesExhausted, TransientStoreError
from rce.models import (
    CHUNK_URL_TTL_SECONDS,
    ExitStatus,
    chunk_key,
    exit_key,
    validate_job_id,
)
from rce.retry import DEFAULT_ATTEMPTS, retry_attempts

logger = Logger(service="rce-lib")

# HEAD answers 403 for a missing key when the role lacks s3:ListBucket.
_HEAD_MISS_CODES = frozenset({"404", "NoSuchKey", "NotFound", "403", "Forbidden", "AccessDenied"})


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code"))


class JobLogStore:
    """
    Chunk and exit-record persistence for jobs, in a single S3 bucket.

    The job runner is the only writer for a given job; the poll handler and
    clients only read. Writes are plain PUTs and therefore idempotent, which
    is what makes retrying them safe.
    """

    def __init__(
        self,
        bucket: str,
        *,
        s3_client: Any = None,
        region: str | None = None,
        attempts: int = DEFAULT_ATTEMPTS,
        base_delay: float = 0.25,
    ) -> None:
        self._bucket = bucket
        self._s3: Any = s3_client or boto3.client("s3", region_name=region)
        self._attempts = attempts
        self._base_delay = base_delay

    @property
    def bucket(self) -> str:
        return self._bucket

    # -----------------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------------

    def _call(
        self, operation: str, fn: Any, *, miss_codes: frozenset[str] = frozenset()
    ) -> Any:
        """Run one S3 call with retries. Errors coded in ``miss_codes`` are raised raw."""

        def attempt() -> Any:
            try:
                return fn()
            except ClientError as exc:
                if _error_code(exc) in miss_codes:
                    raise
                raise TransientStoreError(f"{operation}: {exc}") from exc
            except BotoCoreError as exc:
                raise TransientStoreError(f"{operation}: {exc}") from exc

        return retry_attempts(
            attempt,
            operation=operation,
            attempts=self._attempts,
            retry_on=(TransientStoreError,),
            base_delay=self._base_delay,
            exhausted=StoreRetriesExhausted,
        )

    def _put(self, key: str, body: bytes) -> None:
        self._call(
            f"put s3://{self._bucket}/{key}",
            lambda: self._s3.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=body,
                ContentType="text/plain; charset=utf-8",
            ),
        )

    def _exists(self, key: str) -> bool:
        try:
            self._call(
                f"head s3://{self._bucket}/{key}",
                lambda: self._s3.head_object(Bucket=self._bucket, Key=key),
                miss_codes=_HEAD_MISS_CODES,
            )
        except ClientError:
            return False
        return True

    # -----------------------------------------------------------------------
    # Writes (runner side)
    # -----------------------------------------------------------------------

    def put_chunk(self, job_id: str, cursor: int, text: str) -> None:
        """Write chunk ``cursor`` for a job. Raises StoreRetriesExhausted on exhaustion."""
        key = chunk_key(validate_job_id(job_id), cursor)
        self._put(key, text.encode("utf-8"))
        logger.debug("Chunk written", extra={"job_id": job_id, "cursor": cursor, "key": key})

    def put_exit(self, job_id: str, status: ExitStatus) -> None:
        """Write the job's single exit record."""
        key = exit_key(validate_job_id(job_id))
        self._put(key, str(int(status)).encode("utf-8"))
        logger.info("Exit record written", extra={"job_id": job_id, "exit_status": int(status)})

    def put_log(self, key: str, text: str) -> None:
        """Write a shipped service log object (see rce.logship)."""
        if not key.startswith("logs/"):
            raise ValueError(f"shipped log keys must live under logs/, got {key!r}")
        self._put(key, text.encode("utf-8"))

    # -----------------------------------------------------------------------
    # Reads (poll side)
    # -----------------------------------------------------------------------

    def has_chunk(self, job_id: str, cursor: int) -> bool:
        return self._exists(chunk_key(validate_job_id(job_id), cursor))

    def has_exit(self, job_id: str) -> bool:
        return self._exists(exit_key(validate_job_id(job_id)))

    def get_exit(self, job_id: str) -> int:
        """Read the exit status. The exit record must already have been observed."""
        key = exit_key(validate_job_id(job_id))
        response = self._call(
            f"get s3://{self._bucket}/{key}",
            lambda: self._s3.get_object(Bucket=self._bucket, Key=key),
        )
        body = response["Body"].read().decode("utf-8").strip()
        try:
            return int(body)
        except ValueError as exc:
            raise FatalError(f"malformed exit record at {key}: {body!r}") from exc

    def get_chunk(self, job_id: str, cursor: int) -> str:
        key = chunk_key(validate_job_id(job_id), cursor)
        response = self._call(
            f"get s3://{self._bucket}/{key}",
            lambda: self._s3.get_object(Bucket=self._bucket, Key=key),
        )
        return response["Body"].read().decode("utf-8")

    def chunk_url(
        self, job_id: str, cursor: int, *, expires_in: int = CHUNK_URL_TTL_SECONDS
    ) -> str:
        """Presigned GET URL for one chunk (the delegated-read URL)."""
        key = chunk_key(validate_job_id(job_id), cursor)
        return self._s3.generate_presigned_url(
            ClientMethod="get_object",
            Params={"Bucket": self._bucket, "Key": key},
            ExpiresIn=expires_in,
        )
