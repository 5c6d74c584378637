"""
exec_api.handler — Execution API Lambda.

Routes (all require an `auth` header, checked before any job logic):
    POST    /api/exec                      submit argv; async-dispatches the job runner
    GET     /api/exec?uid=<id>&cursor=<n>  poll for chunk <n> or the exit status
    OPTIONS /api/exec                      CORS preflight

Poll answers:
    200 {"more-url": <presigned url>}   chunk <n> exists; fetch it, then poll <n + 1>
    200 {"exit": <0|1>}                 job finished and every chunk was delivered
    409 (empty body)                    nothing new yet; poll again later
"""

from __future__ import annotations

import base64
import contextlib
import json
import time
import traceback
from dataclasses import dataclass
from typing import Any, Protocol

import boto3
from aws_lambda_powertools import Logger, Tracer
from aws_lambda_powertools.logging import correlation_paths
from aws_lambda_powertools.utilities.typing import LambdaContext
from rce.auth import CredentialStore, header_value, require_auth
from rce.config import Settings
from rce.exceptions import FatalError, Unauthorized
from rce.logship import LogShipper
from rce.models import (
    CHUNK_URL_TTL_SECONDS,
    ExecJob,
    PollOutcome,
    PollResult,
    PushTargets,
    new_job_id,
    parse_argv,
    validate_job_id,
)
from rce.store import JobLogStore

logger = Logger(service="exec-api")
tracer = Tracer()

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
EXEC_PATH = "/api/exec"
CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, GET, OPTIONS, PUT, DELETE",
    "Access-Control-Allow-Headers": "auth, content-type",
}
_SHIPPED_LOGGERS = ("exec-api", "rce-lib")

# ---------------------------------------------------------------------------
# Global clients — connection reuse across warm starts
# ---------------------------------------------------------------------------
_s3_client = None
_lambda_client = None
_dynamodb_resource = None


def get_s3(region: str):
    global _s3_client
    if _s3_client is None:
        _s3_client = boto3.client("s3", region_name=region)
    return _s3_client


def get_lambda(region: str):
    global _lambda_client
    if _lambda_client is None:
        _lambda_client = boto3.client("lambda", region_name=region)
    return _lambda_client


def get_dynamodb(region: str):
    global _dynamodb_resource
    if _dynamodb_resource is None:
        _dynamodb_resource = boto3.resource("dynamodb", region_name=region)
    return _dynamodb_resource


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class Dispatcher(Protocol):
    def dispatch(self, job: ExecJob) -> None: ...


class LambdaDispatcher:
    """Fire-and-forget dispatch via an Event-type invoke of the job runner Lambda."""

    def __init__(self, function_name: str | None, *, lambda_client: Any) -> None:
        self._function_name = function_name
        self._lambda = lambda_client

    def dispatch(self, job: ExecJob) -> None:
        if not self._function_name:
            raise FatalError("RCE_RUNNER_FUNCTION environment variable not set")
        response = self._lambda.invoke(
            FunctionName=self._function_name,
            InvocationType="Event",
            LogType="None",
            Payload=json.dumps(job.to_event()).encode("utf-8"),
        )
        status = response.get("StatusCode")
        if status != 202:
            raise FatalError(f"async dispatch of job {job.job_id} returned status {status}")


@dataclass(frozen=True)
class ExecApiDependencies:
    settings: Settings
    store: JobLogStore
    credentials: CredentialStore
    dispatcher: Dispatcher


def _dependencies() -> ExecApiDependencies:
    settings = Settings.from_env()
    return ExecApiDependencies(
        settings=settings,
        store=JobLogStore(settings.require_bucket(), s3_client=get_s3(settings.region)),
        credentials=CredentialStore(
            settings.auth_table, dynamodb_resource=get_dynamodb(settings.region)
        ),
        dispatcher=LambdaDispatcher(
            settings.runner_function, lambda_client=get_lambda(settings.region)
        ),
    )


# ---------------------------------------------------------------------------
# Poll handler
# ---------------------------------------------------------------------------


def poll_job(
    store: JobLogStore,
    job_id: str,
    cursor: int,
    *,
    url_ttl: int = CHUNK_URL_TTL_SECONDS,
) -> PollResult:
    """Answer "what is new for job_id at cursor" without ever truncating the log.

    The order of checks matters. The final chunk flush and the exit write can
    become visible in either order, so an exit hit is never trusted until the
    chunk at this cursor has missed a second time, after the exit was seen.
    """
    if store.has_chunk(job_id, cursor):
        return PollResult.more(store.chunk_url(job_id, cursor, expires_in=url_ttl))

    if not store.has_exit(job_id):
        return PollResult.not_ready()

    # Exit is visible; chunk `cursor` may have landed alongside it.
    if store.has_chunk(job_id, cursor):
        return PollResult.more(store.chunk_url(job_id, cursor, expires_in=url_ttl))

    return PollResult.terminal(store.get_exit(job_id))


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------


def _response(status_code: int, body: dict[str, Any] | None) -> dict[str, Any]:
    return {
        "statusCode": status_code,
        "headers": {"Content-Type": "application/json", **CORS_HEADERS},
        "body": "" if body is None else json.dumps(body),
    }


def error_response(
    status_code: int,
    code: str,
    message: str,
    request_id: str,
    *,
    trace: str | None = None,
) -> dict[str, Any]:
    """Return a structured error response; 500s carry the traceback for diagnosis."""
    error: dict[str, Any] = {"code": code, "message": message, "requestId": request_id}
    if trace is not None:
        error["trace"] = trace
    return _response(status_code, {"error": error})


def _require_json_body(event: dict[str, Any]) -> dict[str, Any]:
    raw_body = event.get("body")
    if not raw_body:
        raise ValueError("Request body is required")
    if event.get("isBase64Encoded"):
        raw_body = base64.b64decode(raw_body).decode("utf-8")
    try:
        body = json.loads(raw_body)
    except json.JSONDecodeError as exc:
        raise ValueError("Malformed JSON body") from exc
    if not isinstance(body, dict):
        raise ValueError("JSON body must be an object")
    return body


def _parse_cursor(value: Any) -> int:
    try:
        cursor = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"cursor must be a non-negative integer, got {value!r}") from exc
    if cursor < 0:
        raise ValueError(f"cursor must be a non-negative integer, got {value!r}")
    return cursor


def _http_method(event: dict[str, Any]) -> str:
    method = event.get("httpMethod")
    if not method:
        method = event.get("requestContext", {}).get("http", {}).get("method")
    return str(method or "").upper()


def _request_path(event: dict[str, Any]) -> str:
    path = event.get("path")
    if not path:
        path = event.get("requestContext", {}).get("http", {}).get("path")
    return str(path or "").rstrip("/")


# ---------------------------------------------------------------------------
# Route handlers
# ---------------------------------------------------------------------------


def _handle_submit(
    event: dict[str, Any], deps: ExecApiDependencies, *, auth_name: str
) -> dict[str, Any]:
    body = _require_json_body(event)
    job = ExecJob(
        job_id=new_job_id(),
        argv=parse_argv(body.get("argv")),
        push_targets=PushTargets.from_dict(body.get("push-urls")),
        auth_name=auth_name,
    )
    logger.append_keys(job_id=job.job_id)
    deps.dispatcher.dispatch(job)
    logger.info(
        "Job dispatched",
        extra={"argv0": job.argv[0], "argc": len(job.argv), "push_mode": bool(job.push_targets)},
    )
    return _response(200, {"uid": job.job_id})


def _handle_poll(event: dict[str, Any], deps: ExecApiDependencies) -> dict[str, Any]:
    params = event.get("queryStringParameters") or {}
    job_id = validate_job_id(params.get("uid"))
    cursor = _parse_cursor(params.get("cursor"))
    logger.append_keys(job_id=job_id)

    result = poll_job(
        deps.store, job_id, cursor, url_ttl=deps.settings.chunk_url_ttl_seconds
    )
    if result.outcome == PollOutcome.NOT_READY:
        return _response(409, None)
    if result.outcome == PollOutcome.TERMINAL:
        logger.info("Job terminal", extra={"cursor": cursor, "exit_status": result.exit_status})
    return _response(200, result.to_body())


def _route(event: dict[str, Any], deps: ExecApiDependencies) -> dict[str, Any]:
    method = _http_method(event)
    path = _request_path(event)

    if not path.startswith("/api/"):
        return error_response(404, "NOT_FOUND", "Not found", _request_id(event))
    if method == "OPTIONS":
        return _response(200, None)

    auth_name = require_auth(deps.credentials, header_value(event.get("headers"), "auth"))

    if path == EXEC_PATH:
        if method == "POST":
            return _handle_submit(event, deps, auth_name=auth_name)
        if method == "GET":
            return _handle_poll(event, deps)
        return error_response(
            405, "METHOD_NOT_ALLOWED", "Unsupported method", _request_id(event)
        )
    return error_response(404, "NOT_FOUND", "Not found", _request_id(event))


def _request_id(event: dict[str, Any]) -> str:
    return str(event.get("requestContext", {}).get("requestId", "unknown"))


def _log_scope(deps: ExecApiDependencies) -> contextlib.AbstractContextManager[Any]:
    if not deps.settings.ship_logs:
        return contextlib.nullcontext()
    return LogShipper(deps.store, loggers=_SHIPPED_LOGGERS)


def _internal_error(exc: BaseException, request_id: str) -> dict[str, Any]:
    return error_response(
        500, "INTERNAL_ERROR", str(exc), request_id, trace=traceback.format_exc()
    )


def _handle(event: dict[str, Any], deps: ExecApiDependencies, request_id: str) -> dict[str, Any]:
    """Single top-level boundary: every failure below becomes a structured response."""
    try:
        return _route(event, deps)
    except Unauthorized as exc:
        logger.warning("Unauthorized request", extra={"reason": str(exc)})
        return error_response(401, "UNAUTHORIZED", str(exc), request_id)
    except ValueError as exc:
        return error_response(400, "BAD_REQUEST", str(exc), request_id)
    except Exception as exc:
        logger.exception("Unhandled exec API error")
        return _internal_error(exc, request_id)


@logger.inject_lambda_context(
    correlation_id_path=correlation_paths.API_GATEWAY_REST, clear_state=True
)
@tracer.capture_lambda_handler
def lambda_handler(event: dict[str, Any], context: LambdaContext) -> dict[str, Any]:
    """Exec API entry point."""
    start = time.monotonic()
    request_id = context.aws_request_id

    try:
        deps = _dependencies()
    except Exception as exc:
        logger.exception("Failed to initialise exec API dependencies")
        return _internal_error(exc, request_id)

    with _log_scope(deps):
        response = _handle(event, deps, request_id)
        logger.info(
            "Request complete",
            extra={
                "status_code": response["statusCode"],
                "method": _http_method(event),
                "path": _request_path(event),
                "duration_ms": int((time.monotonic() - start) * 1000),
            },
        )
    return response
