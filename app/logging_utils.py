import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Iterator, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from app.metrics import record_http_request


# Set by RequestLoggingMiddleware for the duration of one HTTP request
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Set by the poller for the duration of one poll cycle; copied into
# asyncio.to_thread workers, so store logs carry it too
cycle_id_ctx: ContextVar[Optional[str]] = ContextVar("cycle_id", default=None)

_CONTEXT_FIELDS = (
    ("request_id", request_id_ctx),
    ("cycle_id", cycle_id_ctx),
)

# Libraries that log per D-Bus message or per SQL statement at DEBUG
_NOISY_LOGGERS = ("dbus_fast", "sqlalchemy.engine")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding `ts`, `level` and whichever of request_id/cycle_id is active."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            log_record['ts'] = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        for field, ctx in _CONTEXT_FIELDS:
            if field not in log_record:
                value = ctx.get()
                if value:
                    log_record[field] = value


@contextmanager
def poll_cycle_context() -> Iterator[str]:
    """Tag every log record emitted inside the block with a fresh cycle id."""
    cycle_id = uuid.uuid4().hex[:12]
    token = cycle_id_ctx.set(cycle_id)
    try:
        yield cycle_id
    finally:
        cycle_id_ctx.reset(token)


def setup_logging(log_level: str = "INFO"):
    """
    Send all daemon logs to stdout as one JSON object per line.

    The root logger gets the JSON handler; uvicorn's loggers are pointed at
    the same handler, and its access log is replaced by
    RequestLoggingMiddleware. D-Bus and SQL engine chatter is held at
    WARNING unless LOG_LEVEL asks for DEBUG.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    level = log_level.upper()
    logger = logging.getLogger()
    logger.setLevel(level)
    logger.handlers = []

    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(CustomJsonFormatter('%(ts)s %(level)s %(name)s %(message)s'))
    logger.addHandler(json_handler)

    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers = []
        uvicorn_logger.addHandler(json_handler)
        uvicorn_logger.propagate = False

    logging.getLogger("uvicorn.access").disabled = True

    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.DEBUG if level == "DEBUG" else logging.WARNING)

    return logger


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Log each API request as one JSON line and count it in the HTTP metrics.

    Log keys: ts, level, request_id, method, path, status, latency_ms.
    Scrapes of /metrics are logged but not counted.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            latency_seconds = time.perf_counter() - start_time

            path = request.url.path
            if path != "/metrics":
                record_http_request(
                    method=request.method,
                    path=path,
                    status=response.status_code,
                    latency_seconds=latency_seconds,
                )

            log_data = {
                "method": request.method,
                "path": path,
                "status": response.status_code,
                "latency_ms": round(latency_seconds * 1000, 2),
            }
            logger = logging.getLogger("app.requests")
            if response.status_code >= 500:
                logger.error("Request completed", extra=log_data)
            elif response.status_code >= 400:
                logger.warning("Request completed", extra=log_data)
            elif path == "/metrics":
                logger.debug("Request completed", extra=log_data)
            else:
                logger.info("Request completed", extra=log_data)

            return response
        finally:
            request_id_ctx.reset(token)
