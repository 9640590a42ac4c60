"""
Structured JSON logging for the relay.

Every line carries ts, level, name and message. Lines emitted while an HTTP
request is being served also carry request_id; lines emitted while the
queue processor or the correlator is working on a Delivery Record carry
record_id, so one SMS can be followed from intake to confirmation.
"""

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

from sms_relay.metrics import record_http_request


request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
record_id_ctx: ContextVar[Optional[str]] = ContextVar("record_id", default=None)

# Third-party loggers that drown the relay's own lines at DEBUG
NOISY_LOGGERS = ("paho", "aiomqtt", "sqlalchemy.engine")


@contextmanager
def bind_record(record_id: Optional[str]) -> Iterator[None]:
    """Tag every log line inside the block with record_id."""
    token = record_id_ctx.set(record_id)
    try:
        yield
    finally:
        record_id_ctx.reset(token)


class RelayJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter with millisecond UTC timestamps and the bound ids."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("ts"):
            stamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
            log_record["ts"] = stamp.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
        log_record["level"] = record.levelname

        for key, ctx in (("request_id", request_id_ctx), ("record_id", record_id_ctx)):
            if key not in log_record and ctx.get():
                log_record[key] = ctx.get()


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Send all logging, uvicorn's included, to stdout as JSON.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
    """
    root = logging.getLogger()
    root.setLevel(log_level.upper())

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(RelayJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))
    root.handlers = [handler]

    for name in ("uvicorn", "uvicorn.error"):
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.propagate = False

    # Requests are logged by RequestLoggingMiddleware
    logging.getLogger("uvicorn.access").disabled = True

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, root.level))

    return root


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One JSON line and one metrics sample per HTTP request.

    Log keys: request_id, method, path, route, status, latency_ms, plus
    owner_id when the caller sent X-Owner-Id. Metrics are labelled by route
    template so per-SMS paths like /sms/status/{sms_id} stay one series.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            latency_seconds = time.perf_counter() - started

            route = getattr(request.scope.get("route"), "path", request.url.path)
            if route != "/metrics":
                record_http_request(
                    method=request.method,
                    path=route,
                    status=response.status_code,
                    latency_seconds=latency_seconds,
                )

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "route": route,
                "status": response.status_code,
                "latency_ms": round(latency_seconds * 1000, 2),
            }
            owner_id = request.headers.get("X-Owner-Id")
            if owner_id:
                log_data["owner_id"] = owner_id

            if response.status_code >= 500:
                level = logging.ERROR
            elif response.status_code >= 400:
                level = logging.WARNING
            else:
                level = logging.INFO
            logging.getLogger("sms_relay.requests").log(level, "Request completed", extra=log_data)
            return response
        finally:
            request_id_ctx.reset(token)
