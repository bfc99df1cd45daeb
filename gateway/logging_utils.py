import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from gateway.metrics import record_http_request


# Fields stamped on every record emitted while a request is in flight
# (request_id, and user_id once the delivery has been attributed)
log_context: ContextVar[Optional[dict]] = ContextVar("log_context", default=None)


def bind_log_context(**fields) -> None:
    """Add fields to the current request's log context; no-op outside a request."""
    current = log_context.get()
    if current is not None:
        current.update({k: v for k, v in fields.items() if v is not None})


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding an ISO-8601 `ts`, `level` and the request log context."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            log_record['ts'] = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        for key, value in (log_context.get() or {}).items():
            log_record.setdefault(key, value)


def setup_logging(log_level: str = "INFO"):
    """
    Route the root and uvicorn loggers through one JSON handler on stdout.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter('%(ts)s %(level)s %(name)s %(message)s'))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in ("uvicorn", "uvicorn.error"):
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.propagate = False

    # One summary line per request comes from RequestLoggingMiddleware instead
    logging.getLogger("uvicorn.access").disabled = True
    # httpx logs every model request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return root


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Assign a request id, time the request and emit one JSON summary line.

    Summary keys: request_id, method, path, status, latency_ms. Webhook
    requests add result, user_id, msg_type and event (see log_webhook_data).
    """

    summary_logger = logging.getLogger("gateway.requests")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        token = log_context.set({"request_id": request_id})
        started = time.perf_counter()

        try:
            response = await call_next(request)
            latency_seconds = time.perf_counter() - started
            response.headers["X-Request-ID"] = request_id

            # /metrics scrapes are not counted
            if request.url.path != "/metrics":
                record_http_request(request.method, request.url.path, response.status_code, latency_seconds)

            summary = {
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(latency_seconds * 1000, 2),
            }
            summary.update(getattr(request.state, "webhook_log_data", {}))
            self.summary_logger.log(_level_for(response.status_code), "Request completed", extra=summary)
            return response
        finally:
            log_context.reset(token)


def log_webhook_data(
    request: Request,
    result: str,
    user_id: Optional[str] = None,
    msg_type: Optional[str] = None,
    event: Optional[str] = None,
) -> None:
    """
    Attach the webhook dispatch result to the request so the middleware's
    summary line carries it. Unknown fields (rejected or undecodable
    deliveries) are left out.
    """
    fields = {"result": result, "user_id": user_id, "msg_type": msg_type, "event": event}
    request.state.webhook_log_data = {k: v for k, v in fields.items() if v is not None}
