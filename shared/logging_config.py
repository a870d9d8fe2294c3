import logging
import json
import time
import sys
import uuid
from typing import Callable
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp
from datetime import datetime
import traceback

# Sensitive headers to mask
SENSITIVE_HEADERS = {"authorization", "cookie", "x-api-key"}

# Record attributes copied into the log line when a caller passes them via `extra`
EXTRA_FIELDS = (
    "request_id", "user_id", "method", "path", "status_code", "duration_ms",
    "headers", "order_number", "product_id", "error_kind",
)


class JSONFormatter(logging.Formatter):
    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "timestamp": datetime.utcnow().isoformat(),
            "service": self.service_name,
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "module": record.module,
            "func": record.funcName,
            "line": record.lineno,
        }

        for field in EXTRA_FIELDS:
            if hasattr(record, field):
                log_obj[field] = getattr(record, field)

        # Exception Info
        if record.exc_info:
            log_obj["exception"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(log_obj, default=str)


def setup_logging(service_name: str, level: int = logging.INFO):
    logger = logging.getLogger()
    logger.setLevel(level)

    # clear existing handlers
    if logger.handlers:
        logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter(service_name))
    logger.addHandler(handler)

    # motor/pymongo are chatty at INFO
    logging.getLogger("pymongo").setLevel(logging.WARNING)

    return logging.getLogger(service_name)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, service_name: str):
        super().__init__(app)
        self.logger = logging.getLogger(service_name)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Correlation ID
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        start_time = time.time()

        try:
            response = await call_next(request)
        except Exception:
            duration = (time.time() - start_time) * 1000
            self.log_request(request, 500, duration, request_id, exc_info=sys.exc_info())
            raise

        duration = (time.time() - start_time) * 1000
        self.log_request(request, response.status_code, duration, request_id)

        response.headers["X-Request-ID"] = request_id
        return response

    def log_request(self, request: Request, status_code: int, duration: float, request_id: str, exc_info=None):
        headers = {}
        for k, v in request.headers.items():
            if k.lower() not in SENSITIVE_HEADERS:
                headers[k] = v
            else:
                headers[k] = "***"

        # Set by the auth dependency once the bearer token is decoded
        user_id = getattr(request.state, "user_id", None)

        extra = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "duration_ms": round(duration, 2),
            "headers": headers,
            "user_id": user_id
        }

        if status_code >= 500:
            self.logger.error("Request Failed", extra=extra, exc_info=exc_info)
        elif status_code >= 400:
            self.logger.warning("Request Error", extra=extra)
        else:
            self.logger.info("Request Processed", extra=extra)
