"""Structured logging middleware with secret redaction."""

import logging
import re
import time
import uuid
from typing import Callable

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
BEARER_PATTERN = re.compile(r"(?i)\b(bearer|basic)\s+[A-Za-z0-9._~+/=-]+")
SECRET_PAIR_PATTERN = re.compile(
    r"(?i)(\"?\b(?:access_token|refresh_token|id_token|client_secret|password|code)\"?\s*[:=]\s*\"?)[^\"&,\s}]+"
)
# iv:tag:ciphertext credential envelopes
ENVELOPE_PATTERN = re.compile(r"\b[0-9a-f]{32}:[0-9a-f]{32}:[0-9a-f]+\b")


def redact_secrets(text: str) -> str:
    """Redact tokens, passwords, credential envelopes and email addresses."""
    text = BEARER_PATTERN.sub(r"\1 [REDACTED]", text)
    text = SECRET_PAIR_PATTERN.sub(r"\1[REDACTED]", text)
    text = ENVELOPE_PATTERN.sub("[REDACTED_ENVELOPE]", text)
    text = EMAIL_PATTERN.sub("[REDACTED_EMAIL]", text)
    return text


def setup_logging(debug: bool = False) -> None:
    """Configure structlog for JSON output."""
    log_level = logging.DEBUG if debug else logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=log_level,
    )
    # httpx logs full request URLs, which carry OAuth codes on callbacks
    logging.getLogger("httpx").setLevel(logging.WARNING)


class LoggingMiddleware(BaseHTTPMiddleware):
    """Log each request with a short request id; query strings are never logged."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())[:8]
        start_time = time.time()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        logger = structlog.get_logger()

        await logger.ainfo(
            "request_started",
            method=request.method,
            path=redact_secrets(str(request.url.path)),
            client=request.client.host if request.client else "unknown",
        )

        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        duration_ms = (time.time() - start_time) * 1000

        await logger.ainfo(
            "request_completed",
            request_id=request_id,
            method=request.method,
            path=redact_secrets(str(request.url.path)),
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2),
        )

        response.headers["X-Request-ID"] = request_id
        return response
