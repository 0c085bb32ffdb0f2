"""Last-resort handler for exceptions the CalendarError handlers did not map."""

import logging
import traceback

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from calsync.middleware.logging import redact_secrets

logger = logging.getLogger(__name__)

INTERNAL_ERROR_MESSAGE = "An internal error occurred. Please try again later."


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Return a generic 500; provider bodies and credentials never reach the client."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as exc:
            logger.error(
                "Unhandled %s on %s %s: %s\n%s",
                type(exc).__name__,
                request.method,
                request.url.path,
                redact_secrets(str(exc)),
                redact_secrets(traceback.format_exc()),
            )
            return JSONResponse(
                status_code=500,
                content={"detail": INTERNAL_ERROR_MESSAGE, "error_type": type(exc).__name__},
            )
