"""Calendar subsystem error taxonomy and FastAPI exception handlers."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from calsync.middleware.logging import redact_secrets

logger = logging.getLogger(__name__)

CHECK_CREDENTIALS_MESSAGE = "Failed to discover calendars. Please check your server URL and credentials."


class CalendarError(Exception):
    """Base class for calendar integration failures.

    ``user_message`` is safe to return to clients. ``provider_body`` keeps the
    raw provider response for (redacted) logging only.
    """

    status_code = 500
    user_message = "Calendar operation failed"

    def __init__(self, message: str | None = None, *, provider_body: str | None = None) -> None:
        super().__init__(message or self.user_message)
        self.provider_body = provider_body


class ConfigurationError(CalendarError):
    user_message = "Calendar subsystem is not configured"


class FormatError(CalendarError):
    status_code = 400
    user_message = "Stored credential is malformed"


class AuthenticationError(CalendarError):
    status_code = 400
    user_message = "Stored credential could not be decrypted"


class OAuthExchangeError(CalendarError):
    status_code = 400
    user_message = "Failed to connect calendar account"


class OAuthRefreshError(CalendarError):
    status_code = 401
    user_message = "Calendar authorization was revoked. Please reconnect the integration."


class AuthExpiredError(CalendarError):
    status_code = 401
    user_message = "Calendar authorization expired"


class DiscoveryError(CalendarError):
    status_code = 400
    user_message = CHECK_CREDENTIALS_MESSAGE


class ConflictError(CalendarError):
    status_code = 409
    user_message = "The remote event was modified by someone else"


class ProviderUnavailableError(CalendarError):
    status_code = 502
    user_message = "Calendar provider is temporarily unavailable"


class ProviderRequestError(CalendarError):
    status_code = 400
    user_message = "Calendar provider rejected the request"


class InvalidStateError(CalendarError):
    status_code = 400
    user_message = "Invalid OAuth state"


class WebhookValidationError(CalendarError):
    status_code = 400
    user_message = "Invalid webhook notification"


class IntegrationNotFoundError(CalendarError):
    status_code = 404
    user_message = "Calendar integration not found"


class BookingNotFoundError(CalendarError):
    status_code = 404
    user_message = "Booking not found"


class IntegrationBusyError(CalendarError):
    status_code = 409
    user_message = "Calendar integration is busy, try again shortly"


def register_exception_handlers(app: FastAPI) -> None:
    """Map CalendarError subclasses to JSON responses with safe messages."""

    @app.exception_handler(CalendarError)
    async def calendar_error_handler(request: Request, exc: CalendarError) -> JSONResponse:
        detail = redact_secrets(str(exc))
        if exc.provider_body:
            detail = f"{detail} ({redact_secrets(exc.provider_body)[:500]})"
        logger.warning("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, detail)
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.user_message, "error_type": type(exc).__name__},
        )
