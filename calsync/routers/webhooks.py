"""Inbound provider push notifications."""

import json
import logging
import uuid

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse

from calsync.dependencies import get_current_user_id, get_repository, get_webhook_ingestion
from calsync.errors import IntegrationNotFoundError, WebhookValidationError
from calsync.services.integration_repository import IntegrationRepository
from calsync.services.webhook_service import WebhookIngestion, summarize

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/calendar/webhooks", tags=["calendar-webhooks"])


@router.post("/google")
async def google_notification(
    request: Request,
    ingestion: WebhookIngestion = Depends(get_webhook_ingestion),
):
    outcome = await ingestion.handle_google(request.headers)
    return {"status": outcome.action}


@router.post("/outlook")
async def outlook_notification(
    request: Request,
    validationToken: str | None = None,
    ingestion: WebhookIngestion = Depends(get_webhook_ingestion),
):
    """Graph subscription endpoint.

    Subscription creation sends ``validationToken`` which must be echoed back
    verbatim as text/plain within ten seconds.
    """
    if validationToken is not None:
        return PlainTextResponse(content=validationToken, status_code=status.HTTP_200_OK)

    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise WebhookValidationError("Graph notification body is not JSON") from e

    outcomes = await ingestion.handle_outlook(body)
    return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content={"status": "accepted", **summarize(outcomes)})


@router.post("/caldav/{integration_id}/sync", status_code=status.HTTP_202_ACCEPTED)
async def caldav_sync(
    integration_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    repo: IntegrationRepository = Depends(get_repository),
    ingestion: WebhookIngestion = Depends(get_webhook_ingestion),
):
    if await repo.get_user_integration(user_id, integration_id) is None:
        raise IntegrationNotFoundError(f"Integration {integration_id} not found for user")
    outcome = await ingestion.handle_caldav_sync(integration_id)
    return {"status": outcome.action}
