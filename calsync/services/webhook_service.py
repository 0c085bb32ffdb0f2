"""Validation and dispatch of Google and Microsoft Graph push notifications."""

import hashlib
import hmac
import logging
import uuid
from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Callable, Mapping

from calsync.config import Settings
from calsync.errors import WebhookValidationError
from calsync.metrics import webhook_notifications_total
from calsync.models.calendar_integration import CalendarProvider
from calsync.services.integration_repository import IntegrationRepository

logger = logging.getLogger(__name__)

GOOGLE_REQUIRED_HEADERS = ("x-goog-channel-id", "x-goog-resource-id", "x-goog-resource-state")
OUTLOOK_CHANGE_TYPES = {"created", "updated", "deleted"}


@dataclass
class GoogleNotification:
    channel_id: str
    resource_id: str
    resource_state: str
    resource_uri: str | None = None
    channel_token: str | None = None
    message_number: str | None = None

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> "GoogleNotification":
        lowered = {k.lower(): v for k, v in headers.items()}
        missing = [h for h in GOOGLE_REQUIRED_HEADERS if not lowered.get(h)]
        if missing:
            raise WebhookValidationError(f"Missing Google channel headers: {', '.join(missing)}")
        return cls(
            channel_id=lowered["x-goog-channel-id"],
            resource_id=lowered["x-goog-resource-id"],
            resource_state=lowered["x-goog-resource-state"],
            resource_uri=lowered.get("x-goog-resource-uri"),
            channel_token=lowered.get("x-goog-channel-token"),
            message_number=lowered.get("x-goog-message-number"),
        )


@dataclass
class WebhookOutcome:
    action: str
    integration_id: uuid.UUID | None = None


def outlook_dedupe_key(notification: dict[str, Any]) -> str:
    resource_data = notification.get("resourceData") or {}
    material = "|".join(
        str(part)
        for part in (
            notification.get("subscriptionId"),
            notification.get("changeType"),
            notification.get("resource"),
            resource_data.get("id"),
            resource_data.get("@odata.etag"),
        )
    )
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


class WebhookIngestion:
    """Turn provider notifications into targeted refreshes.

    ``schedule_refresh`` enqueues a re-fetch for one integration (a Celery
    ``.delay`` in production). Receipts are stored with a unique key so a
    replayed notification does not schedule twice. A receipt whose side effect
    fails is released again, so the provider's retry is processed.
    """

    def __init__(
        self,
        settings: Settings,
        repo: IntegrationRepository,
        schedule_refresh: Callable[[uuid.UUID], Any],
    ) -> None:
        self._settings = settings
        self._repo = repo
        self._schedule_refresh = schedule_refresh

    # --- Google ---

    async def handle_google(self, headers: Mapping[str, str]) -> WebhookOutcome:
        notification = GoogleNotification.from_headers(headers)

        expected = self._settings.google_channel_token.get_secret_value()
        if expected and not hmac.compare_digest(notification.channel_token or "", expected):
            webhook_notifications_total.labels(provider="google", outcome="rejected").inc()
            raise WebhookValidationError("Google channel token mismatch")

        channel = await self._repo.get_channel(notification.channel_id)
        if channel is None:
            logger.info("Google notification for unknown channel %s; ignoring", notification.channel_id)
            webhook_notifications_total.labels(provider="google", outcome="unknown_channel").inc()
            return WebhookOutcome(action="ignored")
        if channel.resource_id and channel.resource_id != notification.resource_id:
            webhook_notifications_total.labels(provider="google", outcome="rejected").inc()
            raise WebhookValidationError("Google resource id does not match channel")

        integration_id = channel.integration_id
        state = notification.resource_state.lower()

        if state == "sync":
            webhook_notifications_total.labels(provider="google", outcome="sync").inc()
            return WebhookOutcome(action="sync", integration_id=integration_id)

        if state not in ("exists", "not_exists"):
            logger.info("Ignoring Google resourceState %r on channel %s", state, notification.channel_id)
            webhook_notifications_total.labels(provider="google", outcome="ignored").inc()
            return WebhookOutcome(action="ignored", integration_id=integration_id)

        dedupe_key = f"{notification.channel_id}:{notification.message_number or notification.resource_id}:{state}"
        if state == "exists":
            action, effect = "scheduled", partial(self._schedule, integration_id)
        else:
            action, effect = "deleted", partial(self._mark_deleted, integration_id, notification.resource_id)

        if not await self._claim_and_run("google", dedupe_key, integration_id, effect):
            webhook_notifications_total.labels(provider="google", outcome="duplicate").inc()
            return WebhookOutcome(action="duplicate", integration_id=integration_id)
        webhook_notifications_total.labels(provider="google", outcome=action).inc()
        return WebhookOutcome(action=action, integration_id=integration_id)

    # --- Microsoft Graph ---

    def validate_outlook_batch(self, body: Any) -> list[dict[str, Any]]:
        """Check the whole batch up front; one bad notification rejects the request."""
        if not isinstance(body, dict) or not isinstance(body.get("value"), list):
            raise WebhookValidationError("Graph notification body must contain a value array")
        expected_state = self._settings.outlook_client_state.get_secret_value()
        notifications = body["value"]
        for item in notifications:
            if not isinstance(item, dict) or not item.get("subscriptionId"):
                raise WebhookValidationError("Graph notification is missing subscriptionId")
            if item.get("changeType") not in OUTLOOK_CHANGE_TYPES:
                raise WebhookValidationError(f"Unsupported Graph changeType {item.get('changeType')!r}")
            if expected_state and not hmac.compare_digest(str(item.get("clientState") or ""), expected_state):
                raise WebhookValidationError("Graph clientState mismatch")
        return notifications

    async def handle_outlook(self, body: Any) -> list[WebhookOutcome]:
        try:
            notifications = self.validate_outlook_batch(body)
        except WebhookValidationError:
            webhook_notifications_total.labels(provider="outlook", outcome="rejected").inc()
            raise
        return [await self._handle_outlook_notification(n) for n in notifications]

    async def _handle_outlook_notification(self, notification: dict[str, Any]) -> WebhookOutcome:
        channel = await self._repo.get_channel(notification["subscriptionId"])
        if channel is None:
            logger.info("Graph notification for unknown subscription; ignoring")
            webhook_notifications_total.labels(provider="outlook", outcome="unknown_channel").inc()
            return WebhookOutcome(action="ignored")

        integration_id = channel.integration_id
        if notification["changeType"] == "deleted":
            event_id = (notification.get("resourceData") or {}).get("id")
            action, effect = "deleted", partial(self._mark_deleted, integration_id, event_id)
        else:
            action, effect = "scheduled", partial(self._schedule, integration_id)

        if not await self._claim_and_run("outlook", outlook_dedupe_key(notification), integration_id, effect):
            webhook_notifications_total.labels(provider="outlook", outcome="duplicate").inc()
            return WebhookOutcome(action="duplicate", integration_id=integration_id)
        webhook_notifications_total.labels(provider="outlook", outcome=action).inc()
        return WebhookOutcome(action=action, integration_id=integration_id)

    # --- CalDAV ---

    async def handle_caldav_sync(self, integration_id: uuid.UUID) -> WebhookOutcome:
        """CalDAV has no push; a manual or cron trigger schedules a full re-fetch."""
        integration = await self._repo.get_integration(integration_id)
        if integration is None or integration.provider != CalendarProvider.CALDAV.value:
            return WebhookOutcome(action="ignored")
        self._schedule_refresh(integration_id)
        webhook_notifications_total.labels(provider="caldav", outcome="scheduled").inc()
        return WebhookOutcome(action="scheduled", integration_id=integration_id)

    async def _claim_and_run(
        self,
        provider: str,
        dedupe_key: str,
        integration_id: uuid.UUID,
        effect: Callable[[], Awaitable[None]],
    ) -> bool:
        """Run ``effect`` once per receipt; returns False for a duplicate."""
        if not await self._repo.record_webhook_receipt(provider, dedupe_key, integration_id):
            return False
        try:
            await effect()
        except Exception:
            logger.warning("Webhook handling failed for %s receipt %s; releasing it", provider, dedupe_key)
            await self._repo.delete_webhook_receipt(provider, dedupe_key)
            raise
        return True

    async def _schedule(self, integration_id: uuid.UUID) -> None:
        self._schedule_refresh(integration_id)

    async def _mark_deleted(self, integration_id: uuid.UUID, external_event_id: str | None) -> None:
        if not external_event_id:
            return
        await self._repo.mark_external_event_deleted(integration_id, external_event_id)
        removed = await self._repo.delete_links_for_external_event(integration_id, external_event_id)
        if removed:
            logger.info("Remote event deleted; dropped %d booking link(s) for integration %s", removed, integration_id)


def summarize(outcomes: list[WebhookOutcome]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for outcome in outcomes:
        counts[outcome.action] = counts.get(outcome.action, 0) + 1
    return counts
