"""Shared OAuth2 client behaviour: state round trip, token endpoint calls, REST error mapping."""

import base64
import binascii
import json
import logging
import uuid
from abc import abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator

import httpx

from calsync.config import Settings
from calsync.errors import (
    AuthExpiredError,
    ConflictError,
    InvalidStateError,
    OAuthExchangeError,
    OAuthRefreshError,
    ProviderRequestError,
    ProviderUnavailableError,
)
from calsync.metrics import provider_calls_total, token_refresh_total
from calsync.models.calendar_integration import CalendarProvider
from calsync.services.calendar_backend import CalendarBackend, CalendarInfo, ProviderProfile, TokenSet

logger = logging.getLogger(__name__)


@dataclass
class OAuthState:
    """Opaque ``state`` payload carried through the provider redirect."""

    user_id: uuid.UUID
    integration_name: str
    provider: str | None = None


def encode_state(state: OAuthState) -> str:
    payload: dict[str, Any] = {"userId": str(state.user_id), "integrationName": state.integration_name}
    if state.provider is not None:
        payload["provider"] = state.provider
    return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


def decode_state(raw: str) -> OAuthState:
    """Parse a returned ``state``; anything but base64 JSON with the required fields is rejected."""
    try:
        data = json.loads(base64.b64decode(raw, validate=True).decode("utf-8"))
    except (binascii.Error, ValueError) as e:
        raise InvalidStateError("State is not base64-encoded JSON") from e

    if not isinstance(data, dict):
        raise InvalidStateError("State payload is not an object")
    user_id = data.get("userId")
    name = data.get("integrationName")
    provider = data.get("provider")
    if not isinstance(user_id, str) or not isinstance(name, str) or not name.strip():
        raise InvalidStateError("State is missing userId or integrationName")
    if provider is not None and not isinstance(provider, str):
        raise InvalidStateError("State provider must be a string")
    try:
        parsed_user_id = uuid.UUID(user_id)
    except ValueError as e:
        raise InvalidStateError("State userId is not a UUID") from e
    return OAuthState(user_id=parsed_user_id, integration_name=name, provider=provider)


def _oauth_error_code(resp: httpx.Response) -> str | None:
    """The RFC 6749 ``error`` field of a token endpoint response, if any."""
    try:
        body = resp.json()
    except ValueError:
        return None
    error = body.get("error") if isinstance(body, dict) else None
    return error if isinstance(error, str) else None


class OAuthProviderClient(CalendarBackend):
    """Base for Google, Outlook and Zoom clients.

    Every API call takes the access token explicitly. An ``http_client`` may be
    injected (tests pass one backed by ``httpx.MockTransport``); otherwise a
    short-lived client with the configured timeout is opened per call.
    """

    provider: CalendarProvider
    token_url: str
    default_integration_name: str

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._timeout = settings.provider_timeout_seconds
        self._http = http_client

    @property
    def provider_label(self) -> str:
        return self.provider.value.lower()

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http is not None:
            yield self._http
            return
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            yield client

    # --- Authorization ---

    @abstractmethod
    def build_authorization_url(self, state: str) -> str:
        ...

    @abstractmethod
    def _token_request(self, grant: dict[str, str]) -> tuple[dict[str, str], httpx.BasicAuth | None]:
        """Return the form body and optional client auth for a token endpoint call."""
        ...

    async def exchange_code(self, code: str) -> TokenSet:
        """Exchange a single-use authorization code. Never retried."""
        data, auth = self._token_request({"grant_type": "authorization_code", "code": code})
        try:
            async with self._client() as client:
                resp = await client.post(self.token_url, data=data, auth=auth)
        except httpx.HTTPError as e:
            provider_calls_total.labels(provider=self.provider_label, outcome="unavailable").inc()
            raise ProviderUnavailableError(f"{self.provider.value} token endpoint unreachable") from e

        if not resp.is_success:
            provider_calls_total.labels(provider=self.provider_label, outcome="exchange_failed").inc()
            raise OAuthExchangeError(
                f"{self.provider.value} rejected authorization code (HTTP {resp.status_code})",
                provider_body=resp.text,
            )
        provider_calls_total.labels(provider=self.provider_label, outcome="ok").inc()
        return self._parse_tokens(resp.json())

    async def refresh_access_token(self, refresh_token: str) -> TokenSet:
        """Refresh an access token.

        Only an ``invalid_grant`` answer (HTTP 400/401) means the refresh token is
        invalid or revoked and raises ``OAuthRefreshError``, which deactivates the
        integration. Network failures, 429 and 5xx raise ``ProviderUnavailableError``
        so a later pass can try again; any other 4xx, such as ``invalid_client``,
        raises ``ProviderRequestError``.
        """
        data, auth = self._token_request({"grant_type": "refresh_token", "refresh_token": refresh_token})
        try:
            async with self._client() as client:
                resp = await client.post(self.token_url, data=data, auth=auth)
        except httpx.HTTPError as e:
            token_refresh_total.labels(provider=self.provider_label, outcome="unavailable").inc()
            raise ProviderUnavailableError(f"{self.provider.value} token endpoint unreachable") from e

        if resp.status_code == 429 or resp.status_code >= 500:
            token_refresh_total.labels(provider=self.provider_label, outcome="unavailable").inc()
            raise ProviderUnavailableError(f"{self.provider.value} token endpoint returned {resp.status_code}")
        if not resp.is_success:
            if resp.status_code in (400, 401) and _oauth_error_code(resp) == "invalid_grant":
                token_refresh_total.labels(provider=self.provider_label, outcome="revoked").inc()
                raise OAuthRefreshError(
                    f"{self.provider.value} refresh token rejected (HTTP {resp.status_code})",
                    provider_body=resp.text,
                )
            token_refresh_total.labels(provider=self.provider_label, outcome="rejected").inc()
            raise ProviderRequestError(
                f"{self.provider.value} token endpoint rejected refresh (HTTP {resp.status_code})",
                provider_body=resp.text,
            )
        token_refresh_total.labels(provider=self.provider_label, outcome="ok").inc()
        tokens = self._parse_tokens(resp.json())
        # Providers that do not rotate refresh tokens omit them on refresh
        if tokens.refresh_token is None:
            tokens.refresh_token = refresh_token
        return tokens

    @staticmethod
    def _parse_tokens(body: dict[str, Any]) -> TokenSet:
        return TokenSet(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token"),
            expires_in=body.get("expires_in"),
            scope=body.get("scope"),
        )

    # --- Profile / calendars ---

    @abstractmethod
    async def fetch_profile(self, access_token: str) -> ProviderProfile:
        ...

    @abstractmethod
    async def list_calendars(self, access_token: str) -> list[CalendarInfo]:
        ...

    # --- REST helper ---

    async def _request(
        self,
        method: str,
        url: str,
        access_token: str,
        *,
        json_body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        allow_not_found: bool = False,
    ) -> httpx.Response:
        """Issue an authenticated call and map failures onto the error taxonomy."""
        request_headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
        if headers:
            request_headers.update(headers)
        try:
            async with self._client() as client:
                resp = await client.request(method, url, json=json_body, params=params, headers=request_headers)
        except httpx.HTTPError as e:
            provider_calls_total.labels(provider=self.provider_label, outcome="unavailable").inc()
            raise ProviderUnavailableError(f"{self.provider.value} {method} failed: {type(e).__name__}") from e

        self._raise_for_status(resp.status_code, resp.text, method, allow_not_found=allow_not_found)
        return resp

    def _raise_for_status(self, status: int, body: str, method: str, *, allow_not_found: bool = False) -> None:
        if status < 400 or (allow_not_found and status in (404, 410)):
            provider_calls_total.labels(provider=self.provider_label, outcome="ok").inc()
            return
        if status in (401, 403):
            outcome, exc = "auth_expired", AuthExpiredError
        elif status == 412:
            outcome, exc = "conflict", ConflictError
        elif status >= 500 or status == 429:
            outcome, exc = "unavailable", ProviderUnavailableError
        else:
            outcome, exc = "rejected", ProviderRequestError
        provider_calls_total.labels(provider=self.provider_label, outcome=outcome).inc()
        raise exc(f"{self.provider.value} {method} returned HTTP {status}", provider_body=body)
