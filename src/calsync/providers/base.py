"""Provider client abstraction and shared authenticated-request helpers.

A provider client owns everything that speaks a provider's wire format:
the OAuth endpoints (authorize, exchange, refresh, revoke), the user-info
lookup, the list-calendars / list-events endpoints, and (for providers that
support it) event create, update and delete.  Untyped JSON never leaves a
provider module; callers see ``TokenGrant``, ``ProviderCalendar``,
``EventPage`` and ``UnifiedEvent`` values and the closed error taxonomy.

Data calls take a :class:`TokenSource` rather than a raw token so that a
401 from a data endpoint can force exactly one refresh and retry.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import httpx

from calsync.config import ProviderAppConfig
from calsync.errors import (
    NotFoundError,
    ProviderUnavailableError,
    ReauthRequiredError,
    ValidationError,
    redact_token_material,
)
from calsync.models import (
    EventOrigin,
    EventPage,
    Provider,
    ProviderCalendar,
    ProviderEventCreate,
    ProviderEventUpdate,
    TimeWindow,
    TokenGrant,
    UnifiedEvent,
)

logger = logging.getLogger(__name__)

RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0
DEFAULT_HTTP_TIMEOUT_SECONDS = 15.0


class TokenSource(Protocol):
    """Async callable yielding a valid access token, optionally forcing a refresh."""

    async def __call__(self, *, force_refresh: bool = False) -> str: ...


def coerce_expires_in_seconds(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float) and value > 0:
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or None
    return None


def expiry_from_expires_in(value: Any, *, now: datetime | None = None) -> datetime | None:
    """Convert a token endpoint ``expires_in`` into an absolute expiry."""
    seconds = coerce_expires_in_seconds(value)
    if seconds is None:
        return None
    return (now or datetime.now(UTC)) + timedelta(seconds=seconds)


def safe_error_message(response: httpx.Response) -> str:
    """Extract a short, redacted diagnostic from a provider error response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return redact_token_material(" ".join(message.split()))[:200]
        description = payload.get("error_description")
        if isinstance(description, str) and description.strip():
            return redact_token_material(" ".join(description.split()))[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            return redact_token_material(" ".join(error_payload.split()))[:200]
        message = payload.get("message")
        if isinstance(message, str) and message.strip():
            return redact_token_material(" ".join(message.split()))[:200]

    raw_text = response.text.strip()
    if raw_text:
        return redact_token_material(" ".join(raw_text.split()))[:200]
    return "Request failed without an error payload"


def oauth_error_code(response: httpx.Response) -> str | None:
    """Return the OAuth ``error`` code (e.g. ``invalid_grant``) if present."""
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, str) and error.strip():
            return error.strip()
    return None


class ProviderClient(abc.ABC):
    """Abstract provider client used by the refresher, fetcher and orchestrator."""

    #: Base URL prepended to relative data-endpoint paths.
    api_base_url: str = ""

    def __init__(
        self,
        app: ProviderAppConfig,
        http_client: httpx.AsyncClient | None = None,
        *,
        timeout_s: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
    ) -> None:
        self._app = app
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout_s)

    @property
    @abc.abstractmethod
    def name(self) -> Provider:
        """Provider identifier."""
        ...

    @property
    @abc.abstractmethod
    def origin(self) -> EventOrigin:
        """Origin tag carried by every event this provider produces."""
        ...

    @property
    def configured(self) -> bool:
        """True when the OAuth application credentials are present."""
        return self._app.configured

    @property
    def default_calendar_ids(self) -> list[str]:
        """Calendars fetched when the user has not selected any."""
        return []

    # -- OAuth -------------------------------------------------------------

    @abc.abstractmethod
    def authorization_url(self, state: str) -> str:
        """Return the provider consent-screen URL for ``state``."""
        ...

    @abc.abstractmethod
    async def exchange_code(self, code: str) -> TokenGrant:
        """Exchange an authorization code for tokens."""
        ...

    @abc.abstractmethod
    async def refresh(self, refresh_token: str) -> TokenGrant:
        """Exchange a refresh token for a new access token.

        Raises ``ReauthRequiredError`` when the grant is rejected and
        ``ProviderUnavailableError`` for transient failures.
        """
        ...

    @abc.abstractmethod
    async def revoke(self, *, access_token: str, refresh_token: str | None = None) -> None:
        """Revoke the grant at the provider; already-invalid tokens are not an error."""
        ...

    @abc.abstractmethod
    async def fetch_user_id(self, access_token: str) -> str | None:
        """Return the provider-side account id for ``access_token``."""
        ...

    # -- Data --------------------------------------------------------------

    @abc.abstractmethod
    async def list_calendars(self, tokens: TokenSource) -> list[ProviderCalendar]:
        ...

    @abc.abstractmethod
    async def list_events_page(
        self,
        tokens: TokenSource,
        *,
        calendar_id: str,
        window: TimeWindow,
        page_token: str | None = None,
    ) -> EventPage:
        """Return one page of normalized events overlapping ``window``."""
        ...

    # -- Event writes --------------------------------------------------------
    # Providers are read-only unless they override these.

    async def create_event(self, tokens: TokenSource, *, data: ProviderEventCreate) -> UnifiedEvent:
        """Insert an event into ``data.calendar_id`` and return it normalized."""
        raise ValidationError(f"{self.name.value} events are read-only")

    async def update_event(
        self,
        tokens: TokenSource,
        *,
        event_id: str,
        data: ProviderEventUpdate,
    ) -> UnifiedEvent:
        """Patch the fields set on ``data`` and return the updated event."""
        raise ValidationError(f"{self.name.value} events are read-only")

    async def delete_event(self, tokens: TokenSource, *, calendar_id: str, event_id: str) -> None:
        """Delete an event; an already-deleted event is not an error."""
        raise ValidationError(f"{self.name.value} events are read-only")

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    # -- Shared request helpers -------------------------------------------

    def _default_headers(self) -> dict[str, str]:
        return {"Accept": "application/json"}

    async def _send(
        self,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send one request, mapping transport failures to ProviderUnavailable."""
        try:
            return await self._http_client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise ProviderUnavailableError(
                self.name.value, detail=f"request timed out: {type(exc).__name__}"
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderUnavailableError(
                self.name.value, detail=f"request failed: {exc}"
            ) from exc

    async def _request_once(
        self,
        *,
        method: str,
        url: str,
        tokens: TokenSource,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await tokens(force_refresh=force_refresh)
        headers = self._default_headers()
        headers["Authorization"] = f"Bearer {access_token}"
        extra: dict[str, Any] = {}
        if json_body is not None:
            extra["json"] = json_body
        return await self._send(method, url, params=params, headers=headers, **extra)

    async def _request_with_bearer(
        self,
        *,
        method: str,
        path_or_url: str,
        tokens: TokenSource,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Authenticated request with one forced refresh on 401 and rate-limit retries."""
        if path_or_url.startswith("https://"):
            url = path_or_url
        else:
            normalized_path = path_or_url if path_or_url.startswith("/") else f"/{path_or_url}"
            url = f"{self.api_base_url}{normalized_path}"

        response = await self._request_once(
            method=method,
            url=url,
            tokens=tokens,
            params=params,
            json_body=json_body,
            force_refresh=False,
        )

        if response.status_code == 401:
            logger.info("%s rejected access token; forcing one refresh", self.name.value)
            response = await self._request_once(
                method=method,
                url=url,
                tokens=tokens,
                params=params,
                json_body=json_body,
                force_refresh=True,
            )

        # Honour Retry-After on 429, exponential backoff otherwise.
        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "%s API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                self.name.value,
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._request_once(
                method=method,
                url=url,
                tokens=tokens,
                params=params,
                json_body=json_body,
                force_refresh=False,
            )
            retry += 1

        return response

    async def _request_json(
        self,
        method: str,
        path_or_url: str,
        *,
        tokens: TokenSource,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> tuple[Any, httpx.Response]:
        response = await self._request_with_bearer(
            method=method,
            path_or_url=path_or_url,
            tokens=tokens,
            params=params,
            json_body=json_body,
        )
        self._raise_for_data_status(response)
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderUnavailableError(
                self.name.value, detail="provider returned invalid JSON"
            ) from exc
        return payload, response

    def _raise_for_event_write_status(
        self,
        response: httpx.Response,
        identifier: str,
        *,
        resource: str = "event",
    ) -> None:
        """Like :meth:`_raise_for_data_status`, with event-level 4xx mapped to the caller."""
        status = response.status_code
        if status in (404, 410):
            raise NotFoundError(resource, identifier)
        if status == 400:
            raise ValidationError(
                f"{self.name.value} rejected the event", detail=safe_error_message(response)
            )
        self._raise_for_data_status(response)

    def _raise_for_data_status(self, response: httpx.Response) -> None:
        """Map a data-endpoint status code onto the error taxonomy."""
        status = response.status_code
        if 200 <= status < 300:
            return
        detail = safe_error_message(response)
        if status in (401, 403):
            # Still rejected after a forced refresh, or missing scope.
            raise ReauthRequiredError(self.name.value, detail=detail)
        raise ProviderUnavailableError(self.name.value, status_code=status, detail=detail)

    def _raise_for_token_status(self, response: httpx.Response) -> None:
        """Map a token-endpoint status code onto the error taxonomy."""
        status = response.status_code
        if 200 <= status < 300:
            return
        detail = safe_error_message(response)
        if 400 <= status < 500 and status != 429:
            error_code = oauth_error_code(response)
            raise ReauthRequiredError(
                self.name.value,
                detail=f"{error_code}: {detail}" if error_code else detail,
            )
        raise ProviderUnavailableError(self.name.value, status_code=status, detail=detail)
