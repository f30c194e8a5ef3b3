"""Google Calendar provider client.

Normalizes Google Calendar v3 payloads into :class:`UnifiedEvent` values.
Events are listed with ``singleEvents=true`` so recurring series arrive as
expanded occurrences.  Cancelled events are skipped; a missing summary
becomes the ``(untitled)`` placeholder; all-day events (``date`` rather than
``dateTime``) are mapped to midnight boundaries in the event timezone.
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime, timedelta, tzinfo
from typing import Any
from urllib.parse import quote, urlencode
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

from calsync.errors import ProviderUnavailableError, ValidationError
from calsync.models import (
    UNTITLED_EVENT_TITLE,
    Attendee,
    EventOrigin,
    EventPage,
    Provider,
    ProviderCalendar,
    ProviderEventCreate,
    ProviderEventUpdate,
    TimeWindow,
    TokenGrant,
    UnifiedEvent,
    external_event_id,
)
from calsync.providers.base import (
    ProviderClient,
    TokenSource,
    expiry_from_expires_in,
    oauth_error_code,
    safe_error_message,
)

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_OAUTH_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"

GOOGLE_SCOPES = (
    "https://www.googleapis.com/auth/calendar.readonly",
    "https://www.googleapis.com/auth/calendar.events",
    "https://www.googleapis.com/auth/userinfo.email",
)
PRIMARY_CALENDAR_ID = "primary"
_MAX_RESULTS_PER_PAGE = 250


# ---------------------------------------------------------------------------
# Payload normalization
# ---------------------------------------------------------------------------


def _google_rfc3339(value: datetime) -> str:
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _parse_google_rfc3339_optional(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return _parse_google_datetime(value)
    except ValueError:
        return None


def _coerce_zoneinfo(timezone: str | None) -> tzinfo:
    if not timezone:
        return UTC
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return UTC


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _parse_google_event_boundary(
    payload: dict[str, Any],
    *,
    fallback_timezone: str | None,
) -> tuple[datetime, bool]:
    """Return ``(instant, is_all_day)`` for a start/end payload."""
    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return _parse_google_datetime(date_time), False

    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        try:
            parsed_date = date.fromisoformat(date_value.strip())
        except ValueError as exc:
            raise ValueError(
                f"Google Calendar returned an invalid date value: {date_value}"
            ) from exc
        timezone = _normalize_optional_text(payload.get("timeZone")) or fallback_timezone
        return (
            datetime(
                parsed_date.year,
                parsed_date.month,
                parsed_date.day,
                tzinfo=_coerce_zoneinfo(timezone),
            ),
            True,
        )

    raise ValueError("Google Calendar event is missing start/end dateTime or date values")


def _extract_google_attendees(payload: Any) -> list[Attendee]:
    if not isinstance(payload, list):
        return []
    attendees: list[Attendee] = []
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        email = _normalize_optional_text(entry.get("email"))
        if email is None:
            continue
        attendees.append(
            Attendee(
                email=email,
                display_name=_normalize_optional_text(entry.get("displayName")),
                response_status=_normalize_optional_text(entry.get("responseStatus")),
            )
        )
    return attendees


def google_event_to_unified(
    payload: dict[str, Any],
    *,
    calendar_id: str,
    fallback_timezone: str | None = None,
) -> UnifiedEvent | None:
    """Normalize one Google event payload; ``None`` for cancelled events."""
    status_raw = payload.get("status")
    if isinstance(status_raw, str) and status_raw.lower() == "cancelled":
        return None

    event_id = _normalize_optional_text(payload.get("id"))
    if event_id is None:
        raise ValueError("Google Calendar event payload is missing a non-empty id")

    start_payload = payload.get("start")
    end_payload = payload.get("end")
    if not isinstance(start_payload, dict) or not isinstance(end_payload, dict):
        raise ValueError(f"Google Calendar event '{event_id}' is missing start/end payloads")

    start_time, start_all_day = _parse_google_event_boundary(
        start_payload, fallback_timezone=fallback_timezone
    )
    end_time, end_all_day = _parse_google_event_boundary(
        end_payload, fallback_timezone=fallback_timezone
    )

    return UnifiedEvent(
        id=external_event_id(Provider.google, event_id),
        origin=EventOrigin.google,
        title=_normalize_optional_text(payload.get("summary")) or UNTITLED_EVENT_TITLE,
        description=_normalize_optional_text(payload.get("description")),
        location=_normalize_optional_text(payload.get("location")),
        start_time=start_time,
        end_time=end_time,
        is_all_day=start_all_day and end_all_day,
        external_id=event_id,
        calendar_id=calendar_id,
        attendees=_extract_google_attendees(payload.get("attendees")),
        html_link=_normalize_optional_text(payload.get("htmlLink")),
        created_at=_parse_google_rfc3339_optional(payload.get("created")),
        updated_at=_parse_google_rfc3339_optional(payload.get("updated")),
    )


def _google_event_boundary(value: datetime, *, all_day: bool) -> dict[str, str]:
    if all_day:
        return {"date": value.date().isoformat()}
    return {"dateTime": value.isoformat()}


def _google_all_day_end(start_time: datetime, end_time: datetime) -> datetime:
    # Google's all-day end date is exclusive and must follow the start date.
    if end_time.date() <= start_time.date():
        return start_time + timedelta(days=1)
    return end_time


def build_google_event_body(data: ProviderEventCreate) -> dict[str, Any]:
    """Translate a create request into a Calendar API v3 event resource."""
    end_time = (
        _google_all_day_end(data.start_time, data.end_time) if data.is_all_day else data.end_time
    )
    body: dict[str, Any] = {
        "summary": data.title,
        "start": _google_event_boundary(data.start_time, all_day=data.is_all_day),
        "end": _google_event_boundary(end_time, all_day=data.is_all_day),
    }
    if data.description is not None:
        body["description"] = data.description
    if data.location is not None:
        body["location"] = data.location
    if data.attendees:
        body["attendees"] = [{"email": email} for email in data.attendees]
    return body


def build_google_event_patch(data: ProviderEventUpdate) -> dict[str, Any]:
    """Translate a partial update into a PATCH body; ``null`` clears a text field."""
    changes = data.changes
    all_day = bool(data.is_all_day)
    body: dict[str, Any] = {}
    if data.title is not None:
        body["summary"] = data.title
    for field_name in ("description", "location"):
        if field_name in changes:
            body[field_name] = _normalize_optional_text(changes[field_name])
    end_time = data.end_time
    if all_day and data.start_time is not None and end_time is not None:
        end_time = _google_all_day_end(data.start_time, end_time)
    if data.start_time is not None:
        body["start"] = _google_event_boundary(data.start_time, all_day=all_day)
    if end_time is not None:
        body["end"] = _google_event_boundary(end_time, all_day=all_day)
    if data.attendees is not None:
        body["attendees"] = [{"email": email} for email in data.attendees]
    return body


def _google_calendar_entry(payload: dict[str, Any]) -> ProviderCalendar | None:
    calendar_id = _normalize_optional_text(payload.get("id"))
    if calendar_id is None:
        return None
    return ProviderCalendar(
        id=calendar_id,
        name=(
            _normalize_optional_text(payload.get("summaryOverride"))
            or _normalize_optional_text(payload.get("summary"))
            or calendar_id
        ),
        description=_normalize_optional_text(payload.get("description")),
        primary=payload.get("primary") is True,
        access_role=_normalize_optional_text(payload.get("accessRole")),
    )


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class GoogleProvider(ProviderClient):
    """Google Calendar client (OAuth 2.0 offline access, Calendar API v3)."""

    api_base_url = GOOGLE_CALENDAR_API_BASE_URL

    @property
    def name(self) -> Provider:
        return Provider.google

    @property
    def origin(self) -> EventOrigin:
        return EventOrigin.google

    @property
    def default_calendar_ids(self) -> list[str]:
        return [PRIMARY_CALENDAR_ID]

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self._app.client_id,
            "redirect_uri": self._app.redirect_uri,
            "response_type": "code",
            "scope": " ".join(GOOGLE_SCOPES),
            # Offline access plus forced consent so a refresh token is issued.
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
            "state": state,
        }
        return f"{GOOGLE_OAUTH_AUTHORIZE_URL}?{urlencode(params)}"

    async def _post_token(self, data: dict[str, str]) -> httpx.Response:
        return await self._send(
            "POST",
            GOOGLE_OAUTH_TOKEN_URL,
            data={
                "client_id": self._app.client_id,
                "client_secret": self._app.client_secret,
                **data,
            },
            headers={"Accept": "application/json"},
        )

    def _grant_from_response(
        self, response: httpx.Response, *, fallback_refresh_token: str | None
    ) -> TokenGrant:
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderUnavailableError(
                "google", detail="Google OAuth token endpoint returned invalid JSON"
            ) from exc
        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise ProviderUnavailableError(
                "google", detail="Google OAuth token response is missing an access_token"
            )
        refresh_token = payload.get("refresh_token")
        if not isinstance(refresh_token, str) or not refresh_token.strip():
            refresh_token = fallback_refresh_token
        scope = payload.get("scope")
        return TokenGrant(
            access_token=access_token.strip(),
            refresh_token=refresh_token,
            expires_at=expiry_from_expires_in(payload.get("expires_in")),
            scope=scope if isinstance(scope, str) else None,
        )

    async def exchange_code(self, code: str) -> TokenGrant:
        response = await self._post_token(
            {
                "code": code,
                "redirect_uri": self._app.redirect_uri,
                "grant_type": "authorization_code",
            }
        )
        if 400 <= response.status_code < 500:
            raise ValidationError(
                "Google rejected the authorization code",
                detail=f"{oauth_error_code(response)}: {safe_error_message(response)}",
            )
        self._raise_for_token_status(response)
        return self._grant_from_response(response, fallback_refresh_token=None)

    async def refresh(self, refresh_token: str) -> TokenGrant:
        response = await self._post_token(
            {"refresh_token": refresh_token, "grant_type": "refresh_token"}
        )
        self._raise_for_token_status(response)
        # Google omits refresh_token on refresh unless it was rotated.
        return self._grant_from_response(response, fallback_refresh_token=refresh_token)

    async def revoke(self, *, access_token: str, refresh_token: str | None = None) -> None:
        # Revoking the refresh token also invalidates its access tokens.
        response = await self._send(
            "POST",
            GOOGLE_OAUTH_REVOKE_URL,
            data={"token": refresh_token or access_token},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        # 400 means the token is already invalid, which is the desired end state.
        if response.status_code >= 500:
            raise ProviderUnavailableError(
                "google", status_code=response.status_code, detail=safe_error_message(response)
            )

    async def fetch_user_id(self, access_token: str) -> str | None:
        response = await self._send(
            "GET",
            GOOGLE_USERINFO_URL,
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
        )
        if response.status_code != 200:
            logger.warning("Google userinfo lookup failed (status=%d)", response.status_code)
            return None
        try:
            payload = response.json()
        except ValueError:
            return None
        user_id = payload.get("id") if isinstance(payload, dict) else None
        return str(user_id) if user_id else None

    async def list_calendars(self, tokens: TokenSource) -> list[ProviderCalendar]:
        calendars: list[ProviderCalendar] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {"maxResults": _MAX_RESULTS_PER_PAGE}
            if page_token:
                params["pageToken"] = page_token
            payload, _ = await self._request_json(
                "GET", "/users/me/calendarList", tokens=tokens, params=params
            )
            items = payload.get("items") if isinstance(payload, dict) else None
            for item in items if isinstance(items, list) else []:
                if isinstance(item, dict) and (entry := _google_calendar_entry(item)):
                    calendars.append(entry)
            page_token = payload.get("nextPageToken") if isinstance(payload, dict) else None
            if not page_token:
                return calendars

    async def list_events_page(
        self,
        tokens: TokenSource,
        *,
        calendar_id: str,
        window: TimeWindow,
        page_token: str | None = None,
    ) -> EventPage:
        params: dict[str, Any] = {
            "singleEvents": "true",
            "showDeleted": "false",
            "orderBy": "startTime",
            "maxResults": _MAX_RESULTS_PER_PAGE,
            "timeMin": _google_rfc3339(window.start),
            "timeMax": _google_rfc3339(window.end),
        }
        if page_token:
            params["pageToken"] = page_token

        payload, _ = await self._request_json(
            "GET",
            f"/calendars/{quote(calendar_id, safe='')}/events",
            tokens=tokens,
            params=params,
        )
        if not isinstance(payload, dict) or not isinstance(payload.get("items", []), list):
            raise ProviderUnavailableError(
                "google", detail="Google Calendar list response missing items array"
            )

        fallback_timezone = _normalize_optional_text(payload.get("timeZone"))
        events: list[UnifiedEvent] = []
        for item in payload.get("items", []):
            if not isinstance(item, dict):
                continue
            try:
                event = google_event_to_unified(
                    item, calendar_id=calendar_id, fallback_timezone=fallback_timezone
                )
            except ValueError as exc:
                # A single malformed event does not invalidate the page.
                logger.warning("Skipping malformed Google event in %s: %s", calendar_id, exc)
                continue
            if event is not None:
                events.append(event)

        next_token = payload.get("nextPageToken")
        return EventPage(
            events=events,
            next_page_token=next_token if isinstance(next_token, str) and next_token else None,
        )

    # -- Event writes --------------------------------------------------------

    async def create_event(self, tokens: TokenSource, *, data: ProviderEventCreate) -> UnifiedEvent:
        path = f"/calendars/{quote(data.calendar_id, safe='')}/events"
        response = await self._request_with_bearer(
            method="POST",
            path_or_url=path,
            tokens=tokens,
            json_body=build_google_event_body(data),
        )
        self._raise_for_event_write_status(response, data.calendar_id, resource="calendar")
        return self._written_event(response, calendar_id=data.calendar_id)

    async def update_event(
        self,
        tokens: TokenSource,
        *,
        event_id: str,
        data: ProviderEventUpdate,
    ) -> UnifiedEvent:
        normalized_event_id = _require_event_id(event_id)
        body = build_google_event_patch(data)
        if not body:
            raise ValidationError("update does not change any field")
        path = (
            f"/calendars/{quote(data.calendar_id, safe='')}"
            f"/events/{quote(normalized_event_id, safe='')}"
        )
        response = await self._request_with_bearer(
            method="PATCH", path_or_url=path, tokens=tokens, json_body=body
        )
        self._raise_for_event_write_status(response, normalized_event_id)
        return self._written_event(response, calendar_id=data.calendar_id)

    async def delete_event(self, tokens: TokenSource, *, calendar_id: str, event_id: str) -> None:
        normalized_event_id = _require_event_id(event_id)
        path = (
            f"/calendars/{quote(calendar_id, safe='')}"
            f"/events/{quote(normalized_event_id, safe='')}"
        )
        response = await self._request_with_bearer(
            method="DELETE", path_or_url=path, tokens=tokens
        )
        if response.status_code in (404, 410):
            logger.info("Google event %s was already deleted", normalized_event_id)
            return
        self._raise_for_event_write_status(response, normalized_event_id)

    def _written_event(self, response: httpx.Response, *, calendar_id: str) -> UnifiedEvent:
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderUnavailableError(
                "google", detail="Google Calendar returned invalid JSON for an event write"
            ) from exc
        if not isinstance(payload, dict):
            raise ProviderUnavailableError(
                "google", detail="Google Calendar returned an unexpected event payload"
            )
        try:
            event = google_event_to_unified(payload, calendar_id=calendar_id)
        except ValueError as exc:
            raise ProviderUnavailableError("google", detail=str(exc)) from exc
        if event is None:
            raise ProviderUnavailableError(
                "google", detail="Google Calendar returned a cancelled event after the write"
            )
        return event


def _require_event_id(event_id: str) -> str:
    normalized = event_id.strip()
    if not normalized:
        raise ValidationError("event id must not be blank")
    return normalized
