"""Unit tests for the Google Calendar provider client.

Covers:
- Event payload normalization (timed, all-day, cancelled, untitled)
- list-events request parameters and pagination
- 401 forced-refresh retry, 429 backoff, 5xx and transport failures
- Token endpoint error mapping (invalid_grant, rejected code)
- Event create, patch and delete
- Best-effort revoke
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlparse
from zoneinfo import ZoneInfo

import httpx
import pytest

from calsync.errors import (
    NotFoundError,
    ProviderUnavailableError,
    ReauthRequiredError,
    ValidationError,
)
from calsync.models import (
    UNTITLED_EVENT_TITLE,
    EventOrigin,
    ProviderEventCreate,
    ProviderEventUpdate,
    TimeWindow,
)
from calsync.providers.google import (
    GOOGLE_CALENDAR_API_BASE_URL,
    GOOGLE_OAUTH_REVOKE_URL,
    GOOGLE_OAUTH_TOKEN_URL,
    GoogleProvider,
    build_google_event_body,
    google_event_to_unified,
)
from tests.conftest import app_config

pytestmark = pytest.mark.unit

WINDOW = TimeWindow(
    start=datetime(2026, 3, 1, tzinfo=UTC),
    end=datetime(2026, 3, 31, tzinfo=UTC),
)


# ---------------------------------------------------------------------------
# Fixtures and helpers
# ---------------------------------------------------------------------------


def _mock_response(
    *,
    status_code: int,
    url: str = GOOGLE_CALENDAR_API_BASE_URL,
    method: str = "GET",
    json_body: dict | None = None,
    text: str = "",
    headers: dict[str, str] | None = None,
) -> httpx.Response:
    request = httpx.Request(method, url)
    if json_body is not None:
        return httpx.Response(
            status_code=status_code, json=json_body, request=request, headers=headers
        )
    return httpx.Response(status_code=status_code, text=text, request=request, headers=headers)


def _make_provider(*responses: httpx.Response | Exception) -> tuple[GoogleProvider, AsyncMock]:
    mock_client = AsyncMock(spec=httpx.AsyncClient)
    mock_client.request = AsyncMock(side_effect=list(responses))
    return GoogleProvider(app_config(), mock_client), mock_client


class _Tokens:
    """Token source recording whether each call forced a refresh."""

    def __init__(self) -> None:
        self.calls: list[bool] = []

    async def __call__(self, *, force_refresh: bool = False) -> str:
        self.calls.append(force_refresh)
        return "fresh-token" if force_refresh else "stale-token"


def _timed_event(event_id: str = "ev1", **overrides) -> dict:
    payload = {
        "id": event_id,
        "status": "confirmed",
        "summary": "Standup",
        "start": {"dateTime": "2026-03-02T09:00:00-05:00"},
        "end": {"dateTime": "2026-03-02T09:15:00-05:00"},
        "htmlLink": "https://calendar.google.com/event?eid=ev1",
    }
    payload.update(overrides)
    return payload


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


class TestGoogleEventToUnified:
    def test_timed_event(self):
        event = google_event_to_unified(_timed_event(), calendar_id="primary")

        assert event.id == "google-ev1"
        assert event.origin is EventOrigin.google
        assert event.external_id == "ev1"
        assert event.calendar_id == "primary"
        assert event.start_time == datetime(2026, 3, 2, 14, 0, tzinfo=UTC)
        assert event.end_time - event.start_time == timedelta(minutes=15)
        assert event.is_all_day is False

    def test_all_day_event_uses_calendar_timezone(self):
        payload = _timed_event(
            start={"date": "2026-03-05"},
            end={"date": "2026-03-06"},
        )

        event = google_event_to_unified(
            payload, calendar_id="primary", fallback_timezone="Europe/Berlin"
        )

        assert event.is_all_day is True
        assert event.start_time == datetime(2026, 3, 5, tzinfo=ZoneInfo("Europe/Berlin"))
        assert event.end_time == datetime(2026, 3, 6, tzinfo=ZoneInfo("Europe/Berlin"))

    def test_all_day_without_timezone_defaults_to_utc(self):
        payload = _timed_event(start={"date": "2026-03-05"}, end={"date": "2026-03-06"})
        event = google_event_to_unified(payload, calendar_id="primary")
        assert event.start_time == datetime(2026, 3, 5, tzinfo=UTC)

    def test_cancelled_event_skipped(self):
        assert google_event_to_unified(_timed_event(status="cancelled"), calendar_id="x") is None

    @pytest.mark.parametrize("summary", [None, "", "   "])
    def test_missing_summary_becomes_placeholder(self, summary):
        payload = _timed_event()
        if summary is None:
            payload.pop("summary")
        else:
            payload["summary"] = summary
        event = google_event_to_unified(payload, calendar_id="primary")
        assert event.title == UNTITLED_EVENT_TITLE

    def test_attendees_without_email_dropped(self):
        payload = _timed_event(
            attendees=[
                {"email": "bob@example.com", "displayName": "Bob", "responseStatus": "accepted"},
                {"displayName": "No Email"},
                "garbage",
            ]
        )
        event = google_event_to_unified(payload, calendar_id="primary")
        assert [a.email for a in event.attendees] == ["bob@example.com"]
        assert event.attendees[0].response_status == "accepted"

    def test_missing_boundaries_rejected(self):
        with pytest.raises(ValueError, match="start/end"):
            google_event_to_unified({"id": "x", "start": {}}, calendar_id="primary")

    def test_end_before_start_rejected(self):
        payload = _timed_event(
            start={"dateTime": "2026-03-02T10:00:00Z"},
            end={"dateTime": "2026-03-02T09:00:00Z"},
        )
        with pytest.raises(ValueError):
            google_event_to_unified(payload, calendar_id="primary")


# ---------------------------------------------------------------------------
# list_events_page
# ---------------------------------------------------------------------------


class TestListEventsPage:
    async def test_request_parameters(self):
        provider, mock_client = _make_provider(
            _mock_response(status_code=200, json_body={"items": []})
        )

        await provider.list_events_page(_Tokens(), calendar_id="team@group", window=WINDOW)

        call = mock_client.request.await_args
        assert call.args[0] == "GET"
        assert call.args[1] == f"{GOOGLE_CALENDAR_API_BASE_URL}/calendars/team%40group/events"
        params = call.kwargs["params"]
        assert params["singleEvents"] == "true"
        assert params["timeMin"] == "2026-03-01T00:00:00Z"
        assert params["timeMax"] == "2026-03-31T00:00:00Z"
        assert "pageToken" not in params
        assert call.kwargs["headers"]["Authorization"] == "Bearer stale-token"

    async def test_page_token_round_trip(self):
        provider, mock_client = _make_provider(
            _mock_response(
                status_code=200,
                json_body={"items": [_timed_event("ev2")], "nextPageToken": "page-3"},
            )
        )

        page = await provider.list_events_page(
            _Tokens(), calendar_id="primary", window=WINDOW, page_token="page-2"
        )

        assert mock_client.request.await_args.kwargs["params"]["pageToken"] == "page-2"
        assert page.next_page_token == "page-3"
        assert [e.id for e in page.events] == ["google-ev2"]

    async def test_cancelled_and_malformed_items_skipped(self):
        provider, _ = _make_provider(
            _mock_response(
                status_code=200,
                json_body={
                    "timeZone": "UTC",
                    "items": [
                        _timed_event("keep"),
                        _timed_event("gone", status="cancelled"),
                        {"id": "broken", "start": {"dateTime": "nope"}, "end": {}},
                        "not-a-dict",
                    ],
                },
            )
        )

        page = await provider.list_events_page(_Tokens(), calendar_id="primary", window=WINDOW)

        assert [e.external_id for e in page.events] == ["keep"]
        assert page.next_page_token is None

    async def test_unauthorized_forces_one_refresh_and_retries(self):
        provider, mock_client = _make_provider(
            _mock_response(
                status_code=401, json_body={"error": {"message": "Invalid Credentials"}}
            ),
            _mock_response(status_code=200, json_body={"items": [_timed_event()]}),
        )
        tokens = _Tokens()

        page = await provider.list_events_page(tokens, calendar_id="primary", window=WINDOW)

        assert tokens.calls == [False, True]
        retried = mock_client.request.await_args_list[1]
        assert retried.kwargs["headers"]["Authorization"] == "Bearer fresh-token"
        assert len(page.events) == 1

    async def test_unauthorized_after_refresh_requires_reauth(self):
        provider, _ = _make_provider(
            _mock_response(status_code=401, json_body={"error": {"message": "Invalid"}}),
            _mock_response(status_code=401, json_body={"error": {"message": "Invalid"}}),
        )

        with pytest.raises(ReauthRequiredError):
            await provider.list_events_page(_Tokens(), calendar_id="primary", window=WINDOW)

    async def test_server_error_is_provider_unavailable(self):
        provider, _ = _make_provider(_mock_response(status_code=500, text="backend error"))

        with pytest.raises(ProviderUnavailableError) as excinfo:
            await provider.list_events_page(_Tokens(), calendar_id="primary", window=WINDOW)
        assert excinfo.value.status_code == 500

    async def test_rate_limited_request_is_retried(self):
        provider, mock_client = _make_provider(
            _mock_response(status_code=429, text="slow down", headers={"Retry-After": "0"}),
            _mock_response(status_code=200, json_body={"items": []}),
        )

        page = await provider.list_events_page(_Tokens(), calendar_id="primary", window=WINDOW)

        assert page.events == []
        assert mock_client.request.await_count == 2

    async def test_transport_error_is_provider_unavailable(self):
        provider, _ = _make_provider(httpx.ConnectError("connection refused"))

        with pytest.raises(ProviderUnavailableError, match="unavailable"):
            await provider.list_events_page(_Tokens(), calendar_id="primary", window=WINDOW)

    async def test_missing_items_array_is_provider_unavailable(self):
        provider, _ = _make_provider(_mock_response(status_code=200, json_body={"items": "x"}))

        with pytest.raises(ProviderUnavailableError):
            await provider.list_events_page(_Tokens(), calendar_id="primary", window=WINDOW)


class TestListCalendars:
    async def test_follows_pagination(self):
        provider, mock_client = _make_provider(
            _mock_response(
                status_code=200,
                json_body={
                    "items": [{"id": "primary", "summary": "Alice", "primary": True}],
                    "nextPageToken": "next",
                },
            ),
            _mock_response(
                status_code=200,
                json_body={"items": [{"id": "team", "summary": "Team", "summaryOverride": "Crew"}]},
            ),
        )

        calendars = await provider.list_calendars(_Tokens())

        assert [(c.id, c.name, c.primary) for c in calendars] == [
            ("primary", "Alice", True),
            ("team", "Crew", False),
        ]
        assert mock_client.request.await_args_list[1].kwargs["params"]["pageToken"] == "next"


# ---------------------------------------------------------------------------
# Event writes
# ---------------------------------------------------------------------------

EVENTS_URL = f"{GOOGLE_CALENDAR_API_BASE_URL}/calendars/primary/events"


class TestEventWrites:
    async def test_create_posts_event_resource(self):
        provider, mock_client = _make_provider(
            _mock_response(status_code=200, method="POST", json_body=_timed_event("new1"))
        )
        data = ProviderEventCreate(
            title=" Standup ",
            location="Room 4",
            start_time=datetime(2026, 3, 2, 14, 0, tzinfo=UTC),
            end_time=datetime(2026, 3, 2, 14, 15, tzinfo=UTC),
            attendees=["bob@example.com", "bob@example.com"],
        )

        event = await provider.create_event(_Tokens(), data=data)

        call = mock_client.request.await_args
        assert call.args == ("POST", EVENTS_URL)
        assert call.kwargs["json"] == {
            "summary": "Standup",
            "start": {"dateTime": "2026-03-02T14:00:00+00:00"},
            "end": {"dateTime": "2026-03-02T14:15:00+00:00"},
            "location": "Room 4",
            "attendees": [{"email": "bob@example.com"}],
        }
        assert event.id == "google-new1"
        assert event.calendar_id == "primary"

    def test_all_day_body_uses_exclusive_end_date(self):
        data = ProviderEventCreate(
            title="Offsite",
            start_time=datetime(2026, 3, 5, tzinfo=UTC),
            end_time=datetime(2026, 3, 5, tzinfo=UTC),
            is_all_day=True,
        )

        body = build_google_event_body(data)

        assert body["start"] == {"date": "2026-03-05"}
        assert body["end"] == {"date": "2026-03-06"}

    async def test_update_patches_only_changed_fields(self):
        provider, mock_client = _make_provider(
            _mock_response(status_code=200, method="PATCH", json_body=_timed_event("ev 1"))
        )

        await provider.update_event(
            _Tokens(),
            event_id="ev 1",
            data=ProviderEventUpdate(title="Renamed", description=None),
        )

        call = mock_client.request.await_args
        assert call.args == ("PATCH", f"{EVENTS_URL}/ev%201")
        assert call.kwargs["json"] == {"summary": "Renamed", "description": None}

    async def test_update_without_changes_is_rejected_locally(self):
        provider, mock_client = _make_provider()

        with pytest.raises(ValidationError, match="does not change"):
            await provider.update_event(
                _Tokens(), event_id="ev1", data=ProviderEventUpdate(calendar_id="work")
            )
        mock_client.request.assert_not_awaited()

    async def test_update_of_missing_event_is_not_found(self):
        provider, _ = _make_provider(
            _mock_response(status_code=404, json_body={"error": {"message": "Not Found"}})
        )

        with pytest.raises(NotFoundError):
            await provider.update_event(
                _Tokens(), event_id="gone", data=ProviderEventUpdate(title="x")
            )

    async def test_rejected_event_is_validation_error(self):
        provider, _ = _make_provider(
            _mock_response(status_code=400, json_body={"error": {"message": "Invalid start"}})
        )
        data = ProviderEventCreate(
            title="Broken",
            start_time=datetime(2026, 3, 2, 14, 0, tzinfo=UTC),
            end_time=datetime(2026, 3, 2, 15, 0, tzinfo=UTC),
        )

        with pytest.raises(ValidationError) as excinfo:
            await provider.create_event(_Tokens(), data=data)
        assert excinfo.value.detail == "Invalid start"

    async def test_write_retries_once_with_refreshed_token(self):
        provider, mock_client = _make_provider(
            _mock_response(status_code=401, json_body={"error": {"message": "Invalid"}}),
            _mock_response(status_code=204),
        )
        tokens = _Tokens()

        await provider.delete_event(tokens, calendar_id="primary", event_id="ev1")

        assert tokens.calls == [False, True]
        retried = mock_client.request.await_args_list[1]
        assert retried.args == ("DELETE", f"{EVENTS_URL}/ev1")
        assert retried.kwargs["headers"]["Authorization"] == "Bearer fresh-token"
        assert "json" not in retried.kwargs

    @pytest.mark.parametrize("status_code", [404, 410])
    async def test_delete_of_missing_event_succeeds(self, status_code):
        provider, _ = _make_provider(_mock_response(status_code=status_code, text="gone"))

        await provider.delete_event(_Tokens(), calendar_id="primary", event_id="ev1")

    async def test_delete_outage_raises(self):
        provider, _ = _make_provider(_mock_response(status_code=500, text="backend error"))

        with pytest.raises(ProviderUnavailableError):
            await provider.delete_event(_Tokens(), calendar_id="primary", event_id="ev1")

    async def test_blank_event_id_is_rejected(self):
        provider, mock_client = _make_provider()

        with pytest.raises(ValidationError):
            await provider.delete_event(_Tokens(), calendar_id="primary", event_id="  ")
        mock_client.request.assert_not_awaited()


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


class TestOAuth:
    def test_authorization_url_requests_offline_access(self):
        provider, _ = _make_provider()

        url = provider.authorization_url("state-123")
        query = parse_qs(urlparse(url).query)

        assert query["state"] == ["state-123"]
        assert query["access_type"] == ["offline"]
        assert query["prompt"] == ["consent"]
        assert query["client_id"] == ["google-client-id"]
        assert "calendar.readonly" in query["scope"][0]

    async def test_refresh_keeps_refresh_token_when_not_rotated(self):
        provider, mock_client = _make_provider(
            _mock_response(
                status_code=200,
                url=GOOGLE_OAUTH_TOKEN_URL,
                method="POST",
                json_body={"access_token": "new-access", "expires_in": 3599},
            )
        )

        grant = await provider.refresh("refresh-1")

        assert grant.access_token == "new-access"
        assert grant.refresh_token == "refresh-1"
        assert grant.expires_at is not None
        data = mock_client.request.await_args.kwargs["data"]
        assert data["grant_type"] == "refresh_token"
        assert data["client_secret"] == "google-client-secret"

    async def test_invalid_grant_requires_reauth(self):
        provider, _ = _make_provider(
            _mock_response(
                status_code=400,
                url=GOOGLE_OAUTH_TOKEN_URL,
                method="POST",
                json_body={
                    "error": "invalid_grant",
                    "error_description": "Token has been expired or revoked.",
                },
            )
        )

        with pytest.raises(ReauthRequiredError) as excinfo:
            await provider.refresh("refresh-1")
        assert excinfo.value.detail.startswith("invalid_grant")

    async def test_token_endpoint_outage_is_provider_unavailable(self):
        provider, _ = _make_provider(
            _mock_response(status_code=503, url=GOOGLE_OAUTH_TOKEN_URL, method="POST", text="")
        )
        with pytest.raises(ProviderUnavailableError):
            await provider.refresh("refresh-1")

    async def test_exchange_code(self):
        provider, mock_client = _make_provider(
            _mock_response(
                status_code=200,
                url=GOOGLE_OAUTH_TOKEN_URL,
                method="POST",
                json_body={
                    "access_token": "a",
                    "refresh_token": "r",
                    "expires_in": 3600,
                    "scope": "calendar.readonly",
                },
            )
        )

        grant = await provider.exchange_code("auth-code")

        assert (grant.access_token, grant.refresh_token, grant.scope) == (
            "a",
            "r",
            "calendar.readonly",
        )
        assert mock_client.request.await_args.kwargs["data"]["code"] == "auth-code"

    async def test_rejected_code_is_validation_error(self):
        provider, _ = _make_provider(
            _mock_response(
                status_code=400,
                url=GOOGLE_OAUTH_TOKEN_URL,
                method="POST",
                json_body={"error": "invalid_grant", "error_description": "Bad Request"},
            )
        )
        with pytest.raises(ValidationError):
            await provider.exchange_code("reused-code")

    async def test_revoke_prefers_refresh_token(self):
        provider, mock_client = _make_provider(
            _mock_response(status_code=200, url=GOOGLE_OAUTH_REVOKE_URL, method="POST", text="")
        )

        await provider.revoke(access_token="a", refresh_token="r")

        assert mock_client.request.await_args.kwargs["data"] == {"token": "r"}

    async def test_revoke_of_invalid_token_is_not_an_error(self):
        provider, _ = _make_provider(
            _mock_response(
                status_code=400,
                url=GOOGLE_OAUTH_REVOKE_URL,
                method="POST",
                json_body={"error": "invalid_token"},
            )
        )
        await provider.revoke(access_token="a")

    async def test_revoke_outage_raises(self):
        provider, _ = _make_provider(
            _mock_response(status_code=502, url=GOOGLE_OAUTH_REVOKE_URL, method="POST", text="")
        )
        with pytest.raises(ProviderUnavailableError):
            await provider.revoke(access_token="a")

    async def test_fetch_user_id(self):
        provider, _ = _make_provider(
            _mock_response(status_code=200, json_body={"id": "1234", "email": "a@example.com"})
        )
        assert await provider.fetch_user_id("a") == "1234"


class TestLifecycle:
    async def test_shutdown_closes_only_an_owned_client(self):
        shared, mock_client = _make_provider()
        await shared.shutdown()
        mock_client.aclose.assert_not_awaited()

        owned = GoogleProvider(app_config())
        await owned.shutdown()
        assert owned._http_client.is_closed
