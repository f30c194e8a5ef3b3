"""GitHub provider client producing ``github-derived`` events.

GitHub has no calendar, so repositories play the role of calendars
(``owner/repo``) and milestones with a due date become all-day events on
their due day.  Event ids take the form ``github-<owner/repo>#<number>``.

Classic GitHub OAuth tokens do not expire and carry no refresh token; the
token store records ``token_expiry = None`` for them.  GitHub App user
tokens that do expire are refreshed through the same token endpoint.
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import parse_qs, quote, urlencode, urlparse

import httpx

from calsync.errors import ProviderUnavailableError, ReauthRequiredError, ValidationError
from calsync.models import (
    UNTITLED_EVENT_TITLE,
    EventOrigin,
    EventPage,
    Provider,
    ProviderCalendar,
    TimeWindow,
    TokenGrant,
    UnifiedEvent,
    external_event_id,
)
from calsync.providers.base import (
    ProviderClient,
    TokenSource,
    expiry_from_expires_in,
    safe_error_message,
)

logger = logging.getLogger(__name__)

GITHUB_OAUTH_AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
GITHUB_OAUTH_TOKEN_URL = "https://github.com/login/oauth/access_token"
GITHUB_API_BASE_URL = "https://api.github.com"

GITHUB_SCOPES = ("read:user", "user:email", "repo")
_PER_PAGE = 100
_LINK_NEXT_PATTERN = re.compile(r'<([^>]+)>\s*;\s*rel="next"')


def _next_page_from_link(link_header: str | None) -> str | None:
    """Return the ``page`` number of the ``rel="next"`` link, if any."""
    if not link_header:
        return None
    match = _LINK_NEXT_PATTERN.search(link_header)
    if match is None:
        return None
    pages = parse_qs(urlparse(match.group(1)).query).get("page")
    return pages[0] if pages else None


def _parse_github_datetime(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def milestone_to_unified(payload: dict[str, Any], *, repo: str) -> UnifiedEvent | None:
    """Normalize a milestone payload; ``None`` when it has no due date."""
    due_on = _parse_github_datetime(payload.get("due_on"))
    number = payload.get("number")
    if due_on is None or not isinstance(number, int) or isinstance(number, bool):
        return None

    # GitHub stores only the due day; the timestamp component is not meaningful.
    start = datetime(due_on.year, due_on.month, due_on.day, tzinfo=UTC)
    title = payload.get("title")
    description = payload.get("description")
    external_id = f"{repo}#{number}"
    return UnifiedEvent(
        id=external_event_id(Provider.github, external_id),
        origin=EventOrigin.github_derived,
        title=title if isinstance(title, str) and title.strip() else UNTITLED_EVENT_TITLE,
        description=description if isinstance(description, str) else None,
        start_time=start,
        end_time=start + timedelta(days=1),
        is_all_day=True,
        external_id=external_id,
        calendar_id=repo,
        html_link=payload.get("html_url") if isinstance(payload.get("html_url"), str) else None,
        created_at=_parse_github_datetime(payload.get("created_at")),
        updated_at=_parse_github_datetime(payload.get("updated_at")),
    )


def _repo_access_role(permissions: Any) -> str | None:
    if not isinstance(permissions, dict):
        return None
    for role in ("admin", "maintain", "push", "triage", "pull"):
        if permissions.get(role) is True:
            return role
    return None


class GitHubProvider(ProviderClient):
    """GitHub OAuth app client deriving events from repository milestones."""

    api_base_url = GITHUB_API_BASE_URL

    @property
    def name(self) -> Provider:
        return Provider.github

    @property
    def origin(self) -> EventOrigin:
        return EventOrigin.github_derived

    def _default_headers(self) -> dict[str, str]:
        return {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self._app.client_id,
            "redirect_uri": self._app.redirect_uri,
            "scope": " ".join(GITHUB_SCOPES),
            "state": state,
            "allow_signup": "false",
        }
        return f"{GITHUB_OAUTH_AUTHORIZE_URL}?{urlencode(params)}"

    async def _post_token(self, body: dict[str, str]) -> tuple[httpx.Response, dict[str, Any]]:
        response = await self._send(
            "POST",
            GITHUB_OAUTH_TOKEN_URL,
            json={
                "client_id": self._app.client_id,
                "client_secret": self._app.client_secret,
                **body,
            },
            headers={"Accept": "application/json"},
        )
        self._raise_for_token_status(response)
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderUnavailableError(
                "github", detail="GitHub token endpoint returned invalid JSON"
            ) from exc
        if not isinstance(payload, dict):
            raise ProviderUnavailableError(
                "github", detail="GitHub token endpoint returned an unexpected payload"
            )
        return response, payload

    @staticmethod
    def _grant_from_payload(
        payload: dict[str, Any], *, fallback_refresh_token: str | None
    ) -> TokenGrant:
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise ProviderUnavailableError(
                "github", detail="GitHub token response is missing an access_token"
            )
        refresh_token = payload.get("refresh_token")
        if not isinstance(refresh_token, str) or not refresh_token.strip():
            refresh_token = fallback_refresh_token
        scope = payload.get("scope")
        return TokenGrant(
            access_token=access_token.strip(),
            refresh_token=refresh_token,
            expires_at=expiry_from_expires_in(payload.get("expires_in")),
            scope=scope if isinstance(scope, str) and scope else " ".join(GITHUB_SCOPES),
        )

    async def exchange_code(self, code: str) -> TokenGrant:
        try:
            _, payload = await self._post_token(
                {"code": code, "redirect_uri": self._app.redirect_uri}
            )
        except ReauthRequiredError as exc:
            raise ValidationError(
                "GitHub rejected the authorization code", detail=exc.detail
            ) from exc
        # GitHub reports OAuth errors with HTTP 200 and an ``error`` field.
        if isinstance(payload.get("error"), str):
            raise ValidationError(
                "GitHub rejected the authorization code",
                detail=payload.get("error_description") or payload["error"],
            )
        return self._grant_from_payload(payload, fallback_refresh_token=None)

    async def refresh(self, refresh_token: str) -> TokenGrant:
        _, payload = await self._post_token(
            {"refresh_token": refresh_token, "grant_type": "refresh_token"}
        )
        if isinstance(payload.get("error"), str):
            raise ReauthRequiredError(
                "github",
                detail=f"{payload['error']}: {payload.get('error_description') or ''}",
            )
        return self._grant_from_payload(payload, fallback_refresh_token=refresh_token)

    async def revoke(self, *, access_token: str, refresh_token: str | None = None) -> None:
        response = await self._send(
            "DELETE",
            f"{GITHUB_API_BASE_URL}/applications/{quote(self._app.client_id, safe='')}/token",
            auth=(self._app.client_id, self._app.client_secret),
            json={"access_token": access_token},
            headers=self._default_headers(),
        )
        # 404/422 mean the token is already gone.
        if response.status_code >= 500:
            raise ProviderUnavailableError(
                "github", status_code=response.status_code, detail=safe_error_message(response)
            )

    async def fetch_user_id(self, access_token: str) -> str | None:
        headers = self._default_headers()
        headers["Authorization"] = f"Bearer {access_token}"
        response = await self._send("GET", f"{GITHUB_API_BASE_URL}/user", headers=headers)
        if response.status_code != 200:
            logger.warning("GitHub user lookup failed (status=%d)", response.status_code)
            return None
        try:
            payload = response.json()
        except ValueError:
            return None
        user_id = payload.get("id") if isinstance(payload, dict) else None
        return str(user_id) if user_id is not None else None

    async def list_calendars(self, tokens: TokenSource) -> list[ProviderCalendar]:
        calendars: list[ProviderCalendar] = []
        page: str | None = "1"
        while page is not None:
            payload, response = await self._request_json(
                "GET",
                "/user/repos",
                tokens=tokens,
                params={"per_page": _PER_PAGE, "page": page, "sort": "updated"},
            )
            for repo in payload if isinstance(payload, list) else []:
                if not isinstance(repo, dict):
                    continue
                full_name = repo.get("full_name")
                if not isinstance(full_name, str) or not full_name:
                    continue
                description = repo.get("description")
                calendars.append(
                    ProviderCalendar(
                        id=full_name,
                        name=full_name,
                        description=description if isinstance(description, str) else None,
                        access_role=_repo_access_role(repo.get("permissions")),
                    )
                )
            page = _next_page_from_link(response.headers.get("Link"))
        return calendars

    async def list_events_page(
        self,
        tokens: TokenSource,
        *,
        calendar_id: str,
        window: TimeWindow,
        page_token: str | None = None,
    ) -> EventPage:
        owner, sep, repo = calendar_id.partition("/")
        if not sep or not owner or not repo:
            raise ValidationError(f"GitHub calendar id must be 'owner/repo', got {calendar_id!r}")

        payload, response = await self._request_json(
            "GET",
            f"/repos/{quote(owner, safe='')}/{quote(repo, safe='')}/milestones",
            tokens=tokens,
            params={
                "state": "all",
                "sort": "due_on",
                "per_page": _PER_PAGE,
                "page": page_token or "1",
            },
        )
        if not isinstance(payload, list):
            raise ProviderUnavailableError(
                "github", detail="GitHub milestones response was not a list"
            )

        events: list[UnifiedEvent] = []
        for item in payload:
            if not isinstance(item, dict):
                continue
            event = milestone_to_unified(item, repo=calendar_id)
            # The milestones endpoint has no date filter, so the window is applied here.
            if event is not None and window.overlaps(event.start_time, event.end_time):
                events.append(event)

        return EventPage(
            events=events,
            next_page_token=_next_page_from_link(response.headers.get("Link")),
        )
