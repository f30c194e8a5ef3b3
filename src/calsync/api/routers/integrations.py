"""Provider connection endpoints.

Provides:

- ``GET /api/integrations``: connection and sync status of every provider.
- ``GET /api/integrations/{provider}/start``: begin the OAuth flow.
- ``GET /api/integrations/{provider}/callback``: finish the OAuth flow.
- ``GET|PUT /api/integrations/{provider}/calendars``: list and select the
  provider calendars (Google) or repositories (GitHub) to sync.
- ``POST /api/integrations/{provider}/events`` and
  ``PATCH|DELETE /api/integrations/{provider}/events/{event_id}``: write
  through to the provider calendar (Google only; GitHub is read-only).
- ``DELETE /api/integrations/{provider}``: revoke and forget the connection.

The OAuth ``state`` parameter is a one-time CSRF token bound to the user and
provider that started the flow.  Tokens themselves never appear in any
response body or log line.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from fastapi.responses import RedirectResponse

from calsync.api.deps import OAuthStateStore, Orchestrator, UserId, get_oauth_states
from calsync.api.models import ApiMeta, ApiResponse, AuthorizationStart, CalendarSelection
from calsync.models import (
    Provider,
    ProviderCalendar,
    ProviderEventCreate,
    ProviderEventUpdate,
    ProviderStatus,
    UnifiedEvent,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/integrations", tags=["integrations"])

OAuthStates = Annotated[OAuthStateStore, Depends(get_oauth_states)]


@router.get("", response_model=ApiResponse[list[ProviderStatus]])
async def list_integrations(
    user_id: UserId,
    orchestrator: Orchestrator,
) -> ApiResponse[list[ProviderStatus]]:
    statuses = await orchestrator.provider_status(user_id)
    return ApiResponse[list[ProviderStatus]](data=statuses)


# ---------------------------------------------------------------------------
# OAuth flow
# ---------------------------------------------------------------------------


@router.get("/{provider}/start", response_model=None)
async def start_authorization(
    provider: Provider,
    user_id: UserId,
    orchestrator: Orchestrator,
    states: OAuthStates,
    redirect: Annotated[bool, Query(description="Redirect to the consent screen")] = True,
) -> RedirectResponse | ApiResponse[AuthorizationStart]:
    """Begin the OAuth flow.

    By default responds with a 302 to the provider consent screen.  Pass
    ``?redirect=false`` to receive the URL as JSON instead.
    """
    state = states.issue(user_id, provider)
    authorization_url = orchestrator.authorization_url(provider, state)
    logger.info("OAuth flow started: user_id=%r provider=%s", user_id, provider.value)
    if redirect:
        return RedirectResponse(url=authorization_url, status_code=302)
    return ApiResponse[AuthorizationStart](
        data=AuthorizationStart(authorization_url=authorization_url, state=state)
    )


@router.get("/{provider}/callback", response_model=ApiResponse[ProviderStatus])
async def complete_authorization(
    provider: Provider,
    user_id: UserId,
    orchestrator: Orchestrator,
    states: OAuthStates,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    error_description: str | None = None,
) -> ApiResponse[ProviderStatus]:
    """Validate ``state``, exchange ``code`` and persist the Integration."""
    if error:
        logger.warning(
            "OAuth callback error: provider=%s error=%s description=%s",
            provider.value,
            error,
            error_description,
        )
        raise HTTPException(
            status_code=400,
            detail=f"{provider.value} authorization was not granted: {error}",
        )
    if not code or not state:
        raise HTTPException(status_code=400, detail="Missing code or state parameter")
    if not states.consume(state, user_id=user_id, provider=provider):
        logger.warning(
            "OAuth callback with invalid state: user_id=%r provider=%s", user_id, provider.value
        )
        raise HTTPException(status_code=400, detail="Invalid or expired OAuth state")

    status = await orchestrator.complete_authorization(user_id, provider, code)
    return ApiResponse[ProviderStatus](data=status)


# ---------------------------------------------------------------------------
# Calendar selection
# ---------------------------------------------------------------------------


@router.get("/{provider}/calendars", response_model=ApiResponse[list[ProviderCalendar]])
async def list_provider_calendars(
    provider: Provider,
    user_id: UserId,
    orchestrator: Orchestrator,
) -> ApiResponse[list[ProviderCalendar]]:
    calendars = await orchestrator.list_calendars(user_id, provider)
    return ApiResponse[list[ProviderCalendar]](
        data=calendars, meta=ApiMeta(total=len(calendars))
    )


@router.put("/{provider}/calendars", response_model=ApiResponse[CalendarSelection])
async def select_provider_calendars(
    provider: Provider,
    body: CalendarSelection,
    user_id: UserId,
    orchestrator: Orchestrator,
) -> ApiResponse[CalendarSelection]:
    await orchestrator.select_calendars(user_id, provider, body.calendar_ids)
    return ApiResponse[CalendarSelection](data=body)


# ---------------------------------------------------------------------------
# Provider event writes
# ---------------------------------------------------------------------------


@router.post("/{provider}/events", status_code=201, response_model=ApiResponse[UnifiedEvent])
async def create_provider_event(
    provider: Provider,
    body: ProviderEventCreate,
    user_id: UserId,
    orchestrator: Orchestrator,
) -> ApiResponse[UnifiedEvent]:
    event = await orchestrator.create_provider_event(user_id, provider, body)
    return ApiResponse[UnifiedEvent](data=event)


@router.patch("/{provider}/events/{event_id}", response_model=ApiResponse[UnifiedEvent])
async def update_provider_event(
    provider: Provider,
    event_id: str,
    body: ProviderEventUpdate,
    user_id: UserId,
    orchestrator: Orchestrator,
) -> ApiResponse[UnifiedEvent]:
    event = await orchestrator.update_provider_event(user_id, provider, event_id, body)
    return ApiResponse[UnifiedEvent](data=event)


@router.delete("/{provider}/events/{event_id}", status_code=204)
async def delete_provider_event(
    provider: Provider,
    event_id: str,
    user_id: UserId,
    orchestrator: Orchestrator,
    calendar_id: Annotated[str, Query(min_length=1)] = "primary",
) -> Response:
    await orchestrator.delete_provider_event(
        user_id, provider, event_id, calendar_id=calendar_id
    )
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Disconnect
# ---------------------------------------------------------------------------


@router.delete("/{provider}", status_code=204)
async def disconnect_integration(
    provider: Provider,
    user_id: UserId,
    orchestrator: Orchestrator,
) -> Response:
    await orchestrator.disconnect_provider(user_id, provider)
    return Response(status_code=204)
