"""Unified timeline and local event endpoints.

Provides:

- ``GET /api/events``: merged local + provider timeline for a window
  (no ``last_sync_at`` bookkeeping; use ``POST /api/sync`` for that).
- ``GET /api/events/search`` and ``GET /api/events/statistics`` over local
  events.
- CRUD on local events at ``/api/events`` and ``/api/events/{id}``.

Provider events are read-only: mutations only ever touch the local store.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Query, Response

from calsync.api.deps import (
    EndQuery,
    LocalStore,
    Orchestrator,
    StartQuery,
    UserId,
)
from calsync.api.models import ApiMeta, ApiResponse
from calsync.models import (
    EventStatistics,
    LocalEventCreate,
    LocalEventUpdate,
    UnifiedEvent,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/events", tags=["events"])


@router.get("", response_model=ApiResponse[list[UnifiedEvent]])
async def list_unified_events(
    user_id: UserId,
    orchestrator: Orchestrator,
    start: StartQuery = None,
    end: EndQuery = None,
) -> ApiResponse[list[UnifiedEvent]]:
    window = orchestrator.resolve_window(start, end)
    events = await orchestrator.get_unified_events(user_id, window)
    return ApiResponse[list[UnifiedEvent]](
        data=events,
        meta=ApiMeta(
            start=window.start.isoformat(),
            end=window.end.isoformat(),
            total=len(events),
        ),
    )


@router.get("/search", response_model=ApiResponse[list[UnifiedEvent]])
async def search_local_events(
    user_id: UserId,
    orchestrator: Orchestrator,
    store: LocalStore,
    q: Annotated[str, Query(min_length=1, max_length=200)],
    start: StartQuery = None,
    end: EndQuery = None,
) -> ApiResponse[list[UnifiedEvent]]:
    window = None
    if start is not None or end is not None:
        window = orchestrator.resolve_window(start, end)
    events = await store.search(user_id, q, window)
    return ApiResponse[list[UnifiedEvent]](data=events, meta=ApiMeta(total=len(events)))


@router.get("/statistics", response_model=ApiResponse[EventStatistics])
async def local_event_statistics(
    user_id: UserId,
    orchestrator: Orchestrator,
    store: LocalStore,
    start: StartQuery = None,
    end: EndQuery = None,
) -> ApiResponse[EventStatistics]:
    window = orchestrator.resolve_window(start, end)
    stats = await store.statistics(user_id, window)
    return ApiResponse[EventStatistics](data=stats)


# ---------------------------------------------------------------------------
# Local event CRUD
# ---------------------------------------------------------------------------


@router.get("/{event_id}", response_model=ApiResponse[UnifiedEvent])
async def get_local_event(
    event_id: str,
    user_id: UserId,
    store: LocalStore,
) -> ApiResponse[UnifiedEvent]:
    return ApiResponse[UnifiedEvent](data=await store.get(user_id, event_id))


@router.post("", response_model=ApiResponse[UnifiedEvent], status_code=201)
async def create_local_event(
    body: LocalEventCreate,
    user_id: UserId,
    store: LocalStore,
) -> ApiResponse[UnifiedEvent]:
    event = await store.create(user_id, body)
    return ApiResponse[UnifiedEvent](data=event)


@router.patch("/{event_id}", response_model=ApiResponse[UnifiedEvent])
async def update_local_event(
    event_id: str,
    body: LocalEventUpdate,
    user_id: UserId,
    store: LocalStore,
) -> ApiResponse[UnifiedEvent]:
    event = await store.update(user_id, event_id, body)
    return ApiResponse[UnifiedEvent](data=event)


@router.delete("/{event_id}", status_code=204)
async def delete_local_event(
    event_id: str,
    user_id: UserId,
    store: LocalStore,
) -> Response:
    await store.delete(user_id, event_id)
    return Response(status_code=204)
