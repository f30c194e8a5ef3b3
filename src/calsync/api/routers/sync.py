"""Sync trigger endpoint.

``POST /api/sync`` runs a full sync for the calling user and returns the
unified timeline with per-provider partial errors.  The window defaults to
the configured lookback/lookahead; ``?start=`` and ``?end=`` override either
bound.  Rate limited per user.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends

from calsync.api.deps import (
    EndQuery,
    Orchestrator,
    StartQuery,
    UserId,
    enforce_sync_rate_limit,
)
from calsync.api.models import ApiMeta, ApiResponse
from calsync.models import SyncResult
from calsync.ratelimit import RateLimitDecision

router = APIRouter(prefix="/api/sync", tags=["sync"])


@router.post("", response_model=ApiResponse[SyncResult])
async def trigger_sync(
    user_id: UserId,
    orchestrator: Orchestrator,
    decision: Annotated[RateLimitDecision, Depends(enforce_sync_rate_limit)],
    start: StartQuery = None,
    end: EndQuery = None,
) -> ApiResponse[SyncResult]:
    window = None
    if start is not None or end is not None:
        window = orchestrator.resolve_window(start, end)
    result = await orchestrator.trigger_sync(user_id, window)
    return ApiResponse[SyncResult](
        data=result,
        meta=ApiMeta(summary=result.summary, rate_limit_remaining=decision.remaining),
    )
