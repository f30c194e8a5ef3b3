"""FastAPI dependencies for the calsync API.

Every component a route needs is read from ``request.app.state``; nothing is
a module-level singleton.  ``create_app`` installs the rate limiter and the
OAuth state store; the lifespan (or a test) installs ``app.state.services``.

Provides:
- ``get_user_id``: the authenticated user from the ``X-User-Id`` header set
  by the session layer in front of this service.
- ``get_services`` / ``get_orchestrator`` / ``get_local_store``.
- ``OAuthStateStore``: one-time CSRF state tokens for the OAuth flow.
- ``enforce_sync_rate_limit``: per-user limit on ``POST /api/sync``.
- ``StartQuery`` / ``EndQuery``: optional window bounds shared by the
  timeline and sync endpoints.
"""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Query, Request, Response

from calsync.local_store import LocalEventStore
from calsync.models import Provider
from calsync.ratelimit import RateLimitDecision, RateLimiter
from calsync.services import Services
from calsync.sync import SyncOrchestrator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# OAuth CSRF state
# ---------------------------------------------------------------------------

# State tokens expire after 10 minutes.
_STATE_TTL_SECONDS = 600


@dataclass(frozen=True)
class PendingAuthorization:
    user_id: str
    provider: Provider
    expires_at: float


class OAuthStateStore:
    """In-memory store of pending OAuth ``state`` tokens.

    Each token is bound to the user and provider that started the flow and
    can be consumed exactly once.
    """

    def __init__(
        self,
        ttl_s: float = _STATE_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_s = ttl_s
        self._clock = clock
        self._pending: dict[str, PendingAuthorization] = {}

    def issue(self, user_id: str, provider: Provider) -> str:
        self._evict_expired()
        state = secrets.token_urlsafe(32)
        self._pending[state] = PendingAuthorization(
            user_id=user_id,
            provider=provider,
            expires_at=self._clock() + self._ttl_s,
        )
        return state

    def consume(self, state: str, *, user_id: str, provider: Provider) -> bool:
        """Validate and remove ``state``.  Returns ``False`` if unknown, expired or mismatched."""
        self._evict_expired()
        pending = self._pending.pop(state, None)
        if pending is None:
            return False
        return pending.user_id == user_id and pending.provider == provider

    def __len__(self) -> int:
        return len(self._pending)

    def _evict_expired(self) -> None:
        now = self._clock()
        expired = [key for key, value in self._pending.items() if now >= value.expires_at]
        for key in expired:
            del self._pending[key]


# ---------------------------------------------------------------------------
# Component lookups
# ---------------------------------------------------------------------------


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError("Services not initialized: the application lifespan has not run")
    return services


def get_orchestrator(services: Annotated[Services, Depends(get_services)]) -> SyncOrchestrator:
    return services.orchestrator


def get_local_store(services: Annotated[Services, Depends(get_services)]) -> LocalEventStore:
    return services.local_store


def get_oauth_states(request: Request) -> OAuthStateStore:
    return request.app.state.oauth_states


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_user_id(
    x_user_id: Annotated[str | None, Header(alias="X-User-Id")] = None,
) -> str:
    """Return the authenticated user id or reject the request with 401."""
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return user_id


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------


class RateLimitExceededError(Exception):
    """Raised by :func:`enforce_sync_rate_limit` when a key is over its limit."""

    def __init__(self, key: str, decision: RateLimitDecision, now: float) -> None:
        self.key = key
        self.decision = decision
        self.now = now
        super().__init__(f"Rate limit exceeded for {key!r}")


async def enforce_sync_rate_limit(
    response: Response,
    user_id: Annotated[str, Depends(get_user_id)],
    limiter: Annotated[RateLimiter, Depends(get_rate_limiter)],
) -> RateLimitDecision:
    """Count one sync request for the user; attach X-RateLimit-* headers."""
    key = f"sync:{user_id}"
    decision = await limiter.hit(key)
    now = time.time()
    if not decision.allowed:
        raise RateLimitExceededError(key, decision, now)
    response.headers.update(decision.headers(now))
    return decision


UserId = Annotated[str, Depends(get_user_id)]
Orchestrator = Annotated[SyncOrchestrator, Depends(get_orchestrator)]
LocalStore = Annotated[LocalEventStore, Depends(get_local_store)]

StartQuery = Annotated[datetime | None, Query(description="Window start (ISO 8601, with offset)")]
EndQuery = Annotated[datetime | None, Query(description="Window end (ISO 8601, with offset)")]
