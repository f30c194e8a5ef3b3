"""Token refresher: hands out valid access tokens, refreshing single-flight.

At most one refresh is in flight per ``(user_id, provider)``.  Concurrent
callers await the same shared task and observe the same token or the same
error.  Callers await the task through :func:`asyncio.shield`, so a
cancelled caller never cancels a refresh other callers depend on.

Outcomes of a refresh:

- success: the new access token and expiry are persisted (the refresh token
  is kept unless the provider rotated it);
- grant rejected (``invalid_grant`` and other 4xx): the Integration is flagged
  ``needs_reauth`` and ``ReauthRequiredError`` is raised;
- network failure, timeout, 5xx: ``ProviderUnavailableError``; the record is
  left untouched so the next sync can retry.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta

from calsync.core.telemetry import sync_span
from calsync.errors import NotConnectedError, ProviderUnavailableError, ReauthRequiredError
from calsync.models import Integration, Provider
from calsync.providers.base import ProviderClient, TokenSource
from calsync.token_store import TokenStore

logger = logging.getLogger(__name__)

DEFAULT_SAFETY_MARGIN_SECONDS = 60.0
DEFAULT_REFRESH_TIMEOUT_SECONDS = 15.0


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TokenRefresher:
    """Returns valid access tokens, refreshing through the provider when needed."""

    def __init__(
        self,
        store: TokenStore,
        providers: Mapping[Provider, ProviderClient],
        *,
        safety_margin_s: float = DEFAULT_SAFETY_MARGIN_SECONDS,
        timeout_s: float = DEFAULT_REFRESH_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._providers = providers
        self._safety_margin = timedelta(seconds=safety_margin_s)
        self._timeout_s = timeout_s
        self._clock = clock
        self._inflight: dict[tuple[str, Provider], asyncio.Task[str]] = {}

    def is_fresh(self, integration: Integration) -> bool:
        """True when the stored token can be used without a refresh."""
        if integration.token_expiry is None:
            return True
        return self._clock() < integration.token_expiry - self._safety_margin

    async def ensure_valid_token(
        self,
        user_id: str,
        provider: Provider | str,
        *,
        force_refresh: bool = False,
    ) -> str:
        """Return a usable access token for ``(user_id, provider)``.

        Raises
        ------
        NotConnectedError
            No Integration exists.
        ReauthRequiredError
            The Integration is flagged, has no refresh token, or the grant
            was rejected.
        ProviderUnavailableError
            The refresh endpoint could not be reached or failed transiently.
        """
        provider = Provider(provider)
        integration = await self._store.get(user_id, provider)
        if integration is None:
            raise NotConnectedError(provider.value)
        if integration.needs_reauth:
            raise ReauthRequiredError(provider.value, detail="integration flagged for reconnect")
        if not force_refresh and self.is_fresh(integration):
            return integration.access_token

        key = (user_id, provider)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(
                self._refresh(user_id, provider, integration.access_token),
                name=f"calsync-refresh-{provider.value}",
            )
            self._inflight[key] = task
            task.add_done_callback(lambda done, key=key: self._on_refresh_done(key, done))
        else:
            logger.debug("Joining in-flight %s refresh for user_id=%r", provider.value, user_id)
        return await asyncio.shield(task)

    def token_source(self, user_id: str, provider: Provider | str) -> TokenSource:
        """Bind a :class:`TokenSource` for one user and provider.

        The first token obtained is reused for later non-forced calls, so a
        multi-page fetch reads the store once.
        """
        provider = Provider(provider)
        cached: list[str] = []

        async def _source(*, force_refresh: bool = False) -> str:
            if cached and not force_refresh:
                return cached[0]
            token = await self.ensure_valid_token(user_id, provider, force_refresh=force_refresh)
            cached[:] = [token]
            return token

        return _source

    def _on_refresh_done(self, key: tuple[str, Provider], task: asyncio.Task[str]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Mark the exception retrieved when every awaiting caller was cancelled.
        if not task.cancelled():
            task.exception()

    async def _refresh(self, user_id: str, provider: Provider, seen_token: str) -> str:
        integration = await self._store.get(user_id, provider)
        if integration is None:
            raise NotConnectedError(provider.value)
        if integration.needs_reauth:
            raise ReauthRequiredError(provider.value, detail="integration flagged for reconnect")
        if integration.access_token != seen_token and self.is_fresh(integration):
            # Another refresh landed after this caller read the record.
            logger.debug("Reusing %s token refreshed for user_id=%r", provider.value, user_id)
            return integration.access_token
        if not integration.refresh_token:
            await self._store.mark_needs_reauth(user_id, provider)
            raise ReauthRequiredError(provider.value, detail="no refresh token on record")

        client = self._providers[provider]
        with sync_span("refresh", provider=provider.value):
            try:
                async with asyncio.timeout(self._timeout_s):
                    grant = await client.refresh(integration.refresh_token)
            except TimeoutError as exc:
                raise ProviderUnavailableError(
                    provider.value, detail="token refresh timed out"
                ) from exc
            except ReauthRequiredError as exc:
                logger.warning(
                    "%s refresh rejected for user_id=%r: %s", provider.value, user_id, exc.detail
                )
                await self._store.mark_needs_reauth(user_id, provider)
                raise

        updated = integration.model_copy(
            update={
                "access_token": grant.access_token,
                "refresh_token": grant.refresh_token or integration.refresh_token,
                "token_expiry": grant.expires_at,
                "scope": grant.scope or integration.scope,
                "needs_reauth": False,
            }
        )
        await self._store.put(user_id, provider, updated)
        logger.info(
            "Refreshed %s access token for user_id=%r (expires %s)",
            provider.value,
            user_id,
            grant.expires_at.isoformat() if grant.expires_at else "never",
        )
        return updated.access_token
