"""Sync orchestrator: the top-level use-case of the synchronization layer.

One ``sync`` call moves through the phases::

    idle -> refreshing -> fetching -> merging -> persisting -> done
                                  \\-> failed   (local store failure only)

Connected providers are refreshed and fetched concurrently.  A taxonomy
error for one provider becomes a :class:`PartialError`; it never aborts the
other providers or the local timeline.  Providers without an Integration are
skipped silently.

``last_sync_at`` is written once, after merging, for every provider that
finished without error, in a single transaction shielded from cancellation.
A sync cancelled before that point writes nothing.

The orchestrator also hosts the connect/disconnect lifecycle of an
Integration: authorization URL, code exchange, calendar selection and
best-effort revoke on disconnect.  Writes to a provider calendar (create,
update, delete) go through the same token refresher; unlike a sync they are
not downgraded, so their errors reach the caller.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, datetime, timedelta
from typing import TypeVar

import pydantic

from calsync.config import SyncConfig
from calsync.core.logging import user_context
from calsync.core.telemetry import sync_span
from calsync.errors import (
    CalendarSyncError,
    ErrorKind,
    NotConnectedError,
    ProviderUnavailableError,
    ReauthRequiredError,
    ValidationError,
)
from calsync.fetcher import FetchResult, ProviderEventFetcher, partial_error_from
from calsync.local_store import LocalEventStore
from calsync.models import (
    Integration,
    PartialError,
    Provider,
    ProviderCalendar,
    ProviderEventCreate,
    ProviderEventUpdate,
    ProviderStatus,
    SyncPhase,
    SyncResult,
    TimeWindow,
    UnifiedEvent,
)
from calsync.providers.base import ProviderClient, TokenSource
from calsync.refresher import TokenRefresher
from calsync.token_store import TokenStore
from calsync.unifier import merge

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _provider_error(fetch: FetchResult) -> PartialError:
    """Fold the per-calendar errors of one provider into a single entry."""
    calendar_errors = [error for error in fetch.errors if error.calendar_id is not None]
    listing_failed = len(calendar_errors) < len(fetch.errors)
    kinds = [error.kind for error in fetch.errors]
    reauth = ErrorKind.reauth_required.value
    kind = reauth if reauth in kinds else kinds[0]

    parts: list[str] = []
    if calendar_errors:
        parts.append(f"{len(calendar_errors)} of {fetch.calendars_selected} calendars failed")
    if listing_failed:
        parts.append("calendar listing failed")
    return PartialError(
        provider=fetch.provider.value,
        kind=kind,
        detail="; ".join(parts),
        calendar_errors=calendar_errors,
    )


def _external_id(provider: Provider, event_id: str) -> str:
    """Accept either a timeline id (``google-abc123``) or the bare provider id."""
    return event_id.removeprefix(f"{provider.value}-")


class SyncOrchestrator:
    """Coordinates refresher, fetcher, local store and unifier for one user at a time."""

    def __init__(
        self,
        store: TokenStore,
        local_store: LocalEventStore,
        refresher: TokenRefresher,
        fetcher: ProviderEventFetcher,
        providers: Mapping[Provider, ProviderClient],
        *,
        config: SyncConfig | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._local = local_store
        self._refresher = refresher
        self._fetcher = fetcher
        self._providers = providers
        self._config = config or SyncConfig()
        self._clock = clock

    def default_window(self, now: datetime | None = None) -> TimeWindow:
        return TimeWindow.around(
            now or self._clock(),
            lookback_days=self._config.lookback_days,
            lookahead_days=self._config.lookahead_days,
        )

    def resolve_window(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> TimeWindow:
        """Build a window, filling missing bounds from the default window."""
        default = self.default_window()
        try:
            return TimeWindow(start=start or default.start, end=end or default.end)
        except pydantic.ValidationError as exc:
            messages = "; ".join(error["msg"] for error in exc.errors())
            raise ValidationError(f"Invalid time window: {messages}") from exc

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync(self, user_id: str, window: TimeWindow | None = None) -> SyncResult:
        """Run a full sync and record ``last_sync_at`` for clean providers."""
        started_at = self._clock()
        with user_context(user_id), sync_span("sync"):
            result = await self._collect(user_id, window, started_at)

            result.phase = SyncPhase.persisting
            if result.providers_synced:
                await asyncio.shield(
                    self._store.record_sync(user_id, result.providers_synced, started_at)
                )

            result.phase = SyncPhase.done
            logger.info(
                "Sync complete for user_id=%r: %s (%d events, %d partial errors)",
                user_id,
                result.summary,
                len(result.unified_events),
                len(result.partial_errors),
            )
            return result

    async def trigger_sync(self, user_id: str, window: TimeWindow | None = None) -> SyncResult:
        """Inbound entry point: sync over ``window``, or the default window."""
        return await self.sync(user_id, window)

    async def get_unified_events(
        self,
        user_id: str,
        window: TimeWindow | None = None,
    ) -> list[UnifiedEvent]:
        """Return the merged timeline without recording a sync."""
        with user_context(user_id):
            result = await self._collect(user_id, window, self._clock())
        return result.unified_events

    async def _collect(
        self,
        user_id: str,
        window: TimeWindow | None,
        started_at: datetime,
    ) -> SyncResult:
        window = window or self.default_window(started_at)
        result = SyncResult(phase=SyncPhase.idle, started_at=started_at)

        providers = [
            provider
            for provider in await self._store.connected_providers(user_id)
            if provider in self._providers
        ]
        result.providers_total = len(providers)

        result.phase = SyncPhase.refreshing
        ready = await self._refresh_all(user_id, providers, result)

        result.phase = SyncPhase.fetching
        fetched = await self._fetch_all(user_id, ready, window, result)
        try:
            local_events = await self._local.list_in_range(user_id, window)
        except Exception:
            result.phase = SyncPhase.failed
            logger.exception("Local event store failed during sync for user_id=%r", user_id)
            raise

        result.phase = SyncPhase.merging
        result.unified_events = merge(
            local_events,
            {fetch.provider.value: fetch.events for fetch in fetched},
        )
        result.stats.calendars_found = sum(fetch.calendars_found for fetch in fetched)
        result.stats.calendars_selected = sum(fetch.calendars_selected for fetch in fetched)
        result.stats.events_fetched = sum(len(fetch.events) for fetch in fetched)
        result.providers_synced = [fetch.provider.value for fetch in fetched if fetch.ok]
        return result

    async def _refresh_all(
        self,
        user_id: str,
        providers: list[Provider],
        result: SyncResult,
    ) -> list[Provider]:
        outcomes = await asyncio.gather(
            *(self._refresher.ensure_valid_token(user_id, p) for p in providers),
            return_exceptions=True,
        )
        ready: list[Provider] = []
        for provider, outcome in zip(providers, outcomes, strict=True):
            if not isinstance(outcome, BaseException):
                ready.append(provider)
                continue
            error = self._partial_error_for(provider, outcome, stage="refresh")
            if error is not None:
                result.partial_errors.append(error)
        return ready

    async def _fetch_all(
        self,
        user_id: str,
        providers: list[Provider],
        window: TimeWindow,
        result: SyncResult,
    ) -> list[FetchResult]:
        outcomes = await asyncio.gather(
            *(self._fetcher.fetch_events(user_id, p, window) for p in providers),
            return_exceptions=True,
        )
        fetched: list[FetchResult] = []
        for provider, outcome in zip(providers, outcomes, strict=True):
            if isinstance(outcome, FetchResult):
                if outcome.errors:
                    result.partial_errors.append(_provider_error(outcome))
                fetched.append(outcome)
                continue
            error = self._partial_error_for(provider, outcome, stage="fetch")
            if error is not None:
                result.partial_errors.append(error)
        return fetched

    def _partial_error_for(
        self,
        provider: Provider,
        outcome: BaseException,
        *,
        stage: str,
    ) -> PartialError | None:
        """Downgrade a per-provider failure; ``None`` means skip silently."""
        if not isinstance(outcome, Exception):
            # CancelledError and friends are never downgraded.
            raise outcome
        if isinstance(outcome, NotConnectedError):
            # Disconnected between listing and refresh.
            return None
        if isinstance(outcome, CalendarSyncError):
            logger.warning(
                "%s %s failed: %s (%s)",
                provider.value,
                stage,
                outcome.kind.value,
                outcome.detail or outcome.message,
            )
            return partial_error_from(outcome, provider)
        logger.error(
            "Unexpected %s failure for %s", stage, provider.value, exc_info=outcome
        )
        return partial_error_from(
            ProviderUnavailableError(provider.value, detail=f"unexpected {type(outcome).__name__}"),
            provider,
        )

    # ------------------------------------------------------------------
    # Provider event writes
    # ------------------------------------------------------------------

    async def create_provider_event(
        self,
        user_id: str,
        provider: Provider | str,
        data: ProviderEventCreate,
    ) -> UnifiedEvent:
        client = self._client(provider)
        with user_context(user_id), sync_span("write", provider=client.name.value):
            event = await self._write(
                client, client.create_event(self._tokens(user_id, client), data=data)
            )
        logger.info("Created %s event %s for user_id=%r", client.name.value, event.id, user_id)
        return event

    async def update_provider_event(
        self,
        user_id: str,
        provider: Provider | str,
        event_id: str,
        data: ProviderEventUpdate,
    ) -> UnifiedEvent:
        client = self._client(provider)
        with user_context(user_id), sync_span("write", provider=client.name.value):
            event = await self._write(
                client,
                client.update_event(
                    self._tokens(user_id, client),
                    event_id=_external_id(client.name, event_id),
                    data=data,
                ),
            )
        logger.info("Updated %s event %s for user_id=%r", client.name.value, event.id, user_id)
        return event

    async def delete_provider_event(
        self,
        user_id: str,
        provider: Provider | str,
        event_id: str,
        *,
        calendar_id: str = "primary",
    ) -> None:
        client = self._client(provider)
        with user_context(user_id), sync_span("write", provider=client.name.value):
            await self._write(
                client,
                client.delete_event(
                    self._tokens(user_id, client),
                    calendar_id=calendar_id,
                    event_id=_external_id(client.name, event_id),
                ),
            )
        logger.info("Deleted %s event %s for user_id=%r", client.name.value, event_id, user_id)

    def _tokens(self, user_id: str, client: ProviderClient) -> TokenSource:
        return self._refresher.token_source(user_id, client.name)

    async def _write(self, client: ProviderClient, call: Awaitable[T]) -> T:
        """Await a provider write under the provider timeout; errors propagate."""
        try:
            async with asyncio.timeout(self._config.provider_timeout_s):
                return await call
        except TimeoutError as exc:
            raise ProviderUnavailableError(
                client.name.value, detail="event write timed out"
            ) from exc

    # ------------------------------------------------------------------
    # Integration lifecycle
    # ------------------------------------------------------------------

    def _client(self, provider: Provider | str) -> ProviderClient:
        try:
            return self._providers[Provider(provider)]
        except (KeyError, ValueError) as exc:
            raise ValidationError(f"Unknown provider: {provider!r}") from exc

    def authorization_url(self, provider: Provider | str, state: str) -> str:
        client = self._client(provider)
        if not client.configured:
            raise ProviderUnavailableError(
                client.name.value, detail="OAuth application credentials are not configured"
            )
        return client.authorization_url(state)

    async def complete_authorization(
        self,
        user_id: str,
        provider: Provider | str,
        code: str,
    ) -> ProviderStatus:
        """Exchange ``code`` and persist the resulting Integration."""
        client = self._client(provider)
        provider = client.name
        if not code.strip():
            raise ValidationError("authorization code must not be blank")

        grant = await client.exchange_code(code.strip())
        provider_user_id = await client.fetch_user_id(grant.access_token)

        try:
            existing = await self._store.get(user_id, provider)
        except ReauthRequiredError:
            existing = None

        refresh_token = grant.refresh_token
        if refresh_token is None and existing is not None:
            refresh_token = existing.refresh_token

        integration = Integration(
            user_id=user_id,
            provider=provider,
            provider_user_id=provider_user_id,
            access_token=grant.access_token,
            refresh_token=refresh_token,
            token_expiry=grant.expires_at,
            scope=grant.scope,
            selected_calendar_ids=(
                existing.selected_calendar_ids if existing else client.default_calendar_ids
            ),
            last_sync_at=existing.last_sync_at if existing else None,
            needs_reauth=False,
        )
        await self._store.put(user_id, provider, integration)
        logger.info(
            "%s connected for user_id=%r (provider account %s)",
            provider.value,
            user_id,
            provider_user_id or "unknown",
        )
        return self._status_for(provider, integration)

    async def disconnect_provider(self, user_id: str, provider: Provider | str) -> None:
        """Revoke at the provider (best-effort) and delete the Integration."""
        client = self._client(provider)
        provider = client.name
        try:
            integration = await self._store.get(user_id, provider)
        except ReauthRequiredError:
            # Tokens are unreadable, so there is nothing to revoke.
            if not await self._store.delete(user_id, provider):
                raise NotConnectedError(provider.value) from None
            return
        if integration is None:
            raise NotConnectedError(provider.value)

        try:
            async with asyncio.timeout(self._config.provider_timeout_s):
                await client.revoke(
                    access_token=integration.access_token,
                    refresh_token=integration.refresh_token,
                )
        except (CalendarSyncError, TimeoutError) as exc:
            logger.warning(
                "Best-effort %s revoke failed for user_id=%r: %s",
                provider.value,
                user_id,
                getattr(exc, "detail", None) or type(exc).__name__,
            )

        await self._store.delete(user_id, provider)
        logger.info("%s disconnected for user_id=%r", provider.value, user_id)

    async def list_calendars(
        self,
        user_id: str,
        provider: Provider | str,
    ) -> list[ProviderCalendar]:
        client = self._client(provider)
        return await self._fetcher.list_calendars(user_id, client.name)

    async def select_calendars(
        self,
        user_id: str,
        provider: Provider | str,
        calendar_ids: list[str],
    ) -> None:
        client = self._client(provider)
        if not await self._store.set_selected_calendars(user_id, client.name, calendar_ids):
            raise NotConnectedError(client.name.value)

    async def provider_status(self, user_id: str) -> list[ProviderStatus]:
        """Connection and sync state of every known provider."""
        connected = set(await self._store.connected_providers(user_id))
        statuses: list[ProviderStatus] = []
        for provider in self._providers:
            if provider not in connected:
                statuses.append(ProviderStatus(provider=provider, connected=False))
                continue
            try:
                integration = await self._store.get(user_id, provider)
            except ReauthRequiredError:
                statuses.append(
                    ProviderStatus(provider=provider, connected=True, needs_reauth=True, stale=True)
                )
                continue
            if integration is None:
                statuses.append(ProviderStatus(provider=provider, connected=False))
                continue
            statuses.append(self._status_for(provider, integration))
        return statuses

    def _status_for(self, provider: Provider, integration: Integration) -> ProviderStatus:
        stale_before = self._clock() - timedelta(hours=self._config.stale_after_hours)
        return ProviderStatus(
            provider=provider,
            connected=True,
            needs_reauth=integration.needs_reauth,
            last_sync_at=integration.last_sync_at,
            selected_calendar_ids=(
                integration.selected_calendar_ids
                or self._providers[provider].default_calendar_ids
            ),
            stale=integration.last_sync_at is None or integration.last_sync_at < stale_before,
        )

