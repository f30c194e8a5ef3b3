"""Provider event fetcher.

Obtains a token through the :class:`~calsync.refresher.TokenRefresher`,
then lists events for each opted-in calendar, following pagination until
exhausted.  The provider's calendar list is read alongside to report how
many calendars the account has.  Token errors (``NotConnected``,
``ReauthRequired``, ``ProviderUnavailable`` during refresh) propagate to the
caller; errors on a single calendar (or on the listing) are recorded in
:attr:`FetchResult.errors` and do not abort the other calendars.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field

from calsync.core.telemetry import sync_span
from calsync.errors import CalendarSyncError, NotConnectedError, ProviderUnavailableError
from calsync.models import PartialError, Provider, ProviderCalendar, TimeWindow, UnifiedEvent
from calsync.providers.base import ProviderClient, TokenSource
from calsync.refresher import TokenRefresher
from calsync.token_store import TokenStore

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_TIMEOUT_SECONDS = 15.0
# Upper bound on pages per calendar; guards against a provider echoing a page token.
MAX_PAGES_PER_CALENDAR = 100


@dataclass
class FetchResult:
    """Outcome of fetching one provider for one user.

    ``calendars_found`` counts the calendars the provider lists for the
    account; ``calendars_selected`` counts the ones that were fetched.
    """

    provider: Provider
    events: list[UnifiedEvent] = field(default_factory=list)
    calendars_found: int = 0
    calendars_selected: int = 0
    errors: list[PartialError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def partial_error_from(
    exc: CalendarSyncError,
    provider: Provider | str,
    *,
    calendar_id: str | None = None,
) -> PartialError:
    return PartialError(
        provider=Provider(provider).value,
        kind=exc.kind.value,
        calendar_id=calendar_id,
        detail=exc.detail or exc.message,
    )


class ProviderEventFetcher:
    """Lists normalized events from a provider for a user's selected calendars."""

    def __init__(
        self,
        store: TokenStore,
        refresher: TokenRefresher,
        providers: Mapping[Provider, ProviderClient],
        *,
        timeout_s: float = DEFAULT_PROVIDER_TIMEOUT_SECONDS,
    ) -> None:
        self._store = store
        self._refresher = refresher
        self._providers = providers
        self._timeout_s = timeout_s

    async def fetch_events(
        self,
        user_id: str,
        provider: Provider | str,
        window: TimeWindow,
    ) -> FetchResult:
        provider = Provider(provider)
        client = self._providers[provider]
        integration = await self._store.get(user_id, provider)
        if integration is None:
            raise NotConnectedError(provider.value)

        tokens = self._refresher.token_source(user_id, provider)
        # Surface token errors before any calendar is touched.
        await tokens()

        calendar_ids = integration.selected_calendar_ids or client.default_calendar_ids
        result = FetchResult(provider=provider, calendars_selected=len(calendar_ids))
        if not calendar_ids:
            logger.info("No %s calendars selected for user_id=%r", provider.value, user_id)

        with sync_span("fetch", provider=provider.value):
            listing, *outcomes = await asyncio.gather(
                self._count_calendars(client, tokens),
                *(
                    self._fetch_calendar(client, tokens, calendar_id, window)
                    for calendar_id in calendar_ids
                ),
            )

        if isinstance(listing, CalendarSyncError):
            logger.warning(
                "Listing %s calendars failed for user_id=%r: %s",
                provider.value,
                user_id,
                listing.kind.value,
            )
            result.errors.append(partial_error_from(listing, provider))
        else:
            result.calendars_found = listing

        for calendar_id, outcome in zip(calendar_ids, outcomes, strict=True):
            if isinstance(outcome, CalendarSyncError):
                logger.warning(
                    "Fetching %s calendar %r failed for user_id=%r: %s",
                    provider.value,
                    calendar_id,
                    user_id,
                    outcome.kind.value,
                )
                result.errors.append(partial_error_from(outcome, provider, calendar_id=calendar_id))
            else:
                result.events.extend(outcome)

        logger.info(
            "Fetched %d %s events from %d calendar(s) for user_id=%r (%d failed)",
            len(result.events),
            provider.value,
            len(calendar_ids),
            user_id,
            len(result.errors),
        )
        return result

    async def _fetch_calendar(
        self,
        client: ProviderClient,
        tokens: TokenSource,
        calendar_id: str,
        window: TimeWindow,
    ) -> list[UnifiedEvent] | CalendarSyncError:
        events: list[UnifiedEvent] = []
        page_token: str | None = None
        try:
            async with asyncio.timeout(self._timeout_s):
                for _ in range(MAX_PAGES_PER_CALENDAR):
                    page = await client.list_events_page(
                        tokens, calendar_id=calendar_id, window=window, page_token=page_token
                    )
                    events.extend(page.events)
                    page_token = page.next_page_token
                    if not page_token:
                        break
                else:
                    logger.warning(
                        "Stopped paging %s calendar %r after %d pages",
                        client.name.value,
                        calendar_id,
                        MAX_PAGES_PER_CALENDAR,
                    )
        except TimeoutError:
            return ProviderUnavailableError(
                client.name.value, detail=f"calendar fetch exceeded {self._timeout_s:g}s"
            )
        except CalendarSyncError as exc:
            return exc
        return events

    async def _count_calendars(
        self,
        client: ProviderClient,
        tokens: TokenSource,
    ) -> int | CalendarSyncError:
        try:
            async with asyncio.timeout(self._timeout_s):
                return len(await client.list_calendars(tokens))
        except TimeoutError:
            return ProviderUnavailableError(client.name.value, detail="calendar listing timed out")
        except CalendarSyncError as exc:
            return exc

    async def list_calendars(
        self,
        user_id: str,
        provider: Provider | str,
    ) -> list[ProviderCalendar]:
        """List the provider-side calendars (Google) or repositories (GitHub)."""
        provider = Provider(provider)
        client = self._providers[provider]
        tokens = self._refresher.token_source(user_id, provider)
        try:
            async with asyncio.timeout(self._timeout_s):
                return await client.list_calendars(tokens)
        except TimeoutError as exc:
            raise ProviderUnavailableError(
                provider.value, detail="calendar listing timed out"
            ) from exc
