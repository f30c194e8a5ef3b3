"""Shared test helpers for the calsync test suite.

Import helpers with ``from tests.conftest import ...``; fixtures are picked up
automatically.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from calsync.config import ProviderAppConfig
from calsync.crypto import TokenCipher
from calsync.errors import ReauthRequiredError
from calsync.models import (
    PROVIDER_ORIGINS,
    EventOrigin,
    EventPage,
    Integration,
    Provider,
    ProviderCalendar,
    ProviderEventCreate,
    ProviderEventUpdate,
    Recurrence,
    TimeWindow,
    TokenGrant,
    UnifiedEvent,
    external_event_id,
)
from calsync.providers.base import ProviderClient, TokenSource

# Fixed 32-byte key, hex encoded.
TEST_KEY_HEX = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class _AsyncCM:
    """Simple async context manager returning a fixed value."""

    def __init__(self, value):
        self._value = value

    async def __aenter__(self):
        return self._value

    async def __aexit__(self, *args):
        return False


def make_pool_and_conn() -> tuple[MagicMock, AsyncMock]:
    """Create a mock pool whose ``acquire()`` yields one AsyncMock connection."""
    conn = AsyncMock()
    conn.fetch = AsyncMock(return_value=[])
    conn.fetchrow = AsyncMock(return_value=None)
    conn.execute = AsyncMock(return_value="UPDATE 1")
    conn.transaction = MagicMock(return_value=_AsyncCM(None))

    pool = MagicMock()
    pool.acquire = MagicMock(return_value=_AsyncCM(conn))
    return pool, conn


def make_event(
    event_id: str,
    *,
    origin: EventOrigin = EventOrigin.local,
    title: str = "Event",
    start: datetime = NOW,
    duration: timedelta = timedelta(minutes=30),
    external_id: str | None = None,
    **overrides: Any,
) -> UnifiedEvent:
    if origin is not EventOrigin.local and external_id is None:
        external_id = event_id
    return UnifiedEvent(
        id=event_id,
        origin=origin,
        title=title,
        start_time=start,
        end_time=start + duration,
        external_id=external_id,
        recurrence=overrides.pop("recurrence", Recurrence.none),
        **overrides,
    )


def make_integration(
    provider: Provider = Provider.google,
    *,
    user_id: str = "alice",
    access_token: str = "access-1",
    refresh_token: str | None = "refresh-1",
    token_expiry: datetime | None = None,
    **overrides: Any,
) -> Integration:
    return Integration(
        user_id=user_id,
        provider=provider,
        access_token=access_token,
        refresh_token=refresh_token,
        token_expiry=token_expiry,
        **overrides,
    )


def app_config(provider: Provider = Provider.google) -> ProviderAppConfig:
    return ProviderAppConfig(
        client_id=f"{provider.value}-client-id",
        client_secret=f"{provider.value}-client-secret",
        redirect_uri=f"http://localhost:8000/api/integrations/{provider.value}/callback",
    )


@pytest.fixture
def cipher() -> TokenCipher:
    return TokenCipher(bytes.fromhex(TEST_KEY_HEX))


# ---------------------------------------------------------------------------
# In-memory doubles
# ---------------------------------------------------------------------------


class FakeTokenStore:
    """Dict-backed stand-in for :class:`calsync.token_store.TokenStore`."""

    def __init__(self, *integrations: Integration) -> None:
        self.rows: dict[tuple[str, Provider], Integration] = {
            (i.user_id, i.provider): i for i in integrations
        }
        self.unreadable: set[tuple[str, Provider]] = set()
        self.puts: list[Integration] = []
        self.synced: list[tuple[str, list[str], datetime]] = []

    async def get(self, user_id: str, provider: Provider | str) -> Integration | None:
        key = (user_id, Provider(provider))
        if key in self.unreadable:
            raise ReauthRequiredError(key[1].value, detail="ciphertext failed authentication")
        return self.rows.get(key)

    async def connected_providers(self, user_id: str) -> list[Provider]:
        found = {p for (u, p) in self.rows if u == user_id}
        found |= {p for (u, p) in self.unreadable if u == user_id}
        return sorted(found, key=lambda p: p.value)

    async def put(self, user_id: str, provider: Provider | str, integration: Integration) -> None:
        self.rows[(user_id, Provider(provider))] = integration
        self.puts.append(integration)

    async def mark_needs_reauth(self, user_id: str, provider: Provider | str) -> None:
        key = (user_id, Provider(provider))
        if key in self.rows:
            self.rows[key] = self.rows[key].model_copy(update={"needs_reauth": True})

    async def set_selected_calendars(self, user_id, provider, calendar_ids) -> bool:
        key = (user_id, Provider(provider))
        if key not in self.rows:
            return False
        self.rows[key] = self.rows[key].model_copy(
            update={"selected_calendar_ids": list(calendar_ids)}
        )
        return True

    async def record_sync(self, user_id, providers, synced_at) -> None:
        names = sorted(Provider(p).value for p in providers)
        for name in names:
            key = (user_id, Provider(name))
            self.rows[key] = self.rows[key].model_copy(update={"last_sync_at": synced_at})
        self.synced.append((user_id, names, synced_at))

    async def delete(self, user_id: str, provider: Provider | str) -> bool:
        key = (user_id, Provider(provider))
        self.unreadable.discard(key)
        return self.rows.pop(key, None) is not None


class FakeLocalStore:
    """Window-filtering stand-in for :class:`calsync.local_store.LocalEventStore`."""

    def __init__(self, events: list[UnifiedEvent] | None = None) -> None:
        self.events = list(events or [])
        self.error: Exception | None = None

    async def list_in_range(self, user_id: str, window: TimeWindow) -> list[UnifiedEvent]:
        if self.error is not None:
            raise self.error
        return [e for e in self.events if window.overlaps(e.start_time, e.end_time)]


class FakeProvider(ProviderClient):
    """Scripted provider client.

    ``events`` maps calendar id to the events that calendar returns, or to an
    exception raised when it is listed.  ``calendars`` defaults to one entry
    per scripted calendar.  ``page_size`` splits results into pages to
    exercise pagination.  Google fakes accept event writes and record them in
    ``writes``; other providers keep the read-only default.
    """

    def __init__(
        self,
        provider: Provider = Provider.google,
        *,
        events: dict[str, list[UnifiedEvent] | Exception] | None = None,
        calendars: list[ProviderCalendar] | None = None,
        page_size: int | None = None,
    ) -> None:
        super().__init__(app_config(provider), AsyncMock(spec=httpx.AsyncClient))
        self._provider = provider
        self.events = events or {}
        self.calendars = calendars
        self.page_size = page_size
        self.refresh_grant = TokenGrant(access_token=f"{provider.value}-refreshed")
        self.revoked: list[str] = []
        self.pages_served = 0
        self.writes: list[tuple[str, Any]] = []

    @property
    def name(self) -> Provider:
        return self._provider

    @property
    def origin(self) -> EventOrigin:
        return PROVIDER_ORIGINS[self._provider]

    @property
    def default_calendar_ids(self) -> list[str]:
        return ["primary"] if self._provider is Provider.google else []

    def authorization_url(self, state: str) -> str:
        return f"https://auth.example.com/{self._provider.value}?state={state}"

    async def exchange_code(self, code: str) -> TokenGrant:
        return TokenGrant(
            access_token=f"{self._provider.value}-access-{code}",
            refresh_token=f"{self._provider.value}-refresh-{code}",
        )

    async def refresh(self, refresh_token: str) -> TokenGrant:
        return self.refresh_grant

    async def revoke(self, *, access_token: str, refresh_token: str | None = None) -> None:
        self.revoked.append(refresh_token or access_token)

    async def fetch_user_id(self, access_token: str) -> str | None:
        return f"{self._provider.value}-account"

    async def list_calendars(self, tokens: TokenSource) -> list[ProviderCalendar]:
        await tokens()
        if self.calendars is not None:
            return self.calendars
        return [ProviderCalendar(id=calendar_id, name=calendar_id) for calendar_id in self.events]

    async def list_events_page(
        self,
        tokens: TokenSource,
        *,
        calendar_id: str,
        window: TimeWindow,
        page_token: str | None = None,
    ) -> EventPage:
        await tokens()
        scripted = self.events.get(calendar_id, [])
        if isinstance(scripted, Exception):
            raise scripted
        matching = [e for e in scripted if window.overlaps(e.start_time, e.end_time)]
        self.pages_served += 1
        if self.page_size is None:
            return EventPage(events=matching)
        offset = int(page_token or 0)
        next_offset = offset + self.page_size
        return EventPage(
            events=matching[offset:next_offset],
            next_page_token=str(next_offset) if next_offset < len(matching) else None,
        )

    async def create_event(self, tokens: TokenSource, *, data: ProviderEventCreate) -> UnifiedEvent:
        if self._provider is not Provider.google:
            return await super().create_event(tokens, data=data)
        await tokens()
        external_id = f"new{len(self.writes) + 1}"
        self.writes.append(("create", data))
        return make_event(
            external_event_id(self._provider, external_id),
            origin=self.origin,
            external_id=external_id,
            title=data.title,
            start=data.start_time,
            duration=data.end_time - data.start_time,
            calendar_id=data.calendar_id,
        )

    async def update_event(
        self,
        tokens: TokenSource,
        *,
        event_id: str,
        data: ProviderEventUpdate,
    ) -> UnifiedEvent:
        if self._provider is not Provider.google:
            return await super().update_event(tokens, event_id=event_id, data=data)
        await tokens()
        self.writes.append(("update", event_id))
        return make_event(
            external_event_id(self._provider, event_id),
            origin=self.origin,
            external_id=event_id,
            title=data.title or "Updated",
            calendar_id=data.calendar_id,
        )

    async def delete_event(self, tokens: TokenSource, *, calendar_id: str, event_id: str) -> None:
        if self._provider is not Provider.google:
            return await super().delete_event(tokens, calendar_id=calendar_id, event_id=event_id)
        await tokens()
        self.writes.append(("delete", event_id))


@pytest.fixture
def restore_root_logging():
    """Put the root logger back the way it was after ``configure_logging`` ran."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
