"""Construction and teardown of the runtime object graph.

``open_services`` wires the stores, provider clients, refresher, fetcher and
orchestrator around one database pool and one shared ``httpx.AsyncClient``.
Both the HTTP app (in its lifespan) and the CLI use it, so there is exactly
one place where the graph is assembled.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx

from calsync.config import CalsyncConfig
from calsync.crypto import TokenCipher
from calsync.db import Database
from calsync.fetcher import ProviderEventFetcher
from calsync.local_store import LocalEventStore, ensure_events_schema
from calsync.models import Provider
from calsync.providers import build_providers
from calsync.providers.base import ProviderClient
from calsync.refresher import TokenRefresher
from calsync.sync import SyncOrchestrator
from calsync.token_store import TokenStore, ensure_integrations_schema

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """The wired components one process needs."""

    token_store: TokenStore
    local_store: LocalEventStore
    providers: dict[Provider, ProviderClient]
    refresher: TokenRefresher
    fetcher: ProviderEventFetcher
    orchestrator: SyncOrchestrator


def build_services(
    config: CalsyncConfig,
    pool,  # noqa: ANN001
    cipher: TokenCipher,
    http_client: httpx.AsyncClient | None = None,
) -> Services:
    """Wire the component graph around an existing pool and cipher."""
    token_store = TokenStore(pool, cipher)
    local_store = LocalEventStore(pool)
    providers = build_providers(config, http_client)
    refresher = TokenRefresher(
        token_store,
        providers,
        safety_margin_s=config.sync.refresh_safety_margin_s,
        timeout_s=config.sync.provider_timeout_s,
    )
    fetcher = ProviderEventFetcher(
        token_store,
        refresher,
        providers,
        timeout_s=config.sync.provider_timeout_s,
    )
    orchestrator = SyncOrchestrator(
        token_store,
        local_store,
        refresher,
        fetcher,
        providers,
        config=config.sync,
    )
    return Services(
        token_store=token_store,
        local_store=local_store,
        providers=providers,
        refresher=refresher,
        fetcher=fetcher,
        orchestrator=orchestrator,
    )


@asynccontextmanager
async def open_services(config: CalsyncConfig) -> AsyncIterator[Services]:
    """Connect to the database, ensure tables exist, and yield wired services.

    The encryption key is loaded first so a missing or malformed key fails
    before any connection is opened.
    """
    cipher = TokenCipher.from_env()
    database = Database.from_env()
    pool = await database.connect()
    http_client = httpx.AsyncClient(timeout=config.sync.provider_timeout_s)
    try:
        await ensure_integrations_schema(pool)
        await ensure_events_schema(pool)
        yield build_services(config, pool, cipher, http_client)
    finally:
        await http_client.aclose()
        await database.close()
        logger.info("Services shut down")
